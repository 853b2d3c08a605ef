"""Common storage utilities shared between memory and postgres implementations.

This module keeps field validation and row decoding in one place so both
backends accept exactly the same updates and produce the same models.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from psycopg import sql


# ============================================================================
# PARTIAL UPDATES
# ============================================================================

class UpdateBuilder:
    """Accumulate ``(field, value)`` pairs for a partial ``UPDATE``.

    Fields are checked against an explicit allow-list when they are added, and
    the statement is composed with ``sql.Identifier`` for names and ``%s``
    placeholders for every value, so nothing from the caller is ever spliced
    into query text.

    Example::

        builder = UpdateBuilder("employees", {"first_name", "status"})
        builder.set("status", "terminated")
        query, params = builder.build("id", employee_id)
        conn.execute(query, params)
    """

    def __init__(self, table: str, allowed_fields: Iterable[str]) -> None:
        self.table = table
        self.allowed_fields = frozenset(allowed_fields)
        self._assignments: List[Tuple[str, Any]] = []

    def set(self, field: str, value: Any) -> "UpdateBuilder":
        if field not in self.allowed_fields:
            raise ValueError(f"field '{field}' is not updatable on {self.table}")
        # Last write wins for a repeated field
        self._assignments = [(f, v) for f, v in self._assignments if f != field]
        self._assignments.append((field, value))
        return self

    def set_many(self, values: Dict[str, Any]) -> "UpdateBuilder":
        for field, value in values.items():
            self.set(field, value)
        return self

    @property
    def fields(self) -> List[str]:
        return [f for f, _ in self._assignments]

    def __bool__(self) -> bool:
        return bool(self._assignments)

    def build(
        self, where_field: str, where_value: Any, *, returning: bool = True
    ) -> Tuple[sql.Composed, List[Any]]:
        if not self._assignments:
            raise ValueError("no fields to update")
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(field))
            for field, _ in self._assignments
        )
        query = sql.SQL("UPDATE {table} SET {assignments} WHERE {where} = %s").format(
            table=sql.Identifier(self.table),
            assignments=assignments,
            where=sql.Identifier(where_field),
        )
        if returning:
            query = query + sql.SQL(" RETURNING *")
        params = [value for _, value in self._assignments]
        params.append(where_value)
        return query, params


# ============================================================================
# ROW DECODING
# ============================================================================

def parse_json_meta(raw_meta: Any) -> Dict:
    """Parse a JSON column that may arrive as text, dict or NULL."""
    if isinstance(raw_meta, str):
        try:
            parsed = json.loads(raw_meta)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    if isinstance(raw_meta, dict):
        return raw_meta
    return {}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to aware UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def str_or_none(value: Any) -> Optional[str]:
    return str(value) if value is not None else None
