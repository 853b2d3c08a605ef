from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatekeeper.logging import get_logger
from gatekeeper.storage.common import (
    UpdateBuilder,
    as_utc,
    parse_json_meta,
    str_or_none,
)
from gatekeeper.storage.errors import ConstraintViolation
from gatekeeper.storage.models import (
    PRINCIPAL_UPDATABLE_FIELDS,
    CodeType,
    MfaChallenge,
    PasswordHistoryEntry,
    PasswordPolicy,
    Permission,
    PermissionAuditEntry,
    Principal,
    PrincipalKind,
    ResourceType,
    Role,
    RolePermissionGrant,
    ScopedRecord,
    SecurityLogEntry,
    Session,
    TrustedDevice,
    new_id,
    utcnow,
)

_POLICY_COLUMNS = (
    "min_length",
    "max_length",
    "require_uppercase",
    "require_lowercase",
    "require_numbers",
    "require_special",
    "special_chars",
    "prevent_common_passwords",
    "prevent_identity_in_password",
    "history_enabled",
    "history_count",
    "expiration_enabled",
    "expiration_days",
)


class PostgresStore:
    """Postgres-backed store for principals, sessions, challenges and audit data."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        """Ensure every table the services rely on exists before serving requests."""

        required_tables = [
            "principals",
            "principal_passwords",
            "roles",
            "permissions",
            "role_permissions",
            "principal_roles",
            "user_sessions",
            "mfa_challenges",
            "trusted_devices",
            "permission_audit_log",
            "password_policies",
            "password_history",
            "security_logs",
            "system_settings",
            "scoped_records",
        ]

        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    # row decoding
    def _principal_from_row(self, row: Dict[str, Any], roles: List[str]) -> Principal:
        return Principal(
            id=str(row["id"]),
            kind=PrincipalKind(row["kind"]),
            email=row["email"],
            email_verified=bool(row.get("email_verified")),
            status=row.get("status") or "active",
            roles=roles,
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            username=row.get("username"),
            phone=row.get("phone"),
            business_id=str_or_none(row.get("business_id")),
            mfa_enabled=bool(row.get("mfa_enabled")),
            mfa_email=row.get("mfa_email"),
            password_changed_at=as_utc(row.get("password_changed_at")),
            password_expires_at=as_utc(row.get("password_expires_at")),
            force_password_change=bool(row.get("force_password_change")),
            created_at=as_utc(row.get("created_at")) or utcnow(),
        )

    def _role_names(self, conn, principal_id: str) -> List[str]:
        rows = conn.execute(
            """
            SELECT r.name FROM principal_roles pr
            JOIN roles r ON r.id = pr.role_id
            WHERE pr.principal_id = %s
            ORDER BY pr.assigned_at
            """,
            (principal_id,),
        ).fetchall()
        return [r["name"] for r in rows]

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            principal_kind=PrincipalKind(row["principal_kind"]),
            email=row["email"],
            token=row["token"],
            created_at=as_utc(row["created_at"]),
            last_activity=as_utc(row["last_activity"]),
            expires_at=as_utc(row["expires_at"]),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            is_active=bool(row["is_active"]),
            ended_at=as_utc(row.get("ended_at")),
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> MfaChallenge:
        return MfaChallenge(
            id=str(row["id"]),
            principal_id=str_or_none(row.get("principal_id")),
            email=row["email"],
            code=row["code"],
            code_type=CodeType(row["code_type"]),
            created_at=as_utc(row["created_at"]),
            expires_at=as_utc(row["expires_at"]),
            used_at=as_utc(row.get("used_at")),
            delivery_phone=row.get("delivery_phone"),
        )

    @staticmethod
    def _device_from_row(row: Dict[str, Any]) -> TrustedDevice:
        return TrustedDevice(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            principal_kind=PrincipalKind(row["principal_kind"]),
            fingerprint=row["fingerprint"],
            trusted_at=as_utc(row["trusted_at"]),
            expires_at=as_utc(row.get("expires_at")),
            last_used=as_utc(row.get("last_used")),
            device_name=row.get("device_name"),
            revoked_at=as_utc(row.get("revoked_at")),
        )

    # principals
    def create_principal(
        self,
        kind: PrincipalKind,
        email: str,
        *,
        roles: Optional[Sequence[str]] = None,
        email_verified: bool = False,
        status: str = "active",
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        username: Optional[str] = None,
        phone: Optional[str] = None,
        business_id: Optional[str] = None,
        mfa_enabled: bool = False,
    ) -> Principal:
        kind = PrincipalKind(kind)
        role_list = list(roles or [])
        if kind == PrincipalKind.CLIENT and len(role_list) > 1:
            raise ConstraintViolation("clients hold a single role", {"field": "roles"})
        principal_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO principals (
                        id, kind, email, email_verified, status, first_name, last_name,
                        username, phone, business_id, mfa_enabled
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        principal_id,
                        kind.value,
                        email.strip().lower(),
                        email_verified,
                        status,
                        first_name,
                        last_name,
                        username,
                        phone,
                        business_id,
                        mfa_enabled,
                    ),
                ).fetchone()
                for role_name in role_list:
                    conn.execute(
                        """
                        INSERT INTO principal_roles (principal_id, role_id)
                        SELECT %s, id FROM roles WHERE name = %s
                        """,
                        (principal_id, role_name),
                    )
                names = self._role_names(conn, principal_id)
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._principal_from_row(row, names)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principals WHERE id = %s", (principal_id,)
            ).fetchone()
            if not row:
                return None
            return self._principal_from_row(row, self._role_names(conn, principal_id))

    def get_principal_by_email(
        self, kind: PrincipalKind, email: str
    ) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principals WHERE kind = %s AND email = %s",
                (PrincipalKind(kind).value, (email or "").strip().lower()),
            ).fetchone()
            if not row:
                return None
            return self._principal_from_row(row, self._role_names(conn, str(row["id"])))

    def list_principals(self, kind: Optional[PrincipalKind] = None) -> List[Principal]:
        with self._connect() as conn:
            if kind is None:
                rows = conn.execute("SELECT * FROM principals ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM principals WHERE kind = %s ORDER BY created_at",
                    (PrincipalKind(kind).value,),
                ).fetchall()
            return [
                self._principal_from_row(row, self._role_names(conn, str(row["id"])))
                for row in rows
            ]

    def update_principal(self, principal_id: str, **changes: Any) -> Optional[Principal]:
        builder = UpdateBuilder("principals", PRINCIPAL_UPDATABLE_FIELDS).set_many(changes)
        query, params = builder.build("id", principal_id)
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
            if not row:
                return None
            return self._principal_from_row(row, self._role_names(conn, principal_id))

    def save_password(self, principal_id: str, password_hash: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO principal_passwords (principal_id, password_hash, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (principal_id)
                    DO UPDATE SET password_hash = EXCLUDED.password_hash, updated_at = now()
                    """,
                    (principal_id, password_hash),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal does not exist", {"principal_id": principal_id}
            )

    def get_password_hash(self, principal_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM principal_passwords WHERE principal_id = %s",
                (principal_id,),
            ).fetchone()
        return row["password_hash"] if row else None

    # roles and permissions
    def create_role(
        self, name: str, *, level: int = 0, description: Optional[str] = None
    ) -> Role:
        role = Role(id=new_id(), name=name, level=level, description=description)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO roles (id, name, level, description) VALUES (%s, %s, %s, %s)",
                    (role.id, name, level, description),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role already exists", {"field": "name"})
        return role

    def create_permission(
        self,
        permission_key: str,
        *,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Permission:
        permission = Permission(
            id=new_id(),
            permission_key=permission_key,
            description=description,
            is_active=is_active,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO permissions (id, permission_key, description, is_active)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (permission.id, permission_key, description, is_active),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "permission already exists", {"field": "permission_key"}
            )
        return permission

    def set_permission_active(self, permission_key: str, is_active: bool) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE permissions SET is_active = %s WHERE permission_key = %s",
                (is_active, permission_key),
            )

    def grant_permission(
        self, role_name: str, permission_key: str, *, is_granted: bool = True
    ) -> RolePermissionGrant:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO role_permissions (role_id, permission_id, is_granted)
                SELECT r.id, p.id, %s FROM roles r, permissions p
                WHERE r.name = %s AND p.permission_key = %s
                ON CONFLICT (role_id, permission_id)
                DO UPDATE SET is_granted = EXCLUDED.is_granted
                RETURNING role_id, permission_id, is_granted
                """,
                (is_granted, role_name, permission_key),
            ).fetchone()
        if not row:
            raise ConstraintViolation(
                "role or permission missing",
                {"role": role_name, "permission_key": permission_key},
            )
        return RolePermissionGrant(
            role_id=str(row["role_id"]),
            permission_id=str(row["permission_id"]),
            is_granted=row["is_granted"],
        )

    def assign_role(self, principal_id: str, role_name: str) -> None:
        with self._connect() as conn:
            with conn.transaction():
                principal = conn.execute(
                    "SELECT kind FROM principals WHERE id = %s FOR UPDATE", (principal_id,)
                ).fetchone()
                if not principal:
                    raise ConstraintViolation(
                        "principal does not exist", {"principal_id": principal_id}
                    )
                role = conn.execute(
                    "SELECT id FROM roles WHERE name = %s", (role_name,)
                ).fetchone()
                if not role:
                    raise ConstraintViolation("role does not exist", {"role": role_name})
                if principal["kind"] == PrincipalKind.CLIENT.value:
                    conn.execute(
                        "DELETE FROM principal_roles WHERE principal_id = %s",
                        (principal_id,),
                    )
                conn.execute(
                    """
                    INSERT INTO principal_roles (principal_id, role_id) VALUES (%s, %s)
                    ON CONFLICT DO NOTHING
                    """,
                    (principal_id, role["id"]),
                )

    def get_principal_roles(self, principal_id: str) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM principal_roles pr
                JOIN roles r ON r.id = pr.role_id
                WHERE pr.principal_id = %s AND r.is_active = TRUE
                ORDER BY pr.assigned_at
                """,
                (principal_id,),
            ).fetchall()
        return [
            Role(
                id=str(r["id"]),
                name=r["name"],
                level=r.get("level") or 0,
                description=r.get("description"),
                is_active=r["is_active"],
            )
            for r in rows
        ]

    def has_granted_permission(
        self, role_names: Sequence[str], permission_key: str
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS granted
                FROM role_permissions rp
                JOIN roles r ON rp.role_id = r.id
                JOIN permissions p ON rp.permission_id = p.id
                WHERE r.name = ANY(%s)
                  AND p.permission_key = %s
                  AND rp.is_granted = TRUE
                  AND p.is_active = TRUE
                """,
                (list(role_names), permission_key),
            ).fetchone()
        return bool(row and row["granted"] > 0)

    def list_granted_permissions(self, role_names: Sequence[str]) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT p.permission_key
                FROM role_permissions rp
                JOIN roles r ON rp.role_id = r.id
                JOIN permissions p ON rp.permission_id = p.id
                WHERE r.name = ANY(%s) AND rp.is_granted = TRUE AND p.is_active = TRUE
                ORDER BY p.permission_key
                """,
                (list(role_names),),
            ).fetchall()
        return [r["permission_key"] for r in rows]

    def list_permission_keys(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT permission_key FROM permissions WHERE is_active = TRUE ORDER BY permission_key"
            ).fetchall()
        return [r["permission_key"] for r in rows]

    def append_permission_audit(self, entry: PermissionAuditEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO permission_audit_log (
                    id, principal_id, permission_key, result, role_used, action_details,
                    resource_type, resource_id, ip_address, user_agent, created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.principal_id,
                    entry.permission_key,
                    entry.result,
                    entry.role_used,
                    json.dumps(entry.details or {}),
                    entry.resource_type,
                    entry.resource_id,
                    entry.ip_address,
                    entry.user_agent,
                    entry.created_at,
                ),
            )

    def list_permission_audit(
        self, principal_id: Optional[str] = None, limit: int = 100
    ) -> List[PermissionAuditEntry]:
        with self._connect() as conn:
            if principal_id:
                rows = conn.execute(
                    """
                    SELECT * FROM permission_audit_log WHERE principal_id = %s
                    ORDER BY created_at DESC LIMIT %s
                    """,
                    (principal_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM permission_audit_log ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [
            PermissionAuditEntry(
                id=str(r["id"]),
                principal_id=str(r["principal_id"]),
                permission_key=r["permission_key"],
                result=r["result"],
                role_used=r.get("role_used"),
                details=parse_json_meta(r.get("action_details")),
                resource_type=r.get("resource_type"),
                resource_id=r.get("resource_id"),
                ip_address=r.get("ip_address"),
                user_agent=r.get("user_agent"),
                created_at=as_utc(r["created_at"]),
            )
            for r in rows
        ]

    # sessions
    def insert_session(self, session: Session, *, max_active: int) -> List[Session]:
        """Insert ``session`` after ending the oldest live sessions above the cap.

        A transaction-scoped advisory lock on the principal serializes
        concurrent logins so the cap holds once they settle.
        """
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "SELECT pg_advisory_xact_lock(hashtext(%s))", (session.principal_id,)
                )
                live = conn.execute(
                    """
                    SELECT id FROM user_sessions
                    WHERE principal_id = %s AND is_active = TRUE AND expires_at > now()
                    ORDER BY created_at ASC
                    """,
                    (session.principal_id,),
                ).fetchall()
                excess = len(live) - max_active + 1
                evicted: List[Session] = []
                if excess > 0:
                    rows = conn.execute(
                        """
                        UPDATE user_sessions SET is_active = FALSE, ended_at = now()
                        WHERE id = ANY(%s)
                        RETURNING *
                        """,
                        ([r["id"] for r in live[:excess]],),
                    ).fetchall()
                    evicted = [self._session_from_row(r) for r in rows]
                conn.execute(
                    """
                    INSERT INTO user_sessions (
                        id, principal_id, principal_kind, email, token, user_agent,
                        ip_address, created_at, last_activity, expires_at, is_active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE)
                    """,
                    (
                        session.id,
                        session.principal_id,
                        session.principal_kind.value,
                        session.email,
                        session.token,
                        session.user_agent,
                        session.ip_address,
                        session.created_at,
                        session.last_activity,
                        session.expires_at,
                    ),
                )
        return evicted

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_sessions WHERE token = %s", (token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(
        self, token: str, now: datetime, expires_at: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_sessions
                SET last_activity = %s, expires_at = %s
                WHERE token = %s AND is_active = TRUE AND expires_at > %s
                RETURNING *
                """,
                (now, expires_at, token, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def end_session(self, token: str, now: datetime) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_sessions SET is_active = FALSE, ended_at = %s
                WHERE token = %s AND is_active = TRUE
                RETURNING *
                """,
                (now, token),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def end_principal_sessions(
        self, principal_id: str, now: datetime, *, except_token: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_sessions SET is_active = FALSE, ended_at = %s
                WHERE principal_id = %s AND is_active = TRUE
                  AND (%s::text IS NULL OR token <> %s)
                """,
                (now, principal_id, except_token, except_token),
            )
            return cur.rowcount or 0

    def expire_stale_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE user_sessions SET is_active = FALSE, ended_at = %s
                WHERE is_active = TRUE AND expires_at <= %s
                """,
                (now, now),
            )
            return cur.rowcount or 0

    def list_live_sessions(
        self, now: datetime, principal_ids: Optional[Sequence[str]] = None
    ) -> List[Session]:
        with self._connect() as conn:
            if principal_ids is None:
                rows = conn.execute(
                    """
                    SELECT * FROM user_sessions
                    WHERE is_active = TRUE AND expires_at > %s
                    ORDER BY last_activity DESC
                    """,
                    (now,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM user_sessions
                    WHERE principal_id = ANY(%s::uuid[]) AND is_active = TRUE AND expires_at > %s
                    ORDER BY last_activity DESC
                    """,
                    (list(principal_ids), now),
                ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def session_stats(self, now: datetime, recent_since: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                  COUNT(*) FILTER (WHERE is_active AND expires_at > %s) AS active_sessions,
                  COUNT(*) FILTER (WHERE is_active AND expires_at > %s AND last_activity > %s) AS recently_active,
                  COUNT(*) FILTER (WHERE is_active AND expires_at <= %s) AS expired_sessions,
                  COUNT(*) FILTER (WHERE NOT is_active) AS ended_sessions,
                  COUNT(DISTINCT principal_id) FILTER (WHERE is_active AND expires_at > %s) AS unique_active_users
                FROM user_sessions
                """,
                (now, now, recent_since, now, now),
            ).fetchone()
        return {key: int(row[key] or 0) for key in row}

    # mfa challenges
    def upsert_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    """
                    DELETE FROM mfa_challenges
                    WHERE email = %s AND code_type = %s AND used_at IS NULL
                    """,
                    (challenge.email, challenge.code_type.value),
                )
                conn.execute(
                    """
                    INSERT INTO mfa_challenges (
                        id, principal_id, email, code, code_type, created_at, expires_at,
                        used_at, delivery_phone
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, NULL, %s)
                    """,
                    (
                        challenge.id,
                        challenge.principal_id,
                        challenge.email,
                        challenge.code,
                        challenge.code_type.value,
                        challenge.created_at,
                        challenge.expires_at,
                        challenge.delivery_phone,
                    ),
                )
        return challenge

    def consume_challenge(
        self, email: str, code: str, now: datetime, *, code_type: Optional[CodeType] = None
    ) -> Optional[MfaChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mfa_challenges SET used_at = %s
                WHERE id = (
                    SELECT id FROM mfa_challenges
                    WHERE email = %s AND code = %s
                      AND (%s::text IS NULL OR code_type = %s)
                      AND used_at IS NULL AND expires_at > %s
                    ORDER BY created_at DESC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING *
                """,
                (
                    now,
                    email,
                    code,
                    code_type.value if code_type else None,
                    code_type.value if code_type else None,
                    now,
                ),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    def find_challenge(
        self, email: str, code: str, *, code_type: Optional[CodeType] = None
    ) -> Optional[MfaChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM mfa_challenges
                WHERE email = %s AND code = %s AND (%s::text IS NULL OR code_type = %s)
                ORDER BY created_at DESC LIMIT 1
                """,
                (
                    email,
                    code,
                    code_type.value if code_type else None,
                    code_type.value if code_type else None,
                ),
            ).fetchone()
        return self._challenge_from_row(row) if row else None

    # trusted devices
    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO trusted_devices (
                    id, principal_id, principal_kind, fingerprint, device_name,
                    trusted_at, expires_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (principal_id, principal_kind, fingerprint)
                DO UPDATE SET trusted_at = EXCLUDED.trusted_at,
                              expires_at = EXCLUDED.expires_at,
                              device_name = COALESCE(EXCLUDED.device_name, trusted_devices.device_name),
                              revoked_at = NULL
                RETURNING *
                """,
                (
                    device.id,
                    device.principal_id,
                    device.principal_kind.value,
                    device.fingerprint,
                    device.device_name,
                    device.trusted_at,
                    device.expires_at,
                ),
            ).fetchone()
        return self._device_from_row(row)

    def find_trusted_device(
        self,
        principal_id: str,
        principal_kind: PrincipalKind,
        fingerprint: str,
        now: datetime,
    ) -> Optional[TrustedDevice]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE trusted_devices SET last_used = %s
                WHERE principal_id = %s AND principal_kind = %s AND fingerprint = %s
                  AND revoked_at IS NULL
                  AND (expires_at IS NULL OR expires_at > %s)
                RETURNING *
                """,
                (now, principal_id, PrincipalKind(principal_kind).value, fingerprint, now),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def list_trusted_devices(self, principal_id: str) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM trusted_devices
                WHERE principal_id = %s AND revoked_at IS NULL
                ORDER BY trusted_at DESC
                """,
                (principal_id,),
            ).fetchall()
        return [self._device_from_row(r) for r in rows]

    def revoke_trusted_device(
        self, principal_id: str, device_id: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE trusted_devices SET revoked_at = %s
                WHERE id = %s AND principal_id = %s AND revoked_at IS NULL
                """,
                (now, device_id, principal_id),
            )
            return bool(cur.rowcount)

    # password policy and history
    def get_active_password_policy(
        self, kind: PrincipalKind
    ) -> Optional[PasswordPolicy]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM password_policies
                WHERE principal_kind = %s AND is_active = TRUE
                ORDER BY created_at DESC LIMIT 1
                """,
                (PrincipalKind(kind).value,),
            ).fetchone()
        if not row:
            return None
        return PasswordPolicy(
            id=str(row["id"]),
            principal_kind=PrincipalKind(row["principal_kind"]),
            is_active=row["is_active"],
            created_at=as_utc(row["created_at"]),
            **{column: row[column] for column in _POLICY_COLUMNS},
        )

    def set_active_password_policy(self, policy: PasswordPolicy) -> PasswordPolicy:
        stored_id = new_id()
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    """
                    UPDATE password_policies SET is_active = FALSE
                    WHERE principal_kind = %s AND is_active = TRUE
                    """,
                    (policy.principal_kind.value,),
                )
                row = conn.execute(
                    """
                    INSERT INTO password_policies (
                        id, principal_kind, min_length, max_length, require_uppercase,
                        require_lowercase, require_numbers, require_special, special_chars,
                        prevent_common_passwords, prevent_identity_in_password,
                        history_enabled, history_count, expiration_enabled, expiration_days,
                        is_active
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, TRUE)
                    RETURNING created_at
                    """,
                    (
                        stored_id,
                        policy.principal_kind.value,
                        *(getattr(policy, column) for column in _POLICY_COLUMNS),
                    ),
                ).fetchone()
        return PasswordPolicy(
            id=stored_id,
            principal_kind=policy.principal_kind,
            is_active=True,
            created_at=as_utc(row["created_at"]),
            **{column: getattr(policy, column) for column in _POLICY_COLUMNS},
        )

    def add_password_history(
        self, principal_id: str, password_hash: str, *, keep: int
    ) -> None:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute(
                    "INSERT INTO password_history (principal_id, password_hash) VALUES (%s, %s)",
                    (principal_id, password_hash),
                )
                conn.execute(
                    """
                    DELETE FROM password_history
                    WHERE principal_id = %s AND id NOT IN (
                        SELECT id FROM password_history WHERE principal_id = %s
                        ORDER BY created_at DESC, id DESC LIMIT %s
                    )
                    """,
                    (principal_id, principal_id, max(keep, 0)),
                )

    def list_password_history(
        self, principal_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT principal_id, password_hash, created_at FROM password_history
                WHERE principal_id = %s ORDER BY created_at DESC, id DESC LIMIT %s
                """,
                (principal_id, limit),
            ).fetchall()
        return [
            PasswordHistoryEntry(
                principal_id=str(r["principal_id"]),
                password_hash=r["password_hash"],
                created_at=as_utc(r["created_at"]),
            )
            for r in rows
        ]

    # security log
    def append_security_event(self, entry: SecurityLogEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_logs (id, event_type, ip_address, email, principal_id, details, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.event_type,
                    entry.ip_address,
                    entry.email,
                    entry.principal_id,
                    json.dumps(entry.details or {}),
                    entry.created_at,
                ),
            )

    def count_security_events(
        self,
        event_type: str,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM security_logs
                WHERE event_type = %s AND created_at >= %s
                  AND (%s::text IS NULL OR ip_address = %s)
                """,
                (event_type, since, ip_address, ip_address),
            ).fetchone()
        return int(row["total"]) if row else 0

    def security_event_summary(self, since: datetime) -> Dict[str, int]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT event_type, COUNT(*) AS total FROM security_logs
                WHERE created_at >= %s GROUP BY event_type
                """,
                (since,),
            ).fetchall()
        return {r["event_type"]: int(r["total"]) for r in rows}

    # system settings
    def get_system_settings(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT setting_key, setting_value FROM system_settings"
            ).fetchall()
        settings: Dict[str, Any] = {}
        for row in rows:
            value = row["setting_value"]
            if isinstance(value, str):
                try:
                    value = json.loads(value)
                except ValueError:
                    pass
            settings[row["setting_key"]] = value
        return settings

    def set_system_setting(self, key: str, value: Any) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO system_settings (setting_key, setting_value, updated_at)
                VALUES (%s, %s, now())
                ON CONFLICT (setting_key)
                DO UPDATE SET setting_value = EXCLUDED.setting_value, updated_at = now()
                """,
                (key, json.dumps(value)),
            )

    # scoped records
    def add_scoped_record(self, record: ScopedRecord) -> ScopedRecord:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scoped_records (id, resource_type, scope_id, is_active, deleted_at, is_headquarters)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.resource_type.value,
                    record.scope_id,
                    record.is_active,
                    record.deleted_at,
                    record.is_headquarters,
                ),
            )
        return record

    def count_scoped_records(self, resource_type: ResourceType, scope_id: str) -> int:
        resource_type = ResourceType(resource_type)
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total FROM scoped_records
                WHERE resource_type = %s AND scope_id = %s
                  AND is_active = TRUE AND deleted_at IS NULL
                  AND (%s = FALSE OR is_headquarters = FALSE)
                """,
                (
                    resource_type.value,
                    scope_id,
                    resource_type == ResourceType.SERVICE_LOCATIONS,
                ),
            ).fetchone()
        return int(row["total"]) if row else 0
