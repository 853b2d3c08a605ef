from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import INSUFFICIENT_ACCESS_LEVEL, AuthorizationError
from gatekeeper.storage.counters import CounterStore
from gatekeeper.storage.models import PermissionAuditEntry, ResourceType, Role

logger = get_logger(__name__)

# Informational only; grants are never inherited along these levels
ROLE_LEVELS = {
    "executive": 5,
    "admin": 4,
    "manager": 3,
    "sales": 2,
    "technician": 1,
}

_RESOURCE_NAMES = {
    ResourceType.SERVICE_LOCATIONS: "service location",
    ResourceType.USERS: "client",
}


class PermissionStore(Protocol):
    def get_principal_roles(self, principal_id: str) -> List[Role]: ...

    def has_granted_permission(
        self, role_names: Sequence[str], permission_key: str
    ) -> bool: ...

    def list_granted_permissions(self, role_names: Sequence[str]) -> List[str]: ...

    def list_permission_keys(self) -> List[str]: ...

    def append_permission_audit(self, entry: PermissionAuditEntry) -> None: ...

    def count_scoped_records(self, resource_type: ResourceType, scope_id: str) -> int: ...


@dataclass
class AuditContext:
    """Request details copied onto permission audit rows."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class LastRecordDecision:
    allowed: bool
    count: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"allowed": self.allowed}
        if self.count is not None:
            data["count"] = self.count
        if self.message is not None:
            data["message"] = self.message
        return data


class PermissionArbiter:
    """Flat role-to-permission resolution with a TTL cache and an audit trail.

    Any error while resolving denies the request. Audit writes never change
    a decision: their failures are logged and dropped.
    """

    def __init__(
        self,
        store: PermissionStore,
        counters: CounterStore,
        settings: Settings,
    ) -> None:
        self.store = store
        self.counters = counters
        self.settings = settings
        self.override_role = settings.override_role
        self.logger = logger

    @staticmethod
    def _cache_key(principal_id: str, permission_key: str) -> str:
        return f"perm:{principal_id}:{permission_key}"

    def _audit(
        self,
        principal_id: str,
        permission_key: str,
        result: str,
        *,
        roles: Sequence[str],
        context: Optional[AuditContext],
        **details: Any,
    ) -> None:
        context = context or AuditContext()
        payload = {"roles": list(roles), **context.extra, **details}
        try:
            self.store.append_permission_audit(
                PermissionAuditEntry(
                    principal_id=principal_id,
                    permission_key=permission_key,
                    result=result,
                    role_used=roles[0] if roles else None,
                    details=payload,
                    resource_type=context.resource_type,
                    resource_id=context.resource_id,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                )
            )
        except Exception as exc:
            self.logger.error(
                "permission_audit_write_failed",
                principal_id=principal_id,
                permission_key=permission_key,
                error=str(exc),
            )

    def _role_names(self, principal_id: str) -> List[str]:
        return [role.name for role in self.store.get_principal_roles(principal_id)]

    async def _granted(self, principal_id: str, roles: Sequence[str], permission_key: str) -> bool:
        cache_key = self._cache_key(principal_id, permission_key)
        try:
            cached = await self.counters.cache_get(cache_key)
        except Exception as exc:
            self.logger.warning("permission_cache_read_failed", error=str(exc))
            cached = None
        if cached is not None:
            return bool(cached)
        granted = self.store.has_granted_permission(roles, permission_key)
        try:
            await self.counters.cache_set(
                cache_key, granted, self.settings.permission_cache_ttl_seconds
            )
        except Exception as exc:
            self.logger.warning("permission_cache_write_failed", error=str(exc))
        return granted

    async def check(
        self,
        principal_id: str,
        permission_key: str,
        *,
        context: Optional[AuditContext] = None,
        skip_audit: bool = False,
    ) -> bool:
        roles: List[str] = []
        try:
            roles = self._role_names(principal_id)
            if not roles:
                if not skip_audit:
                    self._audit(
                        principal_id,
                        permission_key,
                        "denied",
                        roles=roles,
                        context=context,
                        reason="No roles assigned",
                    )
                return False

            if self.override_role in roles:
                if not skip_audit:
                    self._audit(
                        principal_id,
                        permission_key,
                        "granted",
                        roles=roles,
                        context=context,
                        reason="Executive role",
                    )
                return True

            granted = await self._granted(principal_id, roles, permission_key)
        except Exception as exc:
            self.logger.error(
                "permission_check_failed",
                principal_id=principal_id,
                permission_key=permission_key,
                error=str(exc),
            )
            if not skip_audit:
                self._audit(
                    principal_id,
                    permission_key,
                    "denied",
                    roles=roles,
                    context=context,
                    reason="Error during permission check",
                    error=str(exc),
                )
            return False

        if not skip_audit:
            self._audit(
                principal_id,
                permission_key,
                "granted" if granted else "denied",
                roles=roles,
                context=context,
            )
        self.logger.info(
            "permission_checked",
            principal_id=principal_id,
            permission_key=permission_key,
            granted=granted,
        )
        return granted

    async def require(
        self,
        principal_id: str,
        permission_key: str,
        *,
        context: Optional[AuditContext] = None,
    ) -> None:
        """Raise ``AuthorizationError`` unless ``principal_id`` holds ``permission_key``."""

        if await self.check(principal_id, permission_key, context=context):
            return
        try:
            roles = self._role_names(principal_id)
        except Exception:
            roles = []
        raise AuthorizationError(
            "Permission denied",
            error_code=INSUFFICIENT_ACCESS_LEVEL,
            detail={"requiredPermission": permission_key, "userRoles": roles},
        )

    async def require_or_self(
        self,
        principal_id: str,
        target_id: Optional[str],
        permission_key: str,
        *,
        context: Optional[AuditContext] = None,
    ) -> None:
        if self.is_self_action(principal_id, target_id):
            return
        await self.require(principal_id, permission_key, context=context)

    def list_permissions(self, principal_id: str) -> List[str]:
        try:
            roles = self._role_names(principal_id)
            if not roles:
                return []
            if self.override_role in roles:
                return self.store.list_permission_keys()
            return self.store.list_granted_permissions(roles)
        except Exception as exc:
            self.logger.error("permission_list_failed", principal_id=principal_id, error=str(exc))
            return []

    def has_role(self, principal_id: str, role_name: str) -> bool:
        try:
            return role_name in self._role_names(principal_id)
        except Exception as exc:
            self.logger.error("role_lookup_failed", principal_id=principal_id, error=str(exc))
            return False

    def check_last_record_protection(
        self, resource_type: str, scope_id: str, principal_id: str
    ) -> LastRecordDecision:
        try:
            kind = ResourceType(resource_type)
        except ValueError:
            return LastRecordDecision(
                allowed=False, message=f"Invalid resource type: {resource_type}"
            )
        try:
            count = self.store.count_scoped_records(kind, scope_id)
            if count > 1:
                return LastRecordDecision(allowed=True, count=count)
            if self.override_role in self._role_names(principal_id):
                return LastRecordDecision(allowed=True, count=count)
        except Exception as exc:
            self.logger.error(
                "last_record_check_failed",
                resource_type=kind.value,
                scope_id=scope_id,
                error=str(exc),
            )
            return LastRecordDecision(allowed=False, message="Error checking deletion eligibility")
        return LastRecordDecision(
            allowed=False,
            count=count,
            message=(
                f"Cannot delete the last {_RESOURCE_NAMES[kind]} for this business. "
                "Executive role required."
            ),
        )

    async def invalidate(self, principal_id: Optional[str] = None) -> int:
        prefix = f"perm:{principal_id}:" if principal_id else "perm:"
        removed = await self.counters.cache_clear(prefix)
        self.logger.info(
            "permission_cache_cleared", principal_id=principal_id, removed=removed
        )
        return removed

    @staticmethod
    def is_self_action(actor_id: Optional[str], target_id: Optional[str]) -> bool:
        return bool(actor_id) and actor_id == target_id

    @staticmethod
    def role_level(role_name: str) -> int:
        return ROLE_LEVELS.get(role_name, 0)
