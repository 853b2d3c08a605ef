from __future__ import annotations

import json
import threading
from dataclasses import fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from gatekeeper.logging import get_logger
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

_ENUM_TYPES = {
    "PrincipalKind": PrincipalKind,
    "CodeType": CodeType,
    "ResourceType": ResourceType,
}


def _serialize(obj: Any) -> dict:
    data: Dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, Enum):
            value = value.value
        data[f.name] = value
    return data


def _deserialize(cls, data: dict):
    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        value = data[f.name]
        type_name = str(f.type)
        if value is not None:
            if "datetime" in type_name:
                value = datetime.fromisoformat(value)
            elif type_name in _ENUM_TYPES:
                value = _ENUM_TYPES[type_name](value)
        kwargs[f.name] = value
    return cls(**kwargs)


class MemoryStore:
    """In-process store persisted to a JSON file under ``fs_root``.

    Used for tests and single-node development. Every public method runs
    under one re-entrant lock, which also makes the multi-step operations
    (capped session insert, session touch, code consumption) atomic.
    """

    def __init__(self, fs_root: str = "/tmp/gatekeeper") -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.passwords: Dict[str, str] = {}
        self.roles: Dict[str, Role] = {}
        self.permissions: Dict[str, Permission] = {}
        self.grants: Dict[tuple[str, str], RolePermissionGrant] = {}
        self.sessions: Dict[str, Session] = {}
        self.challenges: Dict[str, MfaChallenge] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        self.permission_audit: List[PermissionAuditEntry] = []
        self.password_policies: List[PasswordPolicy] = []
        self.password_history: Dict[str, List[PasswordHistoryEntry]] = {}
        self.security_log: List[SecurityLogEntry] = []
        self.system_settings: Dict[str, Any] = {}
        self.scoped_records: Dict[str, ScopedRecord] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def verify_connection(self) -> None:
        if not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

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
        normalized = email.strip().lower()
        with self._data_lock:
            if any(
                p.kind == kind and p.email == normalized for p in self.principals.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            role_list = list(roles or [])
            if kind == PrincipalKind.CLIENT and len(role_list) > 1:
                raise ConstraintViolation(
                    "clients hold a single role", {"field": "roles"}
                )
            principal = Principal(
                id=new_id(),
                kind=kind,
                email=normalized,
                email_verified=email_verified,
                status=status,
                roles=role_list,
                first_name=first_name,
                last_name=last_name,
                username=username,
                phone=phone,
                business_id=business_id,
                mfa_enabled=mfa_enabled,
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return replace(principal, roles=list(principal.roles))

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal, roles=list(principal.roles)) if principal else None

    def get_principal_by_email(
        self, kind: PrincipalKind, email: str
    ) -> Optional[Principal]:
        normalized = (email or "").strip().lower()
        kind = PrincipalKind(kind)
        with self._data_lock:
            for principal in self.principals.values():
                if principal.kind == kind and principal.email == normalized:
                    return replace(principal, roles=list(principal.roles))
            return None

    def list_principals(self, kind: Optional[PrincipalKind] = None) -> List[Principal]:
        with self._data_lock:
            return [
                replace(p, roles=list(p.roles))
                for p in self.principals.values()
                if kind is None or p.kind == PrincipalKind(kind)
            ]

    def update_principal(self, principal_id: str, **changes: Any) -> Optional[Principal]:
        invalid = set(changes) - PRINCIPAL_UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"fields not updatable: {', '.join(sorted(invalid))}")
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return None
            for field_name, value in changes.items():
                setattr(principal, field_name, value)
            self._persist_state()
            return replace(principal, roles=list(principal.roles))

    def save_password(self, principal_id: str, password_hash: str) -> None:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal does not exist", {"principal_id": principal_id}
                )
            self.passwords[principal_id] = password_hash
            self._persist_state()

    def get_password_hash(self, principal_id: str) -> Optional[str]:
        with self._data_lock:
            return self.passwords.get(principal_id)

    # roles and permissions
    def create_role(
        self, name: str, *, level: int = 0, description: Optional[str] = None
    ) -> Role:
        with self._data_lock:
            if name in self.roles:
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=new_id(), name=name, level=level, description=description)
            self.roles[name] = role
            self._persist_state()
            return role

    def create_permission(
        self,
        permission_key: str,
        *,
        description: Optional[str] = None,
        is_active: bool = True,
    ) -> Permission:
        with self._data_lock:
            if permission_key in self.permissions:
                raise ConstraintViolation(
                    "permission already exists", {"field": "permission_key"}
                )
            permission = Permission(
                id=new_id(),
                permission_key=permission_key,
                description=description,
                is_active=is_active,
            )
            self.permissions[permission_key] = permission
            self._persist_state()
            return permission

    def set_permission_active(self, permission_key: str, is_active: bool) -> None:
        with self._data_lock:
            permission = self.permissions.get(permission_key)
            if permission:
                permission.is_active = is_active
                self._persist_state()

    def grant_permission(
        self, role_name: str, permission_key: str, *, is_granted: bool = True
    ) -> RolePermissionGrant:
        with self._data_lock:
            role = self.roles.get(role_name)
            permission = self.permissions.get(permission_key)
            if not role or not permission:
                raise ConstraintViolation(
                    "role or permission missing",
                    {"role": role_name, "permission_key": permission_key},
                )
            grant = RolePermissionGrant(
                role_id=role.id, permission_id=permission.id, is_granted=is_granted
            )
            self.grants[(role.id, permission.id)] = grant
            self._persist_state()
            return grant

    def assign_role(self, principal_id: str, role_name: str) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                raise ConstraintViolation(
                    "principal does not exist", {"principal_id": principal_id}
                )
            if role_name not in self.roles:
                raise ConstraintViolation("role does not exist", {"role": role_name})
            if principal.kind == PrincipalKind.CLIENT:
                principal.roles = [role_name]
            elif role_name not in principal.roles:
                principal.roles.append(role_name)
            self._persist_state()

    def get_principal_roles(self, principal_id: str) -> List[Role]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal:
                return []
            return [
                self.roles[name]
                for name in principal.roles
                if name in self.roles and self.roles[name].is_active
            ]

    def _granted_keys(self, role_names: Iterable[str]) -> List[str]:
        role_ids = {self.roles[n].id for n in role_names if n in self.roles}
        by_id = {p.id: p for p in self.permissions.values()}
        keys = set()
        for (role_id, permission_id), grant in self.grants.items():
            permission = by_id.get(permission_id)
            if (
                role_id in role_ids
                and grant.is_granted
                and permission is not None
                and permission.is_active
            ):
                keys.add(permission.permission_key)
        return sorted(keys)

    def has_granted_permission(
        self, role_names: Sequence[str], permission_key: str
    ) -> bool:
        with self._data_lock:
            return permission_key in self._granted_keys(role_names)

    def list_granted_permissions(self, role_names: Sequence[str]) -> List[str]:
        with self._data_lock:
            return self._granted_keys(role_names)

    def list_permission_keys(self) -> List[str]:
        with self._data_lock:
            return sorted(k for k, p in self.permissions.items() if p.is_active)

    def append_permission_audit(self, entry: PermissionAuditEntry) -> None:
        with self._data_lock:
            self.permission_audit.append(entry)
            self._persist_state()

    def list_permission_audit(
        self, principal_id: Optional[str] = None, limit: int = 100
    ) -> List[PermissionAuditEntry]:
        with self._data_lock:
            entries = [
                e
                for e in self.permission_audit
                if principal_id is None or e.principal_id == principal_id
            ]
            return sorted(entries, key=lambda e: e.created_at, reverse=True)[:limit]

    # sessions
    def insert_session(self, session: Session, *, max_active: int) -> List[Session]:
        """Insert ``session`` after ending the oldest live sessions above the cap.

        Returns the sessions that were evicted.
        """
        with self._data_lock:
            now = utcnow()
            live = sorted(
                (
                    s
                    for s in self.sessions.values()
                    if s.principal_id == session.principal_id and s.is_live(now)
                ),
                key=lambda s: s.created_at,
            )
            evicted: List[Session] = []
            while len(live) >= max_active and live:
                oldest = live.pop(0)
                oldest.is_active = False
                oldest.ended_at = now
                evicted.append(replace(oldest))
            self.sessions[session.token] = session
            self._persist_state()
            return evicted

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(token)
            return replace(session) if session else None

    def touch_session(
        self, token: str, now: datetime, expires_at: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(token)
            if not session or not session.is_live(now):
                return None
            session.last_activity = now
            session.expires_at = expires_at
            self._persist_state()
            return replace(session)

    def end_session(self, token: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(token)
            if not session or not session.is_active:
                return None
            session.is_active = False
            session.ended_at = now
            self._persist_state()
            return replace(session)

    def end_principal_sessions(
        self, principal_id: str, now: datetime, *, except_token: Optional[str] = None
    ) -> int:
        with self._data_lock:
            ended = 0
            for session in self.sessions.values():
                if (
                    session.principal_id == principal_id
                    and session.is_active
                    and session.token != except_token
                ):
                    session.is_active = False
                    session.ended_at = now
                    ended += 1
            if ended:
                self._persist_state()
            return ended

    def expire_stale_sessions(self, now: datetime) -> int:
        with self._data_lock:
            swept = 0
            for session in self.sessions.values():
                if session.is_active and session.expires_at <= now:
                    session.is_active = False
                    session.ended_at = now
                    swept += 1
            if swept:
                self._persist_state()
            return swept

    def list_live_sessions(
        self, now: datetime, principal_ids: Optional[Sequence[str]] = None
    ) -> List[Session]:
        with self._data_lock:
            wanted = set(principal_ids) if principal_ids is not None else None
            return [
                replace(s)
                for s in self.sessions.values()
                if s.is_live(now) and (wanted is None or s.principal_id in wanted)
            ]

    def session_stats(self, now: datetime, recent_since: datetime) -> Dict[str, int]:
        with self._data_lock:
            sessions = list(self.sessions.values())
            live = [s for s in sessions if s.is_live(now)]
            return {
                "active_sessions": len(live),
                "recently_active": sum(1 for s in live if s.last_activity > recent_since),
                "expired_sessions": sum(
                    1 for s in sessions if s.is_active and s.expires_at <= now
                ),
                "ended_sessions": sum(1 for s in sessions if not s.is_active),
                "unique_active_users": len({s.principal_id for s in live}),
            }

    # mfa challenges
    def upsert_challenge(self, challenge: MfaChallenge) -> MfaChallenge:
        """Store ``challenge``, replacing any unused code of the same type for that email."""
        with self._data_lock:
            stale = [
                cid
                for cid, existing in self.challenges.items()
                if existing.email == challenge.email
                and existing.code_type == challenge.code_type
                and not existing.is_used
            ]
            for cid in stale:
                self.challenges.pop(cid, None)
            self.challenges[challenge.id] = challenge
            self._persist_state()
            return replace(challenge)

    def consume_challenge(
        self, email: str, code: str, now: datetime, *, code_type: Optional[CodeType] = None
    ) -> Optional[MfaChallenge]:
        with self._data_lock:
            for challenge in self.challenges.values():
                if (
                    challenge.email == email
                    and challenge.code == code
                    and (code_type is None or challenge.code_type == code_type)
                    and challenge.used_at is None
                    and challenge.expires_at > now
                ):
                    challenge.used_at = now
                    self._persist_state()
                    return replace(challenge)
            return None

    def find_challenge(
        self, email: str, code: str, *, code_type: Optional[CodeType] = None
    ) -> Optional[MfaChallenge]:
        with self._data_lock:
            matches = [
                c
                for c in self.challenges.values()
                if c.email == email
                and c.code == code
                and (code_type is None or c.code_type == code_type)
            ]
            if not matches:
                return None
            return replace(max(matches, key=lambda c: c.created_at))

    # trusted devices
    def upsert_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._data_lock:
            for existing in self.trusted_devices.values():
                if (
                    existing.principal_id == device.principal_id
                    and existing.principal_kind == device.principal_kind
                    and existing.fingerprint == device.fingerprint
                ):
                    existing.trusted_at = device.trusted_at
                    existing.expires_at = device.expires_at
                    existing.device_name = device.device_name or existing.device_name
                    existing.revoked_at = None
                    self._persist_state()
                    return replace(existing)
            self.trusted_devices[device.id] = device
            self._persist_state()
            return replace(device)

    def find_trusted_device(
        self,
        principal_id: str,
        principal_kind: PrincipalKind,
        fingerprint: str,
        now: datetime,
    ) -> Optional[TrustedDevice]:
        with self._data_lock:
            for device in self.trusted_devices.values():
                if (
                    device.principal_id == principal_id
                    and device.principal_kind == PrincipalKind(principal_kind)
                    and device.fingerprint == fingerprint
                    and device.revoked_at is None
                    and (device.expires_at is None or device.expires_at > now)
                ):
                    device.last_used = now
                    self._persist_state()
                    return replace(device)
            return None

    def list_trusted_devices(self, principal_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            return [
                replace(d)
                for d in self.trusted_devices.values()
                if d.principal_id == principal_id and d.revoked_at is None
            ]

    def revoke_trusted_device(
        self, principal_id: str, device_id: str, now: datetime
    ) -> bool:
        with self._data_lock:
            device = self.trusted_devices.get(device_id)
            if not device or device.principal_id != principal_id or device.revoked_at:
                return False
            device.revoked_at = now
            self._persist_state()
            return True

    # password policy and history
    def get_active_password_policy(
        self, kind: PrincipalKind
    ) -> Optional[PasswordPolicy]:
        with self._data_lock:
            for policy in reversed(self.password_policies):
                if policy.principal_kind == PrincipalKind(kind) and policy.is_active:
                    return replace(policy)
            return None

    def set_active_password_policy(self, policy: PasswordPolicy) -> PasswordPolicy:
        with self._data_lock:
            for existing in self.password_policies:
                if existing.principal_kind == policy.principal_kind:
                    existing.is_active = False
            stored = replace(policy, id=new_id(), is_active=True, created_at=utcnow())
            self.password_policies.append(stored)
            self._persist_state()
            return replace(stored)

    def add_password_history(
        self, principal_id: str, password_hash: str, *, keep: int
    ) -> None:
        with self._data_lock:
            history = self.password_history.setdefault(principal_id, [])
            # Newest first
            history.insert(
                0, PasswordHistoryEntry(principal_id=principal_id, password_hash=password_hash)
            )
            del history[max(keep, 0):]
            self._persist_state()

    def list_password_history(
        self, principal_id: str, limit: int
    ) -> List[PasswordHistoryEntry]:
        with self._data_lock:
            return list(self.password_history.get(principal_id, [])[:limit])

    # security log
    def append_security_event(self, entry: SecurityLogEntry) -> None:
        with self._data_lock:
            self.security_log.append(entry)
            self._persist_state()

    def count_security_events(
        self,
        event_type: str,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for e in self.security_log
                if e.event_type == event_type
                and e.created_at >= since
                and (ip_address is None or e.ip_address == ip_address)
            )

    def security_event_summary(self, since: datetime) -> Dict[str, int]:
        with self._data_lock:
            summary: Dict[str, int] = {}
            for entry in self.security_log:
                if entry.created_at >= since:
                    summary[entry.event_type] = summary.get(entry.event_type, 0) + 1
            return summary

    # system settings
    def get_system_settings(self) -> Dict[str, Any]:
        with self._data_lock:
            return dict(self.system_settings)

    def set_system_setting(self, key: str, value: Any) -> None:
        with self._data_lock:
            self.system_settings[key] = value
            self._persist_state()

    # scoped records
    def add_scoped_record(self, record: ScopedRecord) -> ScopedRecord:
        with self._data_lock:
            self.scoped_records[record.id] = record
            self._persist_state()
            return replace(record)

    def count_scoped_records(self, resource_type: ResourceType, scope_id: str) -> int:
        resource_type = ResourceType(resource_type)
        with self._data_lock:
            return sum(
                1
                for r in self.scoped_records.values()
                if r.resource_type == resource_type
                and r.scope_id == scope_id
                and r.is_active
                and r.deleted_at is None
                and not (
                    resource_type == ResourceType.SERVICE_LOCATIONS and r.is_headquarters
                )
            )

    # persistence
    def _persist_state(self) -> None:
        state = {
            "principals": [_serialize(p) for p in self.principals.values()],
            "passwords": self.passwords,
            "roles": [_serialize(r) for r in self.roles.values()],
            "permissions": [_serialize(p) for p in self.permissions.values()],
            "grants": [_serialize(g) for g in self.grants.values()],
            "sessions": [_serialize(s) for s in self.sessions.values()],
            "challenges": [_serialize(c) for c in self.challenges.values()],
            "trusted_devices": [_serialize(d) for d in self.trusted_devices.values()],
            "permission_audit": [_serialize(e) for e in self.permission_audit],
            "password_policies": [_serialize(p) for p in self.password_policies],
            "password_history": [
                _serialize(e) for entries in self.password_history.values() for e in entries
            ],
            "security_log": [_serialize(e) for e in self.security_log],
            "system_settings": self.system_settings,
            "scoped_records": [_serialize(r) for r in self.scoped_records.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2, default=str))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: _deserialize(Principal, p) for p in data.get("principals", [])
        }
        self.passwords = dict(data.get("passwords", {}))
        self.roles = {r["name"]: _deserialize(Role, r) for r in data.get("roles", [])}
        self.permissions = {
            p["permission_key"]: _deserialize(Permission, p)
            for p in data.get("permissions", [])
        }
        self.grants = {
            (g["role_id"], g["permission_id"]): _deserialize(RolePermissionGrant, g)
            for g in data.get("grants", [])
        }
        self.sessions = {
            s["token"]: _deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.challenges = {
            c["id"]: _deserialize(MfaChallenge, c) for c in data.get("challenges", [])
        }
        self.trusted_devices = {
            d["id"]: _deserialize(TrustedDevice, d)
            for d in data.get("trusted_devices", [])
        }
        self.permission_audit = [
            _deserialize(PermissionAuditEntry, e) for e in data.get("permission_audit", [])
        ]
        self.password_policies = [
            _deserialize(PasswordPolicy, p) for p in data.get("password_policies", [])
        ]
        self.password_history = {}
        for raw in data.get("password_history", []):
            entry = _deserialize(PasswordHistoryEntry, raw)
            self.password_history.setdefault(entry.principal_id, []).append(entry)
        self.security_log = [
            _deserialize(SecurityLogEntry, e) for e in data.get("security_log", [])
        ]
        self.system_settings = dict(data.get("system_settings", {}))
        self.scoped_records = {
            r["id"]: _deserialize(ScopedRecord, r) for r in data.get("scoped_records", [])
        }
        return True
