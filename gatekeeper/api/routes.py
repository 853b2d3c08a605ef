from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from gatekeeper.api.error_handling import error_response
from gatekeeper.api.schemas import (
    EmailVerificationRequest,
    EndAllSessionsRequest,
    Envelope,
    LastRecordCheckRequest,
    LoginRequest,
    LoginResponse,
    MfaResendRequest,
    MfaVerifyRequest,
    PasswordChangeRequest,
    PasswordForgotRequest,
    PasswordPolicyUpdateRequest,
    PasswordResetConfirm,
    PasswordValidateRequest,
    PermissionCacheInvalidateRequest,
    SessionResponse,
    SignupRequest,
    VerificationResendRequest,
)
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import LAST_RECORD_PROTECTION, NotFoundError, ServiceError
from gatekeeper.service.login import ClientContext, LoginOutcome
from gatekeeper.service.permissions import ROLE_LEVELS, AuditContext
from gatekeeper.service.runtime import get_runtime
from gatekeeper.storage.models import Principal, PrincipalKind, Session

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

MAX_STATUS_IDS = 200


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


@dataclass
class Caller:
    session: Session
    principal: Principal
    client: ClientContext


def _client_context(request: Request, fingerprint: Optional[str] = None) -> ClientContext:
    return ClientContext(
        ip_address=request.client.host if request.client else "unknown",
        user_agent=request.headers.get("user-agent"),
        fingerprint=fingerprint,
    )


def _extract_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    header_token = request.headers.get("x-session-token")
    if header_token:
        return header_token.strip()
    return request.cookies.get(get_runtime().settings.session_cookie_name)


async def get_caller(
    request: Request, authorization: Optional[str] = Header(None)
) -> Caller:
    runtime = get_runtime()
    token = _extract_token(request, authorization)
    session, principal = await runtime.auth.authenticate_session(token)
    return Caller(session=session, principal=principal, client=_client_context(request))


async def get_employee(caller: Caller = Depends(get_caller)) -> Caller:
    if caller.principal.kind != PrincipalKind.EMPLOYEE:
        raise _http_error("forbidden", "employee access required", status_code=403)
    return caller


async def _require(caller: Caller, permission_key: str, **context) -> None:
    runtime = get_runtime()
    await runtime.permissions.require(
        caller.principal.id,
        permission_key,
        context=AuditContext(
            ip_address=caller.client.ip_address,
            user_agent=caller.client.user_agent,
            **context,
        ),
    )


def _session_payload(session: Session, *, include_token: bool = False) -> SessionResponse:
    return SessionResponse(
        session_id=session.id,
        principal_id=session.principal_id,
        kind=session.principal_kind.value,
        expires_at=session.expires_at,
        last_activity=session.last_activity,
        token=session.token if include_token else None,
    )


def _set_session_cookie(response: Response, session: Session) -> None:
    runtime = get_runtime()
    response.set_cookie(
        runtime.settings.session_cookie_name,
        session.token,
        max_age=runtime.sessions.ttl_minutes() * 60,
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="lax",
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    runtime = get_runtime()
    response.delete_cookie(
        runtime.settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="lax",
    )


def _login_envelope(outcome: LoginOutcome, response: Response) -> Envelope:
    if outcome.session is not None:
        _set_session_cookie(response, outcome.session)
    payload = LoginResponse(
        principal_id=outcome.principal.id,
        kind=outcome.principal.kind.value,
        requires_mfa=outcome.requires_mfa,
        trusted_device=outcome.trusted_device,
        password_expired=outcome.password_expired,
        session=(
            _session_payload(outcome.session, include_token=True) if outcome.session else None
        ),
    )
    return Envelope(status="ok", data=payload.to_wire())


# ---------------------------------------------------------------------------
# login, MFA and sessions
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Client login.

    Raises:
        401: Invalid email or password (identical for every cause)
        429: Too many failed attempts from this IP
    """
    runtime = get_runtime()
    outcome = await runtime.auth.login(
        body.email,
        body.password,
        _client_context(request, body.device_fingerprint),
        channels=body.mfa_channel,
    )
    return _login_envelope(outcome, response)


@router.post("/auth/employee/login", response_model=Envelope, tags=["auth"])
async def employee_login(body: LoginRequest, request: Request, response: Response):
    """Employee login behind the per-(IP, email) limiter and suspicious-pattern checks."""
    runtime = get_runtime()
    outcome = await runtime.auth.employee_login(
        body.email,
        body.password,
        _client_context(request, body.device_fingerprint),
        channels=body.mfa_channel,
    )
    return _login_envelope(outcome, response)


@router.post("/auth/mfa/verify", response_model=Envelope, tags=["auth"])
async def verify_mfa(body: MfaVerifyRequest, request: Request, response: Response):
    runtime = get_runtime()
    outcome = await runtime.auth.verify_mfa(
        body.email,
        body.code,
        _client_context(request, body.device_fingerprint),
        remember_device=body.remember_device,
        device_name=body.device_name,
    )
    return _login_envelope(outcome, response)


@router.post("/auth/mfa/resend", response_model=Envelope, tags=["auth"])
async def resend_mfa(body: MfaResendRequest):
    runtime = get_runtime()
    message = await runtime.auth.resend_mfa(
        body.email, PrincipalKind(body.kind), channels=body.mfa_channel
    )
    return Envelope(status="ok", data={"message": message})


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    """End the presented session; the cookie is cleared even when nothing was ended."""
    runtime = get_runtime()
    token = _extract_token(request, authorization)
    try:
        await runtime.auth.logout(token)
    except NotFoundError as exc:
        error = error_response(exc.status_code, exc.message, code=exc.error_code)
        _clear_session_cookie(error)
        return error
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def validate_session(caller: Caller = Depends(get_caller)):
    return Envelope(status="ok", data=_session_payload(caller.session).to_wire())


@router.post("/auth/session/heartbeat", response_model=Envelope, tags=["auth"])
async def heartbeat(request: Request, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    session = await runtime.auth.heartbeat(_extract_token(request, authorization))
    return Envelope(status="ok", data=_session_payload(session).to_wire())


@router.post("/auth/session/regenerate", response_model=Envelope, tags=["auth"])
async def regenerate_session(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    runtime = get_runtime()
    session = await runtime.auth.regenerate_session(
        _extract_token(request, authorization), _client_context(request)
    )
    _set_session_cookie(response, session)
    return Envelope(
        status="ok", data=_session_payload(session, include_token=True).to_wire()
    )


@router.get("/auth/trusted-devices", response_model=Envelope, tags=["auth"])
async def list_trusted_devices(caller: Caller = Depends(get_caller)):
    runtime = get_runtime()
    devices = runtime.mfa.list_devices(caller.principal.id)
    return Envelope(
        status="ok",
        data={
            "devices": [
                {
                    "id": d.id,
                    "deviceName": d.device_name,
                    "trustedAt": d.trusted_at.isoformat(),
                    "expiresAt": d.expires_at.isoformat() if d.expires_at else None,
                    "lastUsed": d.last_used.isoformat() if d.last_used else None,
                }
                for d in devices
            ]
        },
    )


@router.delete("/auth/trusted-devices/{device_id}", response_model=Envelope, tags=["auth"])
async def revoke_trusted_device(
    device_id: str = Path(..., max_length=128), caller: Caller = Depends(get_caller)
):
    runtime = get_runtime()
    if not runtime.mfa.revoke_device(caller.principal.id, device_id):
        raise NotFoundError("trusted device not found")
    return Envelope(status="ok", data={"revoked": True})


# ---------------------------------------------------------------------------
# passwords and signup
# ---------------------------------------------------------------------------


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest):
    runtime = get_runtime()
    message = await runtime.auth.forgot_password(body.email, PrincipalKind(body.kind))
    return Envelope(status="ok", data={"message": message})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request):
    runtime = get_runtime()
    await runtime.auth.reset_password(
        body.email,
        body.code,
        body.new_password,
        PrincipalKind(body.kind),
        ip_address=_client_context(request).ip_address,
    )
    return Envelope(status="ok", data={"message": "Password has been reset successfully"})


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(body: PasswordChangeRequest, caller: Caller = Depends(get_caller)):
    """Change the caller's password; every other session is ended."""
    runtime = get_runtime()
    ended = await runtime.auth.change_password(
        caller.principal,
        body.current_password,
        body.new_password,
        current_token=caller.session.token,
    )
    return Envelope(
        status="ok",
        data={"message": "Password changed successfully", "sessionsEnded": ended},
    )


@router.post("/auth/password/validate", response_model=Envelope, tags=["auth"])
async def validate_password(body: PasswordValidateRequest):
    runtime = get_runtime()
    hints = {"email": body.email, "first_name": body.first_name, "last_name": body.last_name}
    result = runtime.passwords.validate(body.password, hints, kind=PrincipalKind(body.kind))
    return Envelope(status="ok", data=result.to_dict())


@router.get("/auth/password/expiration", response_model=Envelope, tags=["auth"])
async def password_expiration(caller: Caller = Depends(get_caller)):
    runtime = get_runtime()
    info = runtime.auth.password_expiration(caller.principal.id)
    return Envelope(status="ok", data=info.to_dict())


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Client self-service signup.

    Raises:
        400: Password policy violation
        409: Email already registered
        429: IP_SIGNUP_LIMIT_EXCEEDED or GLOBAL_SIGNUP_LIMIT_EXCEEDED
    """
    runtime = get_runtime()
    principal = await runtime.auth.signup(
        body.email,
        body.password,
        _client_context(request),
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
        business_id=body.business_id,
    )
    return Envelope(
        status="ok",
        data={
            "principalId": principal.id,
            "email": principal.email,
            "emailVerified": principal.email_verified,
            "message": "Account created. Check your email for a verification code.",
        },
    )


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest, request: Request):
    runtime = get_runtime()
    principal = await runtime.auth.verify_email(
        body.email, body.code, ip_address=_client_context(request).ip_address
    )
    return Envelope(
        status="ok", data={"principalId": principal.id, "emailVerified": principal.email_verified}
    )


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: VerificationResendRequest):
    runtime = get_runtime()
    message = await runtime.auth.resend_verification(body.email)
    return Envelope(status="ok", data={"message": message})


# ---------------------------------------------------------------------------
# permissions
# ---------------------------------------------------------------------------


@router.get("/me/permissions", response_model=Envelope, tags=["permissions"])
async def my_permissions(caller: Caller = Depends(get_caller)):
    runtime = get_runtime()
    roles = list(caller.principal.roles)
    return Envelope(
        status="ok",
        data={
            "roles": roles,
            "roleLevels": {role: runtime.permissions.role_level(role) for role in roles},
            "permissions": runtime.permissions.list_permissions(caller.principal.id),
        },
    )


@router.post("/admin/permissions/cache/invalidate", response_model=Envelope, tags=["admin"])
async def invalidate_permission_cache(
    body: PermissionCacheInvalidateRequest, caller: Caller = Depends(get_employee)
):
    runtime = get_runtime()
    await _require(caller, "modify.role_permissions.enable")
    removed = await runtime.permissions.invalidate(body.principal_id)
    return Envelope(status="ok", data={"cleared": removed})


@router.post("/admin/last-record-check", response_model=Envelope, tags=["admin"])
async def last_record_check(body: LastRecordCheckRequest, caller: Caller = Depends(get_employee)):
    runtime = get_runtime()
    decision = runtime.permissions.check_last_record_protection(
        body.resource_type, body.scope_id, caller.principal.id
    )
    if not decision.allowed:
        raise ServiceError(
            decision.message or "deletion not allowed",
            status_code=409,
            error_code=LAST_RECORD_PROTECTION,
            detail=decision.to_dict(),
        )
    return Envelope(status="ok", data=decision.to_dict())


@router.get("/admin/roles/levels", response_model=Envelope, tags=["admin"])
async def role_levels(caller: Caller = Depends(get_employee)):
    return Envelope(status="ok", data={"levels": dict(ROLE_LEVELS)})


# ---------------------------------------------------------------------------
# session and security administration
# ---------------------------------------------------------------------------


@router.get("/admin/sessions/status", response_model=Envelope, tags=["admin"])
async def sessions_status(
    ids: str = Query(..., max_length=8192, description="Comma-separated principal ids"),
    caller: Caller = Depends(get_employee),
):
    runtime = get_runtime()
    await _require(caller, "view.login_history.enable")
    principal_ids = [pid.strip() for pid in ids.split(",") if pid.strip()][:MAX_STATUS_IDS]
    status = await runtime.sessions.active_sessions_for(principal_ids)
    return Envelope(status="ok", data={"status": status})


@router.get("/admin/sessions/stats", response_model=Envelope, tags=["admin"])
async def sessions_stats(caller: Caller = Depends(get_employee)):
    runtime = get_runtime()
    await _require(caller, "view.login_history.enable")
    return Envelope(status="ok", data=await runtime.sessions.stats())


@router.post("/admin/security/sessions/end-all", response_model=Envelope, tags=["admin"])
async def end_all_sessions(body: EndAllSessionsRequest, caller: Caller = Depends(get_employee)):
    runtime = get_runtime()
    await _require(
        caller,
        "manage.security_sessions.enable",
        resource_type="sessions",
        resource_id=body.principal_id,
    )
    count = await runtime.auth.end_all_sessions(caller.principal.id, body.principal_id)
    return Envelope(status="ok", data={"sessionsEnded": count})


@router.get("/admin/security/summary", response_model=Envelope, tags=["admin"])
async def security_summary(
    hours: int = Query(24, ge=1, le=24 * 30), caller: Caller = Depends(get_employee)
):
    runtime = get_runtime()
    await _require(caller, "view.failed_login_attempts.enable")
    return Envelope(status="ok", data=runtime.abuse.security_summary(hours))


@router.get("/admin/password-policy/{kind}", response_model=Envelope, tags=["admin"])
async def get_password_policy(
    kind: PrincipalKind = Path(...), caller: Caller = Depends(get_employee)
):
    runtime = get_runtime()
    await _require(caller, "view.password_complexity.enable")
    policy = runtime.passwords.get_policy(kind)
    return Envelope(status="ok", data=runtime.passwords.policy_to_dict(policy))


@router.put("/admin/password-policy/{kind}", response_model=Envelope, tags=["admin"])
async def update_password_policy(
    body: PasswordPolicyUpdateRequest,
    kind: PrincipalKind = Path(...),
    caller: Caller = Depends(get_employee),
):
    runtime = get_runtime()
    await _require(
        caller, "modify.password_complexity.enable", resource_type="password_policy"
    )
    policy = runtime.auth.update_password_policy(caller.principal.id, kind, body.changes())
    return Envelope(status="ok", data=runtime.passwords.policy_to_dict(policy))
