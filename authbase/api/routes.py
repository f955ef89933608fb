from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from authbase.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutAllRequest,
    LogoutAllResponse,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    PrincipalResponse,
    RefreshRequest,
    SecurityEventResponse,
)
from authbase.service.errors import AuthenticationError, ForbiddenError
from authbase.service.runtime import get_runtime
from authbase.service.sessions import AuthResult
from authbase.service.tokens import Claims

router = APIRouter(prefix="/v1")

LOGOUT_ALL_PERMISSION = "user:logout-all"
AUDIT_READ_PERMISSION = "security:audit:read"


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_access_token(authorization: Optional[str] = Header(None)) -> str:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    return token


async def get_claims(token: str = Depends(get_access_token)) -> Claims:
    return await get_runtime().sessions.authorize(token)


def require_permission(permission_name: str):
    """Dependency factory re-checking a permission against current role grants."""

    async def _check(claims: Claims = Depends(get_claims)) -> Claims:
        if not get_runtime().sessions.has_permission(claims.principal_id, permission_name):
            raise ForbiddenError(
                "insufficient permissions", detail={"required": permission_name}
            )
        return claims

    return _check


def _client_ip(request: Request) -> Optional[str]:
    if get_runtime().settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _auth_envelope(result: AuthResult) -> Envelope:
    view = result.principal
    return Envelope(
        status="ok",
        data=AuthResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
            principal=PrincipalResponse(
                id=view.id,
                email=view.email,
                roles=view.roles,
                enabled=view.enabled,
                email_verified=view.email_verified,
                last_login_at=view.last_login_at,
            ),
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Raises:
        401: Credentials rejected (unknown email, wrong password, disabled)
        423: Account locked after repeated failures
    """
    runtime = get_runtime()
    result = await runtime.sessions.authenticate(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest):
    runtime = get_runtime()
    result = await runtime.sessions.refresh(body.refresh_token)
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    logged_out = await runtime.sessions.logout(
        body.refresh_token, _bearer_token(authorization)
    )
    return Envelope(status="ok", data=LogoutResponse(logged_out=logged_out))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(body: LogoutAllRequest, claims: Claims = Depends(get_claims)):
    """Delete every refresh token of a principal.

    Callers may always target themselves; targeting someone else requires
    the ``user:logout-all`` permission.
    """
    runtime = get_runtime()
    target = body.principal_id or claims.principal_id
    if target != claims.principal_id and not runtime.sessions.has_permission(
        claims.principal_id, LOGOUT_ALL_PERMISSION
    ):
        raise ForbiddenError(
            "insufficient permissions", detail={"required": LOGOUT_ALL_PERMISSION}
        )
    removed = await runtime.sessions.force_logout_all(target)
    return Envelope(
        status="ok",
        data=LogoutAllResponse(principal_id=target, sessions_removed=removed),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(claims: Claims = Depends(get_claims)):
    runtime = get_runtime()
    permissions = runtime.sessions.resolve_permissions(claims.principal_id)
    return Envelope(
        status="ok",
        data=MeResponse(
            principal_id=claims.principal_id,
            email=claims.email,
            roles=list(claims.roles),
            permissions=sorted(permissions),
            expires_at=claims.expires_at_datetime,
            active_sessions=runtime.sessions.active_session_count(claims.principal_id),
        ),
    )


@router.get(
    "/admin/principals/{principal_id}/security-events",
    response_model=Envelope,
    tags=["admin"],
)
async def principal_security_events(
    principal_id: str,
    limit: int = Query(50, ge=1, le=500),
    _: Claims = Depends(require_permission(AUDIT_READ_PERMISSION)),
):
    runtime = get_runtime()
    events = runtime.audit.events_for_principal(principal_id, limit=limit)
    return Envelope(
        status="ok",
        data=[
            SecurityEventResponse(
                id=event.id,
                event_type=event.event_type.value,
                description=event.description,
                success=event.success,
                ip_address=event.ip_address,
                user_agent=event.user_agent,
                created_at=event.created_at,
            )
            for event in events
        ],
    )
