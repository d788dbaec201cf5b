from __future__ import annotations

import json
import math
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from adminguard.api.schemas import (
    AdminCreateUserRequest,
    AdminUpdateUserRequest,
    CleanupResponse,
    Envelope,
    LoginRequest,
    LoginResponse,
    MeResponse,
    Pagination,
    PrincipalResponse,
    RefreshRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    RevokeAllResponse,
    RoleListResponse,
    RoleResponse,
    SessionListResponse,
    SessionResponse,
    UserListResponse,
)
from adminguard.logging import get_logger
from adminguard.service import permissions
from adminguard.service.auth import AuthContext
from adminguard.service.errors import CsrfMismatch, ForbiddenError, NotFoundError
from adminguard.service.rate_limit import client_origin
from adminguard.service.runtime import get_runtime
from adminguard.storage.models import AdminPrincipal, Session

logger = get_logger(__name__)

router = APIRouter()

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})
CSRF_BODY_FIELDS = ("csrf_token", "csrfToken")


def _ok(model) -> Envelope:
    return Envelope(status="ok", data=model.model_dump(by_alias=True, mode="json"))


def _origin(request: Request) -> str:
    runtime = get_runtime()
    peer = request.client.host if request.client else None
    return client_origin(
        request.headers, peer, trust_proxy_headers=runtime.settings.trust_proxy_headers
    )


def _principal_to_response(principal: AdminPrincipal) -> PrincipalResponse:
    return PrincipalResponse(
        id=principal.id,
        identity_name=principal.identity_name,
        email=principal.email,
        role=principal.role,
        created_at=principal.created_at,
        updated_at=principal.updated_at,
    )


def _session_to_response(session: Session, *, current_id: Optional[str] = None) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        owner_id=session.owner_id,
        origin_address=session.origin_address,
        user_agent=session.user_agent,
        created_at=session.created_at,
        last_activity_at=session.last_activity_at,
        expires_at=session.expires_at,
        current=session.id == current_id,
    )


async def _body_csrf_token(request: Request) -> Optional[str]:
    body = await request.body()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(payload, dict):
        return None
    for field in CSRF_BODY_FIELDS:
        value = payload.get(field)
        if isinstance(value, str) and value:
            return value
    return None


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    """Gatekeeper dependency: resolve the bearer token, then check CSRF on mutating verbs."""
    runtime = get_runtime()
    ctx = runtime.gatekeeper.authenticate(authorization)
    request.state.principal = ctx

    if runtime.settings.csrf_enabled and request.method in MUTATING_METHODS:
        presented = request.headers.get(runtime.settings.csrf_header_name)
        if not presented:
            presented = await _body_csrf_token(request)
        if not await runtime.csrf.validate(ctx.principal_id, presented):
            logger.warning(
                "csrf_rejected",
                principal_id=ctx.principal_id,
                path=request.url.path,
                method=request.method,
                token_present=bool(presented),
                origin=_origin(request),
            )
            raise CsrfMismatch()
    return ctx


def require_permission(permission: str):
    async def _dependency(principal: AuthContext = Depends(get_principal)) -> AuthContext:
        if not principal.can(permission):
            logger.warning(
                "permission_denied",
                principal_id=principal.principal_id,
                role=principal.role,
                required=permission,
            )
            raise ForbiddenError("Insufficient permissions", detail={"required": permission})
        return principal

    return _dependency


# -- auth ---------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with an email or identity name and a secret.

    Returns a token pair and the principal's CSRF token, which is also sent
    in the ``X-CSRF-Token`` header.

    Raises:
        401: If credentials are invalid
        423: If the identity or origin is locked out
        429: If the auth rate limit is exceeded
    """
    runtime = get_runtime()
    issued = runtime.auth.login(
        body.identity,
        body.secret,
        origin=_origin(request),
        user_agent=request.headers.get("user-agent"),
    )
    csrf_token = await runtime.csrf.issue_or_reuse(issued.principal.id)
    response.headers[runtime.settings.csrf_header_name] = csrf_token
    return _ok(
        LoginResponse(
            principal=_principal_to_response(issued.principal),
            access_token=issued.tokens.access_token,
            refresh_token=issued.tokens.refresh_token,
            csrf_token=csrf_token,
            access_expires_at=issued.tokens.access_expires_at,
        )
    )


@router.post("/auth/register", response_model=Envelope, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
):
    """Create a principal.

    Anonymous registration is only possible while no principal exists. After
    that the caller must present a bearer token of a privileged role.

    Raises:
        400: Weak secret, invalid role, or duplicate identity/email
        401: A bearer token was presented but is not valid
        403: Registration is closed for this caller
    """
    runtime = get_runtime()
    actor = None
    if authorization and runtime.store.count_principals() > 0:
        actor = runtime.gatekeeper.authenticate(authorization)
    issued = runtime.auth.register(
        body.identity,
        body.email,
        body.secret,
        body.role,
        actor=actor,
        origin=_origin(request),
        user_agent=request.headers.get("user-agent"),
    )
    return _ok(
        RegisterResponse(
            principal=_principal_to_response(issued.principal),
            access_token=issued.tokens.access_token,
            refresh_token=issued.tokens.refresh_token,
            access_expires_at=issued.tokens.access_expires_at,
        )
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, response: Response):
    """Rotate a refresh token; the previous pair stops working immediately.

    Raises:
        401: Any validation failure or a replayed refresh token (action ``login``)
    """
    runtime = get_runtime()
    result = runtime.rotation.refresh(body.refresh_token, body.principal_id)
    csrf_token = await runtime.csrf.issue_or_reuse(result.principal.id)
    response.headers[runtime.settings.csrf_header_name] = csrf_token
    return _ok(
        RefreshResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            csrf_token=csrf_token,
            access_expires_at=result.tokens.access_expires_at,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    runtime.auth.logout(principal)
    return Envelope(status="ok", data={"loggedOut": True})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    record = runtime.auth.get_principal(principal.principal_id)
    return _ok(
        MeResponse(
            principal=_principal_to_response(record),
            permissions=permissions.permissions_for(record.role),
        )
    )


# -- sessions -----------------------------------------------------------------


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_principal)):
    """List the caller's live sessions; the one making this request is marked ``current``."""
    runtime = get_runtime()
    sessions = runtime.sessions.list_live(principal.principal_id)
    return _ok(
        SessionListResponse(
            sessions=[
                _session_to_response(s, current_id=principal.session_id) for s in sessions
            ],
            total=len(sessions),
        )
    )


@router.post("/sessions/revoke-all", response_model=Envelope, tags=["sessions"])
async def revoke_all_sessions(principal: AuthContext = Depends(get_principal)):
    """Revoke every session of the caller except the current one."""
    runtime = get_runtime()
    revoked = runtime.sessions.revoke_all(
        principal.principal_id, except_session_id=principal.session_id
    )
    return _ok(RevokeAllResponse(revoked=revoked))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(session_id: str, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    session = runtime.sessions.get(session_id)
    # Other principals' sessions are reported as missing
    if session is None or session.owner_id != principal.principal_id:
        raise NotFoundError("Session not found", detail={"id": session_id})
    runtime.sessions.revoke(session_id)
    return Envelope(status="ok", data={"revoked": True, "id": session_id})


@router.get("/admin/sessions", response_model=Envelope, tags=["admin"])
async def admin_list_sessions(
    principal: AuthContext = Depends(require_permission(permissions.MANAGE_USERS)),
):
    runtime = get_runtime()
    sessions = runtime.sessions.list_live()
    return _ok(
        SessionListResponse(
            sessions=[
                _session_to_response(s, current_id=principal.session_id) for s in sessions
            ],
            total=len(sessions),
        )
    )


@router.post("/admin/sessions/cleanup", response_model=Envelope, tags=["admin"])
async def admin_cleanup_sessions(
    principal: AuthContext = Depends(require_permission(permissions.MANAGE_USERS)),
):
    runtime = get_runtime()
    removed = runtime.sessions.cleanup_expired()
    logger.info("admin_session_cleanup", actor_id=principal.principal_id, removed=removed)
    return _ok(CleanupResponse(removed=removed))


# -- principal administration ---------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(require_permission(permissions.MANAGE_USERS)),
):
    """List principals, newest first.

    Returns:
        ``users``, ``total`` and ``pagination{page, limit, totalPages}``.
    """
    runtime = get_runtime()
    users, total = runtime.auth.list_principals(page=page, limit=limit)
    return _ok(
        UserListResponse(
            users=[_principal_to_response(u) for u in users],
            total=total,
            pagination=Pagination(
                page=page, limit=limit, total_pages=math.ceil(total / limit)
            ),
        )
    )


@router.post("/admin/users", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_user(
    body: AdminCreateUserRequest,
    principal: AuthContext = Depends(require_permission(permissions.MANAGE_USERS)),
):
    runtime = get_runtime()
    created = runtime.auth.create_principal(
        principal, body.identity, body.email, body.secret, body.role
    )
    return _ok(_principal_to_response(created))


@router.get("/admin/users/{principal_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    principal_id: str,
    principal: AuthContext = Depends(require_permission(permissions.MANAGE_USERS)),
):
    runtime = get_runtime()
    return _ok(_principal_to_response(runtime.auth.get_principal(principal_id)))


@router.put("/admin/users/{principal_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    principal_id: str,
    body: AdminUpdateUserRequest,
    principal: AuthContext = Depends(require_permission(permissions.MANAGE_USERS)),
):
    """Update identity, email, role or secret.

    A changed role or secret revokes the target's sessions.
    """
    runtime = get_runtime()
    updated = runtime.auth.update_principal(
        principal,
        principal_id,
        identity=body.identity,
        email=body.email,
        secret=body.secret,
        role=body.role,
    )
    return _ok(_principal_to_response(updated))


@router.delete("/admin/users/{principal_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    principal_id: str,
    principal: AuthContext = Depends(require_permission(permissions.MANAGE_USERS)),
):
    runtime = get_runtime()
    runtime.auth.delete_principal(principal, principal_id)
    return Envelope(status="ok", data={"deleted": True, "id": principal_id})


@router.get("/roles", response_model=Envelope, tags=["admin"])
async def list_roles(principal: AuthContext = Depends(get_principal)):
    return _ok(
        RoleListResponse(
            roles=[
                RoleResponse(
                    name=role,
                    label=permissions.ROLE_LABELS[role],
                    permissions=permissions.permissions_for(role),
                )
                for role in permissions.ROLE_PERMISSIONS
            ]
        )
    )
