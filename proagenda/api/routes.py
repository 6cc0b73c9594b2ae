from __future__ import annotations

from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from proagenda.api.schemas import (
    AssignRoleRequest,
    AuthResponse,
    Envelope,
    MeResponse,
    PermissionsResponse,
    PrincipalResponse,
    RoleAssignmentResponse,
    RoleListResponse,
    SendMagicLinkRequest,
    SendMagicLinkResponse,
    TenantCreateRequest,
    TenantPatchRequest,
    TenantResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
    VerifyMagicLinkRequest,
)
from proagenda.logging import get_logger
from proagenda.service.errors import RateLimitedError
from proagenda.service.guard import RequestContext
from proagenda.service.magic_link import MAGIC_LINK_TTL_MINUTES
from proagenda.service.roles import Permission
from proagenda.service.runtime import check_rate_limit, get_runtime
from proagenda.storage.models import Principal, RoleAssignment, Tenant

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Apply a token-bucket limit and raise 429 once it is exhausted."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": info.reset_seconds}
        )
    return info


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_context(authorization: Optional[str] = Header(None)) -> RequestContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


def requires(permission: Permission) -> Callable:
    """Dependency factory: authenticate, then check ``permission`` in the session tenant."""

    async def _dependency(ctx: RequestContext = Depends(get_context)) -> RequestContext:
        runtime = get_runtime()
        return runtime.guard.authorize(ctx, permission)

    return _dependency


def _principal_response(principal: Principal) -> PrincipalResponse:
    return PrincipalResponse(
        id=principal.id,
        email=principal.email,
        name=principal.name,
        tenant_id=principal.tenant_id,
        email_verified=principal.email_verified,
    )


def _assignment_response(assignment: RoleAssignment) -> RoleAssignmentResponse:
    return RoleAssignmentResponse(
        id=assignment.id,
        role=assignment.role,
        tenant_id=assignment.tenant_id,
        created_at=assignment.created_at,
    )


def _tenant_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        slug=tenant.slug,
        name=tenant.name,
        is_active=tenant.is_active,
        created_at=tenant.created_at,
    )


@router.post("/customer/auth/send-magic-link", response_model=Envelope, tags=["auth"])
async def send_magic_link(
    body: SendMagicLinkRequest,
    response: Response,
    tenant: str = Query(..., min_length=1, max_length=64),
):
    """Issue a single-use sign-in link for ``body.email`` within ``tenant``.

    The reply is the same whether or not the address is known. ``dev_link``
    is present only when link echo is enabled outside production.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"magic_link:{tenant.lower()}:{body.email}",
        runtime.settings.send_link_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.send_magic_link(tenant, body.email)
    return Envelope(
        status="ok",
        data=SendMagicLinkResponse(
            accepted=result.accepted,
            delivered=result.delivered,
            expires_in_minutes=MAGIC_LINK_TTL_MINUTES,
            dev_link=result.dev_link,
        ),
    )


@router.post("/customer/auth/verify-magic-link", response_model=Envelope, tags=["auth"])
async def verify_magic_link(
    body: VerifyMagicLinkRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    ip_addr = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"verify_magic_link:{ip_addr or 'unknown'}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    login = await runtime.auth.verify_magic_link(
        body.tenant, body.token, user_agent=user_agent, ip_addr=ip_addr
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            principal=_principal_response(login.principal),
            session_id=login.session.id,
            tenant_id=login.session.tenant_id,
            access_token=login.credentials.access_token,
            refresh_token=login.credentials.refresh_token,
            token_type=login.credentials.token_type,
            access_expires_at=login.credentials.access_expires_at,
            refresh_expires_at=login.credentials.refresh_expires_at,
            roles=[_assignment_response(a) for a in login.assignments],
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    session, credentials = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenRefreshResponse(
            session_id=session.id,
            access_token=credentials.access_token,
            refresh_token=credentials.refresh_token,
            token_type=credentials.token_type,
            access_expires_at=credentials.access_expires_at,
            refresh_expires_at=credentials.refresh_expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    await runtime.auth.logout(ctx)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(ctx)
    return Envelope(status="ok", data={"revoked_sessions": revoked})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(ctx: RequestContext = Depends(get_context)):
    runtime = get_runtime()
    described = runtime.auth.describe(ctx)
    return Envelope(
        status="ok",
        data=MeResponse(
            principal=_principal_response(described["principal"]),
            tenant_id=described["tenant_id"],
            session_id=described["session_id"],
            roles=[_assignment_response(a) for a in described["assignments"]],
            permissions=[p.value for p in described["permissions"]],
        ),
    )


@router.get("/tenants/{tenant_id}/permissions", response_model=Envelope, tags=["auth"])
async def tenant_permissions(
    tenant_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(get_context),
):
    runtime = get_runtime()
    permissions = runtime.auth.permissions_in(ctx, tenant_id)
    return Envelope(
        status="ok",
        data=PermissionsResponse(tenant_id=tenant_id, permissions=[p.value for p in permissions]),
    )


@router.get("/admin/principals/{principal_id}/roles", response_model=Envelope, tags=["admin"])
async def list_principal_roles(
    principal_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(requires(Permission.USERS_MANAGE)),
):
    runtime = get_runtime()
    assignments = runtime.auth.list_roles(principal_id)
    return Envelope(
        status="ok",
        data=RoleListResponse(
            principal_id=principal_id,
            roles=[_assignment_response(a) for a in assignments],
        ),
    )


@router.post("/admin/principals/{principal_id}/roles", response_model=Envelope, tags=["admin"])
async def assign_principal_role(
    body: AssignRoleRequest,
    principal_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(requires(Permission.USERS_MANAGE)),
):
    runtime = get_runtime()
    assignment = runtime.auth.assign_role(ctx, principal_id, body.role, body.tenant_id)
    return Envelope(status="ok", data=_assignment_response(assignment))


@router.delete(
    "/admin/principals/{principal_id}/roles/{assignment_id}",
    response_model=Envelope,
    tags=["admin"],
)
async def revoke_principal_role(
    principal_id: str = Path(..., max_length=64),
    assignment_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(requires(Permission.USERS_MANAGE)),
):
    runtime = get_runtime()
    runtime.auth.revoke_role(ctx, principal_id, assignment_id)
    return Envelope(status="ok", data={"assignment_id": assignment_id, "revoked": True})


@router.post("/admin/tenants", response_model=Envelope, tags=["admin"])
async def create_tenant(
    body: TenantCreateRequest,
    ctx: RequestContext = Depends(requires(Permission.TENANTS_MANAGE)),
):
    runtime = get_runtime()
    tenant = runtime.auth.create_tenant(body.slug, body.name, is_active=body.is_active)
    logger.info("admin_tenant_created", tenant_id=tenant.id, created_by=ctx.principal_id)
    return Envelope(status="ok", data=_tenant_response(tenant))


@router.patch("/admin/tenants/{tenant_id}", response_model=Envelope, tags=["admin"])
async def update_tenant(
    body: TenantPatchRequest,
    tenant_id: str = Path(..., max_length=64),
    ctx: RequestContext = Depends(requires(Permission.TENANTS_MANAGE)),
):
    runtime = get_runtime()
    tenant = runtime.auth.set_tenant_active(tenant_id, body.is_active)
    return Envelope(status="ok", data=_tenant_response(tenant))
