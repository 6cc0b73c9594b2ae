"""Auth facade: magic-link login, session lifecycle and role administration.

Routes and scripts talk to ``AuthService``; it composes the issuer, verifier,
session manager and role registry and owns the cross-cutting rules between
them (principal provisioning, the default CUSTOMER role, the escalation guard).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from proagenda.logging import get_logger, redact_email
from proagenda.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
)
from proagenda.service.guard import AuthorizationGuard, RequestContext
from proagenda.service.magic_link import IssueResult, MagicLinkIssuer, MagicLinkVerifier
from proagenda.service.roles import ROLE_SCOPES, Role, RoleRegistry, RoleScope, parse_role
from proagenda.service.sessions import CredentialPair, SessionManager
from proagenda.service.validation import validate_slug
from proagenda.storage.common import AuthStore
from proagenda.storage.errors import ConstraintViolation
from proagenda.storage.models import Principal, RoleAssignment, Session, Tenant

logger = get_logger(__name__)


@dataclass
class LoginResult:
    principal: Principal
    session: Session
    credentials: CredentialPair
    assignments: List[RoleAssignment] = field(default_factory=list)


class AuthService:
    def __init__(
        self,
        store: AuthStore,
        issuer: MagicLinkIssuer,
        verifier: MagicLinkVerifier,
        sessions: SessionManager,
        registry: RoleRegistry,
        guard: AuthorizationGuard,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.verifier = verifier
        self.sessions = sessions
        self.registry = registry
        self.guard = guard

    # magic links
    async def send_magic_link(self, tenant_slug: str, email: str) -> IssueResult:
        return await self.issuer.issue(tenant_slug, email)

    async def verify_magic_link(
        self,
        tenant_slug: str,
        raw: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> LoginResult:
        identity = self.verifier.verify(tenant_slug, raw)
        tenant = identity.tenant
        principal = self._find_or_create_principal(identity.email, tenant)
        if not principal.is_active:
            logger.warning("login_rejected_inactive_principal", principal_id=principal.id)
            raise UnauthenticatedError("account disabled")
        if not principal.email_verified:
            self.store.mark_email_verified(principal.id)
            principal.email_verified = True
        self.registry.assign(principal.id, Role.CUSTOMER, tenant.id)
        session, credentials = self.sessions.create_session(
            tenant.id, principal.id, user_agent=user_agent, ip_addr=ip_addr
        )
        logger.info(
            "magic_link_login",
            principal_id=principal.id,
            tenant_id=tenant.id,
            session_id=session.id,
        )
        return LoginResult(
            principal=principal,
            session=session,
            credentials=credentials,
            assignments=self.registry.list_assignments(principal.id),
        )

    def _find_or_create_principal(self, email: str, tenant: Tenant) -> Principal:
        principal = self.store.get_principal_by_email(email)
        if principal:
            return principal
        try:
            principal = self.store.create_principal(
                email, name=email.split("@", 1)[0], tenant_id=tenant.id
            )
        except ConstraintViolation:
            # A concurrent first login for the same address created it first
            principal = self.store.get_principal_by_email(email)
            if not principal:
                raise
            return principal
        logger.info(
            "principal_created",
            principal_id=principal.id,
            tenant_id=tenant.id,
            recipient=redact_email(email),
        )
        return principal

    # sessions
    async def refresh(self, refresh_token: str) -> tuple[Session, CredentialPair]:
        return await self.sessions.refresh(refresh_token)

    async def authenticate(self, authorization: Optional[str]) -> RequestContext:
        return await self.guard.authenticate(authorization)

    async def logout(self, ctx: RequestContext) -> bool:
        return await self.sessions.revoke(ctx.session_id)

    async def logout_all(self, ctx: RequestContext) -> int:
        return await self.sessions.revoke_principal_sessions(ctx.principal_id)

    def describe(self, ctx: RequestContext) -> dict[str, Any]:
        principal = self.store.get_principal(ctx.principal_id)
        if not principal:
            raise UnauthenticatedError("principal no longer exists")
        return {
            "principal": principal,
            "tenant_id": ctx.tenant_id,
            "session_id": ctx.session_id,
            "assignments": self.registry.list_assignments(principal.id),
            "permissions": self.registry.effective_permissions(principal.id, ctx.tenant_id),
        }

    def permissions_in(self, ctx: RequestContext, tenant_id: str) -> list:
        return self.registry.effective_permissions(ctx.principal_id, tenant_id)

    # role administration
    def _require_held(self, ctx: RequestContext, role: Role, tenant_id: Optional[str]) -> None:
        if not self.registry.can(ctx.principal_id, role, tenant_id):
            logger.warning(
                "role_escalation_denied",
                principal_id=ctx.principal_id,
                role=role.value,
                tenant_id=tenant_id,
            )
            raise ForbiddenError(
                "cannot manage a role you do not hold", detail={"role": role.value}
            )

    def list_roles(self, principal_id: str) -> List[RoleAssignment]:
        if not self.store.get_principal(principal_id):
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        return self.registry.list_assignments(principal_id)

    def assign_role(
        self,
        ctx: RequestContext,
        principal_id: str,
        role: Union[str, Role],
        tenant_id: Optional[str] = None,
    ) -> RoleAssignment:
        parsed = parse_role(role)
        scope = tenant_id if ROLE_SCOPES[parsed] == RoleScope.TENANT else None
        self._require_held(ctx, parsed, scope)
        assignment = self.registry.assign(principal_id, parsed, tenant_id)
        logger.info(
            "role_granted_by",
            granted_by=ctx.principal_id,
            principal_id=principal_id,
            assignment_id=assignment.id,
        )
        return assignment

    def revoke_role(self, ctx: RequestContext, principal_id: str, assignment_id: str) -> bool:
        assignment = self.registry.get_assignment(assignment_id)
        if not assignment or assignment.principal_id != principal_id:
            raise NotFoundError("role assignment not found", detail={"assignment_id": assignment_id})
        self._require_held(ctx, parse_role(assignment.role), assignment.tenant_id)
        return self.registry.revoke(assignment_id)

    # tenants
    def create_tenant(self, slug: str, name: str, *, is_active: bool = True) -> Tenant:
        try:
            normalized = validate_slug(slug)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "slug"}) from exc
        if not name or not name.strip():
            raise ValidationError("tenant name is required", detail={"field": "name"})
        try:
            tenant = self.store.create_tenant(normalized, name.strip(), is_active=is_active)
        except ConstraintViolation as exc:
            raise ConflictError("tenant slug already exists", detail={"slug": normalized}) from exc
        logger.info("tenant_created", tenant_id=tenant.id, slug=tenant.slug)
        return tenant

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Tenant:
        tenant = self.store.set_tenant_active(tenant_id, is_active)
        if not tenant:
            raise NotFoundError("tenant not found", detail={"tenant_id": tenant_id})
        logger.info("tenant_status_changed", tenant_id=tenant.id, is_active=is_active)
        return tenant
