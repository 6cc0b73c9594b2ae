from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from proagenda.logging import get_logger
from proagenda.service.errors import ForbiddenError, UnauthenticatedError
from proagenda.service.roles import Requirement, RoleRegistry
from proagenda.service.sessions import SessionManager

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestContext:
    """Authenticated caller, passed explicitly into every protected operation."""

    principal_id: str
    tenant_id: str
    session_id: str
    generation: int = 0


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credential = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    credential = credential.strip()
    return credential or None


class AuthorizationGuard:
    def __init__(self, sessions: SessionManager, registry: RoleRegistry) -> None:
        self.sessions = sessions
        self.registry = registry

    async def authenticate(self, authorization: Optional[str]) -> RequestContext:
        token = _extract_bearer(authorization)
        if not token:
            raise UnauthenticatedError("missing bearer token")
        claims = await self.sessions.verify_access(token)
        try:
            generation = int(claims.get("gen", 0))
        except (TypeError, ValueError):
            raise UnauthenticatedError("invalid or expired access token") from None
        return RequestContext(
            principal_id=str(claims["sub"]),
            tenant_id=str(claims["tenant_id"]),
            session_id=str(claims["sid"]),
            generation=generation,
        )

    def authorize(
        self, ctx: RequestContext, required: Requirement, tenant_id: Optional[str] = None
    ) -> RequestContext:
        """Return ``ctx`` unchanged if the caller meets ``required`` in the target tenant."""
        scope = tenant_id if tenant_id is not None else ctx.tenant_id
        if not self.registry.can(ctx.principal_id, required, scope):
            logger.warning(
                "authorization_denied",
                principal_id=ctx.principal_id,
                tenant_id=scope,
                required=required.value,
            )
            raise ForbiddenError("forbidden", detail={"required": required.value})
        return ctx
