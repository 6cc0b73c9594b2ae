"""Closed role model and the registry that answers authorization queries.

Roles are either *global* (apply in every tenant, never carry a tenant id) or
*tenant-scoped* (must carry the tenant they apply to). Authority flows through
two explicit tables:

- ``ROLE_IMPLIES``: a role directly implies weaker roles, so OWNER holds
  everything ADMIN holds, ADMIN everything MANAGER holds, and so on.
- ``ROLE_GRANTS``: the permissions a role grants directly.

Effective permissions are the union of grants over the transitive closure of
implied roles. Both tables are checked for exhaustiveness at import time.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Union

from proagenda.logging import get_logger
from proagenda.service.errors import NotFoundError, ValidationError
from proagenda.storage.common import AuthStore
from proagenda.storage.errors import ConstraintViolation
from proagenda.storage.models import RoleAssignment

logger = get_logger(__name__)


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MANAGER = "manager"
    OPERATOR = "operator"
    ANALYST = "analyst"
    PROFESSIONAL = "professional"
    CUSTOMER = "customer"


class RoleScope(str, Enum):
    GLOBAL = "global"
    TENANT = "tenant"


class Permission(str, Enum):
    ACCOUNT_UPDATE = "account:update"
    ACCOUNT_VIEW = "account:view"
    TENANTS_DELETE = "tenants:delete"
    TENANTS_MANAGE = "tenants:manage"
    USERS_MANAGE = "users:manage"
    TENANT_SETTINGS = "tenant:settings"
    TENANT_VIEW = "tenant:view"
    CATALOG_MANAGE = "catalog:manage"
    CATALOG_VIEW = "catalog:view"
    METRICS_VIEW = "metrics:view"
    SCHEDULE_SELF = "schedule:self"
    APPOINTMENTS_BOOK = "appointments:book"


ROLE_SCOPES: Dict[Role, RoleScope] = {
    Role.OWNER: RoleScope.GLOBAL,
    Role.ADMIN: RoleScope.GLOBAL,
    Role.MANAGER: RoleScope.TENANT,
    Role.OPERATOR: RoleScope.TENANT,
    Role.ANALYST: RoleScope.TENANT,
    Role.PROFESSIONAL: RoleScope.TENANT,
    Role.CUSTOMER: RoleScope.TENANT,
}

ROLE_IMPLIES: Dict[Role, FrozenSet[Role]] = {
    Role.OWNER: frozenset({Role.ADMIN}),
    Role.ADMIN: frozenset({Role.MANAGER}),
    Role.MANAGER: frozenset({Role.OPERATOR, Role.ANALYST}),
    Role.OPERATOR: frozenset(),
    Role.ANALYST: frozenset(),
    Role.PROFESSIONAL: frozenset(),
    Role.CUSTOMER: frozenset(),
}

ROLE_GRANTS: Dict[Role, FrozenSet[Permission]] = {
    Role.OWNER: frozenset({Permission.ACCOUNT_UPDATE, Permission.TENANTS_DELETE}),
    Role.ADMIN: frozenset(
        {Permission.ACCOUNT_VIEW, Permission.TENANTS_MANAGE, Permission.USERS_MANAGE}
    ),
    Role.MANAGER: frozenset({Permission.TENANT_SETTINGS, Permission.CATALOG_MANAGE}),
    Role.OPERATOR: frozenset({Permission.CATALOG_VIEW, Permission.TENANT_VIEW}),
    Role.ANALYST: frozenset({Permission.TENANT_VIEW, Permission.METRICS_VIEW}),
    Role.PROFESSIONAL: frozenset({Permission.SCHEDULE_SELF}),
    Role.CUSTOMER: frozenset({Permission.APPOINTMENTS_BOOK}),
}


def _check_tables() -> None:
    for name, table in (
        ("ROLE_SCOPES", ROLE_SCOPES),
        ("ROLE_IMPLIES", ROLE_IMPLIES),
        ("ROLE_GRANTS", ROLE_GRANTS),
    ):
        missing = set(Role) - set(table)
        if missing:
            raise RuntimeError(f"{name} is missing roles: {sorted(r.value for r in missing)}")
    granted = set().union(*ROLE_GRANTS.values())
    orphaned = set(Permission) - granted
    if orphaned:
        raise RuntimeError(
            f"permissions granted by no role: {sorted(p.value for p in orphaned)}"
        )
    for role, implied in ROLE_IMPLIES.items():
        # tenant roles must never imply global ones
        if ROLE_SCOPES[role] == RoleScope.TENANT and any(
            ROLE_SCOPES[r] == RoleScope.GLOBAL for r in implied
        ):
            raise RuntimeError(f"tenant role {role.value} cannot imply a global role")


def _closure(role: Role) -> FrozenSet[Role]:
    seen = {role}
    stack = [role]
    while stack:
        for implied in ROLE_IMPLIES[stack.pop()]:
            if implied not in seen:
                seen.add(implied)
                stack.append(implied)
    return frozenset(seen)


_check_tables()

IMPLIED_ROLES: Dict[Role, FrozenSet[Role]] = {role: _closure(role) for role in Role}
EFFECTIVE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    role: frozenset().union(*(ROLE_GRANTS[r] for r in IMPLIED_ROLES[role])) for role in Role
}

Requirement = Union[Role, Permission]


def parse_role(value: Union[str, Role]) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise ValidationError("unknown role", detail={"role": str(value)}) from None


def role_satisfies(role: Role, required: Requirement) -> bool:
    if isinstance(required, Role):
        return required in IMPLIED_ROLES[role]
    if isinstance(required, Permission):
        return required in EFFECTIVE_PERMISSIONS[role]
    raise TypeError(f"unsupported requirement type: {type(required).__name__}")


class RoleRegistry:
    """Stores role assignments and answers ``can`` queries."""

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def assign(
        self, principal_id: str, role: Union[str, Role], tenant_id: Optional[str] = None
    ) -> RoleAssignment:
        """Grant ``role`` to a principal; idempotent for an identical assignment."""
        parsed = parse_role(role)
        scope = ROLE_SCOPES[parsed]
        if scope == RoleScope.TENANT and not tenant_id:
            raise ValidationError(
                "tenant-scoped role requires a tenant", detail={"role": parsed.value}
            )
        if scope == RoleScope.GLOBAL and tenant_id:
            raise ValidationError(
                "global role cannot be scoped to a tenant", detail={"role": parsed.value}
            )
        if not self.store.get_principal(principal_id):
            raise NotFoundError("principal not found", detail={"principal_id": principal_id})
        if tenant_id:
            tenant = self.store.get_tenant(tenant_id)
            if not tenant or not tenant.is_active:
                raise ValidationError("unknown or inactive tenant", detail={"tenant_id": tenant_id})
        try:
            assignment = self.store.add_role_assignment(principal_id, parsed.value, tenant_id)
        except ConstraintViolation as exc:
            raise ValidationError(exc.message, detail=exc.detail) from exc
        logger.info(
            "role_assigned",
            principal_id=principal_id,
            role=parsed.value,
            tenant_id=tenant_id,
            assignment_id=assignment.id,
        )
        return assignment

    def revoke(self, assignment_id: str) -> bool:
        removed = self.store.remove_role_assignment(assignment_id)
        if removed:
            logger.info("role_revoked", assignment_id=assignment_id)
        return removed

    def get_assignment(self, assignment_id: str) -> Optional[RoleAssignment]:
        return self.store.get_role_assignment(assignment_id)

    def list_assignments(self, principal_id: str) -> List[RoleAssignment]:
        return self.store.list_role_assignments(principal_id)

    def roles_in(self, principal_id: str, tenant_id: Optional[str]) -> List[Role]:
        """Roles that apply to ``principal_id`` within ``tenant_id`` (globals always apply)."""
        roles: List[Role] = []
        for assignment in self.store.list_role_assignments(principal_id):
            try:
                role = Role(assignment.role)
            except ValueError:
                logger.warning(
                    "role_assignment_unknown_role",
                    assignment_id=assignment.id,
                    role=assignment.role,
                )
                continue
            if assignment.tenant_id is None and ROLE_SCOPES[role] == RoleScope.GLOBAL:
                roles.append(role)
            elif tenant_id is not None and assignment.tenant_id == tenant_id:
                roles.append(role)
        return roles

    def can(
        self, principal_id: str, required: Requirement, tenant_id: Optional[str] = None
    ) -> bool:
        return any(role_satisfies(role, required) for role in self.roles_in(principal_id, tenant_id))

    def effective_permissions(
        self, principal_id: str, tenant_id: Optional[str]
    ) -> List[Permission]:
        granted = set()
        for role in self.roles_in(principal_id, tenant_id):
            granted |= EFFECTIVE_PERMISSIONS[role]
        return sorted(granted, key=lambda p: p.value)
