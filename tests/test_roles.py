import pytest

from proagenda.service.errors import NotFoundError, ValidationError
from proagenda.service.roles import (
    EFFECTIVE_PERMISSIONS,
    IMPLIED_ROLES,
    ROLE_GRANTS,
    ROLE_IMPLIES,
    ROLE_SCOPES,
    Permission,
    Role,
    RoleRegistry,
    RoleScope,
    role_satisfies,
)
from proagenda.storage.memory import MemoryStore


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def registry(store):
    return RoleRegistry(store)


@pytest.fixture
def tenants(store):
    return store.create_tenant("acme", "Acme"), store.create_tenant("other", "Other")


@pytest.fixture
def principal(store):
    return store.create_principal("person@example.com")


class TestRoleTables:
    def test_every_role_appears_in_every_table(self):
        for table in (ROLE_SCOPES, ROLE_IMPLIES, ROLE_GRANTS):
            assert set(table) == set(Role)

    def test_every_permission_is_granted_somewhere(self):
        granted = set().union(*ROLE_GRANTS.values())
        assert granted == set(Permission)

    def test_implication_is_transitive(self):
        assert IMPLIED_ROLES[Role.OWNER] == {
            Role.OWNER,
            Role.ADMIN,
            Role.MANAGER,
            Role.OPERATOR,
            Role.ANALYST,
        }
        assert Role.PROFESSIONAL not in IMPLIED_ROLES[Role.OWNER]
        assert Role.CUSTOMER not in IMPLIED_ROLES[Role.ADMIN]
        assert IMPLIED_ROLES[Role.CUSTOMER] == {Role.CUSTOMER}

    def test_permission_closure(self):
        assert Permission.TENANT_VIEW in EFFECTIVE_PERMISSIONS[Role.MANAGER]
        assert Permission.METRICS_VIEW in EFFECTIVE_PERMISSIONS[Role.ADMIN]
        assert Permission.ACCOUNT_UPDATE in EFFECTIVE_PERMISSIONS[Role.OWNER]
        assert Permission.ACCOUNT_UPDATE not in EFFECTIVE_PERMISSIONS[Role.ADMIN]
        assert Permission.METRICS_VIEW not in EFFECTIVE_PERMISSIONS[Role.OPERATOR]
        assert EFFECTIVE_PERMISSIONS[Role.CUSTOMER] == {Permission.APPOINTMENTS_BOOK}

    def test_tenant_roles_never_imply_global_roles(self):
        for role, implied in IMPLIED_ROLES.items():
            if ROLE_SCOPES[role] == RoleScope.TENANT:
                assert all(ROLE_SCOPES[r] == RoleScope.TENANT for r in implied)

    def test_role_satisfies_rejects_other_types(self):
        with pytest.raises(TypeError):
            role_satisfies(Role.ADMIN, "users:manage")


class TestAssign:
    def test_tenant_role_requires_tenant(self, registry, principal):
        with pytest.raises(ValidationError):
            registry.assign(principal.id, Role.MANAGER)

    def test_global_role_with_tenant_rejected(self, registry, principal, tenants):
        acme, _ = tenants
        with pytest.raises(ValidationError):
            registry.assign(principal.id, Role.ADMIN, acme.id)

    def test_unknown_role_rejected(self, registry, principal, tenants):
        with pytest.raises(ValidationError):
            registry.assign(principal.id, "superuser", tenants[0].id)

    def test_unknown_principal(self, registry, tenants):
        with pytest.raises(NotFoundError):
            registry.assign("missing", Role.CUSTOMER, tenants[0].id)

    def test_inactive_tenant_rejected(self, registry, store, principal, tenants):
        acme, _ = tenants
        store.set_tenant_active(acme.id, False)
        with pytest.raises(ValidationError):
            registry.assign(principal.id, Role.CUSTOMER, acme.id)

    def test_assign_is_idempotent(self, registry, principal, tenants):
        acme, _ = tenants
        first = registry.assign(principal.id, "customer", acme.id)
        second = registry.assign(principal.id, Role.CUSTOMER, acme.id)
        assert first.id == second.id
        assert len(registry.list_assignments(principal.id)) == 1

    def test_revoke(self, registry, principal, tenants):
        acme, _ = tenants
        assignment = registry.assign(principal.id, Role.OPERATOR, acme.id)
        assert registry.revoke(assignment.id) is True
        assert registry.revoke(assignment.id) is False
        assert not registry.can(principal.id, Permission.CATALOG_VIEW, acme.id)


class TestCan:
    def test_tenant_role_applies_only_in_its_tenant(self, registry, principal, tenants):
        acme, other = tenants
        registry.assign(principal.id, Role.MANAGER, acme.id)
        assert registry.can(principal.id, Role.MANAGER, acme.id)
        assert registry.can(principal.id, Permission.CATALOG_MANAGE, acme.id)
        assert not registry.can(principal.id, Role.MANAGER, other.id)
        assert not registry.can(principal.id, Permission.CATALOG_MANAGE, other.id)
        assert not registry.can(principal.id, Role.MANAGER)

    def test_global_role_applies_everywhere(self, registry, principal, tenants):
        acme, other = tenants
        registry.assign(principal.id, Role.ADMIN)
        for tenant_id in (acme.id, other.id, None):
            assert registry.can(principal.id, Role.MANAGER, tenant_id)
            assert registry.can(principal.id, Permission.USERS_MANAGE, tenant_id)
            assert not registry.can(principal.id, Role.OWNER, tenant_id)

    def test_unrelated_role_does_not_satisfy(self, registry, principal, tenants):
        acme, _ = tenants
        registry.assign(principal.id, Role.PROFESSIONAL, acme.id)
        assert registry.can(principal.id, Permission.SCHEDULE_SELF, acme.id)
        assert not registry.can(principal.id, Role.CUSTOMER, acme.id)
        assert not registry.can(principal.id, Permission.TENANT_VIEW, acme.id)

    def test_effective_permissions_are_sorted_and_scoped(self, registry, principal, tenants):
        acme, other = tenants
        registry.assign(principal.id, Role.ANALYST, acme.id)
        registry.assign(principal.id, Role.CUSTOMER, other.id)
        acme_perms = registry.effective_permissions(principal.id, acme.id)
        assert acme_perms == [Permission.METRICS_VIEW, Permission.TENANT_VIEW]
        assert registry.effective_permissions(principal.id, other.id) == [
            Permission.APPOINTMENTS_BOOK
        ]
