"""AuthService: login provisioning, logout and role administration."""

from urllib.parse import parse_qs, urlparse

import pytest

from proagenda.service.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TenantMismatchError,
    TokenAlreadyConsumedError,
    UnauthenticatedError,
    ValidationError,
)
from proagenda.service.magic_link import hash_token
from proagenda.service.roles import Permission, Role
from proagenda.storage.models import TokenState


async def _login(runtime, slug: str, email: str):
    result = await runtime.auth.send_magic_link(slug, email)
    raw = parse_qs(urlparse(result.dev_link).query)["token"][0]
    return await runtime.auth.verify_magic_link(slug, raw, user_agent="pytest", ip_addr="127.0.0.1")


async def _ctx(runtime, login):
    return await runtime.auth.authenticate(f"Bearer {login.credentials.access_token}")


class TestMagicLinkLogin:
    async def test_first_login_provisions_principal_and_customer_role(self, runtime, acme):
        login = await _login(runtime, "acme", "New.Person@Example.com")
        assert login.principal.email == "new.person@example.com"
        assert login.principal.name == "new.person"
        assert login.principal.tenant_id == acme.id
        assert login.principal.email_verified
        assert runtime.store.get_principal(login.principal.id).email_verified
        assert [(a.role, a.tenant_id) for a in login.assignments] == [("customer", acme.id)]
        assert login.session.tenant_id == acme.id
        assert runtime.registry.can(login.principal.id, Permission.APPOINTMENTS_BOOK, acme.id)

    async def test_second_tenant_login_reuses_principal(self, runtime, acme, other):
        first = await _login(runtime, "acme", "person@example.com")
        second = await _login(runtime, "other", "person@example.com")
        assert first.principal.id == second.principal.id
        # Home tenant stays where the principal was first seen
        assert second.principal.tenant_id == acme.id
        assert {a.tenant_id for a in second.assignments} == {acme.id, other.id}
        assert second.session.tenant_id == other.id

    async def test_link_cannot_be_reused_for_second_session(self, runtime, acme):
        result = await runtime.auth.send_magic_link("acme", "person@example.com")
        raw = parse_qs(urlparse(result.dev_link).query)["token"][0]
        await runtime.auth.verify_magic_link("acme", raw)
        with pytest.raises(TokenAlreadyConsumedError):
            await runtime.auth.verify_magic_link("acme", raw)

    async def test_inactive_principal_cannot_log_in(self, runtime, acme):
        login = await _login(runtime, "acme", "person@example.com")
        runtime.store.principals[login.principal.id].is_active = False
        with pytest.raises(UnauthenticatedError):
            await _login(runtime, "acme", "person@example.com")


class TestLogout:
    async def test_logout_revokes_only_current_session(self, runtime, acme):
        first = await _login(runtime, "acme", "person@example.com")
        second = await _login(runtime, "acme", "person@example.com")
        await runtime.auth.logout(await _ctx(runtime, first))
        with pytest.raises(UnauthenticatedError):
            await _ctx(runtime, first)
        assert (await _ctx(runtime, second)).session_id == second.session.id

    async def test_logout_all(self, runtime, acme, other):
        first = await _login(runtime, "acme", "person@example.com")
        second = await _login(runtime, "other", "person@example.com")
        assert await runtime.auth.logout_all(await _ctx(runtime, first)) == 2
        for login in (first, second):
            with pytest.raises(UnauthenticatedError):
                await _ctx(runtime, login)

    async def test_describe(self, runtime, acme):
        login = await _login(runtime, "acme", "person@example.com")
        described = runtime.auth.describe(await _ctx(runtime, login))
        assert described["principal"].id == login.principal.id
        assert described["tenant_id"] == acme.id
        assert described["permissions"] == [Permission.APPOINTMENTS_BOOK]


class TestRoleAdministration:
    async def test_admin_can_grant_tenant_roles(self, runtime, acme):
        admin = await _login(runtime, "acme", "admin@example.com")
        runtime.registry.assign(admin.principal.id, Role.ADMIN)
        target = await _login(runtime, "acme", "staff@example.com")
        ctx = await _ctx(runtime, admin)
        assignment = runtime.auth.assign_role(ctx, target.principal.id, "manager", acme.id)
        assert assignment.role == "manager"
        assert runtime.registry.can(target.principal.id, Permission.CATALOG_MANAGE, acme.id)
        assert runtime.auth.revoke_role(ctx, target.principal.id, assignment.id) is True

    async def test_admin_cannot_grant_owner(self, runtime, acme):
        admin = await _login(runtime, "acme", "admin@example.com")
        runtime.registry.assign(admin.principal.id, Role.ADMIN)
        target = await _login(runtime, "acme", "staff@example.com")
        with pytest.raises(ForbiddenError):
            runtime.auth.assign_role(await _ctx(runtime, admin), target.principal.id, Role.OWNER)
        assert not runtime.registry.can(target.principal.id, Role.OWNER)

    async def test_manager_cannot_grant_outside_own_tenant(self, runtime, acme, other):
        manager = await _login(runtime, "acme", "manager@example.com")
        runtime.registry.assign(manager.principal.id, Role.MANAGER, acme.id)
        target = await _login(runtime, "other", "staff@example.com")
        ctx = await _ctx(runtime, manager)
        runtime.auth.assign_role(ctx, target.principal.id, Role.OPERATOR, acme.id)
        with pytest.raises(ForbiddenError):
            runtime.auth.assign_role(ctx, target.principal.id, Role.OPERATOR, other.id)

    async def test_owner_revoking_unknown_assignment(self, runtime, acme):
        owner = await _login(runtime, "acme", "owner@example.com")
        runtime.registry.assign(owner.principal.id, Role.OWNER)
        with pytest.raises(NotFoundError):
            runtime.auth.revoke_role(await _ctx(runtime, owner), owner.principal.id, "missing")

    async def test_global_role_with_tenant_rejected(self, runtime, acme):
        owner = await _login(runtime, "acme", "owner@example.com")
        runtime.registry.assign(owner.principal.id, Role.OWNER)
        target = await _login(runtime, "acme", "staff@example.com")
        with pytest.raises(ValidationError):
            runtime.auth.assign_role(
                await _ctx(runtime, owner), target.principal.id, Role.ADMIN, acme.id
            )


class TestTenants:
    def test_create_tenant_validates_and_rejects_duplicates(self, runtime):
        tenant = runtime.auth.create_tenant("Acme", "Acme Clinic")
        assert tenant.slug == "acme"
        with pytest.raises(ConflictError):
            runtime.auth.create_tenant("acme", "Again")
        with pytest.raises(ValidationError):
            runtime.auth.create_tenant("not a slug!", "Bad")

    async def test_deactivated_tenant_stops_issuing(self, runtime, acme):
        runtime.auth.set_tenant_active(acme.id, False)
        with pytest.raises(NotFoundError):
            await runtime.auth.send_magic_link("acme", "person@example.com")
        with pytest.raises(NotFoundError):
            runtime.auth.set_tenant_active("missing", True)

    async def test_link_issued_before_deactivation_is_refused(self, runtime, acme):
        result = await runtime.auth.send_magic_link("acme", "person@example.com")
        raw = parse_qs(urlparse(result.dev_link).query)["token"][0]
        runtime.auth.set_tenant_active(acme.id, False)
        with pytest.raises(TenantMismatchError):
            await runtime.auth.verify_magic_link("acme", raw)
        assert runtime.store.get_principal_by_email("person@example.com") is None
        assert runtime.store.get_magic_link(hash_token(raw)).state == TokenState.PENDING
