"""Magic-link issuance and single-use verification."""

import asyncio
import threading
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from proagenda.service.errors import (
    DeliveryFailedError,
    MagicLinkError,
    NotFoundError,
    TenantMismatchError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
    TokenNotFoundError,
    ValidationError,
)
from proagenda.service.magic_link import (
    MAGIC_LINK_TTL_MINUTES,
    MagicLinkIssuer,
    MagicLinkVerifier,
    hash_token,
    purge_expired_tokens,
)
from proagenda.storage.memory import MemoryStore
from proagenda.storage.models import TokenState


class RecordingDelivery:
    def __init__(self, result=True, delay: float = 0.0, error: Exception | None = None):
        self.result = result
        self.delay = delay
        self.error = error
        self.sent = []

    async def deliver(self, tenant, email, link):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.sent.append((tenant.slug, email, link))
        return self.result


def _raw_from_link(link: str) -> str:
    return parse_qs(urlparse(link).query)["token"][0]


@pytest.fixture
def store():
    s = MemoryStore()
    s.create_tenant("acme", "Acme Clinic")
    s.create_tenant("other", "Other Studio")
    return s


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def issuer(store, delivery):
    return MagicLinkIssuer(
        store,
        delivery,
        customer_app_url="https://app.proagenda.test/",
        reissue_cooldown_seconds=60,
        delivery_timeout_seconds=0.5,
    )


@pytest.fixture
def verifier(store):
    return MagicLinkVerifier(store)


async def _issue_raw(issuer, delivery, tenant="acme", email="user@example.com") -> str:
    await issuer.issue(tenant, email)
    return _raw_from_link(delivery.sent[-1][2])


class TestIssue:
    async def test_issue_persists_pending_token_keyed_by_hash(self, issuer, delivery, store):
        """Only the hash of the raw value is stored."""
        result = await issuer.issue("acme", "User@Example.com")
        assert result.accepted and result.delivered and not result.collapsed
        tenant_slug, email, link = delivery.sent[0]
        assert tenant_slug == "acme"
        assert email == "user@example.com"
        assert link.startswith("https://app.proagenda.test/acme/auth/verify?token=")

        raw = _raw_from_link(link)
        assert len(raw) == 43
        assert store.get_magic_link(raw) is None
        token = store.get_magic_link(hash_token(raw))
        assert token is not None
        assert token.state == TokenState.PENDING
        assert token.expires_at - token.created_at == timedelta(minutes=MAGIC_LINK_TTL_MINUTES)
        assert result.expires_at == token.expires_at

    async def test_dev_link_absent_unless_echo_enabled(self, issuer, store, delivery):
        result = await issuer.issue("acme", "user@example.com")
        assert result.dev_link is None

        echoing = MagicLinkIssuer(
            store, delivery, customer_app_url="http://localhost:3004", dev_link_echo=True
        )
        echoed = await echoing.issue("other", "user@example.com")
        assert echoed.dev_link == delivery.sent[-1][2]

    async def test_unknown_or_inactive_tenant_rejected(self, issuer, store):
        with pytest.raises(NotFoundError):
            await issuer.issue("missing", "user@example.com")
        tenant = store.get_tenant_by_slug("other")
        store.set_tenant_active(tenant.id, False)
        with pytest.raises(NotFoundError):
            await issuer.issue("other", "user@example.com")

    async def test_invalid_email_rejected(self, issuer, delivery):
        with pytest.raises(ValidationError):
            await issuer.issue("acme", "not-an-email")
        assert delivery.sent == []

    async def test_repeat_request_inside_cooldown_collapses(self, issuer, delivery, store):
        first = await issuer.issue("acme", "user@example.com")
        second = await issuer.issue("acme", "user@example.com")
        assert second.accepted and second.collapsed
        assert second.expires_at == first.expires_at
        assert len(delivery.sent) == 1

    async def test_dev_echo_returns_a_usable_link_on_every_request(self, store, delivery):
        echoing = MagicLinkIssuer(
            store,
            delivery,
            customer_app_url="http://localhost:3004",
            reissue_cooldown_seconds=60,
            dev_link_echo=True,
        )
        first = await echoing.issue("acme", "user@example.com")
        second = await echoing.issue("acme", "user@example.com")
        assert not second.collapsed
        assert first.dev_link and second.dev_link
        assert first.dev_link != second.dev_link
        assert MagicLinkVerifier(store).verify("acme", _raw_from_link(second.dev_link))

    async def test_request_after_cooldown_issues_new_token(self, issuer, delivery, monkeypatch):
        await issuer.issue("acme", "user@example.com")
        later = issuer._now() + timedelta(seconds=61)
        monkeypatch.setattr(issuer, "_now", lambda: later)
        result = await issuer.issue("acme", "user@example.com")
        assert not result.collapsed
        assert len(delivery.sent) == 2

    async def test_cooldown_is_per_tenant(self, issuer, delivery):
        await issuer.issue("acme", "user@example.com")
        result = await issuer.issue("other", "user@example.com")
        assert not result.collapsed
        assert len(delivery.sent) == 2


class TestDeliveryFailure:
    async def test_rejected_delivery_keeps_token(self, store):
        delivery = RecordingDelivery(result=False)
        issuer = MagicLinkIssuer(store, delivery, customer_app_url="http://x")
        result = await issuer.issue("acme", "user@example.com")
        assert result.accepted
        assert not result.delivered
        assert isinstance(result.delivery_error, DeliveryFailedError)
        raw = _raw_from_link(delivery.sent[0][2])
        assert store.get_magic_link(hash_token(raw)).state == TokenState.PENDING

    async def test_retry_after_failed_delivery_sends_fresh_link(self, store):
        delivery = RecordingDelivery(result=False)
        issuer = MagicLinkIssuer(
            store, delivery, customer_app_url="http://x", reissue_cooldown_seconds=60
        )
        failed = await issuer.issue("acme", "user@example.com")
        assert not failed.delivered

        delivery.result = True
        retried = await issuer.issue("acme", "user@example.com")
        assert not retried.collapsed
        assert retried.delivered
        assert retried.delivery_error is None
        assert len(delivery.sent) == 2
        first_raw = _raw_from_link(delivery.sent[0][2])
        second_raw = _raw_from_link(delivery.sent[1][2])
        assert first_raw != second_raw
        assert store.get_magic_link(hash_token(first_raw)).delivered_at is None
        assert store.get_magic_link(hash_token(second_raw)).delivered_at is not None

        # Only now is there a delivered link to collapse onto
        third = await issuer.issue("acme", "user@example.com")
        assert third.collapsed and third.delivered
        assert len(delivery.sent) == 2

    async def test_delivery_timeout_is_bounded(self, store):
        delivery = RecordingDelivery(delay=1.0)
        issuer = MagicLinkIssuer(
            store, delivery, customer_app_url="http://x", delivery_timeout_seconds=0.05
        )
        result = await issuer.issue("acme", "user@example.com")
        assert not result.delivered
        assert isinstance(result.delivery_error, DeliveryFailedError)

    async def test_delivery_exception_is_captured(self, store):
        delivery = RecordingDelivery(error=ConnectionError("smtp down"))
        issuer = MagicLinkIssuer(store, delivery, customer_app_url="http://x")
        result = await issuer.issue("acme", "user@example.com")
        assert not result.delivered
        assert result.delivery_error.status_code == 502


class TestVerify:
    async def test_verify_returns_identity_once(self, issuer, delivery, verifier, store):
        """A second redemption of the same value is AlreadyConsumed."""
        raw = await _issue_raw(issuer, delivery)
        identity = verifier.verify("acme", raw)
        assert identity.email == "user@example.com"
        assert identity.tenant.slug == "acme"
        assert store.get_magic_link(hash_token(raw)).state == TokenState.CONSUMED

        with pytest.raises(TokenAlreadyConsumedError):
            verifier.verify("acme", raw)

    async def test_tenant_mismatch_does_not_consume(self, issuer, delivery, verifier, store):
        raw = await _issue_raw(issuer, delivery)
        with pytest.raises(TenantMismatchError):
            verifier.verify("other", raw)
        with pytest.raises(TenantMismatchError):
            verifier.verify("nonexistent", raw)
        assert store.get_magic_link(hash_token(raw)).state == TokenState.PENDING
        assert verifier.verify("acme", raw).email == "user@example.com"

    async def test_inactive_tenant_rejected_before_consume(
        self, issuer, delivery, verifier, store
    ):
        raw = await _issue_raw(issuer, delivery)
        tenant = store.get_tenant_by_slug("acme")
        store.set_tenant_active(tenant.id, False)
        with pytest.raises(TenantMismatchError) as excinfo:
            verifier.verify("acme", raw)
        assert excinfo.value.status_code == 401
        assert store.get_magic_link(hash_token(raw)).state == TokenState.PENDING

        store.set_tenant_active(tenant.id, True)
        assert verifier.verify("acme", raw).email == "user@example.com"

    async def test_expired_token_fails_and_is_not_consumed(
        self, issuer, delivery, verifier, store, monkeypatch
    ):
        raw = await _issue_raw(issuer, delivery)
        token = store.get_magic_link(hash_token(raw))
        monkeypatch.setattr(verifier, "_now", lambda: token.expires_at + timedelta(seconds=1))
        with pytest.raises(TokenExpiredError):
            verifier.verify("acme", raw)
        assert store.get_magic_link(hash_token(raw)).state == TokenState.EXPIRED
        # Still expired on a retry, never AlreadyConsumed
        with pytest.raises(TokenExpiredError):
            verifier.verify("acme", raw)

    async def test_expiry_boundary_is_exclusive(self, issuer, delivery, verifier, store, monkeypatch):
        raw = await _issue_raw(issuer, delivery)
        token = store.get_magic_link(hash_token(raw))
        monkeypatch.setattr(verifier, "_now", lambda: token.expires_at)
        with pytest.raises(TokenExpiredError):
            verifier.verify("acme", raw)

    async def test_consumed_then_expired_reports_expired(
        self, issuer, delivery, verifier, store, monkeypatch
    ):
        raw = await _issue_raw(issuer, delivery)
        verifier.verify("acme", raw)
        token = store.get_magic_link(hash_token(raw))
        monkeypatch.setattr(verifier, "_now", lambda: token.expires_at + timedelta(minutes=1))
        with pytest.raises(TokenExpiredError):
            verifier.verify("acme", raw)

    def test_unknown_and_malformed_values_are_not_found(self, verifier):
        for raw in ("", "x" * 257, "never-issued"):
            with pytest.raises(TokenNotFoundError):
                verifier.verify("acme", raw)

    async def test_all_failures_share_public_message(self, issuer, delivery, verifier):
        raw = await _issue_raw(issuer, delivery)
        messages = set()
        for slug, value in (("acme", "bogus"), ("other", raw)):
            with pytest.raises(MagicLinkError) as excinfo:
                verifier.verify(slug, value)
            messages.add(excinfo.value.message)
            assert excinfo.value.status_code == 401
        verifier.verify("acme", raw)
        with pytest.raises(MagicLinkError) as excinfo:
            verifier.verify("acme", raw)
        messages.add(excinfo.value.message)
        assert messages == {"invalid or expired link"}


class TestConcurrentVerify:
    async def test_exactly_one_of_many_concurrent_verifications_succeeds(
        self, issuer, delivery, verifier
    ):
        raw = await _issue_raw(issuer, delivery)
        workers = 16
        barrier = threading.Barrier(workers)
        successes = []
        failures = []

        def attempt():
            barrier.wait()
            try:
                successes.append(verifier.verify("acme", raw))
            except TokenAlreadyConsumedError as exc:
                failures.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(successes) == 1
        assert len(failures) == workers - 1


class TestPurge:
    async def test_purge_removes_only_expired(self, issuer, delivery, verifier, store):
        raw = await _issue_raw(issuer, delivery)
        token = store.get_magic_link(hash_token(raw))
        assert purge_expired_tokens(store, token.created_at) == 0
        assert purge_expired_tokens(store, token.expires_at) == 1
        with pytest.raises(TokenNotFoundError):
            verifier.verify("acme", raw)
