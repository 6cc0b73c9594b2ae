"""Magic-link issuance and single-use verification.

A magic link carries an opaque, URL-safe raw value. Only the SHA-256 of that
value is stored, so a leaked store cannot be replayed. Verification moves a
token from PENDING to CONSUMED through one conditional store write; of any
number of concurrent verifications of the same value exactly one succeeds.
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from urllib.parse import quote

from proagenda.logging import get_logger, redact_email
from proagenda.service.errors import (
    DeliveryFailedError,
    NotFoundError,
    TenantMismatchError,
    TokenAlreadyConsumedError,
    TokenExpiredError,
    TokenNotFoundError,
    ValidationError,
)
from proagenda.service.validation import normalize_email
from proagenda.storage.common import AuthStore
from proagenda.storage.models import MagicLinkToken, Tenant, TokenState

logger = get_logger(__name__)

MAGIC_LINK_TTL_MINUTES = 30
# secrets.token_urlsafe(32) always yields 43 characters
RAW_TOKEN_BYTES = 32
MAX_RAW_TOKEN_LENGTH = 256


def hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class LinkDelivery(Protocol):
    async def deliver(self, tenant: Tenant, email: str, link: str) -> bool: ...


@dataclass
class IssueResult:
    accepted: bool
    delivered: bool
    expires_at: datetime
    collapsed: bool = False
    dev_link: Optional[str] = None
    delivery_error: Optional[DeliveryFailedError] = None


@dataclass(frozen=True)
class VerifiedIdentity:
    tenant: Tenant
    email: str
    token_hash: str


class MagicLinkIssuer:
    def __init__(
        self,
        store: AuthStore,
        delivery: LinkDelivery,
        *,
        customer_app_url: str,
        reissue_cooldown_seconds: int = 60,
        delivery_timeout_seconds: float = 5.0,
        dev_link_echo: bool = False,
    ) -> None:
        self.store = store
        self.delivery = delivery
        self.customer_app_url = customer_app_url.rstrip("/")
        self.reissue_cooldown = timedelta(seconds=reissue_cooldown_seconds)
        self.delivery_timeout_seconds = delivery_timeout_seconds
        self.dev_link_echo = dev_link_echo

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def build_link(self, tenant: Tenant, raw: str) -> str:
        return f"{self.customer_app_url}/{tenant.slug}/auth/verify?token={quote(raw, safe='')}"

    def _resolve_tenant(self, tenant_slug: str) -> Tenant:
        tenant = self.store.get_tenant_by_slug(tenant_slug) if tenant_slug else None
        if not tenant or not tenant.is_active:
            raise NotFoundError("tenant not found", detail={"tenant": tenant_slug})
        return tenant

    async def issue(self, tenant_slug: str, email: str) -> IssueResult:
        """Create a link for (tenant, email) and hand it to the delivery channel.

        A repeat request inside the re-issue cooldown, while the previous link
        was delivered and is still pending, returns the same opaque
        confirmation without minting or sending anything. With dev echo on,
        every request mints a fresh link so the echoed value is always usable.
        """
        try:
            normalized_email = normalize_email(email)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "email"}) from exc
        tenant = self._resolve_tenant(tenant_slug)
        now = self._now()

        pending = self.store.latest_pending_magic_link(tenant.id, normalized_email, now)
        if (
            pending
            and not self.dev_link_echo
            and pending.delivered_at is not None
            and now - pending.created_at < self.reissue_cooldown
        ):
            logger.info(
                "magic_link_issue_collapsed",
                tenant_id=tenant.id,
                recipient=redact_email(normalized_email),
                token_ref=pending.token_hash[:12],
            )
            return IssueResult(
                accepted=True,
                delivered=True,
                expires_at=pending.expires_at,
                collapsed=True,
            )

        raw = secrets.token_urlsafe(RAW_TOKEN_BYTES)
        token = self.store.save_magic_link(
            MagicLinkToken(
                token_hash=hash_token(raw),
                tenant_id=tenant.id,
                email=normalized_email,
                created_at=now,
                expires_at=now + timedelta(minutes=MAGIC_LINK_TTL_MINUTES),
            )
        )
        logger.info(
            "magic_link_issued",
            tenant_id=tenant.id,
            recipient=redact_email(normalized_email),
            token_ref=token.token_hash[:12],
        )

        link = self.build_link(tenant, raw)
        delivery_error = await self._deliver(tenant, normalized_email, link, token.token_hash)
        return IssueResult(
            accepted=True,
            delivered=delivery_error is None,
            expires_at=token.expires_at,
            dev_link=link if self.dev_link_echo else None,
            delivery_error=delivery_error,
        )

    async def _deliver(
        self, tenant: Tenant, email: str, link: str, token_hash: str
    ) -> Optional[DeliveryFailedError]:
        try:
            delivered = await asyncio.wait_for(
                self.delivery.deliver(tenant, email, link),
                timeout=self.delivery_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "magic_link_delivery_timeout",
                tenant_id=tenant.id,
                token_ref=token_hash[:12],
                timeout_seconds=self.delivery_timeout_seconds,
            )
            return DeliveryFailedError("delivery timed out", detail={"tenant_id": tenant.id})
        except Exception as exc:
            logger.error(
                "magic_link_delivery_error",
                tenant_id=tenant.id,
                token_ref=token_hash[:12],
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return DeliveryFailedError("delivery failed", detail={"tenant_id": tenant.id})
        if not delivered:
            logger.warning(
                "magic_link_delivery_rejected", tenant_id=tenant.id, token_ref=token_hash[:12]
            )
            return DeliveryFailedError("delivery rejected", detail={"tenant_id": tenant.id})
        self.store.mark_magic_link_delivered(token_hash, self._now())
        return None


class MagicLinkVerifier:
    """Redeems a raw link value exactly once.

    Checks run in a fixed order: not found, tenant mismatch or inactive
    tenant, expired, already consumed. Every failure surfaces the same public
    message, and none of them consumes the token.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def verify(self, tenant_slug: str, raw: str) -> VerifiedIdentity:
        if not isinstance(raw, str) or not raw or len(raw) > MAX_RAW_TOKEN_LENGTH:
            logger.info("magic_link_verify_failed", reason="not_found")
            raise TokenNotFoundError()
        token_hash = hash_token(raw)
        token_ref = token_hash[:12]
        token = self.store.get_magic_link(token_hash)
        if not token:
            logger.info("magic_link_verify_failed", reason="not_found", token_ref=token_ref)
            raise TokenNotFoundError()

        tenant = self.store.get_tenant_by_slug(tenant_slug) if tenant_slug else None
        if not tenant or tenant.id != token.tenant_id:
            logger.warning(
                "magic_link_verify_failed",
                reason="tenant_mismatch",
                token_ref=token_ref,
                token_tenant_id=token.tenant_id,
                requested_tenant=tenant_slug,
            )
            raise TenantMismatchError()
        if not tenant.is_active:
            logger.warning(
                "magic_link_verify_failed",
                reason="tenant_inactive",
                token_ref=token_ref,
                tenant_id=tenant.id,
            )
            raise TenantMismatchError()

        now = self._now()
        if token.is_expired(now):
            if token.state == TokenState.PENDING:
                self.store.expire_magic_link(token_hash)
            logger.info("magic_link_verify_failed", reason="expired", token_ref=token_ref)
            raise TokenExpiredError()
        if token.state != TokenState.PENDING:
            logger.info(
                "magic_link_verify_failed", reason="already_consumed", token_ref=token_ref
            )
            raise TokenAlreadyConsumedError()

        consumed = self.store.consume_magic_link(token_hash, now)
        if consumed is None:
            # Lost the transition; report what the record now says
            current = self.store.get_magic_link(token_hash)
            if current is None:
                raise TokenNotFoundError()
            if current.is_expired(self._now()) and current.state != TokenState.CONSUMED:
                raise TokenExpiredError()
            logger.info(
                "magic_link_verify_failed",
                reason="already_consumed",
                token_ref=token_ref,
                contended=True,
            )
            raise TokenAlreadyConsumedError()

        logger.info(
            "magic_link_consumed",
            tenant_id=tenant.id,
            recipient=redact_email(consumed.email),
            token_ref=token_ref,
        )
        return VerifiedIdentity(tenant=tenant, email=consumed.email, token_hash=token_hash)


def purge_expired_tokens(store: AuthStore, now: Optional[datetime] = None) -> int:
    """Evict tokens past their expiry; evicted values later verify as not found."""
    removed = store.purge_expired_magic_links(now or datetime.now(timezone.utc))
    if removed:
        logger.info("magic_links_purged", count=removed)
    return removed
