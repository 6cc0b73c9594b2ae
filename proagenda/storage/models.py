from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenState(str, Enum):
    PENDING = "pending"
    CONSUMED = "consumed"
    EXPIRED = "expired"


@dataclass
class Tenant:
    id: str
    slug: str
    name: str
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Principal:
    id: str
    email: str
    name: Optional[str] = None
    tenant_id: Optional[str] = None
    email_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class MagicLinkToken:
    """Outstanding magic-link record, keyed by the SHA-256 of the raw value."""

    token_hash: str
    tenant_id: str
    email: str
    created_at: datetime
    expires_at: datetime
    state: TokenState = TokenState.PENDING
    consumed_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class Session:
    id: str
    principal_id: str
    tenant_id: str
    created_at: datetime
    refresh_expires_at: datetime
    refresh_jti: str
    previous_refresh_jti: Optional[str] = None
    rotated_at: Optional[datetime] = None
    generation: int = 0
    revoked_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    @classmethod
    def new(
        cls,
        principal_id: str,
        tenant_id: str,
        refresh_ttl_minutes: int = 7 * 24 * 60,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        *,
        now: datetime | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            principal_id=principal_id,
            tenant_id=tenant_id,
            created_at=created,
            refresh_expires_at=created + timedelta(minutes=refresh_ttl_minutes),
            refresh_jti=str(uuid.uuid4()),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )


@dataclass
class RoleAssignment:
    id: str
    principal_id: str
    role: str
    tenant_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
