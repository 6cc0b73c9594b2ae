"""Shared storage contract and helpers for the memory and postgres backends."""

from __future__ import annotations

from datetime import datetime
from ipaddress import ip_address
from typing import List, Optional, Protocol

from proagenda.storage.models import MagicLinkToken, Principal, RoleAssignment, Session, Tenant


class AuthStore(Protocol):
    # tenants
    def create_tenant(self, slug: str, name: str, *, is_active: bool = True) -> Tenant: ...

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]: ...

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]: ...

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]: ...

    # principals
    def create_principal(
        self, email: str, *, name: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> Principal: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def mark_email_verified(self, principal_id: str) -> None: ...

    # magic-link tokens
    def save_magic_link(self, token: MagicLinkToken) -> MagicLinkToken: ...

    def get_magic_link(self, token_hash: str) -> Optional[MagicLinkToken]: ...

    def latest_pending_magic_link(
        self, tenant_id: str, email: str, now: datetime
    ) -> Optional[MagicLinkToken]: ...

    def consume_magic_link(self, token_hash: str, now: datetime) -> Optional[MagicLinkToken]: ...

    def mark_magic_link_delivered(self, token_hash: str, now: datetime) -> bool: ...

    def expire_magic_link(self, token_hash: str) -> bool: ...

    def purge_expired_magic_links(self, now: datetime) -> int: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def rotate_session_refresh(
        self,
        session_id: str,
        expected_jti: str,
        new_jti: str,
        refresh_expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]: ...

    def revoke_session(self, session_id: str, now: datetime) -> bool: ...

    def revoke_principal_sessions(self, principal_id: str, now: datetime) -> List[str]: ...

    # role assignments
    def add_role_assignment(
        self, principal_id: str, role: str, tenant_id: Optional[str]
    ) -> RoleAssignment: ...

    def remove_role_assignment(self, assignment_id: str) -> bool: ...

    def get_role_assignment(self, assignment_id: str) -> Optional[RoleAssignment]: ...

    def list_role_assignments(self, principal_id: str) -> List[RoleAssignment]: ...


def normalize_ip(raw: Optional[str]) -> Optional[str]:
    """Return a canonical textual IP address, or None for blank/invalid input."""
    if raw is None:
        return None
    raw = str(raw).strip()
    if not raw:
        return None
    try:
        return str(ip_address(raw))
    except ValueError:
        return None


def normalize_slug(slug: str) -> str:
    return slug.strip().lower()
