from __future__ import annotations

import json
import threading
import uuid
from dataclasses import asdict, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from proagenda.logging import get_logger
from proagenda.storage.common import normalize_ip, normalize_slug
from proagenda.storage.errors import ConstraintViolation
from proagenda.storage.models import (
    MagicLinkToken,
    Principal,
    RoleAssignment,
    Session,
    Tenant,
    TokenState,
)

_DATETIME_FIELDS = {
    "created_at",
    "expires_at",
    "consumed_at",
    "delivered_at",
    "refresh_expires_at",
    "rotated_at",
    "revoked_at",
}


class MemoryStore:
    """In-process store for tests and single-node development.

    Every read returns a copy, and every conditional transition happens under
    ``_data_lock`` so the check and the write cannot interleave with another
    thread. When ``fs_root`` is given the state is mirrored to a JSON file.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.tenants: Dict[str, Tenant] = {}
        self.principals: Dict[str, Principal] = {}
        self.magic_links: Dict[str, MagicLinkToken] = {}
        self.sessions: Dict[str, Session] = {}
        self.role_assignments: Dict[str, RoleAssignment] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # tenants
    def create_tenant(self, slug: str, name: str, *, is_active: bool = True) -> Tenant:
        slug = normalize_slug(slug)
        with self._data_lock:
            if any(t.slug == slug for t in self.tenants.values()):
                raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
            tenant = Tenant(id=str(uuid.uuid4()), slug=slug, name=name, is_active=is_active)
            self.tenants[tenant.id] = tenant
            self._persist_state()
            return replace(tenant)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            return replace(tenant) if tenant else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        slug = normalize_slug(slug)
        with self._data_lock:
            for tenant in self.tenants.values():
                if tenant.slug == slug:
                    return replace(tenant)
        return None

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        with self._data_lock:
            tenant = self.tenants.get(tenant_id)
            if not tenant:
                return None
            tenant.is_active = is_active
            self._persist_state()
            return replace(tenant)

    # principals
    def create_principal(
        self, email: str, *, name: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> Principal:
        with self._data_lock:
            if any(p.email == email for p in self.principals.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal(
                id=str(uuid.uuid4()), email=email, name=name, tenant_id=tenant_id
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return replace(principal)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            return replace(principal) if principal else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            for principal in self.principals.values():
                if principal.email == email:
                    return replace(principal)
        return None

    def mark_email_verified(self, principal_id: str) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if not principal or principal.email_verified:
                return
            principal.email_verified = True
            self._persist_state()

    # magic-link tokens
    def save_magic_link(self, token: MagicLinkToken) -> MagicLinkToken:
        with self._data_lock:
            if token.token_hash in self.magic_links:
                raise ConstraintViolation("magic link already exists", {"field": "token_hash"})
            if token.tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": token.tenant_id})
            self.magic_links[token.token_hash] = replace(token)
            self._persist_state()
            return replace(token)

    def get_magic_link(self, token_hash: str) -> Optional[MagicLinkToken]:
        with self._data_lock:
            token = self.magic_links.get(token_hash)
            return replace(token) if token else None

    def latest_pending_magic_link(
        self, tenant_id: str, email: str, now: datetime
    ) -> Optional[MagicLinkToken]:
        with self._data_lock:
            candidates = [
                t
                for t in self.magic_links.values()
                if t.tenant_id == tenant_id
                and t.email == email
                and t.state == TokenState.PENDING
                and not t.is_expired(now)
            ]
            if not candidates:
                return None
            return replace(max(candidates, key=lambda t: t.created_at))

    def consume_magic_link(self, token_hash: str, now: datetime) -> Optional[MagicLinkToken]:
        """PENDING -> CONSUMED, only if still pending and unexpired at ``now``."""
        with self._data_lock:
            token = self.magic_links.get(token_hash)
            if not token or token.state != TokenState.PENDING or token.is_expired(now):
                return None
            token.state = TokenState.CONSUMED
            token.consumed_at = now
            self._persist_state()
            return replace(token)

    def mark_magic_link_delivered(self, token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            token = self.magic_links.get(token_hash)
            if not token or token.state != TokenState.PENDING:
                return False
            token.delivered_at = now
            self._persist_state()
            return True

    def expire_magic_link(self, token_hash: str) -> bool:
        with self._data_lock:
            token = self.magic_links.get(token_hash)
            if not token or token.state != TokenState.PENDING:
                return False
            token.state = TokenState.EXPIRED
            self._persist_state()
            return True

    def purge_expired_magic_links(self, now: datetime) -> int:
        with self._data_lock:
            stale = [h for h, t in self.magic_links.items() if t.is_expired(now)]
            for token_hash in stale:
                self.magic_links.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.principal_id not in self.principals:
                raise ConstraintViolation(
                    "principal does not exist", {"principal_id": session.principal_id}
                )
            stored = replace(session, ip_addr=normalize_ip(session.ip_addr))
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def rotate_session_refresh(
        self,
        session_id: str,
        expected_jti: str,
        new_jti: str,
        refresh_expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]:
        """Swap the live refresh jti only if ``expected_jti`` is still current."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.is_revoked or sess.refresh_jti != expected_jti:
                return None
            sess.previous_refresh_jti = sess.refresh_jti
            sess.refresh_jti = new_jti
            sess.generation += 1
            sess.rotated_at = now
            sess.refresh_expires_at = refresh_expires_at
            self._persist_state()
            return replace(sess)

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.is_revoked:
                return False
            sess.revoked_at = now
            self._persist_state()
            return True

    def revoke_principal_sessions(self, principal_id: str, now: datetime) -> List[str]:
        with self._data_lock:
            revoked = []
            for sess in self.sessions.values():
                if sess.principal_id == principal_id and not sess.is_revoked:
                    sess.revoked_at = now
                    revoked.append(sess.id)
            if revoked:
                self._persist_state()
            return revoked

    # role assignments
    def add_role_assignment(
        self, principal_id: str, role: str, tenant_id: Optional[str]
    ) -> RoleAssignment:
        with self._data_lock:
            if principal_id not in self.principals:
                raise ConstraintViolation("principal does not exist", {"principal_id": principal_id})
            if tenant_id is not None and tenant_id not in self.tenants:
                raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
            for existing in self.role_assignments.values():
                if (
                    existing.principal_id == principal_id
                    and existing.role == role
                    and existing.tenant_id == tenant_id
                ):
                    return replace(existing)
            assignment = RoleAssignment(
                id=str(uuid.uuid4()), principal_id=principal_id, role=role, tenant_id=tenant_id
            )
            self.role_assignments[assignment.id] = assignment
            self._persist_state()
            return replace(assignment)

    def remove_role_assignment(self, assignment_id: str) -> bool:
        with self._data_lock:
            removed = self.role_assignments.pop(assignment_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def get_role_assignment(self, assignment_id: str) -> Optional[RoleAssignment]:
        with self._data_lock:
            assignment = self.role_assignments.get(assignment_id)
            return replace(assignment) if assignment else None

    def list_role_assignments(self, principal_id: str) -> List[RoleAssignment]:
        with self._data_lock:
            return sorted(
                (replace(a) for a in self.role_assignments.values() if a.principal_id == principal_id),
                key=lambda a: a.created_at,
            )

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize(record: Any) -> dict:
        data = asdict(record)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Enum):
                data[key] = value.value
        return data

    @staticmethod
    def _deserialize(record_cls, data: dict):
        values = dict(data)
        for key in _DATETIME_FIELDS & values.keys():
            if values[key] is not None:
                values[key] = datetime.fromisoformat(values[key])
        if record_cls is MagicLinkToken:
            values["state"] = TokenState(values["state"])
        return record_cls(**values)

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "tenants": [self._serialize(t) for t in self.tenants.values()],
            "principals": [self._serialize(p) for p in self.principals.values()],
            "magic_links": [self._serialize(t) for t in self.magic_links.values()],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "role_assignments": [self._serialize(a) for a in self.role_assignments.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.tenants = {
            t["id"]: self._deserialize(Tenant, t) for t in data.get("tenants", [])
        }
        self.principals = {
            p["id"]: self._deserialize(Principal, p) for p in data.get("principals", [])
        }
        self.magic_links = {
            t["token_hash"]: self._deserialize(MagicLinkToken, t)
            for t in data.get("magic_links", [])
        }
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.role_assignments = {
            a["id"]: self._deserialize(RoleAssignment, a)
            for a in data.get("role_assignments", [])
        }
        self.logger.info(
            "memory_store_loaded",
            tenants=len(self.tenants),
            principals=len(self.principals),
            sessions=len(self.sessions),
        )
        return True
