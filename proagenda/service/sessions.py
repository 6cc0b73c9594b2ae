from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from proagenda.config import Settings
from proagenda.logging import get_logger
from proagenda.service.errors import InvalidRefreshError, UnauthenticatedError
from proagenda.storage.common import AuthStore
from proagenda.storage.models import Session
from proagenda.storage.redis_cache import Cache

logger = get_logger(__name__)


@dataclass(frozen=True)
class CredentialPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class SessionManager:
    """Mints HS256 access/refresh credentials and rotates refresh credentials.

    Access credentials are self-verifying: ``verify_access`` checks the
    signature, claims and a revoked-session denylist without touching the
    store. Refresh credentials are tied to the session row through their
    ``jti``; a rotation is a compare-and-swap on that column, so of several
    concurrent refreshes with the same credential exactly one wins.
    """

    def __init__(self, store: AuthStore, cache: Cache, settings: Settings) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self._state_lock = threading.Lock()
        # session_id -> unix time after which the entry can be dropped
        self._revoked_sessions: Dict[str, float] = {}
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # JWT encoding
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # Only HS256 is accepted; anything else is an algorithm confusion attempt
        if not isinstance(header, dict):
            return None
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def _issue_pair(self, session: Session, now: datetime) -> CredentialPair:
        access_exp = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        base_claims = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": session.principal_id,
            "sid": session.id,
            "tenant_id": session.tenant_id,
            "gen": session.generation,
            "iat": int(now.timestamp()),
        }
        access_token = self._encode_jwt(
            {
                **base_claims,
                "token_type": "access",
                "jti": str(uuid.uuid4()),
                "exp": int(access_exp.timestamp()),
            }
        )
        refresh_token = self._encode_jwt(
            {
                **base_claims,
                "token_type": "refresh",
                "jti": session.refresh_jti,
                "exp": int(session.refresh_expires_at.timestamp()),
            }
        )
        return CredentialPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=session.refresh_expires_at,
        )

    # lifecycle
    def create_session(
        self,
        tenant_id: str,
        principal_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Tuple[Session, CredentialPair]:
        now = self._now()
        session = self.store.create_session(
            Session.new(
                principal_id,
                tenant_id,
                refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
                now=now,
            )
        )
        logger.info(
            "session_created",
            session_id=session.id,
            principal_id=principal_id,
            tenant_id=tenant_id,
        )
        return session, self._issue_pair(session, now)

    async def refresh(self, refresh_token: str) -> Tuple[Session, CredentialPair]:
        """Rotate a refresh credential; the presented one is dead afterwards."""
        payload = self._decode_jwt(refresh_token)
        if not payload or payload.get("token_type") != "refresh":
            raise InvalidRefreshError()
        jti = payload.get("jti")
        session_id = payload.get("sid")
        if not jti or not session_id:
            raise InvalidRefreshError()
        session = self.store.get_session(session_id)
        now = self._now()
        if not session or session.is_revoked:
            raise InvalidRefreshError()
        if session.refresh_expires_at <= now:
            raise InvalidRefreshError("refresh token expired")
        if payload.get("sub") != session.principal_id or payload.get("tenant_id") != session.tenant_id:
            raise InvalidRefreshError()

        rotated = self.store.rotate_session_refresh(
            session_id,
            expected_jti=jti,
            new_jti=str(uuid.uuid4()),
            refresh_expires_at=now + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
            now=now,
        )
        if rotated is None:
            await self._handle_failed_rotation(session_id, jti, now)
            raise InvalidRefreshError()
        logger.info("session_refreshed", session_id=rotated.id, generation=rotated.generation)
        return rotated, self._issue_pair(rotated, now)

    async def _handle_failed_rotation(self, session_id: str, jti: str, now: datetime) -> None:
        current = self.store.get_session(session_id)
        if current is None or current.is_revoked:
            return
        grace = timedelta(seconds=self.settings.refresh_reuse_grace_seconds)
        if (
            current.previous_refresh_jti == jti
            and current.rotated_at is not None
            and now - current.rotated_at <= grace
        ):
            # Lost a race against a concurrent refresh of the same credential
            logger.info("refresh_rotation_race", session_id=session_id)
            return
        logger.warning(
            "refresh_token_reuse_detected",
            session_id=session_id,
            principal_id=current.principal_id,
            generation=current.generation,
        )
        await self.revoke(session_id)

    async def revoke(self, session_id: str) -> bool:
        """Invalidate both credentials of a session; idempotent."""
        revoked = self.store.revoke_session(session_id, self._now())
        await self._denylist(session_id)
        if revoked:
            logger.info("session_revoked", session_id=session_id)
        return revoked

    async def revoke_principal_sessions(self, principal_id: str) -> int:
        session_ids = self.store.revoke_principal_sessions(principal_id, self._now())
        for session_id in session_ids:
            await self._denylist(session_id)
        logger.info(
            "principal_sessions_revoked", principal_id=principal_id, count=len(session_ids)
        )
        return len(session_ids)

    # revocation denylist
    def _access_ttl_seconds(self) -> int:
        return int(self.settings.access_token_ttl_minutes * 60 + self._clock_skew_leeway.total_seconds())

    async def _denylist(self, session_id: str) -> None:
        ttl = self._access_ttl_seconds()
        until = self._now().timestamp() + ttl
        with self._state_lock:
            self._revoked_sessions[session_id] = until
            self._prune_denylist()
        if self.cache:
            try:
                await self.cache.mark_session_revoked(session_id, ttl)
            except Exception as exc:
                logger.warning("cache_session_denylist_failed", session_id=session_id, error=str(exc))

    def _prune_denylist(self) -> None:
        now_ts = self._now().timestamp()
        stale = [sid for sid, until in self._revoked_sessions.items() if until <= now_ts]
        for sid in stale:
            self._revoked_sessions.pop(sid, None)

    async def _is_session_revoked(self, session_id: str) -> bool:
        with self._state_lock:
            until = self._revoked_sessions.get(session_id)
        if until is not None and until > self._now().timestamp():
            return True
        if self.cache:
            try:
                return await self.cache.is_session_revoked(session_id)
            except Exception as exc:
                logger.warning("cache_session_denylist_check_failed", session_id=session_id, error=str(exc))
        return False

    async def verify_access(self, access_token: str) -> dict[str, Any]:
        """Validate an access credential without a store round-trip."""
        payload = self._decode_jwt(access_token)
        if not payload or payload.get("token_type") != "access":
            raise UnauthenticatedError("invalid or expired access token")
        session_id = payload.get("sid")
        if not session_id or not payload.get("sub") or not payload.get("tenant_id"):
            raise UnauthenticatedError("invalid or expired access token")
        if await self._is_session_revoked(session_id):
            raise UnauthenticatedError("session revoked")
        return payload
