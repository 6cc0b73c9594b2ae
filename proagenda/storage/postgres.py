from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS tenant (
        id UUID PRIMARY KEY,
        slug TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS principal (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        tenant_id UUID REFERENCES tenant(id),
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS magic_link_token (
        token_hash TEXT PRIMARY KEY,
        tenant_id UUID NOT NULL REFERENCES tenant(id),
        email TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        state TEXT NOT NULL DEFAULT 'pending'
            CHECK (state IN ('pending', 'consumed', 'expired')),
        consumed_at TIMESTAMPTZ,
        delivered_at TIMESTAMPTZ
    )
    """,
    """
    ALTER TABLE magic_link_token ADD COLUMN IF NOT EXISTS delivered_at TIMESTAMPTZ
    """,
    """
    CREATE INDEX IF NOT EXISTS magic_link_token_lookup
        ON magic_link_token (tenant_id, email, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        principal_id UUID NOT NULL REFERENCES principal(id),
        tenant_id UUID NOT NULL REFERENCES tenant(id),
        created_at TIMESTAMPTZ NOT NULL,
        refresh_expires_at TIMESTAMPTZ NOT NULL,
        refresh_jti TEXT NOT NULL,
        previous_refresh_jti TEXT,
        rotated_at TIMESTAMPTZ,
        generation INTEGER NOT NULL DEFAULT 0,
        revoked_at TIMESTAMPTZ,
        user_agent TEXT,
        ip_addr INET
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_assignment (
        id UUID PRIMARY KEY,
        principal_id UUID NOT NULL REFERENCES principal(id),
        role TEXT NOT NULL,
        tenant_id UUID REFERENCES tenant(id),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS role_assignment_unique
        ON role_assignment (principal_id, role, COALESCE(tenant_id, '00000000-0000-0000-0000-000000000000'::uuid))
    """,
)


def _valid_uuid(value: Any) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store; conditional transitions are single UPDATE ... RETURNING statements."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # row mappers
    @staticmethod
    def _tenant_from_row(row: dict[str, Any]) -> Tenant:
        return Tenant(
            id=str(row["id"]),
            slug=row["slug"],
            name=row["name"],
            is_active=row["is_active"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _principal_from_row(row: dict[str, Any]) -> Principal:
        return Principal(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            tenant_id=str(row["tenant_id"]) if row.get("tenant_id") else None,
            email_verified=row.get("email_verified", False),
            is_active=row.get("is_active", True),
            created_at=row["created_at"],
        )

    @staticmethod
    def _token_from_row(row: dict[str, Any]) -> MagicLinkToken:
        return MagicLinkToken(
            token_hash=row["token_hash"],
            tenant_id=str(row["tenant_id"]),
            email=row["email"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            state=TokenState(row["state"]),
            consumed_at=row.get("consumed_at"),
            delivered_at=row.get("delivered_at"),
        )

    @staticmethod
    def _session_from_row(row: dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            tenant_id=str(row["tenant_id"]),
            created_at=row["created_at"],
            refresh_expires_at=row["refresh_expires_at"],
            refresh_jti=row["refresh_jti"],
            previous_refresh_jti=row.get("previous_refresh_jti"),
            rotated_at=row.get("rotated_at"),
            generation=row.get("generation", 0),
            revoked_at=row.get("revoked_at"),
            user_agent=row.get("user_agent"),
            ip_addr=normalize_ip(row.get("ip_addr")),
        )

    @staticmethod
    def _assignment_from_row(row: dict[str, Any]) -> RoleAssignment:
        return RoleAssignment(
            id=str(row["id"]),
            principal_id=str(row["principal_id"]),
            role=row["role"],
            tenant_id=str(row["tenant_id"]) if row.get("tenant_id") else None,
            created_at=row["created_at"],
        )

    # tenants
    def create_tenant(self, slug: str, name: str, *, is_active: bool = True) -> Tenant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO tenant (id, slug, name, is_active)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), normalize_slug(slug), name, is_active),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("tenant slug already exists", {"field": "slug"})
        return self._tenant_from_row(row)

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        if not _valid_uuid(tenant_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tenant WHERE id = %s", (tenant_id,)).fetchone()
        return self._tenant_from_row(row) if row else None

    def get_tenant_by_slug(self, slug: str) -> Optional[Tenant]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM tenant WHERE slug = %s", (normalize_slug(slug),)
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    def set_tenant_active(self, tenant_id: str, is_active: bool) -> Optional[Tenant]:
        if not _valid_uuid(tenant_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE tenant SET is_active = %s WHERE id = %s RETURNING *",
                (is_active, tenant_id),
            ).fetchone()
        return self._tenant_from_row(row) if row else None

    # principals
    def create_principal(
        self, email: str, *, name: Optional[str] = None, tenant_id: Optional[str] = None
    ) -> Principal:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO principal (id, email, name, tenant_id)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), email, name, tenant_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": tenant_id})
        return self._principal_from_row(row)

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        if not _valid_uuid(principal_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM principal WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM principal WHERE email = %s", (email,)).fetchone()
        return self._principal_from_row(row) if row else None

    def mark_email_verified(self, principal_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE principal SET email_verified = TRUE WHERE id = %s AND NOT email_verified",
                (principal_id,),
            )

    # magic-link tokens
    def save_magic_link(self, token: MagicLinkToken) -> MagicLinkToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO magic_link_token (token_hash, tenant_id, email, created_at, expires_at, state)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token_hash,
                        token.tenant_id,
                        token.email,
                        token.created_at,
                        token.expires_at,
                        token.state.value,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("magic link already exists", {"field": "token_hash"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("tenant does not exist", {"tenant_id": token.tenant_id})
        return token

    def get_magic_link(self, token_hash: str) -> Optional[MagicLinkToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM magic_link_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def latest_pending_magic_link(
        self, tenant_id: str, email: str, now: datetime
    ) -> Optional[MagicLinkToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM magic_link_token
                WHERE tenant_id = %s AND email = %s AND state = 'pending' AND expires_at > %s
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (tenant_id, email, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def consume_magic_link(self, token_hash: str, now: datetime) -> Optional[MagicLinkToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE magic_link_token
                SET state = 'consumed', consumed_at = %s
                WHERE token_hash = %s AND state = 'pending' AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def mark_magic_link_delivered(self, token_hash: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE magic_link_token SET delivered_at = %s
                WHERE token_hash = %s AND state = 'pending'
                RETURNING token_hash
                """,
                (now, token_hash),
            ).fetchone()
        return row is not None

    def expire_magic_link(self, token_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE magic_link_token SET state = 'expired'
                WHERE token_hash = %s AND state = 'pending'
                RETURNING token_hash
                """,
                (token_hash,),
            ).fetchone()
        return row is not None

    def purge_expired_magic_links(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM magic_link_token WHERE expires_at <= %s", (now,))
            return cur.rowcount or 0

    # sessions
    def create_session(self, session: Session) -> Session:
        ip_addr = normalize_ip(session.ip_addr)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, principal_id, tenant_id, created_at, refresh_expires_at, refresh_jti, generation, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.principal_id,
                        session.tenant_id,
                        session.created_at,
                        session.refresh_expires_at,
                        session.refresh_jti,
                        session.generation,
                        session.user_agent,
                        ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "session principal or tenant missing",
                {"principal_id": session.principal_id, "tenant_id": session.tenant_id},
            )
        session.ip_addr = ip_addr
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        if not _valid_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session_refresh(
        self,
        session_id: str,
        expected_jti: str,
        new_jti: str,
        refresh_expires_at: datetime,
        now: datetime,
    ) -> Optional[Session]:
        if not _valid_uuid(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET previous_refresh_jti = refresh_jti,
                    refresh_jti = %s,
                    generation = generation + 1,
                    rotated_at = %s,
                    refresh_expires_at = %s
                WHERE id = %s AND refresh_jti = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (new_jti, now, refresh_expires_at, session_id, expected_jti),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(self, session_id: str, now: datetime) -> bool:
        if not _valid_uuid(session_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, session_id),
            ).fetchone()
        return row is not None

    def revoke_principal_sessions(self, principal_id: str, now: datetime) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s
                WHERE principal_id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, principal_id),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    # role assignments
    def add_role_assignment(
        self, principal_id: str, role: str, tenant_id: Optional[str]
    ) -> RoleAssignment:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role_assignment (id, principal_id, role, tenant_id)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT DO NOTHING
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), principal_id, role, tenant_id),
                ).fetchone()
                if row is None:
                    row = conn.execute(
                        """
                        SELECT * FROM role_assignment
                        WHERE principal_id = %s AND role = %s AND tenant_id IS NOT DISTINCT FROM %s
                        """,
                        (principal_id, role, tenant_id),
                    ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "principal or tenant does not exist",
                {"principal_id": principal_id, "tenant_id": tenant_id},
            )
        return self._assignment_from_row(row)

    def remove_role_assignment(self, assignment_id: str) -> bool:
        if not _valid_uuid(assignment_id):
            return False
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM role_assignment WHERE id = %s RETURNING id", (assignment_id,)
            ).fetchone()
        return row is not None

    def get_role_assignment(self, assignment_id: str) -> Optional[RoleAssignment]:
        if not _valid_uuid(assignment_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role_assignment WHERE id = %s", (assignment_id,)
            ).fetchone()
        return self._assignment_from_row(row) if row else None

    def list_role_assignments(self, principal_id: str) -> List[RoleAssignment]:
        if not _valid_uuid(principal_id):
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM role_assignment WHERE principal_id = %s ORDER BY created_at",
                (principal_id,),
            ).fetchall()
        return [self._assignment_from_row(row) for row in rows]
