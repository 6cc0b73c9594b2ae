import uuid
from datetime import datetime, timedelta, timezone

import pytest

from proagenda.storage.models import TokenState
from proagenda.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class FakeCursor:
    def __init__(self, rows, rowcount=None):
        self._rows = rows
        self.rowcount = len(rows) if rowcount is None else rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, rows):
        self.rows = rows
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.executed.append((" ".join(sql.split()), params))
        return FakeCursor(self.rows)


class FakePool:
    def __init__(self, rows=None):
        self.conn = FakeConnection(rows or [])

    def connection(self):
        return self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    return store


NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_non_uuid_identifiers_never_reach_the_database():
    store = _store(DummyPool())
    assert store.get_tenant("acme") is None
    assert store.set_tenant_active("not-a-uuid", False) is None
    assert store.get_principal("nope") is None
    assert store.get_session("nope") is None
    assert store.rotate_session_refresh("nope", "a", "b", NOW, NOW) is None
    assert store.revoke_session("unknown-session", NOW) is False
    assert store.remove_role_assignment("missing") is False
    assert store.get_role_assignment("missing") is None
    assert store.list_role_assignments("missing") == []


def test_consume_is_a_single_conditional_update():
    token_hash = "a" * 64
    row = {
        "token_hash": token_hash,
        "tenant_id": uuid.uuid4(),
        "email": "user@example.com",
        "created_at": NOW - timedelta(minutes=1),
        "expires_at": NOW + timedelta(minutes=29),
        "state": "consumed",
        "consumed_at": NOW,
    }
    pool = FakePool([row])
    token = _store(pool).consume_magic_link(token_hash, NOW)

    assert token.state == TokenState.CONSUMED
    assert token.consumed_at == NOW
    (sql, params), = pool.conn.executed
    assert sql.startswith("UPDATE magic_link_token")
    assert "WHERE token_hash = %s AND state = 'pending' AND expires_at > %s" in sql
    assert sql.endswith("RETURNING *")
    assert params == (NOW, token_hash, NOW)


def test_consume_loser_gets_none():
    pool = FakePool([])
    assert _store(pool).consume_magic_link("b" * 64, NOW) is None


def test_mark_delivered_is_limited_to_pending_tokens():
    pool = FakePool([{"token_hash": "c" * 64}])
    assert _store(pool).mark_magic_link_delivered("c" * 64, NOW) is True
    (sql, params), = pool.conn.executed
    assert sql.startswith("UPDATE magic_link_token SET delivered_at = %s")
    assert "WHERE token_hash = %s AND state = 'pending'" in sql
    assert params == (NOW, "c" * 64)

    assert _store(FakePool([])).mark_magic_link_delivered("d" * 64, NOW) is False


def test_rotation_compares_expected_jti():
    session_id = str(uuid.uuid4())
    pool = FakePool([])
    result = _store(pool).rotate_session_refresh(session_id, "old", "new", NOW, NOW)

    assert result is None
    (sql, params), = pool.conn.executed
    assert "SET previous_refresh_jti = refresh_jti" in sql
    assert "generation = generation + 1" in sql
    assert "WHERE id = %s AND refresh_jti = %s AND revoked_at IS NULL" in sql
    assert params == ("new", NOW, NOW, session_id, "old")


def test_rotation_maps_returned_row():
    session_id = uuid.uuid4()
    principal_id = uuid.uuid4()
    row = {
        "id": session_id,
        "principal_id": principal_id,
        "tenant_id": uuid.uuid4(),
        "created_at": NOW - timedelta(hours=1),
        "refresh_expires_at": NOW + timedelta(days=7),
        "refresh_jti": "new",
        "previous_refresh_jti": "old",
        "rotated_at": NOW,
        "generation": 3,
        "revoked_at": None,
        "user_agent": "pytest",
        "ip_addr": "10.0.0.1",
    }
    session = _store(FakePool([row])).rotate_session_refresh(
        str(session_id), "old", "new", row["refresh_expires_at"], NOW
    )
    assert session.id == str(session_id)
    assert session.principal_id == str(principal_id)
    assert session.generation == 3
    assert session.previous_refresh_jti == "old"
    assert not session.is_revoked


@pytest.mark.parametrize("rows, expected", [([{"id": uuid.uuid4()}], True), ([], False)])
def test_revoke_only_reports_first_transition(rows, expected):
    pool = FakePool(rows)
    assert _store(pool).revoke_session(str(uuid.uuid4()), NOW) is expected
    (sql, _), = pool.conn.executed
    assert "WHERE id = %s AND revoked_at IS NULL" in sql


def test_purge_reports_rowcount():
    pool = FakePool([{}, {}, {}])
    assert _store(pool).purge_expired_magic_links(NOW) == 3
    (sql, params), = pool.conn.executed
    assert sql == "DELETE FROM magic_link_token WHERE expires_at <= %s"
    assert params == (NOW,)
