from contextlib import contextmanager
from datetime import timedelta

import psycopg
import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from warden.storage.errors import ConstraintViolation, StorageUnavailable
from warden.storage.models import TokenKind, utcnow
from warden.storage.postgres import PostgresStore


class FakeCursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConn:
    """Replays queued results and records every statement it receives."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else FakeCursor()
        if isinstance(result, Exception):
            raise result
        return result


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn or FakeConn()
        self.error = error

    @contextmanager
    def connection(self):
        if self.error:
            raise self.error
        yield self.conn


def _store(conn=None, error=None):
    return PostgresStore("postgresql://unused", pool=FakePool(conn, error), ensure_schema=False)


def test_schema_created_when_requested():
    conn = FakeConn()
    PostgresStore("postgresql://unused", pool=FakePool(conn))
    created = [sql for sql, _ in conn.statements]
    assert any("CREATE TABLE IF NOT EXISTS app_user" in sql for sql in created)
    assert any("CREATE TABLE IF NOT EXISTS email_verification_token" in sql for sql in created)
    assert any("CREATE TABLE IF NOT EXISTS password_reset_token" in sql for sql in created)


@pytest.mark.parametrize(
    "error", [psycopg.OperationalError("connection refused"), PoolTimeout("pool exhausted")]
)
def test_connectivity_errors_become_storage_unavailable(error):
    store = _store(error=error)
    with pytest.raises(StorageUnavailable):
        store.get_user("user-1")


def test_consume_refresh_token_is_a_conditional_delete():
    future = utcnow() + timedelta(days=1)
    conn = FakeConn([FakeCursor([{"expires_at": future}]), FakeCursor([])])
    store = _store(conn)
    assert store.consume_refresh_token("user-1", "digest") is True
    assert store.consume_refresh_token("user-1", "digest") is False
    sql, params = conn.statements[0]
    assert sql.startswith("DELETE FROM refresh_token")
    assert "RETURNING expires_at" in sql
    assert params == ("user-1", "digest")


def test_consume_expired_refresh_token_returns_false():
    past = utcnow() - timedelta(seconds=1)
    store = _store(FakeConn([FakeCursor([{"expires_at": past}])]))
    assert store.consume_refresh_token("user-1", "digest") is False


def test_create_user_unique_violation_maps_to_constraint():
    conn = FakeConn([errors.UniqueViolation("duplicate key")])
    with pytest.raises(ConstraintViolation):
        _store(conn).create_user("a@x.com", "alice", "hash", "argon2id")


def test_issue_token_locks_owner_then_retires_siblings():
    now = utcnow()
    row = {
        "id": "00000000-0000-0000-0000-000000000001",
        "token": "raw",
        "user_id": "user-1",
        "expires_at": now + timedelta(hours=1),
        "created_at": now,
        "used_at": None,
    }
    conn = FakeConn([FakeCursor([{"id": "user-1"}]), FakeCursor(rowcount=2), FakeCursor([row])])
    token = _store(conn).issue_single_use_token(
        TokenKind.PASSWORD_RESET, "user-1", "raw", now + timedelta(hours=1), now
    )
    assert token.kind == TokenKind.PASSWORD_RESET
    assert token.token == "raw"
    sqls = [sql for sql, _ in conn.statements]
    assert "FOR UPDATE" in sqls[0]
    assert sqls[1].startswith("UPDATE password_reset_token SET used_at")
    assert "used_at IS NULL" in sqls[1]
    assert sqls[2].startswith("INSERT INTO password_reset_token")


def test_issue_token_for_missing_user():
    conn = FakeConn([FakeCursor([])])
    with pytest.raises(ConstraintViolation):
        _store(conn).issue_single_use_token(
            TokenKind.EMAIL_VERIFICATION, "ghost", "raw", utcnow(), utcnow()
        )


def test_complete_password_reset_stops_when_token_already_claimed():
    conn = FakeConn([FakeCursor([])])
    assert not _store(conn).complete_password_reset("tok", "user-1", "h", "argon2id")
    assert len(conn.statements) == 1


def test_complete_password_reset_deletes_sessions_before_password():
    conn = FakeConn([FakeCursor([{"id": "tok"}])])
    assert _store(conn).complete_password_reset("tok", "user-1", "h", "argon2id")
    sqls = [sql for sql, _ in conn.statements]
    assert sqls[1].startswith("DELETE FROM refresh_token")
    assert sqls[2].startswith("INSERT INTO user_auth_credential")


def test_replace_password_revokes_first():
    conn = FakeConn([FakeCursor([{"id": "user-1"}]), FakeCursor(rowcount=3)])
    assert _store(conn).replace_password("user-1", "h", "argon2id") == 3
    sqls = [sql for sql, _ in conn.statements]
    assert "FOR UPDATE" in sqls[0]
    assert sqls[1].startswith("DELETE FROM refresh_token")
    assert sqls[2].startswith("INSERT INTO user_auth_credential")


def test_claim_rejects_expired_tokens_in_sql():
    used_at = utcnow()
    conn = FakeConn([FakeCursor([])])
    assert not _store(conn).complete_email_verification("tok", "user-1", used_at)
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE email_verification_token SET used_at")
    assert "used_at IS NULL AND expires_at > %s" in sql
    assert params == (used_at, "tok", "user-1", used_at)


def test_count_expired_tokens_is_read_only():
    conn = FakeConn([FakeCursor([{"n": 4}]), FakeCursor([{"n": 2}])])
    store = _store(conn)
    now = utcnow()
    assert store.count_expired_tokens(TokenKind.PASSWORD_RESET, now) == 4
    assert store.count_expired_refresh_tokens(now) == 2
    sqls = [sql for sql, _ in conn.statements]
    assert sqls[0].startswith("SELECT count(*) AS n FROM password_reset_token")
    assert sqls[1].startswith("SELECT count(*) AS n FROM refresh_token")
    assert not any(sql.startswith("DELETE") for sql in sqls)
