from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from psycopg import errors
from starlette.responses import Response

from authgate.api.cookies import apply_session_cookies
from authgate.logging import get_logger
from authgate.service.auth import IssuedSession
from authgate.storage.errors import ConstraintViolation, StoreUnavailable
from authgate.storage.models import Session, User, utcnow
from authgate.storage.postgres import PostgresStore


class DummyPool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        self.closed = True


def _store(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unused"
    store.logger = get_logger("test")
    store.pool = DummyPool(conn)
    return store


def _session_row(**overrides):
    now = utcnow()
    row = {
        "id": "sess-1",
        "user_id": "user-1",
        "created_at": now,
        "expires_at": now + timedelta(days=7),
        "access_expires_at": now + timedelta(minutes=15),
        "remember_me": False,
        "user_agent": "pytest",
        "ip_addr": "127.0.0.1",
    }
    row.update(overrides)
    return row


def test_duplicate_email_maps_to_constraint_violation():
    conn = MagicMock()
    conn.execute.side_effect = errors.UniqueViolation()

    with pytest.raises(ConstraintViolation) as exc_info:
        _store(conn).create_user("ada@example.com", "Ada", "hash")

    assert exc_info.value.field == "email"


def test_create_user_writes_user_and_credential_in_one_connection():
    conn = MagicMock()

    user = _store(conn).create_user("Ada@Example.com", "Ada", "hash", "argon2id")

    assert user.email == "ada@example.com"
    statements = [call.args[0] for call in conn.execute.call_args_list]
    assert len(statements) == 2
    assert "INSERT INTO app_user" in statements[0]
    assert "INSERT INTO user_auth_credential" in statements[1]


def test_extend_session_is_a_single_guarded_update():
    row = _session_row()
    conn = MagicMock()
    conn.execute.return_value.fetchone.return_value = row
    now = utcnow()

    session = _store(conn).extend_session("sess-1", now + timedelta(minutes=15), now=now)

    sql, params = conn.execute.call_args.args
    assert "LEAST" in sql and "RETURNING" in sql
    assert params[1] == "sess-1"
    assert session.id == "sess-1"
    assert session.access_expires_at == row["access_expires_at"]


def test_extend_session_returns_none_when_row_gone():
    conn = MagicMock()
    conn.execute.return_value.fetchone.return_value = None

    assert _store(conn).extend_session("sess-1", utcnow(), now=utcnow()) is None


def test_revoke_session_reports_rowcount():
    conn = MagicMock()
    conn.execute.return_value.rowcount = 1
    assert _store(conn).revoke_session("sess-1") is True

    conn.execute.return_value.rowcount = 0
    assert _store(conn).revoke_session("sess-1") is False


def test_get_password_record():
    conn = MagicMock()
    conn.execute.return_value.fetchone.return_value = {
        "password_hash": "$argon2id$...",
        "password_algo": "argon2id",
    }

    assert _store(conn).get_password_record("user-1") == ("$argon2id$...", "argon2id")


def test_missing_user_on_session_insert():
    conn = MagicMock()
    conn.execute.side_effect = errors.ForeignKeyViolation()
    row = _session_row()

    with pytest.raises(ConstraintViolation):
        _store(conn).create_session(Session(**row))


def test_verify_connection_raises_store_unavailable():
    conn = MagicMock()
    conn.execute.side_effect = errors.OperationalError("connection refused")

    with pytest.raises(StoreUnavailable):
        _store(conn).verify_connection()


def test_close_closes_pool():
    store = _store(MagicMock())

    store.close()

    assert store.pool.closed is True


def test_session_timestamps_are_utc_for_cookie_expiry(settings):
    # a server TimeZone other than UTC comes back as a non-UTC tzinfo
    berlin = timezone(timedelta(hours=2))
    row = _session_row(
        created_at=datetime(2030, 1, 1, 14, 0, tzinfo=berlin),
        expires_at=datetime(2030, 1, 8, 14, 0, tzinfo=berlin),
        access_expires_at=datetime(2030, 1, 1, 14, 15, tzinfo=berlin),
    )

    session = PostgresStore._row_to_session(row)

    assert session.expires_at.tzinfo is timezone.utc
    assert session.expires_at == row["expires_at"]

    issued = IssuedSession(
        user=User.new(email="ada@example.com", name="Ada"),
        session=session,
        session_cookie="sess-1.signature",
        access_token="access-token",
    )
    response = Response()
    apply_session_cookies(response, issued, settings)

    cookies = response.headers.getlist("set-cookie")
    assert any("expires=Tue, 08 Jan 2030 12:00:00 GMT" in c for c in cookies)
    assert any("expires=Tue, 01 Jan 2030 12:15:00 GMT" in c for c in cookies)


def test_naive_timestamps_are_read_as_utc():
    row = _session_row(expires_at=datetime(2030, 1, 8, 12, 0))

    session = PostgresStore._row_to_session(row)

    assert session.expires_at == datetime(2030, 1, 8, 12, 0, tzinfo=timezone.utc)
