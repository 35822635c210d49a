from datetime import timedelta
from pathlib import Path

import pytest

from authgate.storage.errors import ConstraintViolation
from authgate.storage.memory import MemoryStore
from authgate.storage.models import Session, utcnow


def _session(user_id: str, *, now=None, horizon=timedelta(days=7)) -> Session:
    return Session.new(
        user_id, access_ttl=timedelta(minutes=15), horizon=horizon, now=now or utcnow()
    )


def test_users_and_credentials_created_together():
    store = MemoryStore()

    user = store.create_user("Ada@Example.com", "Ada", "hash", "argon2id")

    assert store.get_user(user.id) == user
    assert store.get_user_by_email("ada@EXAMPLE.com") == user
    assert store.get_password_record(user.id) == ("hash", "argon2id")


def test_duplicate_email_is_a_constraint_violation():
    store = MemoryStore()
    store.create_user("ada@example.com", "Ada", "hash")

    with pytest.raises(ConstraintViolation) as exc_info:
        store.create_user("ADA@example.com", "Other Ada", "hash")

    assert exc_info.value.field == "email"
    assert len(store.users) == 1


def test_session_requires_existing_user():
    store = MemoryStore()

    with pytest.raises(ConstraintViolation):
        store.create_session(_session("missing-user"))


def test_extend_session_caps_at_horizon():
    store = MemoryStore()
    user = store.create_user("ada@example.com", "Ada", "hash")
    now = utcnow()
    session = store.create_session(_session(user.id, now=now, horizon=timedelta(minutes=20)))

    extended = store.extend_session(session.id, now + timedelta(hours=1), now=now)

    assert extended.access_expires_at == session.expires_at
    assert store.get_session(session.id) == extended


def test_extend_session_refuses_gone_or_expired():
    store = MemoryStore()
    user = store.create_user("ada@example.com", "Ada", "hash")
    now = utcnow()
    session = store.create_session(_session(user.id, now=now))

    assert store.extend_session("unknown", now, now=now) is None
    assert store.extend_session(session.id, now, now=session.expires_at) is None


def test_revoke_reports_whether_anything_was_removed():
    store = MemoryStore()
    user = store.create_user("ada@example.com", "Ada", "hash")
    session = store.create_session(_session(user.id))

    assert store.revoke_session(session.id) is True
    assert store.revoke_session(session.id) is False
    assert store.get_session(session.id) is None


def test_delete_expired_sessions():
    store = MemoryStore()
    user = store.create_user("ada@example.com", "Ada", "hash")
    now = utcnow()
    short = store.create_session(_session(user.id, now=now, horizon=timedelta(minutes=1)))
    long = store.create_session(_session(user.id, now=now))

    removed = store.delete_expired_sessions(now + timedelta(minutes=1))

    assert removed == 1
    assert store.get_session(short.id) is None
    assert store.get_session(long.id) is not None


def test_state_survives_restart(tmp_path: Path):
    store = MemoryStore(fs_root=tmp_path)
    user = store.create_user("ada@example.com", "Ada", "hash")
    session = store.create_session(_session(user.id))

    reloaded = MemoryStore(fs_root=tmp_path)

    assert reloaded.get_user_by_email("ada@example.com").id == user.id
    assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
    assert reloaded.get_session(session.id) == session
    assert (tmp_path / "state" / "memory_store.json").exists()
