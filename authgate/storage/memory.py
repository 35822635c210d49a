from __future__ import annotations

import json
import threading
from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from authgate.logging import get_logger
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Session, User, UserAuthCredential


class MemoryStore:
    """In-process store for development and tests.

    When ``fs_root`` is given, users, credentials and sessions are written to
    ``<fs_root>/state/memory_store.json`` after every mutation and reloaded on
    construction.
    """

    def __init__(self, fs_root: str | Path | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        self.sessions: Dict[str, Session] = {}
        # email (lower-cased) -> user id
        self._email_index: Dict[str, str] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # user / auth
    def create_user(
        self, email: str, name: str, password_hash: str, password_algo: str = "argon2id"
    ) -> User:
        """Create a user and its credential in one step."""
        key = email.lower()
        with self._data_lock:
            if key in self._email_index:
                raise ConstraintViolation("email already exists", field="email")
            user = User.new(email=key, name=name)
            self.users[user.id] = user
            self._email_index[key] = user.id
            self.credentials[user.id] = UserAuthCredential(
                user_id=user.id, password_hash=password_hash, password_algo=password_algo
            )
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(email.lower())
            return self.users.get(user_id) if user_id else None

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(user_id)
            return (cred.password_hash, cred.password_algo) if cred else None

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session id collision", field="id")
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def extend_session(
        self, session_id: str, access_expires_at: datetime, *, now: datetime
    ) -> Optional[Session]:
        """Replace the record with one whose access window ends later.

        Returns None when the session is gone or past its horizon.
        """
        with self._data_lock:
            current = self.sessions.get(session_id)
            if current is None or current.is_expired(now):
                return None
            updated = current.with_access_until(access_expires_at)
            self.sessions[session_id] = updated
            self._persist_state()
            return updated

    def revoke_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def verify_connection(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _dump(record) -> dict:
        return {
            key: value.isoformat() if isinstance(value, datetime) else value
            for key, value in asdict(record).items()
        }

    @staticmethod
    def _parse_times(raw: dict, *keys: str) -> dict:
        return {**raw, **{k: datetime.fromisoformat(raw[k]) for k in keys if raw.get(k)}}

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._dump(u) for u in self.users.values()],
            "credentials": [self._dump(c) for c in self.credentials.values()],
            "sessions": [self._dump(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: User(**self._parse_times(u, "created_at", "updated_at"))
            for u in data.get("users", [])
        }
        self._email_index = {u.email: u.id for u in self.users.values()}
        self.credentials = {
            c["user_id"]: UserAuthCredential(**self._parse_times(c, "created_at"))
            for c in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: Session(
                **self._parse_times(s, "created_at", "expires_at", "access_expires_at")
            )
            for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True


__all__ = ["MemoryStore"]
