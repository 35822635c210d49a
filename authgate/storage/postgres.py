from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authgate.logging import get_logger
from authgate.storage.errors import ConstraintViolation, StoreUnavailable
from authgate.storage.models import Session, User, utcnow

# Tables owned by this service, in drop order.
AUTH_TABLES = ("auth_session", "user_auth_credential", "app_user")

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        name TEXT NOT NULL,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_lower_idx ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        access_expires_at TIMESTAMPTZ NOT NULL,
        remember_me BOOLEAN NOT NULL DEFAULT FALSE,
        user_agent TEXT,
        ip_addr TEXT,
        CHECK (expires_at > created_at)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class PostgresStore:
    """Postgres-backed user, credential and session store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create auth tables and indexes that are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            email_verified=bool(row.get("email_verified", False)),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        # psycopg attaches the server TimeZone; sessions compare and render in UTC
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=_as_utc(row["created_at"]),
            expires_at=_as_utc(row["expires_at"]),
            access_expires_at=_as_utc(row["access_expires_at"]),
            remember_me=bool(row.get("remember_me", False)),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    # users
    def create_user(
        self, email: str, name: str, password_hash: str, password_algo: str = "argon2id"
    ) -> User:
        user = User.new(email=email.lower(), name=name)
        try:
            # one transaction: a user never exists without its credential
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, email_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        user.name,
                        user.email_verified,
                        user.created_at,
                        user.updated_at,
                    ),
                )
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user.id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", field="email")
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s", (email.lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, access_expires_at, remember_me, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at,
                        session.expires_at,
                        session.access_expires_at,
                        session.remember_me,
                        session.user_agent,
                        session.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session id collision", field="id")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def extend_session(
        self, session_id: str, access_expires_at: datetime, *, now: datetime
    ) -> Optional[Session]:
        # single statement so a concurrent DELETE cannot be overwritten
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET access_expires_at = LEAST(%s, expires_at)
                WHERE id = %s AND expires_at > %s
                RETURNING *
                """,
                (access_expires_at, session_id, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE expires_at <= %s", (now,))
            return result.rowcount

    def verify_connection(self) -> bool:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except errors.OperationalError as exc:
            self.logger.error("postgres_unreachable", error=str(exc))
            raise StoreUnavailable("database unreachable") from exc
        return True

    def close(self) -> None:
        self.pool.close()


__all__ = ["PostgresStore", "AUTH_TABLES"]
