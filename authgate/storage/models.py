from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    """256 bits from the OS CSPRNG, URL-safe."""
    return secrets.token_urlsafe(32)


@dataclass
class User:
    id: str
    email: str
    name: str
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, name: str) -> "User":
        now = utcnow()
        return cls(id=str(uuid.uuid4()), email=email, name=name, created_at=now, updated_at=now)


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class Session:
    """A persisted login.

    ``expires_at`` is the refresh horizon and never moves. ``access_expires_at``
    ends the short-lived access window; refresh moves it forward but never
    past ``expires_at``.
    """

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    access_expires_at: datetime
    remember_me: bool = False
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        access_ttl: timedelta,
        horizon: timedelta,
        remember_me: bool = False,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        expires_at = now + horizon
        return cls(
            id=new_session_id(),
            user_id=user_id,
            created_at=now,
            expires_at=expires_at,
            access_expires_at=min(now + access_ttl, expires_at),
            remember_me=remember_me,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def with_access_until(self, access_expires_at: datetime) -> "Session":
        return replace(self, access_expires_at=min(access_expires_at, self.expires_at))
