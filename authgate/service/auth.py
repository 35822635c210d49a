from __future__ import annotations

import asyncio
import contextlib
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Dict, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from authgate.config import Settings
from authgate.logging import get_logger
from authgate.service.credentials import CredentialVerifier
from authgate.service.errors import (
    AuthenticationError,
    ConflictError,
    RateLimitedError,
    SessionExpiredError,
    ValidationError,
)
from authgate.service.rate_limit import RateLimiter
from authgate.service.tokens import CookieSigner
from authgate.service.validation import (
    ValidationResult,
    normalize_email,
    normalize_text,
    validate_login,
    validate_registration,
)
from authgate.storage.errors import ConstraintViolation
from authgate.storage.models import Session, User
from authgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
EMAIL_TAKEN = "Email already registered"
TOO_MANY_ATTEMPTS = "Too many attempts. Please try again later."
SESSION_EXPIRED = "Session expired"

# Local denylist entries are pruned once this many are held.
_DENYLIST_PRUNE_THRESHOLD = 10_000


class AuthStore(Protocol):
    def create_user(
        self, email: str, name: str, password_hash: str, password_algo: str = "argon2id"
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def extend_session(
        self, session_id: str, access_expires_at: datetime, *, now: datetime
    ) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    session_id: str


@dataclass
class IssuedSession:
    """A live session plus the signed cookie values that carry it."""

    user: User
    session: Session
    session_cookie: str
    access_token: str


@dataclass
class SessionSignal:
    valid: bool
    renewed: Optional[IssuedSession] = None
    clear_cookies: bool = False


class _KeyedLocks:
    """asyncio locks keyed by string, dropped once no task holds or waits."""

    def __init__(self) -> None:
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)

    def __len__(self) -> int:
        return len(self._locks)


class AuthService:
    """Session lifecycle: register, login, refresh, logout and session reads.

    Sessions move NoSession -> Active -> Expired/Revoked. Expired and revoked
    ids are never reissued; a new login always mints a new id. Refresh and
    logout for one session id are serialized.
    """

    def __init__(
        self,
        store: AuthStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        verifier: Optional[CredentialVerifier] = None,
        login_limiter: Optional[RateLimiter] = None,
        ip_limiter: Optional[RateLimiter] = None,
        register_limiter: Optional[RateLimiter] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.verifier = verifier or CredentialVerifier(store)
        window = settings.login_rate_window_seconds
        self.login_limiter = login_limiter or RateLimiter(
            limit=settings.login_rate_limit, window_seconds=window, cache=cache
        )
        self.ip_limiter = ip_limiter or RateLimiter(
            limit=settings.login_ip_rate_limit, window_seconds=window, cache=cache
        )
        self.register_limiter = register_limiter or RateLimiter(
            limit=settings.register_rate_limit, window_seconds=window, cache=cache
        )
        self.signer = CookieSigner(settings.auth_secret, issuer=settings.app_url)
        self._clock = clock
        self._session_locks = _KeyedLocks()
        # session id -> end of the access window it was revoked in
        self._denylist: Dict[str, datetime] = {}
        self._denylist_lock = threading.Lock()

    def _now(self) -> datetime:
        """Timezone-aware UTC helper to avoid naive datetime usage."""

        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_ttl_minutes)

    def refresh_horizon(self, remember_me: bool) -> timedelta:
        days = self.settings.remember_me_ttl_days if remember_me else self.settings.session_ttl_days
        return timedelta(days=days)

    # registration / login
    async def register(
        self,
        *,
        name: Optional[str],
        email: Optional[str],
        password: Optional[str],
        terms_accepted: Optional[bool],
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        replaces_session_id: Optional[str] = None,
    ) -> IssuedSession:
        self._raise_for(validate_registration(name, email, password, terms_accepted))
        assert name is not None and email is not None and password is not None
        await self._admit(self.register_limiter, f"register:{ip_addr or 'unknown'}")
        pwd_hash, algo = await asyncio.to_thread(self.verifier.hash_password, password)
        try:
            user = self.store.create_user(
                normalize_email(email), normalize_text(name).strip(), pwd_hash, algo
            )
        except ConstraintViolation as exc:
            logger.info("registration_conflict", field=exc.field)
            raise ConflictError(EMAIL_TAKEN, detail={"fields": {"email": EMAIL_TAKEN}}) from exc
        logger.info("user_registered", user_id=user.id)
        return await self._start_session(
            user,
            remember_me=False,
            ip_addr=ip_addr,
            user_agent=user_agent,
            replaces_session_id=replaces_session_id,
        )

    async def login(
        self,
        email: Optional[str],
        password: Optional[str],
        *,
        remember_me: bool = False,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
        replaces_session_id: Optional[str] = None,
    ) -> IssuedSession:
        self._raise_for(validate_login(email, password))
        assert email is not None and password is not None
        normalized = normalize_email(email)
        outcome = "throttled"
        user_id: Optional[str] = None
        try:
            if ip_addr:
                await self._admit(self.ip_limiter, f"login-ip:{ip_addr}")
            await self._admit(self.login_limiter, f"login:{normalized}")
            outcome = "failed"
            user_id = await asyncio.to_thread(self.verifier.verify, normalized, password)
            user = self.store.get_user(user_id) if user_id else None
            if user is None:
                raise AuthenticationError(INVALID_CREDENTIALS)
            issued = await self._start_session(
                user,
                remember_me=remember_me,
                ip_addr=ip_addr,
                user_agent=user_agent,
                replaces_session_id=replaces_session_id,
            )
            outcome = "success"
            return issued
        except asyncio.CancelledError:
            outcome = "cancelled"
            raise
        finally:
            logger.info("login_attempt", outcome=outcome, user_id=user_id)

    async def _admit(self, limiter: RateLimiter, key: str) -> None:
        admission = await limiter.attempt(key)
        if not admission.admitted:
            raise RateLimitedError(TOO_MANY_ATTEMPTS, retry_after=admission.retry_after)

    @staticmethod
    def _raise_for(result: ValidationResult) -> None:
        if not result.ok:
            raise ValidationError("Please correct the highlighted fields", fields=result.errors)

    async def _start_session(
        self,
        user: User,
        *,
        remember_me: bool,
        ip_addr: Optional[str],
        user_agent: Optional[str],
        replaces_session_id: Optional[str],
    ) -> IssuedSession:
        if replaces_session_id:
            await self.logout(replaces_session_id)
        now = self._now()
        session = Session.new(
            user.id,
            access_ttl=self.access_ttl,
            horizon=self.refresh_horizon(remember_me),
            remember_me=remember_me,
            user_agent=user_agent,
            ip_addr=ip_addr,
            now=now,
        )
        # no await between persisting and returning, so a cancelled request
        # cannot leave a half-issued session
        self.store.create_session(session)
        logger.info(
            "session_created", user_id=user.id, session_id=session.id, remember_me=remember_me
        )
        return self._issue(user, session, now)

    def _issue(self, user: User, session: Session, now: datetime) -> IssuedSession:
        return IssuedSession(
            user=user,
            session=session,
            session_cookie=self.signer.sign_session_id(session.id),
            access_token=self.signer.issue_access_token(session, now=now),
        )

    # refresh / logout
    async def refresh(self, session_id: str) -> IssuedSession:
        """Renew the access window, never past the refresh horizon."""
        async with self._session_locks.hold(session_id):
            now = self._now()
            session = self.store.get_session(session_id)
            if session is None:
                raise SessionExpiredError(SESSION_EXPIRED)
            if session.is_expired(now):
                self.store.revoke_session(session_id)
                logger.info("session_expired", user_id=session.user_id, session_id=session.id)
                raise SessionExpiredError(SESSION_EXPIRED)
            updated = self.store.extend_session(session_id, now + self.access_ttl, now=now)
            if updated is None:
                raise SessionExpiredError(SESSION_EXPIRED)
            user = self.store.get_user(updated.user_id)
            if user is None:
                self.store.revoke_session(session_id)
                raise SessionExpiredError(SESSION_EXPIRED)
            return self._issue(user, updated, now)

    async def logout(self, session_id: Optional[str]) -> bool:
        """Revoke a session. Absent or unknown ids are not an error."""
        if not session_id:
            return False
        async with self._session_locks.hold(session_id):
            removed = self.store.revoke_session(session_id)
            await self._denylist_session(session_id)
        logger.info("session_revoked", session_id=session_id, removed=removed)
        return removed

    async def _denylist_session(self, session_id: str) -> None:
        now = self._now()
        until = now + self.access_ttl
        with self._denylist_lock:
            if len(self._denylist) >= _DENYLIST_PRUNE_THRESHOLD:
                for sid in [s for s, exp in self._denylist.items() if exp <= now]:
                    del self._denylist[sid]
            self._denylist[session_id] = until
        if self.cache:
            try:
                await self.cache.denylist_session(
                    session_id, int(self.access_ttl.total_seconds())
                )
            except RedisError as exc:
                # revocation in the store still stands
                logger.warning("session_denylist_cache_failed", error=str(exc))

    async def _is_denylisted(self, session_id: str) -> bool:
        with self._denylist_lock:
            until = self._denylist.get(session_id)
        if until is not None and until > self._now():
            return True
        if self.cache:
            try:
                return await self.cache.is_session_denylisted(session_id)
            except RedisError as exc:
                # fail closed; callers fall back to the store
                logger.warning("session_denylist_check_failed", error=str(exc))
                return True
        return False

    # reads
    async def get_session(self, session_id: Optional[str]) -> Optional[Tuple[User, Session]]:
        """Return the live session and its user, or None. Never raises for bad ids."""
        if not session_id:
            return None
        session = self.store.get_session(session_id)
        if session is None:
            return None
        if session.is_expired(self._now()):
            self.store.revoke_session(session_id)
            return None
        user = self.store.get_user(session.user_id)
        if user is None:
            return None
        return user, session

    def session_id_from_cookie(self, value: Optional[str]) -> Optional[str]:
        return self.signer.unsign_session_id(value)

    async def check_access_token(self, token: Optional[str]) -> Optional[AuthContext]:
        payload = self.signer.decode_access_token(token, now=self._now())
        if payload is None:
            return None
        if await self._is_denylisted(payload["sid"]):
            return None
        return AuthContext(user_id=str(payload.get("sub")), session_id=payload["sid"])

    async def resolve_signal(
        self, session_cookie: Optional[str], access_cookie: Optional[str]
    ) -> SessionSignal:
        """Decide whether the request carries a valid session.

        A signed, unexpired access cookie for the same session is trusted
        without a store read. Otherwise the session is refreshed from the
        store, which renews the access cookie.
        """
        session_id = self.session_id_from_cookie(session_cookie)
        if session_id is None:
            return SessionSignal(valid=False, clear_cookies=bool(session_cookie or access_cookie))
        ctx = await self.check_access_token(access_cookie)
        if ctx is not None and ctx.session_id == session_id:
            return SessionSignal(valid=True)
        try:
            issued = await self.refresh(session_id)
        except SessionExpiredError:
            return SessionSignal(valid=False, clear_cookies=True)
        return SessionSignal(valid=True, renewed=issued)

    # maintenance
    def sweep_expired(self) -> int:
        removed = self.store.delete_expired_sessions(self._now())
        if removed:
            logger.info("expired_sessions_swept", count=removed)
        return removed


__all__ = [
    "AuthService",
    "AuthStore",
    "AuthContext",
    "IssuedSession",
    "SessionSignal",
    "INVALID_CREDENTIALS",
    "EMAIL_TAKEN",
]
