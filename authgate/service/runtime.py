from __future__ import annotations

import asyncio
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from authgate.config import AppEnv, Settings
from authgate.logging import get_logger
from authgate.service.auth import AuthService
from authgate.service.broadcast import LogoutCoordinator
from authgate.service.route_guard import RouteGuardConfig
from authgate.storage.memory import MemoryStore
from authgate.storage.postgres import PostgresStore
from authgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Process-wide service handles, built once per app and closed on shutdown."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: Union[MemoryStore, PostgresStore, None] = None,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.settings = settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
            app_env=settings.app_env.value,
        )
        self.store = store if store is not None else self._build_store(settings)
        self.cache = cache if cache is not None else self._build_cache(settings)
        self.coordinator = LogoutCoordinator()
        self.guard = RouteGuardConfig.from_paths(
            settings.protected_routes,
            settings.auth_routes,
            login_path=settings.login_path,
            app_home_path=settings.app_home_path,
        )
        self.auth = AuthService(self.store, self.cache, settings)
        self._sweep_task: Optional[asyncio.Task] = None
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
        )

    @staticmethod
    def _build_store(settings: Settings) -> Union[MemoryStore, PostgresStore]:
        store_type = "memory" if settings.use_memory_store else "postgres"
        try:
            store = (
                MemoryStore()
                if settings.use_memory_store
                else PostgresStore(settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    @staticmethod
    def _build_cache(settings: Settings) -> Optional[RedisCache]:
        if not settings.redis_url:
            if settings.app_env == AppEnv.PRODUCTION and not settings.test_mode:
                raise RuntimeError(
                    "REDIS_URL is required in production so rate limits and logout "
                    "revocation are shared across workers."
                )
            logger.warning(
                "redis_disabled_fallback",
                error="redis_url_missing",
                message="Rate limits and the session denylist are per-process only.",
            )
            return None
        try:
            cache = RedisCache(settings.redis_url)
            cache.verify_connection()
            return cache
        except (RedisError, OSError) as exc:
            if not settings.test_mode and not settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from exc
            mode = "TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(settings.redis_url),
                error=str(exc),
                mode=mode,
            )
            return None

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        interval = self.settings.session_sweep_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(self.auth.sweep_expired)
            except Exception as exc:
                # keep sweeping; the next pass retries
                logger.error("session_sweep_failed", error_type=type(exc).__name__, error=str(exc))

    async def health(self) -> dict:
        checks: dict = {}
        try:
            await asyncio.to_thread(self.store.verify_connection)
            checks["store"] = "ok"
        except Exception as exc:
            logger.error("health_store_failed", error_type=type(exc).__name__)
            checks["store"] = "unavailable"
        if self.cache is not None:
            try:
                await self.cache.ping()
                checks["cache"] = "ok"
            except (RedisError, OSError):
                checks["cache"] = "unavailable"
        else:
            checks["cache"] = "disabled"
        return checks

    async def aclose(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                logger.debug("session_sweep_stopped")
            self._sweep_task = None
        self.coordinator.close()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()
        logger.info("runtime_closed")


__all__ = ["Runtime"]
