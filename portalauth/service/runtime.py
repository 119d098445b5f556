from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import httpx
from redis.exceptions import RedisError

from portalauth.config import Settings, get_settings
from portalauth.logging import get_logger, mask_url_password
from portalauth.service.auth import AuthService, CredentialVerifier
from portalauth.service.reconcile import UserReconciler
from portalauth.service.sso import SSOClient
from portalauth.storage.errors import StoreUnavailable
from portalauth.storage.memory import MemoryStore
from portalauth.storage.models import utcnow
from portalauth.storage.postgres import PostgresStore
from portalauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class Runtime:
    """Explicit context holding the settings, store, cache and services.

    ``create_app`` builds one and attaches it to ``app.state.runtime``; route
    dependencies read it from there. Tests construct their own with injected
    stores or an IdP transport.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Any = None,
        cache: Any = None,
        sso_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        self.verifier = CredentialVerifier(self.store)
        self.auth = AuthService(self.store, self.cache, self.settings, verifier=self.verifier)
        self.sso = SSOClient(
            self.settings.sso_base_url,
            timeout=self.settings.sso_timeout_seconds,
            transport=sso_transport,
        )
        self.reconciler = UserReconciler(self.store)

        self._local_rate_limits: Dict[str, Tuple[float, datetime]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            sso_server=self.settings.sso_server,
        )

    def _build_store(self):
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                store = PostgresStore(self.settings.database_url)
        except StoreUnavailable as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=mask_url_password(self.settings.database_url),
                error=exc.message,
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a per-test event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except RedisError as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for session mirroring and login rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return None

    async def check_rate_limit(self, key: str, limit: int, window_seconds: int) -> bool:
        """Token-bucket rate limit, in Redis when available and in-process otherwise."""

        if limit <= 0:
            return True
        if window_seconds <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
            window_seconds = 60
        if self.cache:
            return await self.cache.check_rate_limit(key, limit, window_seconds)
        now = utcnow()
        refill_rate = float(limit) / float(window_seconds)
        async with self._local_rate_limit_lock:
            tokens, last_ts = self._local_rate_limits.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= 1
            if allowed:
                tokens -= 1
            self._local_rate_limits[key] = (tokens, now)
        return allowed

    def health(self) -> dict:
        status = {"store": "ok", "cache": "disabled"}
        verify_store = getattr(self.store, "verify_connection", None)
        if verify_store is not None:
            try:
                verify_store()
            except StoreUnavailable as exc:
                logger.warning("health_store_unavailable", error=exc.message)
                status["store"] = "unavailable"
        if self.cache is not None:
            try:
                self.cache.verify_connection()
                status["cache"] = "ok"
            except RedisError as exc:
                logger.warning("health_cache_unavailable", error=str(exc))
                status["cache"] = "unavailable"
        return status

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            close_store()
        logger.info("runtime_closed")

