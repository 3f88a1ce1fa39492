from __future__ import annotations

import asyncio
import time
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from junicore.config import Settings, get_settings
from junicore.logging import get_logger
from junicore.service.auth import AuthService
from junicore.service.events import CHECKR, STRIPE, EventDispatcher, VerifierBinding
from junicore.service.notifications import LogNotifier, Notifier
from junicore.service.passwords import CredentialStore
from junicore.service.single_use import SingleUseTokenService
from junicore.service.tokens import TokenCodec
from junicore.service.webhooks import CheckrSignatureVerifier, StripeSignatureVerifier
from junicore.storage.memory import MemoryStore
from junicore.storage.postgres import PostgresStore
from junicore.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds and owns the store, cache and services for one application."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore | PostgresStore] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if store is not None:
            self.store = store
        else:
            store_type = "memory" if self.settings.use_memory_store else "postgres"
            try:
                self.store = (
                    MemoryStore(fs_root=self.settings.shared_fs_root)
                    if self.settings.use_memory_store
                    else PostgresStore(self.settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type=store_type,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = self._build_cache()

        self.credentials = CredentialStore(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_kib,
        )
        self.codec = TokenCodec(self.settings)
        self.notifier: Notifier = notifier or LogNotifier()
        self.single_use = SingleUseTokenService(
            self.store, self.settings, self.credentials, notifier=self.notifier
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            credentials=self.credentials,
            codec=self.codec,
            single_use=self.single_use,
        )
        self.dispatcher = EventDispatcher(
            self.store,
            {
                STRIPE: VerifierBinding(
                    StripeSignatureVerifier(self.settings.stripe_signature_tolerance_seconds),
                    self.settings.stripe_webhook_secret,
                ),
                CHECKR: VerifierBinding(
                    CheckrSignatureVerifier(), self.settings.checkr_webhook_secret
                ),
            },
            queue_size=self.settings.webhook_queue_size,
            worker_count=self.settings.webhook_worker_count,
        )
        self._local_rate_limits: Dict[str, Tuple[float, float]] = {}
        self._local_rate_limit_lock = asyncio.Lock()

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            stripe_configured=bool(self.settings.stripe_webhook_secret),
            checkr_configured=bool(self.settings.checkr_webhook_secret),
        )

    def _build_cache(self) -> Optional[RedisCache | SyncRedisCache]:
        cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client under test to avoid event loop binding
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
            except Exception as exc:
                redis_error = exc
                cache = None

        if cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are per-process.",
                mode=fallback_mode,
            )
        return cache

    async def close(self) -> None:
        if self.dispatcher.running:
            await self.dispatcher.stop()
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("redis_close_failed", error=str(exc))
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()
        logger.info("runtime_closed")


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Token-bucket rate limit that still holds when Redis is unavailable.

    Args:
        runtime: Runtime instance with cache
        key: Rate limit key
        limit: Bucket capacity, i.e. requests allowed per window
        window_seconds: Time to refill an empty bucket
        return_remaining: If True, return (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            key=key,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = time.monotonic()
    refill_rate = float(limit) / float(window_seconds)
    async with runtime._local_rate_limit_lock:
        tokens, last_ts = runtime._local_rate_limits.get(key, (float(limit), now))
        elapsed = max(0.0, now - last_ts)
        tokens = min(float(limit), tokens + elapsed * refill_rate)
        allowed = tokens >= cost
        if allowed:
            tokens -= cost
        runtime._local_rate_limits[key] = (tokens, now)
        reset_seconds = int((cost - tokens) / refill_rate) if not allowed else 0
        remaining = int(tokens)
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed
