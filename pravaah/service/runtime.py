from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path
from typing import Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from pravaah.config import Settings, get_settings, reset_settings_cache
from pravaah.logging import get_logger
from pravaah.service.auth import AuthService
from pravaah.service.email import EmailService
from pravaah.service.file_store import FileStore
from pravaah.service.password_reset import PasswordResetService
from pravaah.service.passwords import PasswordHasher
from pravaah.service.profiles import ProfileService
from pravaah.service.tokens import TokenIssuer
from pravaah.storage.memory import MemoryStore
from pravaah.storage.postgres import PostgresStore
from pravaah.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password in a connection URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        password = parsed.password
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not password:
        return url
    host = parsed.hostname or ""
    if port:
        host = f"{host}:{port}"
    netloc = f"{parsed.username or ''}:***@{host}"
    return urlunparse(parsed._replace(netloc=netloc))


class LocalRateLimiter:
    """In-process token buckets, used when Redis is not available.

    Buckets live in this process only, so limits are per worker. At most
    ``max_keys`` buckets are held: once full, buckets that have refilled are
    dropped, then the oldest ones.
    """

    def __init__(self, clock=time.monotonic, max_keys: int = 10_000) -> None:
        # key -> (level, updated_at, refilled_at)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._max_keys = max(1, max_keys)

    def __len__(self) -> int:
        return len(self._buckets)

    def __contains__(self, key: str) -> bool:
        return key in self._buckets

    def _prune(self, now: float) -> None:
        refilled = [key for key, (_, _, full_at) in self._buckets.items() if full_at <= now]
        for key in refilled:
            del self._buckets[key]
        while len(self._buckets) >= self._max_keys:
            del self._buckets[next(iter(self._buckets))]

    def take(self, key: str, limit: int, window_seconds: int, cost: int = 1) -> Tuple[bool, int, int]:
        refill_per_second = limit / window_seconds
        with self._lock:
            now = self._clock()
            if key not in self._buckets and len(self._buckets) >= self._max_keys:
                self._prune(now)
            level, updated, _ = self._buckets.get(key, (float(limit), now, now))
            level = min(float(limit), level + max(0.0, now - updated) * refill_per_second)
            allowed = level >= cost
            if allowed:
                level -= cost
            self._buckets[key] = (level, now, now + (limit - level) / refill_per_second)
        retry_after = 0 if allowed else int((cost - level) / refill_per_second) + 1
        return allowed, int(level), retry_after


def _connect_cache(settings: Settings):
    """Return a verified Redis cache, or None when running without one.

    Without Redis the service only starts under TEST_MODE or
    ALLOW_REDIS_FALLBACK_DEV.
    """
    failure: Exception | None = None
    if settings.redis_url:
        # The sync client keeps tests free of cross-loop connections
        cache_cls = SyncRedisCache if settings.test_mode else RedisCache
        try:
            cache = cache_cls(settings.redis_url)
            cache.verify_connection()
            return cache
        except Exception as exc:
            failure = exc

    if not (settings.test_mode or settings.allow_redis_fallback_dev):
        raise RuntimeError(
            "Redis is required for rate limiting; start Redis or set "
            "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to use in-process limits."
        ) from failure
    logger.warning(
        "rate_limits_in_process",
        redis_url=_mask_url_password(settings.redis_url),
        reason=str(failure) if failure else "redis_url_missing",
        allowed_by="TEST_MODE" if settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
    )
    return None


class Runtime:
    """Wires settings, storage and services together for one process."""

    def __init__(self):
        self.settings = get_settings()
        backend = "memory" if self.settings.use_memory_store else "postgres"
        logger.info("runtime_starting", store_type=backend, test_mode=self.settings.test_mode)

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_unavailable",
                store_type=backend,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = _connect_cache(self.settings)
        self.local_limits = LocalRateLimiter()

        shared_root = Path(self.settings.shared_fs_root)
        self.media_root = shared_root / "media"
        self.upload_root = shared_root / "tmp"

        self.hasher = PasswordHasher(
            time_cost=self.settings.password_hash_time_cost,
            memory_cost=self.settings.password_hash_memory_cost,
        )
        self.tokens = TokenIssuer(self.settings)
        self.email = EmailService(
            smtp_host=self.settings.mail_host,
            smtp_port=self.settings.mail_port,
            smtp_user=self.settings.mail_user,
            smtp_password=self.settings.mail_password,
            smtp_use_ssl=self.settings.mail_use_ssl,
            from_name=self.settings.mail_from_name,
        )
        self.files = FileStore(
            media_root=str(self.media_root),
            public_base_url=self.settings.app_base_url,
            cloud_name=self.settings.cloudinary_cloud_name,
            api_key=self.settings.cloudinary_api_key,
            api_secret=self.settings.cloudinary_api_secret,
            folder=self.settings.cloudinary_folder,
            timeout=self.settings.upload_timeout_seconds,
        )
        self.auth = AuthService(self.store, self.tokens, self.hasher, self.files)
        self.password_reset = PasswordResetService(
            self.store,
            self.email,
            self.hasher,
            app_base_url=self.settings.app_base_url,
            reset_path=self.settings.password_reset_path,
            ttl_minutes=self.settings.reset_token_ttl_minutes,
        )
        self.profiles = ProfileService(self.store)

        logger.info(
            "runtime_ready",
            store_type=backend,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            remote_uploads=self.files.is_remote,
        )

    def close_cache(self) -> None:
        """Release the Redis connection outside of a running event loop."""
        if self.cache is None:
            return
        try:
            if isinstance(self.cache, SyncRedisCache):
                self.cache.client.close()
            else:
                asyncio.run(self.cache.close())
        except (RuntimeError, OSError) as exc:
            logger.debug("runtime_cache_close_failed", error=str(exc))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Return the process Runtime, building it on first use."""
    global runtime
    if runtime is None:
        with _runtime_lock:
            if runtime is None:
                runtime = Runtime()
    return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from a freshly read environment (TEST_MODE only)."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close_cache()
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> RateLimitResult:
    """Consume ``cost`` from the bucket named ``key``.

    ``limit`` tokens refill over ``window_seconds``; a ``limit`` of zero or less
    disables the check. With ``return_remaining`` the result is
    ``(allowed, remaining, retry_after_seconds)``.
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache is not None:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    outcome = runtime.local_limits.take(key, limit, window_seconds, cost)
    return outcome if return_remaining else outcome[0]
