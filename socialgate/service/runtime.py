from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from socialgate.config import get_settings, reset_settings_cache
from socialgate.logging import get_logger
from socialgate.service.auth import AuthorizationGate
from socialgate.service.fanout import (
    HttpPushDispatcher,
    LocalPushDispatcher,
    PushDispatcher,
    StatusFanout,
)
from socialgate.service.sessions import SessionRegistry
from socialgate.service.social import SocialService
from socialgate.service.tokens import TokenAuthority
from socialgate.storage.memory import MemoryStore
from socialgate.storage.redis_cache import RedisSessionCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
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


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            test_mode=self.settings.test_mode,
            profile_table=self.settings.profile_table,
        )

        self.tokens = TokenAuthority(
            self.settings.token_secret,
            default_ttl_hours=self.settings.token_ttl_hours,
        )
        try:
            self.store = MemoryStore(self.tokens, fs_root=self.settings.shared_fs_root)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisSessionCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisSessionCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                    prefix=self.settings.session_cache_prefix,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.settings.redis_url and not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured for the session mirror but unreachable; "
                    "start Redis or set ALLOW_REDIS_FALLBACK_DEV=true for process-local sessions."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Sessions are process-local only.",
            )

        self.gate = AuthorizationGate(
            self.store,
            self.tokens,
            table=self.settings.profile_table,
            token_ttl_hours=self.settings.token_ttl_hours,
        )
        self.sessions = SessionRegistry(
            self.gate,
            cache=self.cache,
            token_ttl_hours=self.settings.token_ttl_hours,
        )
        self.fanout = StatusFanout(
            self.store,
            table=self.settings.profile_table,
            max_concurrency=self.settings.fanout_max_concurrency,
            deadline_seconds=self.settings.fanout_deadline_seconds,
            max_retries=self.settings.merge_max_retries,
        )
        self.dispatcher: PushDispatcher
        if self.settings.push_service_url:
            self.dispatcher = HttpPushDispatcher(
                self.settings.push_service_url,
                timeout=self.settings.push_timeout_seconds,
            )
        else:
            self.dispatcher = LocalPushDispatcher(self.fanout)
        self.social = SocialService(
            self.sessions,
            self.gate,
            self.dispatcher,
            max_retries=self.settings.merge_max_retries,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=self.cache is not None,
            push_mode="http" if self.settings.push_service_url else "local",
            fanout_max_concurrency=self.settings.fanout_max_concurrency,
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: an unlocked fast path for an existing
    runtime, then a locked re-check before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            runtime.cache.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
