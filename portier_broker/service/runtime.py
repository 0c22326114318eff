from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from portier_broker.config import Settings, get_settings, reset_settings_cache
from portier_broker.crypto import KeyGenerator
from portier_broker.logging import get_logger
from portier_broker.service.broker import AuthFlow
from portier_broker.service.discovery import DiscoveryResolver, HttpxFetcher
from portier_broker.service.email import EmailService, parse_smtp_server
from portier_broker.service.keys import KeyManager, load_static_keys
from portier_broker.service.rate_limit import RateLimiter
from portier_broker.service.sessions import AuthSessionManager
from portier_broker.storage.base import Store
from portier_broker.storage.memory import MemoryStore
from portier_broker.storage.redis_cache import RedisStore
from portier_broker.storage.sqlite import SqliteStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_store(settings: Settings) -> Store:
    kind = settings.store_kind
    if kind == "redis":
        return RedisStore(settings.redis_url)
    if kind == "sqlite":
        return SqliteStore(settings.sqlite_db)
    return MemoryStore()


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            store_type=self.settings.store_kind,
            test_mode=self.settings.test_mode,
        )
        try:
            self.store = build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=self.settings.store_kind,
                redis_url=_mask_url_password(self.settings.redis_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        static_keys = (
            load_static_keys(self.settings.keyfiles, self.settings.keytext)
            if self.settings.has_static_keys
            else None
        )
        self.keys = KeyManager(
            self.store,
            self.settings.signing_algs,
            generator=KeyGenerator(self.settings.generate_rsa_command),
            keys_ttl=self.settings.keys_ttl,
            token_ttl=self.settings.token_ttl,
            static_keys=static_keys,
        )
        self.limiter = RateLimiter(self.store, self.settings.rate_limit)
        self.fetcher = HttpxFetcher()
        self.resolver = DiscoveryResolver(
            self.store,
            self.fetcher,
            overrides=self.settings.build_domain_overrides(),
            cache_ttl=self.settings.cache_ttl,
        )
        self.sessions = AuthSessionManager(
            self.store, self.limiter, session_ttl=self.settings.session_ttl
        )
        smtp_host, smtp_port = parse_smtp_server(
            self.settings.smtp_server, self.settings.smtp_use_tls
        )
        self.email = EmailService(
            smtp_host=smtp_host,
            smtp_port=smtp_port,
            smtp_user=self.settings.smtp_username,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.from_address,
            from_name=self.settings.from_name,
            dev_mode=self.settings.test_mode,
        )
        self.flow = AuthFlow(
            public_url=self.settings.public_url,
            resolver=self.resolver,
            sessions=self.sessions,
            keys=self.keys,
            email=self.email,
            token_ttl=self.settings.token_ttl,
            allowed_origins=self.settings.allowed_origins,
            google_client_id=self.settings.google_client_id,
        )
        self.started = False

        logger.info(
            "runtime_initialized",
            store_type=self.settings.store_kind,
            signing_algs=[alg.value for alg in self.settings.signing_algs],
            static_keys=static_keys is not None,
            email_configured=self.email.is_configured,
            overrides=len(self.resolver.overrides),
        )

    async def start(self) -> None:
        """Prepare the store and load or generate signing keys."""
        if self.started:
            return
        if isinstance(self.store, SqliteStore):
            await self.store.initialize()
        await self.store.ping()
        await self.keys.start()
        self.started = True
        logger.info("runtime_started", key_state=self.keys.state.value)

    async def close(self) -> None:
        await self.keys.close()
        await self.fetcher.aclose()
        await self.store.close()
        self.started = False
        logger.info("runtime_closed")


runtime: Runtime | None = None
# Thread-safe singleton pattern using a lock
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    # Fast path: runtime already exists
    if runtime is not None:
        return runtime
    # Slow path: acquire lock and double-check before creating
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    Must be called outside a running event loop so that closing a started
    runtime completes, and its errors surface, before the new one is built.
    """
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.started:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(runtime.close())
            else:
                raise RuntimeError(
                    "reset_runtime_for_tests cannot close a runtime from inside a running loop"
                )

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
