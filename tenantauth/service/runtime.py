from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from tenantauth.config import Settings, get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.admission import AdmissionController, MemoryCounterStore
from tenantauth.service.audit import AuditRecorder
from tenantauth.service.auth import AuthService
from tenantauth.service.authorization import AuthorizationResolver
from tenantauth.service.clients import ClientRegistry
from tenantauth.service.clock import Clock, SystemClock
from tenantauth.service.keys import KeyProvider
from tenantauth.service.notifier import EmailNotifier, Notifier
from tenantauth.service.oauth import IdentityExchanger
from tenantauth.service.one_time import OneTimeSecretManager
from tenantauth.service.passwords import PasswordService
from tenantauth.service.refresh import RefreshLedger
from tenantauth.service.tokens import TokenService
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.redis_cache import RedisCounterStore
from tenantauth.storage.repository import Repository

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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Process-scoped wiring of every service around one repository."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[Repository] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
        oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.store = store if store is not None else MemoryStore()
        logger.info(
            "runtime_init_started",
            store_type=type(self.store).__name__,
            test_mode=self.settings.test_mode,
        )

        self.counter_store: Optional[RedisCounterStore] = None
        if self.settings.redis_url:
            try:
                counter_store = RedisCounterStore(self.settings.redis_url)
                counter_store.verify_connection()
                self.counter_store = counter_store
            except Exception as exc:
                # Admission must keep working without Redis
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limit counters are in-memory only for this process",
                )

        self.passwords = PasswordService(self.settings)
        self.keys = KeyProvider(self.settings)
        self.tokens = TokenService(self.settings, self.keys, self.clock)
        self.audit = AuditRecorder(self.store, self.clock)
        self.authz = AuthorizationResolver(self.store, self.audit)
        self.clients = ClientRegistry(self.store, self.passwords, self.clock)
        self.refresh = RefreshLedger(
            self.settings, self.store, self.tokens, self.authz, self.audit, self.clock
        )
        self.notifier = notifier or EmailNotifier.from_settings(self.settings)
        self.secrets = OneTimeSecretManager(
            self.settings, self.store, self.notifier, self.clock
        )
        self.admission = AdmissionController(
            self.settings,
            self.counter_store,
            fallback=MemoryCounterStore(),
            clock=self.clock,
        )
        self.oauth = IdentityExchanger(self.settings, transport=oauth_transport)
        self.auth = AuthService(
            self.store,
            passwords=self.passwords,
            tokens=self.tokens,
            refresh=self.refresh,
            secrets=self.secrets,
            authz=self.authz,
            clients=self.clients,
            admission=self.admission,
            audit=self.audit,
            oauth=self.oauth,
            notifier=self.notifier,
        )
        logger.info(
            "runtime_init_completed",
            redis_enabled=self.counter_store is not None,
            email_configured=getattr(self.notifier, "is_configured", None),
        )

    async def close(self) -> None:
        if self.counter_store is not None:
            await self.counter_store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Runtime) -> Runtime:
    """Install a pre-built runtime, e.g. one wired with test collaborators."""
    global runtime
    with _runtime_lock:
        runtime = instance
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton so the next get_runtime() rebuilds it."""
    global runtime
    with _runtime_lock:
        if runtime is not None and runtime.counter_store is not None:
            try:
                asyncio.run(runtime.close())
            except RuntimeError as exc:
                logger.warning("runtime_close_skipped", error=str(exc))
        runtime = None
        reset_settings_cache()
