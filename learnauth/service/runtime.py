from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from learnauth.config import Settings, get_settings, reset_settings_cache
from learnauth.logging import get_logger
from learnauth.service.auth import AuthService, AuthStore
from learnauth.service.delivery import TokenDelivery
from learnauth.service.events import AuthEventPublisher
from learnauth.storage.memory import MemoryStore
from learnauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with '***' for logging.

    Example: postgresql://app:secret@db:5432/auth -> postgresql://app:***@db:5432/auth
    """
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


def build_store(settings: Settings) -> AuthStore:
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        if settings.use_memory_store:
            store: AuthStore = MemoryStore()
        else:
            store = PostgresStore(
                settings.database_url,
                min_size=settings.database_pool_min_size,
                max_size=settings.database_pool_max_size,
                connect_timeout=settings.database_connect_timeout_seconds,
                statement_timeout_ms=settings.database_statement_timeout_ms,
            )
    except Exception as exc:
        logger.error(
            "store_init_failed",
            store_type=store_type,
            database_url=_mask_url_password(settings.database_url),
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("store_initialized", store_type=store_type)
    return store


def build_auth_service(
    settings: Optional[Settings] = None,
    *,
    store: Optional[AuthStore] = None,
    delivery: Optional[TokenDelivery] = None,
    events: Optional[AuthEventPublisher] = None,
) -> AuthService:
    """Wire an AuthService from settings, building the store unless one is given."""
    settings = settings or get_settings()
    return AuthService(
        store or build_store(settings),
        settings,
        delivery=delivery,
        events=events,
    )


auth_service: AuthService | None = None
_service_lock = threading.Lock()


def get_auth_service() -> AuthService:
    """Process-wide AuthService, created on first use (double-checked lock)."""
    global auth_service
    if auth_service is not None:
        return auth_service
    with _service_lock:
        if auth_service is None:
            auth_service = build_auth_service()
        return auth_service


def reset_auth_service() -> None:
    """Drop the cached service and settings so the next call re-reads the environment."""
    global auth_service
    with _service_lock:
        if auth_service is not None and isinstance(auth_service.store, PostgresStore):
            auth_service.store.close()
        auth_service = None
        reset_settings_cache()
