from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from learnauth.logging import get_logger

logger = get_logger(__name__)

AUTH_REGISTERED = "auth.registered"
AUTH_LOGIN = "auth.login"
AUTH_LOGOUT = "auth.logout"
AUTH_PASSWORD_RESET = "auth.password_reset"
AUTH_EMAIL_VERIFIED = "auth.email_verified"

EVENT_SOURCE = "auth-service"
EVENT_VERSION = "1.0"


@dataclass
class AuthEvent:
    type: str
    account_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = EVENT_SOURCE
    version: str = EVENT_VERSION


EventHandler = Callable[[AuthEvent], None]


class AuthEventPublisher:
    """In-process fan-out of auth events to registered handlers.

    Handlers run synchronously on the publishing thread. A failing handler is
    logged and skipped; it never fails the request that produced the event.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        with self._lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: AuthEvent) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event.type, []))
        logger.info(
            "auth_event_published",
            event_type=event.type,
            event_id=event.id,
            account_id=event.account_id,
            handlers=len(handlers),
        )
        for handler in handlers:
            try:
                handler(event)
            except Exception as exc:
                logger.error(
                    "auth_event_handler_failed",
                    event_type=event.type,
                    event_id=event.id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
