"""
Fire-and-forget notification port.

The engine hands events to whatever dispatcher the host application
installs. Dispatchers never call back into the engine, and a failing
dispatcher never fails the write that triggered it.
"""

from typing import Any, Protocol

import structlog

logger = structlog.get_logger()


class NotificationDispatcher(Protocol):
    def dispatch(self, event: str, payload: dict[str, Any]) -> None:
        ...


class LoggingDispatcher:
    """Default dispatcher: just records the event."""

    def dispatch(self, event: str, payload: dict[str, Any]) -> None:
        logger.info("notification", notification_event=event, **payload)


_dispatcher: NotificationDispatcher = LoggingDispatcher()


def set_dispatcher(dispatcher: NotificationDispatcher) -> None:
    global _dispatcher
    _dispatcher = dispatcher


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher


def notify(event: str, **payload: Any) -> None:
    try:
        _dispatcher.dispatch(event, payload)
    except Exception:
        logger.exception("notification_dispatch_failed", notification_event=event)
