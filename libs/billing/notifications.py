"""User-visible notifications raised by the billing flow."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, List, Literal

from .errors import BillingError

logger = logging.getLogger(__name__)

NotificationLevel = Literal["success", "error", "info"]


@dataclass(frozen=True)
class Notification:
    level: NotificationLevel
    title: str
    message: str


class NotificationCenter:
    """Collects notifications and forwards them to subscribed listeners."""

    def __init__(self) -> None:
        self._history: List[Notification] = []
        self._listeners: List[Callable[[Notification], None]] = []

    @property
    def history(self) -> List[Notification]:
        return list(self._history)

    def subscribe(self, listener: Callable[[Notification], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, level: NotificationLevel, title: str, message: str) -> Notification:
        notification = Notification(level=level, title=title, message=message)
        self._history.append(notification)
        for listener in list(self._listeners):
            listener(notification)
        return notification

    def success(self, title: str, message: str) -> Notification:
        return self.notify("success", title, message)

    def info(self, title: str, message: str) -> Notification:
        return self.notify("info", title, message)

    def error(self, title: str, message: str) -> Notification:
        return self.notify("error", title, message)


@dataclass
class ErrorCapture:
    error: BillingError | None = field(default=None)

    @property
    def failed(self) -> bool:
        return self.error is not None


@asynccontextmanager
async def surface_errors(notifier: NotificationCenter, title: str) -> AsyncIterator[ErrorCapture]:
    """Turn a :class:`BillingError` raised in the block into an error notification.

    The error is recorded on the yielded capture instead of propagating.
    """

    capture = ErrorCapture()
    try:
        yield capture
    except BillingError as exc:
        logger.info("%s: %s", title, exc.user_message)
        capture.error = exc
        notifier.error(title, exc.user_message)


__all__ = ["ErrorCapture", "Notification", "NotificationCenter", "surface_errors"]
