"""
Notification sink.

Holds the set of active user-facing notifications and publishes the full
list to subscribers on every change. Rendering is left to the presentation
layer.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_AUTO_HIDE_MS = 5000

NotificationListener = Callable[[list["Notification"]], None]


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"


@dataclass(frozen=True)
class Notification:
    """A single user-facing message."""

    id: str
    severity: Severity
    title: str
    message: str
    created_at: datetime
    dismissible: bool = True
    auto_hide_ms: int | None = None

    @property
    def expires_at(self) -> datetime | None:
        if self.auto_hide_ms is None:
            return None
        return self.created_at + timedelta(milliseconds=self.auto_hide_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "title": self.title,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
            "dismissible": self.dismissible,
            "auto_hide_ms": self.auto_hide_ms,
        }


class NotificationCenter:
    """Active notification set with auto-hide timers.

    Auto-hidden notifications are removed by a timer task when an event loop
    is running. ``active()`` also filters out anything past its auto-hide
    deadline, so the removal guarantee holds even if a timer could not be
    scheduled.

    Example:
        >>> center = NotificationCenter()
        >>> unsubscribe = center.subscribe(lambda items: render(items))
        >>> center.warning("Connection Problem", "Working offline")
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._notifications: list[Notification] = []
        self._listeners: list[NotificationListener] = []
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        """Register a listener; it is called immediately with the current list.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)
        listener(self.active())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def add(
        self,
        severity: Severity,
        title: str,
        message: str,
        *,
        dismissible: bool = True,
        auto_hide_ms: int | None = None,
        notification_id: str | None = None,
    ) -> str:
        """Add a notification and return its id.

        Reusing the id of an active notification replaces it.
        """
        if auto_hide_ms is not None and auto_hide_ms <= 0:
            raise ValueError(f"auto_hide_ms must be > 0, got {auto_hide_ms}")

        notification = Notification(
            id=notification_id or str(next(self._ids)),
            severity=severity,
            title=title,
            message=message,
            created_at=self._clock.now(),
            dismissible=dismissible,
            auto_hide_ms=auto_hide_ms,
        )
        timer = self._timers.pop(notification.id, None)
        if timer is not None:
            timer.cancel()
        self._notifications = [n for n in self._notifications if n.id != notification.id]
        self._notifications.append(notification)
        self._notify_listeners()

        if auto_hide_ms is not None:
            self._schedule_hide(notification)

        return notification.id

    def dismiss(self, notification_id: str) -> bool:
        """Remove a notification. Returns False if it was not active."""
        timer = self._timers.pop(notification_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

        before = len(self._notifications)
        self._notifications = [n for n in self._notifications if n.id != notification_id]
        if len(self._notifications) == before:
            return False

        self._notify_listeners()
        return True

    def clear_all(self) -> None:
        self._cancel_timers()
        self._notifications = []
        self._notify_listeners()

    def clear_by_severity(self, severity: Severity) -> None:
        for notification in self._notifications:
            if notification.severity is severity:
                timer = self._timers.pop(notification.id, None)
                if timer is not None:
                    timer.cancel()
        self._notifications = [n for n in self._notifications if n.severity is not severity]
        self._notify_listeners()

    def active(self) -> list[Notification]:
        """Current notifications, oldest first."""
        now = self._clock.now()
        return [
            n for n in self._notifications if n.expires_at is None or n.expires_at > now
        ]

    def by_severity(self, severity: Severity) -> list[Notification]:
        return [n for n in self.active() if n.severity is severity]

    # Convenience constructors

    def success(self, title: str, message: str, auto_hide_ms: int | None = DEFAULT_AUTO_HIDE_MS) -> str:
        return self.add(Severity.SUCCESS, title, message, auto_hide_ms=auto_hide_ms)

    def info(self, title: str, message: str, auto_hide_ms: int | None = DEFAULT_AUTO_HIDE_MS) -> str:
        return self.add(Severity.INFO, title, message, auto_hide_ms=auto_hide_ms)

    def warning(self, title: str, message: str, auto_hide_ms: int | None = None) -> str:
        return self.add(Severity.WARNING, title, message, auto_hide_ms=auto_hide_ms)

    def error(self, title: str, message: str, dismissible: bool = True) -> str:
        return self.add(Severity.ERROR, title, message, dismissible=dismissible)

    def close(self) -> None:
        """Cancel pending auto-hide timers."""
        self._cancel_timers()

    def _schedule_hide(self, notification: Notification) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; notification %s expires lazily", notification.id)
            return

        self._timers[notification.id] = loop.create_task(self._hide_later(notification))

    async def _hide_later(self, notification: Notification) -> None:
        await self._clock.sleep((notification.auto_hide_ms or 0) / 1000)
        self.dismiss(notification.id)

    def _cancel_timers(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    def _notify_listeners(self) -> None:
        snapshot = self.active()
        for listener in list(self._listeners):
            try:
                listener(list(snapshot))
            except Exception as e:
                logger.error("Notification listener error: %s", e)
