"""
Connectivity monitor.

Single source of truth for "can we reach the server". Two inputs feed one
state machine:

- platform signals (OS/network-manager online/offline events), taken as a hint
- a periodic reachability probe against the health endpoint, which is
  authoritative: when its result disagrees with the current state, the state
  flips

Subscribers only see transitions, never probe noise.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .clock import Clock, SystemClock

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL_SECONDS = 30.0

Probe = Callable[[], Awaitable[bool]]
ConnectivityListener = Callable[["ConnectivityState"], Any]


class TransitionSource(Enum):
    INITIAL = "initial"
    PLATFORM = "platform"
    PROBE = "probe"


@dataclass(frozen=True)
class ConnectivityState:
    """Online/offline state and when it last changed."""

    is_online: bool
    last_transition: datetime
    source: TransitionSource = TransitionSource.INITIAL


class ConnectivityMonitor:
    """Tracks online/offline state from platform signals and a periodic probe.

    Listeners are called with the new state on every transition. A listener
    returning an awaitable is scheduled as a task on the running loop.

    Example:
        >>> monitor = ConnectivityMonitor(probe=transport.probe)
        >>> unsubscribe = monitor.subscribe(lambda s: print(s.is_online))
        >>> await monitor.start()
        >>> monitor.get_online_status()
        True
        >>> await monitor.stop()
    """

    def __init__(
        self,
        probe: Probe,
        clock: Clock | None = None,
        interval_seconds: float = DEFAULT_PROBE_INTERVAL_SECONDS,
        initial_online: bool = True,
    ) -> None:
        """Initialize the monitor.

        Args:
            probe: Async callable returning True when the server is reachable
            clock: Time source for transitions and the probe interval
            interval_seconds: Seconds between probes
            initial_online: Platform hint used until the first signal or probe
        """
        if interval_seconds <= 0:
            raise ValueError(f"interval_seconds must be > 0, got {interval_seconds}")

        self._probe = probe
        self._clock = clock or SystemClock()
        self.interval_seconds = interval_seconds

        self._state = ConnectivityState(
            is_online=initial_online,
            last_transition=self._clock.now(),
            source=TransitionSource.INITIAL,
        )
        self._listeners: list[ConnectivityListener] = []
        self._listener_tasks: set[asyncio.Task[Any]] = set()

        self._running = False
        self._probe_task: asyncio.Task[None] | None = None

        # Stats
        self._total_probes = 0
        self._failed_probes = 0
        self._transitions = 0
        self._last_probe_at: datetime | None = None
        self._last_probe_result: bool | None = None

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._running

    def get_online_status(self) -> bool:
        """Current state. Never waits for a probe."""
        return self._state.is_online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        """Register a transition listener.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def report_platform_signal(self, is_online: bool) -> None:
        """Feed an online/offline event from the platform."""
        self._apply(is_online, TransitionSource.PLATFORM)

    async def check_now(self) -> bool:
        """Probe immediately and reconcile the state with the result.

        Returns:
            True if the server is reachable
        """
        reachable = await self._run_probe()
        self._apply(reachable, TransitionSource.PROBE)
        return reachable

    async def start(self) -> None:
        """Start the background probe loop."""
        if self._running:
            return

        self._running = True
        self._probe_task = asyncio.create_task(self._probe_loop())
        logger.info(
            "ConnectivityMonitor started (interval=%.0fs, online=%s)",
            self.interval_seconds,
            self._state.is_online,
        )

    async def stop(self) -> None:
        """Stop the probe loop and cancel pending listener tasks."""
        self._running = False

        if self._probe_task:
            self._probe_task.cancel()
            try:
                await self._probe_task
            except asyncio.CancelledError:
                pass
            self._probe_task = None

        for task in list(self._listener_tasks):
            task.cancel()
        self._listener_tasks.clear()

        logger.info("ConnectivityMonitor stopped")

    def stats(self) -> dict[str, Any]:
        return {
            "online": self._state.is_online,
            "last_transition": self._state.last_transition.isoformat(),
            "last_source": self._state.source.value,
            "transitions": self._transitions,
            "total_probes": self._total_probes,
            "failed_probes": self._failed_probes,
            "last_probe_at": self._last_probe_at.isoformat() if self._last_probe_at else None,
            "last_probe_result": self._last_probe_result,
        }

    async def _probe_loop(self) -> None:
        await self.check_now()

        while self._running:
            await self._clock.sleep(self.interval_seconds)
            if self._running:
                await self.check_now()

    async def _run_probe(self) -> bool:
        self._total_probes += 1
        self._last_probe_at = self._clock.now()
        try:
            reachable = bool(await self._probe())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("Reachability probe failed: %s", e)
            reachable = False

        if not reachable:
            self._failed_probes += 1
        self._last_probe_result = reachable
        return reachable

    def _apply(self, is_online: bool, source: TransitionSource) -> None:
        previous = self._state
        if previous.is_online == is_online:
            return

        # Transitions never go back in time, even if the clock does.
        timestamp = max(self._clock.now(), previous.last_transition)
        self._state = ConnectivityState(is_online=is_online, last_transition=timestamp, source=source)
        self._transitions += 1

        extra = {"online": is_online, "source": source.value, "transition": self._transitions}
        if is_online:
            logger.info("Connectivity: ONLINE (source=%s)", source.value, extra=extra)
        else:
            logger.warning("Connectivity: OFFLINE (source=%s)", source.value, extra=extra)

        self._notify(self._state)

    def _notify(self, state: ConnectivityState) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(state)
            except Exception as e:
                logger.error("Connectivity listener error: %s", e)
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task[Any]) -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Connectivity listener error: %s", error)
