"""Heartbeat / status reporter.

Keeps the server's view of this terminal current, independently of the
price and inventory traffic on the socket:

- on start, one registration upsert carrying a fresh snapshot
- every ``interval`` seconds, an online/offline status update
- on host visibility change, an immediate online (shown) or offline (hidden)
- on host unload, an immediate offline

Status reporting is advisory. A failed send is logged and forgotten; it
never stops the interval.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, Optional

import structlog

from .bus import CONNECTED, Subscription
from .config import DEFAULT_STATUS_INTERVAL
from .connection import ConnectionManager
from .lifecycle import HostLifecycle
from .registry import STATUS_OFFLINE, STATUS_ONLINE, TerminalRegistry
from .snapshot import SnapshotBuilder

logger = structlog.get_logger()


class StatusReporter:
    def __init__(
        self,
        registry: TerminalRegistry,
        snapshots: SnapshotBuilder,
        lifecycle: Optional[HostLifecycle] = None,
        connection: Optional[ConnectionManager] = None,
        interval: float = DEFAULT_STATUS_INTERVAL,
        liveness: Optional[Callable[[], bool]] = None,
        shutdown_timeout: float = 2.0,
    ):
        if interval <= 0:
            raise ValueError("status interval must be positive")
        self._registry = registry
        self._snapshots = snapshots
        self._lifecycle = lifecycle
        self._connection = connection
        self._interval = interval
        self._liveness = liveness
        self._shutdown_timeout = shutdown_timeout

        self._interval_task: Optional[asyncio.Task] = None
        self._subscriptions: list[Subscription] = []
        self._pending: set[asyncio.Task] = set()
        self._registered = False
        self._registering = False

    @property
    def running(self) -> bool:
        return self._interval_task is not None

    @property
    def registered(self) -> bool:
        return self._registered

    def is_online(self) -> bool:
        """Liveness check behind the periodic online/offline status."""
        if self._liveness is not None:
            return bool(self._liveness())
        if self._connection is not None:
            return self._connection.is_connected
        return True

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Register, start the interval and attach host listeners.

        Calling start() on a running reporter restarts it; timers never stack.
        """
        if self.running:
            self.stop()

        loop = asyncio.get_running_loop()
        if self._lifecycle is not None:
            self._subscriptions.append(self._lifecycle.on_visibility_change(self._on_visibility_change))
            self._subscriptions.append(self._lifecycle.on_unload(self._on_unload))
        if self._connection is not None:
            self._subscriptions.append(self._connection.bus.subscribe(CONNECTED, self._on_connected))

        self._spawn(self.register())
        self._interval_task = loop.create_task(self._run_interval(), name="terminal-status-interval")
        logger.info("status_reporting_started", interval=self._interval)

    def stop(self) -> None:
        """Cancel the interval and detach every listener."""
        if self._interval_task is not None:
            self._interval_task.cancel()
            self._interval_task = None
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions.clear()
        logger.info("status_reporting_stopped")

    async def aclose(self) -> None:
        """Stop, let in-flight best-effort sends finish (bounded), close HTTP."""
        self.stop()
        if self._pending:
            _done, still_pending = await asyncio.wait(set(self._pending), timeout=self._shutdown_timeout)
            for task in still_pending:
                task.cancel()
        await self._registry.aclose()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def register(self) -> bool:
        if self._registering:
            return False
        self._registering = True
        try:
            snapshot = await self._snapshots.build()
            self._registered = await self._registry.register(snapshot)
        except Exception:
            logger.exception("terminal_registration_error")
            self._registered = False
        finally:
            self._registering = False
        return self._registered

    async def report(self, status: str) -> bool:
        """Send one status update with a fresh snapshot; never raises."""
        try:
            snapshot = await self._snapshots.build()
            return await self._registry.update_status(status, snapshot)
        except Exception:
            logger.exception("status_report_error", status=status)
            return False

    async def _run_interval(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.report(STATUS_ONLINE if self.is_online() else STATUS_OFFLINE)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def _on_visibility_change(self, visible: bool) -> None:
        self._spawn(self.report(STATUS_ONLINE if visible else STATUS_OFFLINE))

    def _on_unload(self, _payload: Any) -> None:
        self._spawn(self.report(STATUS_OFFLINE))

    def _on_connected(self, _payload: Any) -> None:
        if not self._registered and not self._registering:
            logger.info("terminal_registration_retry")
            self._spawn(self.register())

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
