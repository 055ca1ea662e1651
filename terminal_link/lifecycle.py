"""Host lifecycle signals: visibility and teardown.

The hosting application reports when the terminal UI is shown or hidden and
when the process is about to exit. Listeners attach through a DispatchBus.
"""

import asyncio
import signal
from typing import Callable, Iterable

import structlog

from .bus import DispatchBus, Subscription

logger = structlog.get_logger()

VISIBILITY_CHANGED = "visibility_changed"
UNLOAD = "unload"


class HostLifecycle:
    def __init__(self, visible: bool = True):
        self._bus = DispatchBus(name="host")
        self._visible = visible
        self._unloaded = False

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def unloaded(self) -> bool:
        return self._unloaded

    def on_visibility_change(self, callback: Callable[[bool], None]) -> Subscription:
        return self._bus.subscribe(VISIBILITY_CHANGED, callback)

    def on_unload(self, callback: Callable[[None], None]) -> Subscription:
        return self._bus.subscribe(UNLOAD, callback)

    def set_visible(self, visible: bool) -> None:
        """Record a visibility change; listeners only hear actual changes."""
        visible = bool(visible)
        if visible == self._visible:
            return
        self._visible = visible
        logger.debug("host_visibility_changed", visible=visible)
        self._bus.publish(VISIBILITY_CHANGED, visible)

    def unload(self) -> None:
        """Signal host teardown. Fires at most once."""
        if self._unloaded:
            return
        self._unloaded = True
        logger.info("host_unloading")
        self._bus.publish(UNLOAD, None)

    def install_signal_handlers(
        self,
        loop: asyncio.AbstractEventLoop,
        signals: Iterable[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        """Map process termination signals to ``unload()``."""
        for sig in signals:
            try:
                loop.add_signal_handler(sig, self.unload)
            except (NotImplementedError, RuntimeError):
                # Windows event loops and non-main threads cannot add handlers.
                logger.debug("signal_handler_unavailable", signal=sig.name)

    def listener_count(self) -> int:
        return sum(len(self._bus.subscribers(c)) for c in (VISIBILITY_CHANGED, UNLOAD))
