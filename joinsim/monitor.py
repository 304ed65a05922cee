"""Liveness monitoring for simulated connections."""

import asyncio
import logging
import time
from typing import Callable, Optional

from joinsim.connection import ConnectionHandle

logger = logging.getLogger("joinsim.monitor")


class LivenessMonitor:
    """Periodically flags connections that stopped receiving messages.

    A handle is only checked once it has seen both a regular message and a
    ping, so connections that are still warming up are never flagged. The
    check keeps running after a stale report until detached.
    """

    CHECK_INTERVAL_SECONDS = 5.0
    STALE_AFTER_SECONDS = 15.0  # Connection boundary

    def __init__(
        self,
        interval: float = CHECK_INTERVAL_SECONDS,
        boundary: float = STALE_AFTER_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = interval
        self.boundary = boundary
        self.clock = clock

    def is_stale(self, handle: ConnectionHandle, now: Optional[float] = None) -> bool:
        if handle.last_message_at == 0 or handle.last_ping_at == 0:
            return False
        now = self.clock() if now is None else now
        return now - handle.last_message_at > self.boundary

    def check(
        self,
        handle: ConnectionHandle,
        on_stale: Callable[[int], None],
        now: Optional[float] = None,
    ) -> bool:
        """Run one tick for a handle; call on_stale(user_index) if stale."""
        if not self.is_stale(handle, now):
            return False
        logger.warning(
            "connection_stale user=%d client=%s idle=%.1fs",
            handle.user_index + 1, handle.connection_id,
            (self.clock() if now is None else now) - handle.last_message_at,
        )
        on_stale(handle.user_index)
        return True

    def attach(self, handle: ConnectionHandle, on_stale: Callable[[int], None]) -> asyncio.Task:
        """Start the recurring check. Replaces any monitor already attached."""
        self.detach(handle)
        handle.monitor_task = asyncio.create_task(
            self._watch(handle, on_stale),
            name=f"liveness {handle.connection_id}",
        )
        return handle.monitor_task

    def detach(self, handle: ConnectionHandle) -> None:
        """Cancel the handle's monitor. Safe to call repeatedly."""
        task, handle.monitor_task = handle.monitor_task, None
        if task is not None and not task.done():
            task.cancel()

    async def _watch(self, handle: ConnectionHandle, on_stale: Callable[[int], None]) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.check(handle, on_stale)
            except Exception:
                logger.exception("stale_callback_failed user=%d", handle.user_index + 1)
