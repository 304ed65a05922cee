"""Connection pool and batched creation/teardown of simulated users."""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional, Sequence, TypeVar

from joinsim.connection import ConnectionFactory, ConnectionHandle
from joinsim.errors import SimulationError, TransportError
from joinsim.monitor import LivenessMonitor
from joinsim.orchestrator import JoinOrchestrator
from joinsim.reporting import Reporter
from joinsim.session import JoinRequest, SessionAcquirer
from joinsim.urls import derive_realtime_endpoint

logger = logging.getLogger("joinsim.pool")

T = TypeVar("T")


def partition(items: Sequence[T], size: int) -> list[list[T]]:
    """Split items into consecutive chunks of at most size."""
    if size < 1:
        raise ValueError("size must be positive")
    return [list(items[start:start + size]) for start in range(0, len(items), size)]


class ConnectionPool:
    """Registry of active handles in insertion order.

    Only append and bulk drain are exposed; individual handles are never
    removed.
    """

    def __init__(self):
        self._handles: list[ConnectionHandle] = []
        self._lock = threading.Lock()

    def add(self, handle: ConnectionHandle) -> None:
        with self._lock:
            self._handles.append(handle)

    def drain(self) -> list[ConnectionHandle]:
        """Remove and return every handle."""
        with self._lock:
            handles, self._handles = self._handles, []
        return handles

    @property
    def handles(self) -> list[ConnectionHandle]:
        with self._lock:
            return list(self._handles)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)

    def __iter__(self) -> Iterator[ConnectionHandle]:
        return iter(self.handles)


@dataclass
class BatchReport:
    """Outcome of one create_batch run."""
    requested: int
    active: int = 0
    batch_sizes: list[int] = field(default_factory=list)
    failures: list[SimulationError] = field(default_factory=list)

    @property
    def summary(self) -> str:
        return f"Active connections: {self.active}/{self.requested}"


class PoolManager:
    """Creates connections in bounded batches and tears them all down.

    Within a batch every setup pipeline (handshake, connection, join
    orchestration, liveness monitoring) runs concurrently; the next batch
    starts only after all of them settled and the inter-batch delay passed.
    A failed pipeline is recorded and never cancels its siblings.
    """

    BATCH_SIZE = 3
    BATCH_DELAY_SECONDS = 1.0
    CLOSE_GRACE_SECONDS = 1.0

    def __init__(
        self,
        acquirer: SessionAcquirer,
        factory: ConnectionFactory,
        orchestrator: JoinOrchestrator,
        monitor: LivenessMonitor,
        reporter: Optional[Reporter] = None,
        pool: Optional[ConnectionPool] = None,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY_SECONDS,
        close_grace: float = CLOSE_GRACE_SECONDS,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.acquirer = acquirer
        self.factory = factory
        self.orchestrator = orchestrator
        self.monitor = monitor
        self.reporter = reporter or Reporter()
        self.pool = pool if pool is not None else ConnectionPool()
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.close_grace = close_grace
        self.id_factory = id_factory
        self._closing: set[asyncio.Task] = set()

    async def create_batch(
        self,
        requests: Sequence[JoinRequest],
        reporter: Optional[Reporter] = None,
    ) -> BatchReport:
        """Set up one simulated user per request, batch by batch.

        Every message about these users, including later stale and error
        reports, goes to reporter (default: the manager's own).
        """
        reporter = reporter or self.reporter
        total = len(requests)
        report = BatchReport(requested=total)
        batches = partition(list(enumerate(requests)), self.batch_size)

        for number, batch in enumerate(batches, start=1):
            report.batch_sizes.append(len(batch))
            logger.info("batch_start batch=%d/%d size=%d", number, len(batches), len(batch))
            results = await asyncio.gather(
                *(self.setup_user(index, request, total, reporter) for index, request in batch),
                return_exceptions=True,
            )
            for (index, _), result in zip(batch, results):
                if isinstance(result, BaseException):
                    report.failures.append(self._as_failure(index, result))

            if number < len(batches):
                await asyncio.sleep(self.batch_delay)

        report.active = len(self.pool)
        logger.info(
            "batch_complete requested=%d active=%d failed=%d",
            total, report.active, len(report.failures),
        )
        return report

    async def setup_user(
        self,
        user_index: int,
        request: JoinRequest,
        total: Optional[int] = None,
        reporter: Optional[Reporter] = None,
    ) -> ConnectionHandle:
        """Run the full setup pipeline for one user and register the handle."""
        reporter = reporter or self.reporter
        label = f"User {user_index + 1}"
        reporter.progress(f"{label}: Fetching session token...")
        try:
            session = await self.acquirer.acquire(request, user_index=user_index)
        except SimulationError as e:
            reporter.error(f"{label}: Failed to fetch session token: {e.message}", e)
            raise
        reporter.progress(f"{label} ({session.display_name}): Session token obtained")

        endpoint = derive_realtime_endpoint(session.join_url)
        if endpoint is None:
            error = TransportError(
                f"Cannot derive a real-time endpoint from {session.join_url!r}",
                user_index=user_index,
            )
            reporter.error(f"{label}: Failed to open connection: {error.message}", error)
            raise error

        connection_id = self.id_factory()
        try:
            handle = self.factory.open(
                user_index,
                endpoint,
                session.token,
                connection_id,
                display_name=session.display_name,
                total_users=total,
                reporter=reporter,
            )
        except TransportError as e:
            reporter.error(f"{label}: Failed to open connection: {e.message}", e)
            raise

        self.orchestrator.attach(handle, reporter)
        self.monitor.attach(handle, functools.partial(self._on_stale, reporter))
        self.pool.add(handle)
        logger.info("user_registered user=%d client=%s", user_index + 1, connection_id)
        return handle

    def stop_all(self) -> int:
        """Detach every monitor and schedule graceful transport closes.

        The registry is empty when this returns; transports close after the
        grace delay. Must be called from the event loop.

        Returns:
            Number of handles registered at call time
        """
        handles = self.pool.drain()
        logger.info("stopping_connections count=%d", len(handles))
        for handle in handles:
            try:
                self.monitor.detach(handle)
                task = asyncio.create_task(self._close_later(handle))
            except Exception as e:
                self.reporter.error(f"Error terminating WebSocket connection: {e}", e)
                continue
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
        logger.info("connections_stopped count=%d", len(handles))
        return len(handles)

    async def wait_closed(self) -> None:
        """Wait for every scheduled close to finish."""
        while self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    async def _close_later(self, handle: ConnectionHandle) -> None:
        await asyncio.sleep(self.close_grace)
        self.orchestrator.detach(handle)
        if handle.transport is not None:
            await handle.transport.terminate()
        logger.info("connection_terminated user=%d client=%s", handle.user_index + 1, handle.connection_id)

    def _on_stale(self, reporter: Reporter, user_index: int) -> None:
        reporter.warn(f"User {user_index + 1} connection may be stale (no messages received)")

    def _as_failure(self, user_index: int, error: BaseException) -> SimulationError:
        if isinstance(error, SimulationError):
            if error.user_index is None:
                error.user_index = user_index
            return error
        logger.error("setup_failed user=%d error=%s: %s", user_index + 1, type(error).__name__, error)
        failure = SimulationError(f"{type(error).__name__}: {error}", user_index=user_index)
        failure.__cause__ = error
        return failure
