"""Command layer: join/customJoin runs and their stop counterparts.

Each command family owns an independent connection pool, so stopping one
simulation never touches the other.
"""

from __future__ import annotations

import logging
from typing import Optional

from joinsim.config import Settings
from joinsim.connection import ConnectionFactory
from joinsim.errors import invalid_count, invalid_join_url, missing_parameter
from joinsim.monitor import LivenessMonitor
from joinsim.orchestrator import JoinOrchestrator
from joinsim.pool import BatchReport, ConnectionPool, PoolManager
from joinsim.reporting import Reporter
from joinsim.session import JoinRequest, SessionAcquirer, parse_user_data
from joinsim.urls import derive_realtime_endpoint, is_valid_http_url

logger = logging.getLogger("joinsim.commands")


def validate_count(count) -> int:
    """Coerce a participant count, raising ValidationError unless positive."""
    try:
        value = int(count)
    except (TypeError, ValueError):
        raise invalid_count(count) from None
    if isinstance(count, float) and count != value:
        raise invalid_count(count)
    if value < 1:
        raise invalid_count(count)
    return value


class Simulator:
    """Entry point for the join commands.

    Args:
        settings: Runtime settings (defaults for host and meeting ID, TLS)
        reporter: Output channel; each command run reports through a copy
            carrying that run's verbosity
        acquirer: Session acquirer shared by both command families
        manager_kwargs: Extra keyword arguments for both PoolManagers
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        reporter: Optional[Reporter] = None,
        acquirer: Optional[SessionAcquirer] = None,
        factory: Optional[ConnectionFactory] = None,
        monitor: Optional[LivenessMonitor] = None,
        **manager_kwargs,
    ):
        self.settings = settings or Settings()
        self.reporter = reporter or Reporter()
        ssl_context = self.settings.ssl_context()
        self.acquirer = acquirer or SessionAcquirer(
            verify=ssl_context if ssl_context is not None else True,
            timeout=self.settings.http_timeout,
        )
        factory = factory or ConnectionFactory(reporter=self.reporter, ssl_context=ssl_context)
        monitor = monitor or LivenessMonitor()
        orchestrator = JoinOrchestrator(reporter=self.reporter)

        def manager() -> PoolManager:
            return PoolManager(
                self.acquirer, factory, orchestrator, monitor,
                reporter=self.reporter, pool=ConnectionPool(), **manager_kwargs,
            )

        self.join_manager = manager()
        self.custom_join_manager = manager()

    async def join(self, join_url: str, count, verbose: bool = False) -> BatchReport:
        """Join count users with an externally supplied join URL.

        Raises:
            ValidationError: Bad URL or count; nothing is started
        """
        logger.info("join_command count=%s verbose=%s", count, verbose)
        join_url = (join_url or "").strip()
        if not is_valid_http_url(join_url):
            raise invalid_join_url(join_url)
        users = validate_count(count)

        endpoint = derive_realtime_endpoint(join_url)
        reporter = self.reporter.for_run(verbose)
        reporter.progress(
            f"Starting GraphQL WebSocket connections for {users} users...\nWebSocket URL: {endpoint}"
        )
        requests = [JoinRequest.from_url(join_url) for _ in range(users)]
        report = await self.join_manager.create_batch(requests, reporter)
        self.reporter.summary(
            f"GraphQL WebSocket connections completed: {report.summary}\n"
            "Use stop-join to terminate all connections."
        )
        return report

    async def custom_join(
        self,
        secret: Optional[str],
        password: Optional[str],
        count,
        host: Optional[str] = None,
        meeting_id: Optional[str] = None,
        user_data: Optional[str] = None,
        verbose: bool = False,
    ) -> BatchReport:
        """Join count users with locally signed join URLs.

        Raises:
            ValidationError: Missing secret/password/host/meeting ID or bad
                count; nothing is started
        """
        logger.info("custom_join_command count=%s verbose=%s", count, verbose)
        if not secret:
            raise missing_parameter("secret", "Provide the BBB shared secret with --secret.")
        if not password:
            raise missing_parameter("pw", "Provide the attendee or moderator password with --pw.")
        users = validate_count(count)
        reporter = self.reporter.for_run(verbose)

        if not host:
            host = self.settings.host
            if not host:
                raise missing_parameter("host", "Provide --host or set JOINSIM_HOST.")
            reporter.progress(f"Using configured host: {host}")
        if not is_valid_http_url(host):
            raise invalid_join_url(host)

        if not meeting_id:
            meeting_id = self.settings.meeting_id
            if not meeting_id:
                raise missing_parameter("meetingID", "Provide --meeting-id or set JOINSIM_MEETING_ID.")
            reporter.progress(f"Using configured meetingID: {meeting_id}")

        attributes = parse_user_data(user_data)
        reporter.progress(f"Starting CustomJoin with {users} user(s)...")
        requests = [
            JoinRequest.self_signed(host, meeting_id, password, secret, attributes)
            for _ in range(users)
        ]
        report = await self.custom_join_manager.create_batch(requests, reporter)
        self.reporter.summary(
            f"CustomJoin completed: {report.summary}\n"
            "Use stop-custom-join to terminate all connections."
        )
        return report

    def stop_join(self) -> int:
        return self._stop(self.join_manager, "join")

    def stop_custom_join(self) -> int:
        return self._stop(self.custom_join_manager, "custom join")

    def _stop(self, manager: PoolManager, family: str) -> int:
        count = manager.stop_all()
        if count == 0:
            self.reporter.summary(f"No active {family} connections to stop.")
        else:
            self.reporter.summary(f"Stopped {count} {family} connection(s).")
        return count

    async def shutdown(self) -> int:
        """Stop both families, wait for closes, release the HTTP client."""
        count = self.join_manager.stop_all() + self.custom_join_manager.stop_all()
        await self.join_manager.wait_closed()
        await self.custom_join_manager.wait_closed()
        await self.acquirer.aclose()
        return count
