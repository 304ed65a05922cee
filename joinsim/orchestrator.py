"""Follows the current-user stream and confirms the join exactly once."""

import asyncio
import logging
from typing import Optional

from joinsim.connection import (
    CLIENT_IS_MOBILE,
    CLIENT_TYPE,
    CURRENT_USER_SUBSCRIPTION,
    USER_JOIN_MUTATION,
    ConnectionHandle,
)
from joinsim.errors import JoinConfirmationError, SimulationError, join_failed
from joinsim.reporting import Reporter

logger = logging.getLogger("joinsim.orchestrator")


def current_user(result: Optional[dict]) -> Optional[dict]:
    """First user_current record of a subscription payload, if any."""
    data = (result or {}).get("data") or {}
    records = data.get("user_current") or []
    if not records or not isinstance(records[0], dict):
        return None
    return records[0]


class JoinOrchestrator:
    """Per connection: subscribe to user_current, then send userJoinMeeting.

    The mutation is gated on the handle's AWAITING_TOKEN -> CONFIRMED
    transition. A failed mutation leaves the handle CONFIRMED; it is not
    retried.
    """

    def __init__(self, reporter: Optional[Reporter] = None):
        self.reporter = reporter or Reporter()

    def attach(self, handle: ConnectionHandle, reporter: Optional[Reporter] = None) -> asyncio.Task:
        """Start following the current-user stream for a handle."""
        task = asyncio.create_task(
            self.follow(handle, reporter),
            name=f"user-current {handle.connection_id}",
        )
        handle.subscription_task = task
        return task

    def detach(self, handle: ConnectionHandle) -> None:
        task, handle.subscription_task = handle.subscription_task, None
        if task is not None and not task.done():
            task.cancel()

    async def follow(self, handle: ConnectionHandle, reporter: Optional[Reporter] = None) -> None:
        """Consume the subscription until it ends or fails.

        Subscription errors are reported; the connection is left open.
        """
        reporter = reporter or self.reporter
        try:
            async for result in handle.transport.subscribe(CURRENT_USER_SUBSCRIPTION):
                await self.handle_event(handle, result, reporter)
        except asyncio.CancelledError:
            raise
        except SimulationError as e:
            reporter.warn(f"{handle.label} authToken subscription error")
            logger.warning("subscription_error user=%d error=%s", handle.user_index + 1, e)

    async def handle_event(
        self,
        handle: ConnectionHandle,
        result: Optional[dict],
        reporter: Optional[Reporter] = None,
    ) -> bool:
        """Process one user_current emission.

        Returns:
            True if this event triggered the join mutation
        """
        reporter = reporter or self.reporter
        user = current_user(result)
        auth_token = user.get("authToken") if user else None
        if not auth_token or not handle.claim_auth_token():
            return False

        reporter.progress(f"{handle.label} authToken received")
        logger.info(
            "auth_token_received user=%d user_id=%s name=%s role=%s joined=%s",
            handle.user_index + 1, user.get("userId"), user.get("name"),
            user.get("role"), user.get("joined"),
        )

        try:
            await self.confirm_join(handle, auth_token)
        except JoinConfirmationError as e:
            reporter.warn(f"{handle.label} join mutation failed, but continuing")
            logger.warning("join_failed user=%d error=%s", handle.user_index + 1, e.message)
            return True

        reporter.progress(
            f"{handle.label} joined meeting via mutation\n"
            f"User ID: {user.get('userId')}\nName: {user.get('name')}\nRole: {user.get('role')}"
        )
        logger.info("join_confirmed user=%d client=%s", handle.user_index + 1, handle.connection_id)
        return True

    async def confirm_join(self, handle: ConnectionHandle, auth_token: str) -> None:
        """Send userJoinMeeting for the handle.

        Raises:
            JoinConfirmationError: If the mutation fails for any reason
        """
        try:
            await handle.transport.execute(
                USER_JOIN_MUTATION,
                {
                    "authToken": auth_token,
                    "clientType": CLIENT_TYPE,
                    "clientIsMobile": CLIENT_IS_MOBILE,
                },
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise join_failed(str(e) or type(e).__name__, user_index=handle.user_index) from e
