"""Per-participant connection handles and the factory that opens them."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from joinsim.errors import TransportError
from joinsim.protocol import GraphQLWsClient
from joinsim.reporting import Reporter

logger = logging.getLogger("joinsim.connection")

CLIENT_TYPE = "HTML5"
CLIENT_IS_MOBILE = False

USER_JOIN_MUTATION = """
  mutation UserJoin($authToken: String!, $clientType: String!, $clientIsMobile: Boolean!) {
    userJoinMeeting(
      authToken: $authToken,
      clientType: $clientType,
      clientIsMobile: $clientIsMobile,
    )
  }
"""

CURRENT_USER_SUBSCRIPTION = """
  subscription userCurrentSubscription {
    user_current {
      authToken
      userId
      name
      role
      joined
    }
  }
"""


class JoinState(enum.Enum):
    """Join progress of one connection. Only moves forward."""
    AWAITING_TOKEN = "awaiting_token"
    CONFIRMED = "confirmed"


@dataclass(eq=False)
class ConnectionHandle:
    """One simulated participant's live session.

    Timestamps are written only by the transport's message callback and read
    only by this handle's liveness monitor.
    """
    user_index: int
    connection_id: str
    display_name: str = ""
    transport: Optional[GraphQLWsClient] = None
    last_message_at: float = 0.0
    last_ping_at: float = 0.0
    join_state: JoinState = JoinState.AWAITING_TOKEN
    monitor_task: Optional[asyncio.Task] = None
    subscription_task: Optional[asyncio.Task] = None

    @property
    def label(self) -> str:
        return f"User {self.user_index + 1}"

    @property
    def auth_token_consumed(self) -> bool:
        return self.join_state is JoinState.CONFIRMED

    def claim_auth_token(self) -> bool:
        """Move AWAITING_TOKEN -> CONFIRMED.

        Returns True only for the call that made the transition. There is no
        suspension point between the check and the write, so concurrent
        callbacks on the loop cannot both win.
        """
        if self.join_state is not JoinState.AWAITING_TOKEN:
            return False
        self.join_state = JoinState.CONFIRMED
        return True

    def record_message(self, message: Any, now: float) -> None:
        if is_keepalive(message):
            self.last_ping_at = now
        self.last_message_at = now


def is_keepalive(message: Any) -> bool:
    """True for protocol-level ping frames."""
    return isinstance(message, dict) and message.get("type") == "ping"


def auth_connection_params(session_token: str, connection_id: str) -> dict:
    """connection_init payload authenticating a simulated client."""
    return {
        "headers": {
            "X-Session-Token": session_token,
            "X-ClientSessionUUID": connection_id,
            "X-ClientType": CLIENT_TYPE,
            "X-ClientIsMobile": "true" if CLIENT_IS_MOBILE else "false",
        },
    }


class ConnectionFactory:
    """Opens one authenticated real-time connection per simulated user."""

    RETRY_ATTEMPTS = 3
    KEEP_ALIVE_SECONDS = 30.0

    def __init__(
        self,
        reporter: Optional[Reporter] = None,
        ssl_context=None,
        clock: Callable[[], float] = time.monotonic,
        transport_class: Callable[..., GraphQLWsClient] = GraphQLWsClient,
    ):
        self.reporter = reporter or Reporter()
        self.ssl_context = ssl_context
        self.clock = clock
        self.transport_class = transport_class

    def open(
        self,
        user_index: int,
        endpoint: str,
        session_token: str,
        connection_id: str,
        display_name: str = "",
        total_users: Optional[int] = None,
        reporter: Optional[Reporter] = None,
    ) -> ConnectionHandle:
        """Build a handle and start its transport.

        Lifecycle messages go to reporter, defaulting to the factory's own.

        Raises:
            TransportError: If the transport cannot be constructed. The
                handle is discarded and must not be registered.
        """
        handle = ConnectionHandle(
            user_index=user_index,
            connection_id=connection_id,
            display_name=display_name,
        )
        label = f"{handle.label}/{total_users}" if total_users else handle.label
        reporter = reporter or self.reporter

        def on_connected() -> None:
            reporter.progress(f"{label} WebSocket connected\nClient UUID: {connection_id}")
            logger.info("ws_connected user=%d client=%s", user_index + 1, connection_id)

        def on_error(error: BaseException) -> None:
            reporter.error(f"{label} WebSocket error: {error}", error)

        def on_closed() -> None:
            logger.info("ws_closed user=%d client=%s", user_index + 1, connection_id)

        def on_message(message: Any) -> None:
            handle.record_message(message, self.clock())

        logger.info("ws_opening user=%d client=%s endpoint=%s", user_index + 1, connection_id, endpoint)
        try:
            handle.transport = self.transport_class(
                endpoint,
                auth_connection_params(session_token, connection_id),
                retry_attempts=self.RETRY_ATTEMPTS,
                keep_alive=self.KEEP_ALIVE_SECONDS,
                should_retry=lambda error: True,
                lazy=False,
                on_connected=on_connected,
                on_error=on_error,
                on_closed=on_closed,
                on_message=on_message,
                ssl_context=self.ssl_context,
            )
        except TransportError as e:
            e.user_index = user_index
            raise
        except Exception as e:
            raise TransportError(
                f"Could not create connection: {type(e).__name__}: {e}",
                user_index=user_index,
            ) from e
        return handle
