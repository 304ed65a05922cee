"""GraphQL over WebSocket client (graphql-transport-ws sub-protocol).

Implements the client side of the protocol spoken by the BBB GraphQL
gateway: connection_init/connection_ack handshake, subscribe/next/error/
complete operations, and ping/pong keep-alive. Connections are retried
with randomized exponential back-off, and pending operations are re-sent
after every reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import logging
import random
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Optional
from urllib.parse import urlsplit

import websockets

from joinsim.errors import TransportError

logger = logging.getLogger("joinsim.protocol")

SUBPROTOCOL = "graphql-transport-ws"

# Operation queue entries
_NEXT = "next"
_ERROR = "error"
_COMPLETE = "complete"


def _always_retry(error: Optional[BaseException]) -> bool:
    return True


@dataclass(eq=False)
class _Operation:
    id: str
    payload: dict
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)


class GraphQLWsClient:
    """One graphql-transport-ws connection with retry and keep-alive.

    Lifecycle callbacks are plain callables invoked on the event loop:
    ``on_connected()``, ``on_error(exc)``, ``on_closed()`` and
    ``on_message(message)`` (every decoded inbound frame).
    """

    RETRY_ATTEMPTS = 3
    KEEP_ALIVE_SECONDS = 30.0
    MAX_RETRY_DELAY_SECONDS = 30.0

    def __init__(
        self,
        url: str,
        connection_params: Optional[dict] = None,
        *,
        retry_attempts: int = RETRY_ATTEMPTS,
        keep_alive: float = KEEP_ALIVE_SECONDS,
        should_retry: Callable[[Optional[BaseException]], bool] = _always_retry,
        lazy: bool = False,
        on_connected: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[BaseException], None]] = None,
        on_closed: Optional[Callable[[], None]] = None,
        on_message: Optional[Callable[[dict], None]] = None,
        ssl_context=None,
        connect: Callable[..., Any] = websockets.connect,
    ):
        if urlsplit(url).scheme not in ("ws", "wss"):
            raise TransportError(f"Not a WebSocket URL: {url}")

        self.url = url
        self.connection_params = connection_params or {}
        self.retry_attempts = retry_attempts
        self.keep_alive = keep_alive
        self.should_retry = should_retry
        self.on_connected = on_connected
        self.on_error = on_error
        self.on_closed = on_closed
        self.on_message = on_message
        self._ssl_context = ssl_context
        self._connect = connect

        self._operations: dict[str, _Operation] = {}
        self._ids = itertools.count(1)
        self._ws = None
        self._acknowledged = False
        self._retries = 0
        self._terminated = False
        self._runner: Optional[asyncio.Task] = None
        self._keep_alive_task: Optional[asyncio.Task] = None

        if not lazy:
            self.start()

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._acknowledged

    @property
    def terminated(self) -> bool:
        return self._terminated

    def start(self) -> None:
        """Start the connection task. Must be called with a running loop."""
        if self._runner is not None or self._terminated:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as e:
            raise TransportError("No running event loop to connect on") from e
        self._runner = loop.create_task(self._run(), name=f"graphql-ws {self.url}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        query: str,
        variables: Optional[dict] = None,
        operation_name: Optional[str] = None,
    ) -> AsyncIterator[dict]:
        """Yield every ``next`` payload of an operation until it completes.

        Raises:
            TransportError: On an ``error`` frame, or when the connection
                gives up retrying
        """
        if self._terminated:
            raise TransportError("Client has been terminated")
        if self._runner is None:
            self.start()
        elif self._runner.done():
            raise TransportError(f"Connection to {self.url} is no longer retrying")

        payload: dict = {"query": query}
        if variables is not None:
            payload["variables"] = variables
        if operation_name:
            payload["operationName"] = operation_name

        op = _Operation(id=str(next(self._ids)), payload=payload)
        self._operations[op.id] = op
        if self.connected:
            await self._send_subscribe(op)

        finished = False
        try:
            while True:
                kind, data = await op.queue.get()
                if kind == _NEXT:
                    yield data
                elif kind == _ERROR:
                    finished = True
                    raise data if isinstance(data, BaseException) else TransportError(
                        f"Operation {op.id} failed: {json.dumps(data)}"
                    )
                else:
                    finished = True
                    return
        finally:
            self._operations.pop(op.id, None)
            if not finished and self.connected:
                # Consumer left early; tell the server to stop
                with contextlib.suppress(websockets.ConnectionClosed, TransportError):
                    await self._send({"id": op.id, "type": "complete"})

    async def execute(self, query: str, variables: Optional[dict] = None) -> Any:
        """Run a single-result operation (query or mutation) and return its data."""
        result: Optional[dict] = None
        async for payload in self.subscribe(query, variables):
            result = payload
        if result is None:
            raise TransportError("Operation completed without a result")
        if result.get("errors"):
            messages = "; ".join(str(err.get("message", err)) for err in result["errors"])
            raise TransportError(messages)
        return result.get("data")

    async def terminate(self) -> None:
        """Close the connection for good and end every operation. Idempotent."""
        if self._terminated:
            return
        self._terminated = True

        for op in list(self._operations.values()):
            op.queue.put_nowait((_COMPLETE, None))

        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        logger.debug("client_terminated url=%s", self.url)

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    def _connect_kwargs(self) -> dict:
        kwargs: dict = {
            "subprotocols": [SUBPROTOCOL],
            # Keep-alive is done with protocol-level ping frames instead
            "ping_interval": None,
        }
        if self._ssl_context is not None and self.url.startswith("wss://"):
            kwargs["ssl"] = self._ssl_context
        return kwargs

    def _retry_delay(self, attempt: int) -> float:
        return min(2 ** attempt, self.MAX_RETRY_DELAY_SECONDS) + random.uniform(0.3, 3.0)

    async def _run(self) -> None:
        while not self._terminated:
            error: Optional[BaseException] = None
            try:
                async with self._connect(self.url, **self._connect_kwargs()) as ws:
                    self._ws = ws
                    await self._send({"type": "connection_init", "payload": self.connection_params})
                    async for raw in ws:
                        await self._dispatch(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e
                logger.warning("connection_error url=%s error=%s: %s", self.url, type(e).__name__, e)
                self._notify(self.on_error, e)
            finally:
                self._on_socket_closed()

            if self._terminated:
                break
            if self._retries >= self.retry_attempts or not self.should_retry(error):
                logger.warning("connection_gave_up url=%s retries=%d", self.url, self._retries)
                self._fail_operations(TransportError(
                    f"Connection to {self.url} lost after {self._retries} retries"
                ))
                break
            self._retries += 1
            await asyncio.sleep(self._retry_delay(self._retries))

    def _on_socket_closed(self) -> None:
        was_open = self._ws is not None
        self._ws = None
        self._acknowledged = False
        if self._keep_alive_task is not None:
            self._keep_alive_task.cancel()
            self._keep_alive_task = None
        if was_open:
            self._notify(self.on_closed)

    async def _dispatch(self, raw) -> None:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise TransportError(f"Malformed frame: {raw!r}") from e
        if not isinstance(message, dict):
            raise TransportError(f"Malformed frame: {raw!r}")

        self._notify(self.on_message, message)

        msg_type = message.get("type")
        if msg_type == "connection_ack":
            await self._on_ack()
        elif msg_type == "ping":
            await self._send({"type": "pong"})
        elif msg_type == "pong":
            pass
        elif msg_type in (_NEXT, _ERROR, _COMPLETE):
            op = self._operations.get(message.get("id"))
            if op is None:
                logger.debug("frame_for_unknown_operation type=%s id=%s", msg_type, message.get("id"))
                return
            op.queue.put_nowait((msg_type, message.get("payload")))
            if msg_type != _NEXT:
                self._operations.pop(op.id, None)
        else:
            raise TransportError(f"Unexpected message type: {msg_type!r}")

    async def _on_ack(self) -> None:
        self._acknowledged = True
        self._retries = 0
        if self.keep_alive and self.keep_alive > 0:
            self._keep_alive_task = asyncio.create_task(self._keep_alive_loop())
        pending = list(self._operations.values())
        self._notify(self.on_connected)
        for op in pending:
            await self._send_subscribe(op)

    async def _keep_alive_loop(self) -> None:
        while True:
            await asyncio.sleep(self.keep_alive)
            try:
                await self._send({"type": "ping"})
            except (websockets.ConnectionClosed, TransportError):
                return

    async def _send_subscribe(self, op: _Operation) -> None:
        try:
            await self._send({"id": op.id, "type": "subscribe", "payload": op.payload})
        except (websockets.ConnectionClosed, TransportError):
            # Re-sent after the next connection_ack
            logger.debug("subscribe_deferred id=%s", op.id)

    async def _send(self, message: dict) -> None:
        ws = self._ws
        if ws is None:
            raise TransportError("Not connected")
        await ws.send(json.dumps(message))

    def _fail_operations(self, error: TransportError) -> None:
        for op in list(self._operations.values()):
            op.queue.put_nowait((_ERROR, error))
        self._operations.clear()

    def _notify(self, callback: Optional[Callable], *args) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("callback_failed callback=%s", getattr(callback, "__name__", callback))
