"""Tests for the auth-token / join-confirmation orchestration."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from joinsim.connection import (
    CURRENT_USER_SUBSCRIPTION,
    USER_JOIN_MUTATION,
    ConnectionHandle,
)
from joinsim.errors import TransportError
from joinsim.orchestrator import JoinOrchestrator, current_user
from joinsim.reporting import Reporter


def user_event(auth_token="auth-1", **fields):
    record = {"authToken": auth_token, "userId": "w_1", "name": "Ada", "role": "VIEWER", "joined": False}
    record.update(fields)
    return {"data": {"user_current": [record]}}


class ScriptedTransport:
    """Transport whose user_current stream replays a fixed list of events."""

    def __init__(self, events=(), error=None):
        self.events = list(events)
        self.error = error
        self.execute = AsyncMock(return_value={"userJoinMeeting": True})
        self.subscribed = []

    async def subscribe(self, query, variables=None):
        self.subscribed.append(query)
        for event in self.events:
            yield event
            await asyncio.sleep(0)
        if self.error:
            raise self.error


@pytest.fixture
def shown():
    return []


@pytest.fixture
def orchestrator(shown):
    return JoinOrchestrator(reporter=Reporter(verbose=True, emit=shown.append))


def make_handle(transport):
    return ConnectionHandle(user_index=0, connection_id="c1", transport=transport)


class TestCurrentUser:
    """Tests for payload extraction."""

    def test_first_record(self):
        """The first user_current record is used."""
        assert current_user(user_event())["authToken"] == "auth-1"

    @pytest.mark.parametrize("payload", [
        None,
        {},
        {"data": None},
        {"data": {"user_current": []}},
        {"data": {"user_current": None}},
        {"data": {"user_current": ["bogus"]}},
    ])
    def test_empty_payloads(self, payload):
        """Missing or empty payloads yield None."""
        assert current_user(payload) is None


class TestHandleEvent:
    """Tests for the exactly-once join mutation."""

    @pytest.mark.asyncio
    async def test_token_triggers_join_mutation(self, orchestrator):
        """An event with an auth token sends userJoinMeeting with it."""
        transport = ScriptedTransport()
        handle = make_handle(transport)

        assert await orchestrator.handle_event(handle, user_event()) is True

        transport.execute.assert_awaited_once_with(
            USER_JOIN_MUTATION,
            {"authToken": "auth-1", "clientType": "HTML5", "clientIsMobile": False},
        )
        assert handle.auth_token_consumed

    @pytest.mark.asyncio
    async def test_two_token_events_one_mutation(self, orchestrator):
        """Two qualifying events produce exactly one join call."""
        transport = ScriptedTransport()
        handle = make_handle(transport)

        first = await orchestrator.handle_event(handle, user_event("auth-1"))
        second = await orchestrator.handle_event(handle, user_event("auth-2"))

        assert (first, second) == (True, False)
        assert transport.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_token_events_one_mutation(self, orchestrator):
        """Events delivered concurrently still give exactly one join call."""
        transport = ScriptedTransport()
        handle = make_handle(transport)

        results = await asyncio.gather(
            *(orchestrator.handle_event(handle, user_event()) for _ in range(5))
        )

        assert results.count(True) == 1
        assert transport.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_event_without_token_ignored(self, orchestrator):
        """Events without an auth token do not consume the guard."""
        transport = ScriptedTransport()
        handle = make_handle(transport)

        assert await orchestrator.handle_event(handle, user_event(auth_token="")) is False
        assert await orchestrator.handle_event(handle, {"data": {"user_current": []}}) is False

        transport.execute.assert_not_awaited()
        assert not handle.auth_token_consumed

    @pytest.mark.asyncio
    async def test_failed_join_not_retried(self, orchestrator, shown):
        """A failed mutation is reported and the guard stays consumed."""
        transport = ScriptedTransport()
        transport.execute.side_effect = TransportError("permission denied")
        handle = make_handle(transport)

        assert await orchestrator.handle_event(handle, user_event()) is True
        assert await orchestrator.handle_event(handle, user_event()) is False

        assert transport.execute.await_count == 1
        assert handle.auth_token_consumed
        assert any("join mutation failed" in m for m in shown)


class TestFollow:
    """Tests for the subscription loop."""

    @pytest.mark.asyncio
    async def test_subscribe_before_mutate(self, orchestrator):
        """The stream is consumed and duplicate token events are ignored."""
        transport = ScriptedTransport([user_event(auth_token=None), user_event(), user_event()])
        handle = make_handle(transport)

        await orchestrator.follow(handle)

        assert transport.subscribed == [CURRENT_USER_SUBSCRIPTION]
        assert transport.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_subscription_error_reported_not_raised(self, orchestrator, shown):
        """A subscription error is reported; nothing propagates."""
        transport = ScriptedTransport([], error=TransportError("socket closed"))
        handle = make_handle(transport)

        await orchestrator.follow(handle)

        assert any("subscription error" in m for m in shown)
        transport.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_attach_and_detach(self, orchestrator):
        """attach runs follow() as a task owned by the handle."""
        transport = ScriptedTransport([user_event()])
        handle = make_handle(transport)

        task = orchestrator.attach(handle)
        assert handle.subscription_task is task
        await asyncio.wait_for(task, 1)
        assert transport.execute.await_count == 1

        orchestrator.detach(handle)
        orchestrator.detach(handle)
        assert handle.subscription_task is None


class TestRunReporter:
    """Messages go to the reporter the handle was attached with."""

    @pytest.mark.asyncio
    async def test_attach_with_quiet_reporter(self, orchestrator, shown):
        """A quiet run reporter hides progress even if the default is verbose."""
        quiet = []
        transport = ScriptedTransport([user_event()], error=TransportError("gone"))
        handle = make_handle(transport)

        await orchestrator.attach(handle, Reporter(emit=quiet.append))

        transport.execute.assert_awaited_once()
        assert quiet == []
        assert shown == []

    @pytest.mark.asyncio
    async def test_follow_with_verbose_reporter(self, shown):
        """A verbose run reporter shows the subscription error."""
        loud = []
        orchestrator = JoinOrchestrator(reporter=Reporter(emit=shown.append))
        handle = make_handle(ScriptedTransport(error=TransportError("gone")))

        await orchestrator.follow(handle, Reporter(verbose=True, emit=loud.append))

        assert loud == ["[joinsim] User 1 authToken subscription error"]
        assert shown == []
