"""Tests for AgentAdapter interface, StreamEvent and CancellationToken."""

import asyncio

import pytest

from neural_agent.adapter import AgentAdapter, StreamEvent
from neural_agent.cancellation import CancellationToken, TurnCancelled
from neural_agent.errors import ApiError


class MinimalAdapter(AgentAdapter):
    async def initialize(self, config_path=None): pass
    async def shutdown(self): pass
    async def prepare_turn(self, body): return body
    async def stream_turn(self, prepared, cancel):
        yield StreamEvent(type="done")


class TestStreamEvent:
    def test_defaults(self):
        e = StreamEvent(type="chunk", content="hello")
        assert e.type == "chunk"
        assert e.content == "hello"
        assert e.name == ""
        assert e.usage == {}
        assert e.metadata == {}

    def test_payload_flattens_metadata(self):
        e = StreamEvent(
            type="tool_call_result",
            content="[ls] .",
            metadata={"toolName": "ls", "toolCallId": "c1", "isError": False},
        )
        assert e.to_payload() == {
            "type": "tool_call_result",
            "content": "[ls] .",
            "toolName": "ls",
            "toolCallId": "c1",
            "isError": False,
        }

    def test_payload_omits_empty_fields(self):
        e = StreamEvent(type="done", usage={"total": 3})
        assert e.to_payload() == {"type": "done", "content": "", "usage": {"total": 3}}


class TestAgentAdapterDefaults:
    """Test that optional methods have sensible defaults."""

    @pytest.mark.asyncio
    async def test_health_default(self):
        a = MinimalAdapter()
        assert await a.health() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_listing_defaults(self):
        a = MinimalAdapter()
        assert await a.list_tools() == []
        assert await a.context_memory_snapshot() == []
        assert await a.catalog() == {"providers": [], "defaults": {}}

    @pytest.mark.asyncio
    async def test_optional_features_not_supported(self):
        a = MinimalAdapter()
        for call in (
            a.set_credential("s", "gemini", "k"),
            a.remove_credential("s", "gemini"),
            a.onboarding_state({}),
            a.reopen_onboarding({}),
            a.complete_onboarding({}),
        ):
            with pytest.raises(ApiError) as excinfo:
                await call
            assert excinfo.value.status == 501
            assert excinfo.value.code == "NOT_SUPPORTED"

    def test_extra_routes_default(self):
        a = MinimalAdapter()
        assert a.extra_routes() is None
        assert a.public_route_prefixes() == ["/health"]


class TestCancellationToken:
    def test_first_reason_wins(self):
        token = CancellationToken()
        assert not token.cancelled
        token.cancel("client disconnected")
        token.cancel("later")
        assert token.cancelled
        assert token.reason == "client disconnected"

    def test_raise_if_cancelled(self):
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(TurnCancelled):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_wait(self):
        token = CancellationToken()
        waiter = asyncio.ensure_future(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()
        token.cancel()
        await asyncio.wait_for(waiter, 1)
