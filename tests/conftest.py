"""Shared fixtures for neural-agent tests."""

import json
import os
from collections.abc import AsyncIterator
from pathlib import Path

import pytest

from neural_agent.adapter import AgentAdapter, StreamEvent
from neural_agent.cancellation import CancellationToken
from neural_agent.config import RuntimeConfig
from neural_agent.providers import AssistantMessage, ModelCatalog, ProviderEvent, ToolCall

SUMMARY_JSON = json.dumps({
    "goal": "Show the dashboard",
    "ui_state": "Dashboard rendered",
    "actions_taken": ["rendered dashboard"],
    "open_issues": [],
    "next_steps": ["wait for input"],
})

TEST_MODELS = {
    "gemini": ["gemini/gemini-2.5-flash", "gemini/gemini-2.5-pro"],
    "openai": ["gpt-4o-mini"],
}


class StubAdapter(AgentAdapter):
    """Minimal adapter for testing the server layer."""

    def __init__(self):
        self.initialized = False
        self.shut_down = False
        self.config_path = None
        self.cancel_tokens: list[CancellationToken] = []
        self.credentials: dict[tuple[str, str], str] = {}
        self._extra = None
        self._public_prefixes = ["/health"]

    async def initialize(self, config_path=None):
        self.initialized = True
        self.config_path = config_path

    async def shutdown(self):
        self.shut_down = True

    async def prepare_turn(self, body: dict):
        if not body.get("userMessage"):
            from neural_agent.errors import ApiError

            raise ApiError(400, "INVALID_REQUEST", "userMessage is required.")
        return body

    async def stream_turn(self, prepared, cancel: CancellationToken) -> AsyncIterator[StreamEvent]:
        self.cancel_tokens.append(cancel)
        for word in prepared["userMessage"].split():
            yield StreamEvent(type="chunk", content=word + " ")
        yield StreamEvent(
            type="render_output",
            metadata={"toolName": "emit_screen", "revision": 1, "html": "<p>ok</p>", "isFinal": True},
        )
        yield StreamEvent(type="done")

    async def set_credential(self, session_id: str, provider_id: str, api_key: str) -> dict:
        self.credentials[(session_id, provider_id)] = api_key
        return {"ok": True, "providerId": provider_id}

    async def list_tools(self) -> list[dict]:
        return [{"name": "test_tool", "description": "A test tool"}]

    async def health(self) -> dict:
        return {"status": "ok", "adapter": "stub"}

    def extra_routes(self):
        return self._extra

    def public_route_prefixes(self):
        return self._public_prefixes


class FailingStreamAdapter(StubAdapter):
    """Adapter whose stream breaks after the first event."""

    async def stream_turn(self, prepared, cancel: CancellationToken) -> AsyncIterator[StreamEvent]:
        yield StreamEvent(type="chunk", content="partial ")
        raise RuntimeError("internal detail that must not leak")


# ---------------------------------------------------------------------------
# Scripted provider
# ---------------------------------------------------------------------------


def text_round(text: str, *, stop_reason: str = "stop", usage=None) -> list[ProviderEvent]:
    """One provider round that streams *text* and stops."""
    events = [ProviderEvent(type="text_delta", delta=text)] if text else []
    events.append(ProviderEvent(type="done", message=AssistantMessage(text=text, stop_reason=stop_reason, usage=usage)))
    return events


def tool_round(*calls: tuple[str, str, dict]) -> list[ProviderEvent]:
    """One provider round requesting tool calls given as (id, name, arguments)."""
    events = []
    tool_calls = []
    for index, (call_id, name, arguments) in enumerate(calls):
        events.append(ProviderEvent(type="toolcall_start", index=index, tool_call_id=call_id, tool_name=name))
        events.append(
            ProviderEvent(type="toolcall_delta", index=index, tool_call_id=call_id, tool_name=name, arguments=arguments)
        )
        tool_calls.append(ToolCall(id=call_id, name=name, arguments=arguments, raw_arguments=json.dumps(arguments)))
    events.append(ProviderEvent(type="done", message=AssistantMessage(tool_calls=tool_calls, stop_reason="tool_use")))
    return events


def error_round(message: str, *, overflow: bool = False) -> list[ProviderEvent]:
    final = AssistantMessage(stop_reason="error", error_message=message, context_overflow=overflow)
    return [ProviderEvent(type="done", message=final)]


class ScriptedClient:
    """Stands in for ProviderClient: replays scripted rounds, records requests."""

    def __init__(self, rounds, summaries=None):
        self.rounds = list(rounds)
        self.summaries = list(summaries or [])
        self.requests: list[dict] = []
        self.completions: list[tuple[str, str, int]] = []

    async def stream(self, messages, tools=None, cancel=None):
        self.requests.append({"messages": [dict(m) for m in messages], "tools": tools})
        if not self.rounds:
            return
        for event in self.rounds.pop(0):
            yield event

    async def complete(self, system_prompt: str, prompt: str, max_tokens: int) -> str:
        self.completions.append((system_prompt, prompt, max_tokens))
        if self.summaries:
            value = self.summaries.pop(0)
            if isinstance(value, Exception):
                raise value
            return value
        return SUMMARY_JSON


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def stub_adapter():
    return StubAdapter()


@pytest.fixture
def failing_adapter():
    return FailingStreamAdapter()


@pytest.fixture
def workspace(tmp_path) -> str:
    root = tmp_path / "workspace"
    root.mkdir()
    return os.path.realpath(root)


@pytest.fixture
def runtime_config(tmp_path, workspace) -> RuntimeConfig:
    return RuntimeConfig(
        default_workspace_root=workspace,
        workspace_policy_roots=(os.path.realpath(tmp_path),),
        default_provider="gemini",
        default_model="gemini/gemini-2.5-flash",
        tool_cmd_timeout_sec=10,
    )


@pytest.fixture
def model_catalog() -> ModelCatalog:
    return ModelCatalog(
        "gemini",
        "gemini/gemini-2.5-flash",
        models=TEST_MODELS,
        context_window=lambda model: 100_000,
    )


def mark_onboarded(workspace_root: str) -> None:
    """Persist a completed onboarding state so turns run in normal mode."""
    state_dir = Path(workspace_root, ".neural")
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / "onboarding-state.json").write_text(json.dumps({"completed": True, "lifecycle": "completed"}))
