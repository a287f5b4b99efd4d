"""Tests for neural_agent.providers (litellm is patched, no network)."""

from types import SimpleNamespace

import litellm
import openai
import pytest

from neural_agent.cancellation import CancellationToken
from neural_agent.errors import ApiError
from neural_agent.providers import (
    AssistantMessage,
    CredentialStore,
    ModelCatalog,
    ModelInfo,
    ProviderClient,
    ToolCall,
    is_context_overflow,
    normalize_llm_config,
    parse_partial_json,
)
from neural_agent.context_memory import UsageSnapshot

from conftest import TEST_MODELS

MODEL = ModelInfo(provider="gemini", id="gemini/gemini-2.5-flash", name="gemini/gemini-2.5-flash", context_window=100_000)


def _chunk(content=None, reasoning=None, tool_calls=None, finish_reason=None, usage=None):
    delta = SimpleNamespace(content=content, reasoning_content=reasoning, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)], usage=usage)


def _tool_delta(index, call_id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


class FakeStream:
    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self.chunks:
            yield chunk
        if self.error is not None:
            raise self.error


def _patch_completion(monkeypatch, *results):
    calls = []
    queue = list(results)

    async def fake_acompletion(**kwargs):
        calls.append(kwargs)
        result = queue.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
    return calls


async def _collect(client, **kwargs):
    events = []
    async for event in client.stream([{"role": "user", "content": "hi"}], **kwargs):
        events.append(event)
    return events


class TestCatalog:
    def test_payload(self, model_catalog):
        payload = model_catalog.to_payload()
        assert [p["providerId"] for p in payload["providers"]] == ["gemini", "openai"]
        assert payload["providers"][0]["models"][0] == {
            "id": "gemini/gemini-2.5-flash", "name": "gemini/gemini-2.5-flash", "contextWindow": 100_000,
        }
        assert payload["defaults"] == {"providerId": "gemini", "modelId": "gemini/gemini-2.5-flash"}

    def test_get_model_accepts_unprefixed(self, model_catalog):
        assert model_catalog.get_model("gemini", "gemini-2.5-pro").id == "gemini/gemini-2.5-pro"
        assert model_catalog.get_model("gemini", "nope") is None

    def test_litellm_model_prefix(self):
        assert ModelInfo("openai", "gpt-4o-mini", "gpt-4o-mini").litellm_model == "openai/gpt-4o-mini"
        assert MODEL.litellm_model == "gemini/gemini-2.5-flash"

    def test_empty_catalog_payload(self):
        payload = ModelCatalog("gemini", "gemini/x", models={}).to_payload()
        assert payload["providers"] == [
            {"providerId": "gemini", "models": [{"id": "gemini/x", "name": "gemini/x", "contextWindow": 0}]}
        ]


class TestNormalizeLlmConfig:
    def test_defaults(self, model_catalog):
        config, model = normalize_llm_config(None, model_catalog)
        assert config.provider_id == "gemini"
        assert config.model_id == "gemini/gemini-2.5-flash"
        assert config.tool_tier == "standard"
        assert model.context_window == 100_000

    def test_explicit(self, model_catalog):
        config, _ = normalize_llm_config({"providerId": "openai", "modelId": "gpt-4o-mini", "toolTier": "none"}, model_catalog)
        assert config.to_dict() == {"providerId": "openai", "modelId": "gpt-4o-mini", "toolTier": "none"}

    def test_other_provider_without_model_uses_first(self, model_catalog):
        config, _ = normalize_llm_config({"providerId": "openai"}, model_catalog)
        assert config.model_id == "gpt-4o-mini"

    def test_invalid_provider(self, model_catalog):
        with pytest.raises(ApiError) as excinfo:
            normalize_llm_config({"providerId": "acme"}, model_catalog)
        assert excinfo.value.status == 400
        assert excinfo.value.code == "INVALID_PROVIDER"
        assert excinfo.value.details["availableProviders"] == sorted(TEST_MODELS)

    def test_invalid_model(self, model_catalog):
        with pytest.raises(ApiError) as excinfo:
            normalize_llm_config({"providerId": "gemini", "modelId": "gemini-0"}, model_catalog)
        assert excinfo.value.code == "INVALID_MODEL"


class TestCredentialStore:
    def test_session_key_wins(self):
        store = CredentialStore(environ={"GEMINI_API_KEY": "env-key"})
        assert store.resolve_api_key("s1", "gemini") == "env-key"
        store.save("s1", "gemini", "  session-key ")
        assert store.resolve_api_key("s1", "gemini") == "session-key"
        assert store.resolve_api_key("s2", "gemini") == "env-key"
        assert store.remove("s1", "gemini")
        assert not store.remove("s1", "gemini")

    def test_env_names(self):
        store = CredentialStore(environ={"GOOGLE_API_KEY": "g", "OPEN_ROUTER_API_KEY": "o"})
        assert store.resolve_api_key(None, "gemini") == "g"
        assert store.resolve_api_key(None, "open-router") == "o"
        assert store.resolve_api_key(None, "openai") is None


class TestParsePartialJson:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("", {}),
            ('{"html": "<p>he', {"html": "<p>he"}),
            ('{"html": "<p>", "isFinal": tr', {"html": "<p>"}),
            ('{"a": [1, 2', {"a": [1, 2]}),
            ('{"a": "x\\', {"a": "x"}),
            ("[1, 2]", {}),
        ],
    )
    def test_partial(self, text, expected):
        assert parse_partial_json(text) == expected


class TestOverflow:
    def test_flags(self):
        assert is_context_overflow(AssistantMessage(context_overflow=True))
        assert is_context_overflow(AssistantMessage(stop_reason="error", error_message="prompt is too long: 200000"))
        assert is_context_overflow(AssistantMessage(usage=UsageSnapshot(input=120_000)), 100_000)
        assert not is_context_overflow(AssistantMessage(usage=UsageSnapshot(input=120_000)))
        assert not is_context_overflow(AssistantMessage(stop_reason="error", error_message="rate limited"))

    def test_to_message(self):
        message = AssistantMessage(tool_calls=[ToolCall(id="c1", name="ls", arguments={"path": "."})]).to_message()
        assert message["content"] is None
        assert message["tool_calls"][0]["function"] == {"name": "ls", "arguments": '{"path": "."}'}


class TestProviderClientStream:
    @pytest.mark.asyncio
    async def test_text_and_usage(self, monkeypatch):
        usage = SimpleNamespace(prompt_tokens=10, completion_tokens=5, total_tokens=15, prompt_tokens_details=None)
        calls = _patch_completion(
            monkeypatch,
            FakeStream([
                _chunk(reasoning="thinking..."),
                _chunk(content="Hel"),
                _chunk(content="lo", finish_reason="stop"),
                SimpleNamespace(choices=[], usage=usage),
            ]),
        )
        client = ProviderClient(MODEL, "key", max_output_tokens=256)
        events = await _collect(client, tools=[{"type": "function"}])

        assert [e.type for e in events] == ["thinking_delta", "text_delta", "text_delta", "done"]
        final = events[-1].message
        assert final.text == "Hello"
        assert final.thinking == "thinking..."
        assert final.stop_reason == "stop"
        assert final.usage.input == 10
        assert final.usage.total() == 15
        assert calls[0]["model"] == "gemini/gemini-2.5-flash"
        assert calls[0]["api_key"] == "key"
        assert calls[0]["stream"] is True
        assert calls[0]["max_tokens"] == 256
        assert calls[0]["tools"] == [{"type": "function"}]

    @pytest.mark.asyncio
    async def test_tool_calls_assembled(self, monkeypatch):
        _patch_completion(
            monkeypatch,
            FakeStream([
                _chunk(tool_calls=[_tool_delta(0, "call_a", "emit_screen", '{"html": "<p>')]),
                _chunk(tool_calls=[_tool_delta(0, None, None, 'hi</p>"}')]),
                _chunk(tool_calls=[_tool_delta(1, "call_b", "ls", "")]),
                _chunk(finish_reason="tool_calls"),
            ]),
        )
        events = await _collect(ProviderClient(MODEL, "key"))
        types = [e.type for e in events]
        assert types == ["toolcall_start", "toolcall_delta", "toolcall_delta", "toolcall_start", "done"]
        assert events[1].arguments == {"html": "<p>"}
        assert events[2].arguments == {"html": "<p>hi</p>"}

        final = events[-1].message
        assert final.stop_reason == "tool_use"
        assert [(c.id, c.name, c.arguments) for c in final.tool_calls] == [
            ("call_a", "emit_screen", {"html": "<p>hi</p>"}),
            ("call_b", "ls", {}),
        ]

    @pytest.mark.asyncio
    async def test_request_failure_becomes_error_message(self, monkeypatch):
        _patch_completion(monkeypatch, ValueError("bad request"))
        events = await _collect(ProviderClient(MODEL, "key"))
        assert len(events) == 1
        assert events[0].message.stop_reason == "error"
        assert events[0].message.error_message == "bad request"

    @pytest.mark.asyncio
    async def test_context_window_error(self, monkeypatch):
        error = litellm.ContextWindowExceededError(message="too long", model="m", llm_provider="gemini")
        _patch_completion(monkeypatch, error)
        events = await _collect(ProviderClient(MODEL, "key"))
        assert events[0].message.context_overflow

    @pytest.mark.asyncio
    async def test_midstream_failure_keeps_partial_text(self, monkeypatch):
        _patch_completion(monkeypatch, FakeStream([_chunk(content="par")], error=RuntimeError("socket closed")))
        events = await _collect(ProviderClient(MODEL, "key"))
        final = events[-1].message
        assert final.text == "par"
        assert final.stop_reason == "error"
        assert final.error_message == "socket closed"

    @pytest.mark.asyncio
    async def test_cancel_aborts(self, monkeypatch):
        _patch_completion(monkeypatch, FakeStream([_chunk(content="a"), _chunk(content="b")]))
        cancel = CancellationToken()
        cancel.cancel("client gone")
        events = await _collect(ProviderClient(MODEL, "key"), cancel=cancel)
        assert [e.type for e in events] == ["done"]
        assert events[0].message.stop_reason == "aborted"

    @pytest.mark.asyncio
    async def test_transient_errors_retried(self, monkeypatch):
        request = SimpleNamespace(method="POST", url="https://example.invalid")
        transient = openai.APIConnectionError(request=request)
        calls = _patch_completion(monkeypatch, transient, FakeStream([_chunk(content="ok")]))
        client = ProviderClient(MODEL, "key", max_retries=2, backoff_base=0)
        events = await _collect(client)
        assert len(calls) == 2
        assert events[-1].message.text == "ok"

    @pytest.mark.asyncio
    async def test_complete(self, monkeypatch):
        response = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="summary"))])
        calls = _patch_completion(monkeypatch, response)
        text = await ProviderClient(MODEL, "key").complete("system", "prompt", 900)
        assert text == "summary"
        assert calls[0]["max_tokens"] == 900
        assert calls[0]["messages"][0] == {"role": "system", "content": "system"}
