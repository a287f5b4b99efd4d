"""Provider layer: litellm model catalog, credentials and streaming completion.

litellm is resolved at call time (``litellm.acompletion``) so tests can patch
it without touching this module.
"""

import asyncio
import functools
import json
import logging
import os
import re
from dataclasses import dataclass, field, replace
from typing import AsyncIterator, Callable

import litellm
import openai

from .cancellation import CancellationToken
from .config import normalize_tool_tier
from .context_memory import UsageSnapshot
from .errors import ApiError

logger = logging.getLogger("neural_agent.providers")

GOOGLE_FALLBACK_KEY_ENV = ("GEMINI_API_KEY", "GOOGLE_API_KEY", "GOOGLE_GENERATIVE_AI_API_KEY", "GOOGLE_AI_API_KEY")

# Transient failures worth retrying before any output was streamed.
# litellm's exceptions subclass these openai classes.
TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)
DEFAULT_MAX_RETRIES = 2
DEFAULT_BACKOFF_BASE_SEC = 0.5

_OVERFLOW_PATTERNS = re.compile(
    r"context[ _-]?(length|window)|maximum context|prompt is too long|too many tokens|"
    r"input token count|exceeds? the (maximum|token limit)|token limit exceeded|request too large",
    re.IGNORECASE,
)

_STOP_REASONS = {
    "stop": "stop",
    "end_turn": "stop",
    "tool_calls": "tool_use",
    "function_call": "tool_use",
    "tool_use": "tool_use",
    "length": "length",
    "max_tokens": "length",
}


# ------------------------------------------------------------------
# Catalog
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ModelInfo:
    provider: str
    id: str
    name: str
    context_window: int = 0

    @property
    def litellm_model(self) -> str:
        """Model string litellm routes on (``provider/model``)."""
        if self.id.startswith(f"{self.provider}/"):
            return self.id
        return f"{self.provider}/{self.id}"

    def to_dict(self) -> dict:
        return {"provider": self.provider, "id": self.id, "name": self.name, "contextWindow": self.context_window}


@functools.lru_cache(maxsize=2048)
def _litellm_context_window(model: str) -> int:
    try:
        info = litellm.get_model_info(model=model)
    except Exception:  # litellm raises a bare Exception for unmapped models
        return 0
    value = info.get("max_input_tokens") or info.get("max_tokens") or 0
    return int(value) if isinstance(value, (int, float)) else 0


@dataclass(frozen=True)
class LlmConfig:
    provider_id: str
    model_id: str
    tool_tier: str = "standard"

    def to_dict(self) -> dict:
        return {"providerId": self.provider_id, "modelId": self.model_id, "toolTier": self.tool_tier}


class ModelCatalog:
    """Providers and models known to litellm (or an injected mapping)."""

    def __init__(
        self,
        default_provider: str = "gemini",
        default_model: str = "gemini/gemini-2.5-flash",
        models: dict[str, list[str]] | None = None,
        context_window: Callable[[str], int] | None = None,
    ):
        self.default_provider = default_provider
        self.default_model = default_model
        self._models = models
        self._context_window = context_window or _litellm_context_window

    def _model_map(self) -> dict[str, list[str]]:
        if self._models is not None:
            return self._models
        return {provider: sorted(names) for provider, names in litellm.models_by_provider.items()}

    def list_providers(self) -> list[str]:
        return sorted(provider for provider, names in self._model_map().items() if names)

    def list_models(self, provider_id: str) -> list[ModelInfo]:
        names = self._model_map().get(provider_id) or []
        return [self._info(provider_id, name) for name in sorted(names)]

    def get_model(self, provider_id: str, model_id: str) -> ModelInfo | None:
        names = self._model_map().get(provider_id) or []
        if model_id in names:
            return self._info(provider_id, model_id)
        prefixed = f"{provider_id}/{model_id}"
        if prefixed in names:
            return self._info(provider_id, prefixed)
        return None

    def _info(self, provider_id: str, name: str) -> ModelInfo:
        model = ModelInfo(provider=provider_id, id=name, name=name)
        return replace(model, context_window=self._context_window(model.litellm_model))

    def pick_default_provider(self, providers: list[str] | None = None) -> str:
        providers = self.list_providers() if providers is None else providers
        if self.default_provider in providers or not providers:
            return self.default_provider
        return providers[0]

    def to_payload(self) -> dict:
        providers = []
        for provider_id in self.list_providers():
            models = [{"id": m.id, "name": m.name, "contextWindow": m.context_window} for m in self.list_models(provider_id)]
            if models:
                providers.append({"providerId": provider_id, "models": models})
        if not providers:
            providers = [{
                "providerId": self.default_provider,
                "models": [{"id": self.default_model, "name": self.default_model, "contextWindow": 0}],
            }]
        return {
            "providers": providers,
            "defaults": {"providerId": self.default_provider, "modelId": self.default_model},
        }


def normalize_llm_config(raw, catalog: ModelCatalog) -> tuple[LlmConfig, ModelInfo]:
    """Resolve a request's llmConfig against the catalog. Raises :class:`ApiError`."""
    raw = raw if isinstance(raw, dict) else {}
    providers = catalog.list_providers()
    provider_id = raw.get("providerId")
    provider_id = provider_id.strip() if isinstance(provider_id, str) and provider_id.strip() else ""
    provider_id = provider_id or catalog.pick_default_provider(providers)

    if provider_id not in providers:
        raise ApiError(
            400,
            "INVALID_PROVIDER",
            f"Provider '{provider_id}' is not supported.",
            {"requestedProvider": provider_id, "availableProviders": providers},
        )
    models = catalog.list_models(provider_id)
    if not models:
        raise ApiError(
            400,
            "PROVIDER_HAS_NO_MODELS",
            f"Provider '{provider_id}' has no available models in this runtime.",
            {"requestedProvider": provider_id},
        )

    model_id = raw.get("modelId")
    model_id = model_id.strip() if isinstance(model_id, str) else ""
    if model_id:
        model = catalog.get_model(provider_id, model_id)
        if model is None:
            raise ApiError(
                400,
                "INVALID_MODEL",
                f"Model '{model_id}' is not available for provider '{provider_id}'.",
                {"requestedProvider": provider_id, "requestedModel": model_id, "availableModels": [m.id for m in models]},
            )
    else:
        model = catalog.get_model(provider_id, catalog.default_model) or models[0]

    return LlmConfig(provider_id=provider_id, model_id=model.id, tool_tier=normalize_tool_tier(raw.get("toolTier"))), model


# ------------------------------------------------------------------
# Credentials
# ------------------------------------------------------------------


class CredentialStore:
    """Per-session provider API keys, falling back to environment variables."""

    def __init__(self, environ: dict | None = None):
        self._sessions: dict[str, dict[str, str]] = {}
        self._environ = os.environ if environ is None else environ

    def save(self, session_id: str, provider_id: str, api_key: str) -> None:
        self._sessions.setdefault(session_id, {})[provider_id] = api_key.strip()

    def remove(self, session_id: str, provider_id: str) -> bool:
        return self._sessions.get(session_id, {}).pop(provider_id, None) is not None

    def resolve_api_key(self, session_id: str | None, provider_id: str) -> str | None:
        stored = self._sessions.get(session_id or "", {}).get(provider_id, "")
        if stored.strip():
            return stored.strip()
        names = [f"{provider_id.upper().replace('-', '_')}_API_KEY"]
        if provider_id in ("gemini", "google"):
            names.extend(GOOGLE_FALLBACK_KEY_ENV)
        for name in names:
            value = self._environ.get(name, "")
            if value and value.strip():
                return value.strip()
        return None


# ------------------------------------------------------------------
# Streaming
# ------------------------------------------------------------------


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict = field(default_factory=dict)
    raw_arguments: str = ""


@dataclass
class AssistantMessage:
    """Final assembled assistant message of one provider stream."""

    text: str = ""
    thinking: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "stop"
    usage: UsageSnapshot | None = None
    error_message: str = ""
    context_overflow: bool = False

    def to_message(self) -> dict:
        message: dict = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.raw_arguments or json.dumps(call.arguments)},
                }
                for call in self.tool_calls
            ]
        return message


@dataclass
class ProviderEvent:
    """Normalized stream event.

    Types: text_delta, thinking_delta, toolcall_start, toolcall_delta, done.
    ``toolcall_delta`` carries the partially parsed argument object.
    """

    type: str
    delta: str = ""
    index: int = 0
    tool_call_id: str = ""
    tool_name: str = ""
    arguments: dict | None = None
    message: AssistantMessage | None = None


def parse_partial_json(text: str) -> dict:
    """Best-effort parse of a truncated JSON object (closing open strings and brackets)."""
    if not text:
        return {}
    try:
        value = json.loads(text)
        return value if isinstance(value, dict) else {}
    except ValueError:
        pass

    candidate = text
    for _ in range(4):
        stack = []
        in_string = False
        escape = False
        for ch in candidate:
            if in_string:
                if escape:
                    escape = False
                elif ch == "\\":
                    escape = True
                elif ch == '"':
                    in_string = False
            elif ch == '"':
                in_string = True
            elif ch in "{[":
                stack.append(ch)
            elif ch in "}]" and stack:
                stack.pop()
        closed = candidate[:-1] if escape else candidate
        if in_string:
            closed += '"'
        closed += "".join("}" if opener == "{" else "]" for opener in reversed(stack))
        try:
            value = json.loads(closed)
            return value if isinstance(value, dict) else {}
        except ValueError:
            cut = candidate.rfind(",")
            if cut <= 0:
                return {}
            candidate = candidate[:cut]
    return {}


def _usage_from(raw) -> UsageSnapshot | None:
    if raw is None:
        return None
    details = getattr(raw, "prompt_tokens_details", None)
    cached = getattr(details, "cached_tokens", 0) if details is not None else 0
    return UsageSnapshot(
        input=int(getattr(raw, "prompt_tokens", 0) or 0),
        output=int(getattr(raw, "completion_tokens", 0) or 0),
        cache_read=int(cached or 0),
        total_tokens=int(getattr(raw, "total_tokens", 0) or 0),
    )


def is_context_overflow(message: AssistantMessage, context_window: int = 0) -> bool:
    if message.context_overflow:
        return True
    if message.error_message and _OVERFLOW_PATTERNS.search(message.error_message):
        return True
    return bool(context_window > 0 and message.usage and message.usage.input > context_window)


class ProviderClient:
    """One model + key. ``stream`` drives tool turns, ``complete`` serves summaries."""

    def __init__(
        self,
        model: ModelInfo,
        api_key: str,
        *,
        max_output_tokens: int = 8192,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE_SEC,
    ):
        self.model = model
        self.api_key = api_key
        self.max_output_tokens = max_output_tokens
        self.max_retries = max_retries
        self.backoff_base = backoff_base

    async def _call(self, **kwargs):
        attempt = 0
        while True:
            try:
                return await litellm.acompletion(model=self.model.litellm_model, api_key=self.api_key, **kwargs)
            except TRANSIENT_ERRORS as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.backoff_base * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "Transient provider error on %s (attempt %d/%d), retrying in %.1fs: %s",
                    self.model.id, attempt, self.max_retries, delay, e,
                )
                await asyncio.sleep(delay)

    async def complete(self, system_prompt: str, prompt: str, max_tokens: int) -> str:
        response = await self._call(
            messages=[{"role": "system", "content": system_prompt}, {"role": "user", "content": prompt}],
            max_tokens=max_tokens,
        )
        content = response.choices[0].message.content if response.choices else None
        return content or ""

    async def stream(
        self,
        messages: list[dict],
        tools: list[dict] | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[ProviderEvent]:
        """Yield normalized events; the last one is always ``done`` with the final message."""
        message = AssistantMessage()
        kwargs = {
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
            "max_tokens": self.max_output_tokens,
        }
        if tools:
            kwargs["tools"] = tools

        try:
            response = await self._call(**kwargs)
        except litellm.ContextWindowExceededError as e:
            message.stop_reason = "error"
            message.error_message = str(e)
            message.context_overflow = True
            yield ProviderEvent(type="done", message=message)
            return
        except Exception as e:
            logger.warning("Provider request failed for %s: %s", self.model.id, e)
            message.stop_reason = "error"
            message.error_message = str(e) or type(e).__name__
            yield ProviderEvent(type="done", message=message)
            return

        partial_calls: dict[int, ToolCall] = {}
        finish_reason = None
        try:
            async for chunk in response:
                if cancel is not None and cancel.cancelled:
                    message.stop_reason = "aborted"
                    message.error_message = "Request aborted."
                    break
                usage = getattr(chunk, "usage", None)
                if usage is not None:
                    message.usage = _usage_from(usage)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                if delta is None:
                    continue

                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    message.thinking += reasoning
                    yield ProviderEvent(type="thinking_delta", delta=reasoning)
                if delta.content:
                    message.text += delta.content
                    yield ProviderEvent(type="text_delta", delta=delta.content)

                for tool_delta in getattr(delta, "tool_calls", None) or []:
                    index = tool_delta.index if getattr(tool_delta, "index", None) is not None else 0
                    function = getattr(tool_delta, "function", None)
                    call = partial_calls.get(index)
                    if call is None:
                        call = partial_calls[index] = ToolCall(
                            id=tool_delta.id or f"call_{index}",
                            name=(getattr(function, "name", None) or "").strip(),
                        )
                        yield ProviderEvent(
                            type="toolcall_start", index=index, tool_call_id=call.id, tool_name=call.name
                        )
                    elif function is not None and getattr(function, "name", None) and not call.name:
                        call.name = function.name.strip()
                    fragment = getattr(function, "arguments", None) if function is not None else None
                    if fragment:
                        call.raw_arguments += fragment
                        yield ProviderEvent(
                            type="toolcall_delta",
                            index=index,
                            tool_call_id=call.id,
                            tool_name=call.name,
                            arguments=parse_partial_json(call.raw_arguments),
                        )
        except litellm.ContextWindowExceededError as e:
            message.stop_reason = "error"
            message.error_message = str(e)
            message.context_overflow = True
        except Exception as e:
            logger.warning("Provider stream failed for %s: %s", self.model.id, e)
            message.stop_reason = "error"
            message.error_message = str(e) or type(e).__name__

        for index in sorted(partial_calls):
            call = partial_calls[index]
            try:
                parsed = json.loads(call.raw_arguments) if call.raw_arguments.strip() else {}
            except ValueError:
                parsed = parse_partial_json(call.raw_arguments)
            call.arguments = parsed if isinstance(parsed, dict) else {}
            message.tool_calls.append(call)

        if message.stop_reason not in ("error", "aborted"):
            if message.tool_calls:
                message.stop_reason = "tool_use"
            else:
                reason = _STOP_REASONS.get(finish_reason or "stop", "stop")
                message.stop_reason = "stop" if reason == "tool_use" else reason
        yield ProviderEvent(type="done", message=message)
