"""Turn orchestration: the provider/tool loop and the per-request attempt machine.

:class:`ToolCallLoop` streams one attempt: provider events go out as they
arrive, requested tools run in order, and the loop re-enters the provider
until it stops asking for tools. :class:`TurnRunner` wraps at most two
attempts and decides how the request ends (see :class:`TurnOutcome`).
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from .adapter import StreamEvent
from .cancellation import CancellationToken, TurnCancelled
from .config import RuntimeConfig
from .context_memory import ContextLane, ContextMemoryEngine, Interaction
from .onboarding import OnboardingState
from .providers import AssistantMessage, LlmConfig, ModelInfo, ProviderClient, is_context_overflow
from .render_output import PartialPublishThrottle, requires_emit_screen, seed_render_state
from .tools import OnboardingHandlers, ToolContext, ToolDispatcher, ToolSpec

logger = logging.getLogger("neural_agent.loop")

MAX_ATTEMPTS = 2
TOOL_RESULT_PREVIEW_CHARS = 240

EMIT_SCREEN_RETRY_HINT = (
    "System retry instruction: previous attempt ended without calling emit_screen. "
    "You MUST call emit_screen with complete window content HTML before finishing this turn."
)
EMIT_SCREEN_RETRY_THOUGHT = "[System] Retrying turn because emit_screen was not called."

STREAM_ENDED_MESSAGE = "Model stream ended unexpectedly."
OVERFLOW_MESSAGE = "Context window exceeded during generation. Memory compaction was queued for the next turn."
PROVIDER_ERROR_MESSAGE = "Model stream error."
MISSING_PUBLISH_MESSAGE = (
    "No render output was emitted. Use the emit_screen tool to publish window HTML before finishing the turn."
)
RETRY_EXHAUSTED_MESSAGE = "Context overflow retry exhausted."
UNEXPECTED_ERROR_MESSAGE = "Unexpected server error."


def _thought(text: str) -> StreamEvent:
    return StreamEvent(type="thought", content=text)


def _error(message: str) -> StreamEvent:
    return StreamEvent(type="error", content=message)


def preview_text(text: str, limit: int = TOOL_RESULT_PREVIEW_CHARS) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


# ------------------------------------------------------------------
# One attempt
# ------------------------------------------------------------------


@dataclass
class LoopResult:
    final: AssistantMessage | None = None
    output_text: str = ""
    emitted_text_chunks: int = 0
    emit_count: int = 0


class ToolCallLoop:
    """Provider stream + sequential tool execution until the model stops calling tools.

    Iterate :meth:`run` for the events; :attr:`result` is complete once the
    iteration finishes. There is no step ceiling: the loop ends on a non
    tool-use stop reason, per-tool budgets or cancellation.
    """

    def __init__(
        self,
        client: ProviderClient,
        dispatcher: ToolDispatcher,
        ctx: ToolContext,
        *,
        system_prompt: str,
        tools: list[ToolSpec],
        cancel: CancellationToken,
    ):
        self.client = client
        self.dispatcher = dispatcher
        self.ctx = ctx
        self.system_prompt = system_prompt
        self.tools = tools
        self.cancel = cancel
        self.throttle = PartialPublishThrottle(max_html_chars=ctx.config.emit_screen_max_html_chars)
        self.messages: list[dict] = []
        self.result = LoopResult()

    async def run(self, user_message: str) -> AsyncIterator[StreamEvent]:
        result = self.result
        self.messages = [{"role": "system", "content": self.system_prompt}, {"role": "user", "content": user_message}]
        provider_tools = [spec.to_provider_schema() for spec in self.tools] or None

        while True:
            final = None
            async for event in self.client.stream(self.messages, provider_tools, self.cancel):
                if event.type == "text_delta":
                    result.emitted_text_chunks += 1
                    result.output_text += event.delta
                    yield StreamEvent(type="chunk", content=event.delta)
                elif event.type == "thinking_delta":
                    yield _thought(event.delta)
                elif event.type == "toolcall_start":
                    tool_name = (event.tool_name or "").strip() or "tool"
                    metadata = {"toolName": tool_name}
                    if event.tool_call_id:
                        metadata["toolCallId"] = event.tool_call_id
                    yield StreamEvent(type="tool_call_start", metadata=metadata)
                    yield _thought(f"[System] Resolving tool call ({tool_name})...")
                elif event.type == "toolcall_delta":
                    if event.tool_name != "emit_screen":
                        continue
                    partial = self.throttle.offer(event.tool_call_id, event.index, event.arguments or {})
                    if partial is not None:
                        yield partial
                elif event.type == "done":
                    final = event.message

            result.final = final
            if final is None:
                return
            self.messages.append(final.to_message())

            if not result.output_text and not self.ctx.render_state.latest_html and final.text:
                result.output_text = final.text

            if final.stop_reason != "tool_use" or not final.tool_calls:
                return

            for call in final.tool_calls:
                self.cancel.raise_if_cancelled()
                self.throttle.forget(call.id)
                tool_result = await self.dispatcher.execute(call.name, call.arguments, self.ctx, call.id)
                self.cancel.raise_if_cancelled()

                for event in tool_result.events:
                    yield event
                if call.name == "emit_screen" and not tool_result.is_error:
                    result.output_text = self.ctx.render_state.latest_html
                if tool_result.next_workspace_root and not tool_result.is_error:
                    self.ctx.workspace_root = tool_result.next_workspace_root

                trimmed = preview_text(tool_result.text)
                yield StreamEvent(
                    type="tool_call_result",
                    content=trimmed,
                    metadata={"toolName": call.name, "toolCallId": call.id, "isError": tool_result.is_error},
                )
                suffix = f" with error: {trimmed}" if tool_result.is_error else ""
                yield _thought(f"[System] Tool {call.name} completed{suffix}.")
                self.messages.append(
                    {"role": "tool", "tool_call_id": call.id, "name": call.name, "content": tool_result.text}
                )
            result.emit_count = self.ctx.emit_count


# ------------------------------------------------------------------
# Attempts
# ------------------------------------------------------------------


class TurnOutcome(enum.Enum):
    DONE = "done"
    STREAM_ENDED = "stream_ended"
    OVERFLOW_FAILED = "overflow_failed"
    PROVIDER_ERROR = "provider_error"
    MISSING_PUBLISH_FAILED = "missing_publish_failed"
    RETRY_EXHAUSTED = "retry_exhausted"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class PreparedTurn:
    """Everything a validated stream request resolved to before streaming starts."""

    session_id: str
    llm: LlmConfig
    model: ModelInfo
    api_key: str
    workspace_root: str
    app_context: str
    interaction: Interaction
    user_message: str
    system_prompt: str
    tools: list[ToolSpec]
    # system prompt without tool guidance; used for the pre-send estimate
    base_prompt: str = ""
    memory_mode: str = "compacted"
    onboarding_mode: bool = False
    onboarding_state: OnboardingState | None = None
    onboarding: OnboardingHandlers | None = None
    seed_screen: dict | None = None
    google_search_api_key: str | None = None
    google_search_cx: str | None = None


@dataclass
class _Attempts:
    count: int = 0
    overflow_retried: bool = False
    publish_retried: bool = False
    retry_hint: str = ""
    workspace_root: str = ""
    outcome: TurnOutcome | None = None
    lane_key: str = ""
    lane: ContextLane | None = field(default=None, repr=False)


ClientFactory = Callable[[ModelInfo, str], ProviderClient]


class TurnRunner:
    """Runs one stream request through up to :data:`MAX_ATTEMPTS` tool loops.

    Terminal states map to one final event each: ``done`` for
    :attr:`TurnOutcome.DONE`, a specific ``error`` for the failures, and
    nothing at all when the turn was cancelled by the client.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        memory: ContextMemoryEngine,
        dispatcher: ToolDispatcher | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.config = config
        self.memory = memory
        self.dispatcher = dispatcher or ToolDispatcher()
        self.client_factory = client_factory or self._default_client
        self.last_outcome: TurnOutcome | None = None

    def _default_client(self, model: ModelInfo, api_key: str) -> ProviderClient:
        return ProviderClient(model, api_key, max_output_tokens=self.config.max_output_tokens)

    def _context(self, turn: PreparedTurn, workspace_root: str) -> ToolContext:
        return ToolContext(
            workspace_root=workspace_root,
            config=self.config,
            app_context=turn.app_context,
            tool_tier=turn.llm.tool_tier,
            onboarding_mode=turn.onboarding_mode,
            onboarding=turn.onboarding,
            render_state=seed_render_state(turn.seed_screen, turn.app_context, self.config.emit_screen_max_html_chars),
            google_search_api_key=turn.google_search_api_key,
            google_search_cx=turn.google_search_cx,
            allowed_tools=frozenset(spec.name for spec in turn.tools),
        )

    async def run(self, turn: PreparedTurn, cancel: CancellationToken) -> AsyncIterator[StreamEvent]:
        state = _Attempts(workspace_root=turn.workspace_root)
        if turn.memory_mode == "compacted":
            state.lane_key, state.lane = self.memory.get_lane(turn.session_id, turn.app_context)
        client = self.client_factory(turn.model, turn.api_key)
        try:
            async for event in self._attempts(turn, state, client, cancel):
                yield event
        except TurnCancelled:
            state.outcome = TurnOutcome.CANCELLED
            logger.info("Turn cancelled for session %s: %s", turn.session_id, cancel.reason)
        except Exception:
            logger.exception("Unexpected failure while streaming turn for session %s", turn.session_id)
            state.outcome = TurnOutcome.FAILED
            yield _error(UNEXPECTED_ERROR_MESSAGE)
        finally:
            self.last_outcome = state.outcome

    async def _attempts(
        self, turn: PreparedTurn, state: _Attempts, client: ProviderClient, cancel: CancellationToken
    ) -> AsyncIterator[StreamEvent]:
        lane, key = state.lane, state.lane_key
        context_window = turn.model.context_window

        while state.count < MAX_ATTEMPTS:
            state.count += 1
            cancel.raise_if_cancelled()
            user_message = f"{turn.user_message}\n\n{state.retry_hint}" if state.retry_hint else turn.user_message

            if lane is not None:
                preflight = self.memory.build_compacted_user_message(
                    lane, turn.app_context, turn.interaction, user_message
                )
                await self.memory.maybe_compact_before_request(
                    key, lane, client.complete,
                    context_window=context_window,
                    system_prompt=turn.base_prompt or turn.system_prompt,
                    incoming_user_message=preflight,
                    workspace_root=state.workspace_root,
                )
                user_message = self.memory.build_compacted_user_message(
                    lane, turn.app_context, turn.interaction, user_message
                )

            ctx = self._context(turn, state.workspace_root)
            loop = ToolCallLoop(
                client, self.dispatcher, ctx, system_prompt=turn.system_prompt, tools=turn.tools, cancel=cancel
            )
            async for event in loop.run(user_message):
                yield event
            state.workspace_root = ctx.workspace_root
            result = loop.result
            final = result.final

            if cancel.cancelled:
                raise TurnCancelled(cancel.reason)

            if final is None:
                state.outcome = TurnOutcome.STREAM_ENDED
                yield _error(STREAM_ENDED_MESSAGE)
                return

            if is_context_overflow(final, context_window):
                can_retry = lane is not None and not state.overflow_retried and result.emitted_text_chunks == 0
                if can_retry:
                    state.overflow_retried = True
                    compacted = await self.memory.run_compaction(
                        key, lane, client.complete, reason="overflow_retry", workspace_root=state.workspace_root
                    )
                    if compacted:
                        continue
                state.outcome = TurnOutcome.OVERFLOW_FAILED
                yield _error(OVERFLOW_MESSAGE)
                if lane is not None:
                    self.memory.queue_background_compaction(
                        key, lane, client.complete, context_window=context_window, workspace_root=state.workspace_root
                    )
                return

            if final.stop_reason in ("error", "aborted"):
                state.outcome = TurnOutcome.PROVIDER_ERROR
                yield _error(final.error_message or PROVIDER_ERROR_MESSAGE)
                return

            if requires_emit_screen(turn.app_context) and ctx.emit_count == 0:
                if not state.publish_retried and state.count < MAX_ATTEMPTS:
                    state.publish_retried = True
                    state.retry_hint = EMIT_SCREEN_RETRY_HINT
                    yield _thought(EMIT_SCREEN_RETRY_THOUGHT)
                    continue
                state.outcome = TurnOutcome.MISSING_PUBLISH_FAILED
                yield _error(MISSING_PUBLISH_MESSAGE)
                return

            if lane is not None:
                summary = await self.memory.summarize_turn_state(
                    client.complete, turn.interaction, result.output_text, lane.summary, lane_key=key
                )
                self.memory.record_turn(
                    key, lane,
                    app_context=turn.app_context,
                    interaction=turn.interaction,
                    user_prompt=user_message,
                    state_summary=summary,
                    usage=final.usage,
                    context_window=context_window,
                )
                self.memory.queue_background_compaction(
                    key, lane, client.complete, context_window=context_window, workspace_root=state.workspace_root
                )

            state.outcome = TurnOutcome.DONE
            yield StreamEvent(type="done")
            return

        state.outcome = TurnOutcome.RETRY_EXHAUSTED
        yield _error(RETRY_EXHAUSTED_MESSAGE)
