"""Per-lane rolling context memory with token estimation and compaction.

A lane is keyed by ``(session id, app context)`` and holds a free-text
rolling summary plus the recent turns, oldest first. Before each request the
lane is estimated; when the estimate crosses ``context_window -
reserve_tokens`` older turns are summarized away by the model, keeping at
least ``keep_recent_tokens`` of recent detail. A turn that alone exceeds that
budget is split so compaction always converges.
"""

import asyncio
import json
import logging
import math
import re
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable

from .config import CompactionSettings
from .errors import ToolError
from .ids import base36, make_id
from .memory_files import append_memory_note

logger = logging.getLogger("neural_agent.context_memory")

DEFAULT_APP_CONTEXT = "desktop_env"
USAGE_TOKEN_WEIGHT = 0.25
SPLIT_TURN_MIN_TAIL_CHARS = 4000
FLUSH_NOTE_MAX_TURNS = 12
BACKGROUND_RETRY_DELAY_SEC = 0.025

TURN_STATE_SYSTEM_PROMPT = (
    "You are a state summarization assistant. Return only strict JSON with keys: "
    "goal, ui_state, actions_taken, open_issues, next_steps."
)
COMPACTION_SYSTEM_PROMPT = (
    "You are a context compaction assistant. Produce concise continuation memory "
    "and keep exact app IDs, interaction IDs, and key constraints."
)
DEFAULT_COMPACTION_HEADER = "Update the rolling context summary with the provided older turns."
SPLIT_TURN_HEADER = "Summarize this oversized split turn prefix for continuation."

# (system_prompt, user_prompt, max_tokens) -> completion text
Summarizer = Callable[[str, str, int], Awaitable[str]]


def normalize_app_context(app_context) -> str:
    if isinstance(app_context, str) and app_context.strip():
        return app_context.strip()
    return DEFAULT_APP_CONTEXT


def estimate_tokens(text: str) -> int:
    """Roughly four characters per token, rounded up."""
    if not text or not isinstance(text, str):
        return 0
    return math.ceil(len(text) / 4)


# ------------------------------------------------------------------
# Records
# ------------------------------------------------------------------


def _clean(value) -> str:
    return value.strip() if isinstance(value, str) else ""


@dataclass
class Interaction:
    """One user interaction forwarded by the presentation layer."""

    id: str = "unknown_interaction"
    type: str = "generic_click"
    value: str | None = None
    element_type: str = "unknown"
    element_text: str = ""
    app_context: str = DEFAULT_APP_CONTEXT
    trace_id: str | None = None
    ui_session_id: str | None = None
    event_seq: int | None = None
    source: str = "host"

    @classmethod
    def from_payload(cls, raw, app_context: str) -> "Interaction":
        raw = raw if isinstance(raw, dict) else {}
        interaction_id = _clean(raw.get("id")) or "unknown_interaction"
        event_seq = raw.get("eventSeq")
        return cls(
            id=interaction_id,
            type=_clean(raw.get("type")) or "generic_click",
            value=raw.get("value") if isinstance(raw.get("value"), str) else None,
            element_type=_clean(raw.get("elementType")) or "unknown",
            element_text=_clean(raw.get("elementText")) or interaction_id,
            app_context=normalize_app_context(raw.get("appContext") or app_context),
            trace_id=raw.get("traceId") if isinstance(raw.get("traceId"), str) else None,
            ui_session_id=raw.get("uiSessionId") if isinstance(raw.get("uiSessionId"), str) else None,
            event_seq=int(event_seq) if isinstance(event_seq, (int, float)) and not isinstance(event_seq, bool) else None,
            source=raw.get("source") if raw.get("source") in ("host", "iframe") else "host",
        )

    @classmethod
    def fallback(cls, app_context: str, user_message) -> "Interaction":
        """Synthesized interaction for requests that carry only a prompt."""
        return cls.from_payload(
            {
                "id": f"legacy_{base36(int(time.time() * 1000))}",
                "type": "user_prompt",
                "value": user_message[:320] if isinstance(user_message, str) else "",
                "elementType": "prompt",
                "elementText": "Legacy Prompt",
                "appContext": app_context,
            },
            app_context,
        )

    def describe(self) -> str:
        base = f"{self.type or 'interaction'} on '{self.element_text or self.id or 'unknown'}'"
        if self.value and self.value.strip():
            return f"{base} (value='{self.value[:120]}')"
        return base

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "type": self.type,
            "elementType": self.element_type,
            "elementText": self.element_text,
            "appContext": self.app_context,
            "source": self.source,
        }
        for key, value in (
            ("value", self.value),
            ("traceId", self.trace_id),
            ("uiSessionId", self.ui_session_id),
            ("eventSeq", self.event_seq),
        ):
            if value is not None:
                data[key] = value
        return data


@dataclass
class TurnStateSummary:
    goal: str = ""
    ui_state: str = ""
    actions_taken: list[str] = field(default_factory=list)
    open_issues: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)

    def inline(self) -> str:
        actions = "; ".join(self.actions_taken[:3])
        text = f"Goal: {self.goal or '(none)'} | UI: {self.ui_state or '(none)'}"
        if actions:
            text += f" | Actions: {actions}"
        if self.open_issues:
            text += f" Open issues: {'; '.join(self.open_issues[:2])}."
        return text

    def to_dict(self) -> dict:
        return {
            "goal": self.goal,
            "ui_state": self.ui_state,
            "actions_taken": list(self.actions_taken),
            "open_issues": list(self.open_issues),
            "next_steps": list(self.next_steps),
        }


@dataclass
class UsageSnapshot:
    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0
    total_tokens: int = 0

    def total(self) -> int:
        if self.total_tokens > 0:
            return self.total_tokens
        return self.input + self.output + self.cache_read + self.cache_write


@dataclass
class Turn:
    turn_id: str
    timestamp: int
    app_context: str
    interaction: Interaction
    user_prompt: str
    state_summary: TurnStateSummary
    usage: UsageSnapshot | None = None
    estimated_tokens: int = 0


@dataclass
class LaneEstimate:
    tokens: int
    context_window: int
    threshold: int
    estimated_at: int

    def to_dict(self) -> dict:
        return {
            "tokens": self.tokens,
            "contextWindow": self.context_window,
            "threshold": self.threshold,
            "estimatedAt": self.estimated_at,
        }


@dataclass
class ContextLane:
    summary: str = ""
    recent_turns: list[Turn] = field(default_factory=list)
    last_estimate: LaneEstimate | None = None
    compaction_in_flight: bool = False
    compaction_queued: bool = False


@dataclass
class CompactionPlan:
    tokens_before: int
    turns_to_summarize: list[Turn]
    keep_turns: list[Turn]
    split_turn_index: int = -1

    @property
    def is_split_turn(self) -> bool:
        return self.split_turn_index >= 0


# ------------------------------------------------------------------
# State summaries
# ------------------------------------------------------------------


def _string_list(value) -> list[str]:
    if not isinstance(value, list):
        return []
    return [entry.strip() for entry in value if isinstance(entry, str) and entry.strip()][:12]


def deterministic_state_summary(interaction: Interaction, output_text: str) -> TurnStateSummary:
    """Fallback summary derived only from the interaction and output length."""
    described = interaction.describe()
    output_length = len(output_text) if isinstance(output_text, str) else 0
    if output_length > 0:
        output_hint = f"Generated response length: {output_length} chars."
    else:
        output_hint = "Generated response content available for this interaction."
    if interaction.type == "user_prompt" and interaction.value:
        goal = interaction.value[:220]
    else:
        goal = f"Handle {described}"
    return TurnStateSummary(
        goal=goal,
        ui_state=(
            f"App context: {normalize_app_context(interaction.app_context)}. "
            f"Focus element: {interaction.element_text or interaction.id or 'unknown'}."
        ),
        actions_taken=[described, output_hint],
        open_issues=[],
        next_steps=["Continue from this state on the next interaction."],
    )


def normalize_turn_state_summary(raw, interaction: Interaction, output_text: str) -> TurnStateSummary:
    """Validate a model-produced summary; any bad field takes the fallback value."""
    fallback = deterministic_state_summary(interaction, output_text)
    if not isinstance(raw, dict):
        return fallback
    summary = TurnStateSummary(
        goal=_clean(raw.get("goal")) or fallback.goal,
        ui_state=_clean(raw.get("ui_state")) or fallback.ui_state,
        actions_taken=_string_list(raw.get("actions_taken")),
        open_issues=_string_list(raw.get("open_issues")),
        next_steps=_string_list(raw.get("next_steps")),
    )
    if not summary.actions_taken:
        summary.actions_taken = fallback.actions_taken
    if not summary.next_steps:
        summary.next_steps = fallback.next_steps
    return summary


_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)


def extract_json_object(text: str):
    """Pull the first JSON object out of model text (fenced block or balanced braces)."""
    if not text:
        return None
    fence = _JSON_FENCE.search(text)
    if fence and fence.group(1):
        try:
            return json.loads(fence.group(1).strip())
        except ValueError:
            pass

    start = text.find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
        if depth == 0:
            try:
                return json.loads(text[start : i + 1])
            except ValueError:
                return None
    return None


# ------------------------------------------------------------------
# Engine
# ------------------------------------------------------------------


class ContextMemoryEngine:
    """Owns the lane store and coordinates compaction per lane.

    At most one compaction runs per lane (``compaction_in_flight``); extra
    background triggers coalesce into ``compaction_queued``.
    """

    def __init__(self, settings: CompactionSettings | None = None, *, retry_delay: float = BACKGROUND_RETRY_DELAY_SEC):
        self.settings = settings or CompactionSettings()
        self.retry_delay = retry_delay
        self.lanes: dict[str, ContextLane] = {}
        self._background: set[asyncio.Task] = set()

    # --- Lanes ---

    @staticmethod
    def lane_key(session_id: str | None, app_context: str | None) -> str:
        return f"{session_id or 'session_unknown'}::{normalize_app_context(app_context)}"

    def get_lane(self, session_id: str | None, app_context: str | None) -> tuple[str, ContextLane]:
        key = self.lane_key(session_id, app_context)
        lane = self.lanes.get(key)
        if lane is None:
            lane = self.lanes[key] = ContextLane()
        return key, lane

    def snapshot(self, session_id: str = "", app_context: str = "") -> list[dict]:
        rows = []
        for key, lane in self.lanes.items():
            lane_session, _, lane_context = key.partition("::")
            if session_id and lane_session != session_id:
                continue
            if app_context and lane_context != app_context:
                continue
            rows.append({
                "laneKey": key,
                "summaryChars": len(lane.summary),
                "turnCount": len(lane.recent_turns),
                "lastEstimate": lane.last_estimate.to_dict() if lane.last_estimate else None,
                "compactionInFlight": lane.compaction_in_flight,
                "compactionQueued": lane.compaction_queued,
            })
        return rows

    # --- Estimation ---

    def estimate_turn_tokens(self, turn: Turn) -> int:
        if turn.estimated_tokens:
            return turn.estimated_tokens
        prompt_tokens = estimate_tokens(turn.user_prompt)
        summary_tokens = estimate_tokens(f"{turn.interaction.describe()}\n{turn.state_summary.inline()}")
        usage_tokens = turn.usage.total() if turn.usage else 0
        weighted_usage = math.floor(usage_tokens * USAGE_TOKEN_WEIGHT) if usage_tokens else 0
        return max(prompt_tokens + summary_tokens, weighted_usage)

    def estimate_lane_tokens(self, lane: ContextLane, system_prompt: str = "", incoming_user_message: str = "") -> int:
        """Summary + turns (+ reported usage when newer) + the incoming request."""
        turns = lane.recent_turns
        usage_tokens = 0
        last_usage_index = None
        for i in range(len(turns) - 1, -1, -1):
            tokens = turns[i].usage.total() if turns[i].usage else 0
            if tokens > 0:
                usage_tokens = tokens
                last_usage_index = i
                break

        from_turns = estimate_tokens(lane.summary) + sum(self.estimate_turn_tokens(t) for t in turns)
        if last_usage_index is None:
            base = from_turns
        else:
            trailing = sum(self.estimate_turn_tokens(t) for t in turns[last_usage_index + 1 :])
            base = max(usage_tokens + trailing, from_turns)
        return base + estimate_tokens(system_prompt) + estimate_tokens(incoming_user_message)

    def threshold(self, context_window: int) -> int:
        return context_window - self.settings.reserve_tokens if context_window > 0 else 0

    def should_compact(self, tokens: int, context_window: int) -> bool:
        return context_window > 0 and tokens > context_window - self.settings.reserve_tokens

    def _record_estimate(self, key: str, lane: ContextLane, tokens: int, context_window: int) -> None:
        threshold = self.threshold(context_window)
        lane.last_estimate = LaneEstimate(
            tokens=tokens, context_window=context_window, threshold=threshold, estimated_at=int(time.time() * 1000)
        )
        logger.info(
            "[ContextMemory] estimate lane=%s tokens=%d window=%d threshold=%d triggered=%s",
            key, tokens, context_window, threshold, context_window > 0 and tokens > threshold,
        )

    # --- Compaction ---

    def prepare_compaction(self, lane: ContextLane) -> CompactionPlan | None:
        """Pick the cut point: keep newest turns worth ``keep_recent_tokens``."""
        turns = lane.recent_turns
        # A lone turn still qualifies: it may need splitting.
        if not turns:
            return None
        keep_budget = self.settings.keep_recent_tokens
        tokens_before = estimate_tokens(lane.summary) + sum(self.estimate_turn_tokens(t) for t in turns)

        accumulated = 0
        keep_start = len(turns)
        for i in range(len(turns) - 1, -1, -1):
            turn_tokens = self.estimate_turn_tokens(turns[i])
            if turn_tokens >= keep_budget:
                keep_start = i
                accumulated = turn_tokens
                break
            accumulated += turn_tokens
            keep_start = i
            if accumulated >= keep_budget:
                break

        if accumulated <= keep_budget and keep_start <= 0:
            return None

        to_summarize = turns[:keep_start]
        keep = list(turns[keep_start:])
        split_index = 0 if keep and self.estimate_turn_tokens(keep[0]) > keep_budget else -1
        if not to_summarize and split_index < 0:
            return None
        return CompactionPlan(
            tokens_before=tokens_before, turns_to_summarize=to_summarize, keep_turns=keep, split_turn_index=split_index
        )

    def _serialize_turns(self, turns: list[Turn]) -> str:
        return "\n\n".join(
            f"Turn {i + 1}:\nInteraction: {turn.interaction.describe()}\n"
            f"State: {turn.state_summary.inline()}\nOriginal Prompt: {turn.user_prompt[:500]}"
            for i, turn in enumerate(turns)
        )

    async def _summarize_turns(
        self, summarize: Summarizer, previous_summary: str, turns: list[Turn], header: str = DEFAULT_COMPACTION_HEADER
    ) -> str:
        prompt = "\n".join([
            header,
            "Keep output concise and focused on continuation-critical context.",
            "Prefer bullet lists and preserve app IDs and intent.",
            "",
            "<previous-summary>",
            previous_summary or "(none)",
            "</previous-summary>",
            "",
            "<turns-to-compact>",
            self._serialize_turns(turns) or "(none)",
            "</turns-to-compact>",
        ])
        max_tokens = max(800, math.floor(0.8 * self.settings.reserve_tokens))
        text = (await summarize(COMPACTION_SYSTEM_PROMPT, prompt, max_tokens)).strip()
        return text or previous_summary or ""

    def _split_prompt_tail(self, user_prompt: str) -> str:
        if not user_prompt:
            return ""
        keep_budget = self.settings.keep_recent_tokens
        if estimate_tokens(user_prompt) <= keep_budget:
            return user_prompt
        tail = user_prompt[-max(SPLIT_TURN_MIN_TAIL_CHARS, keep_budget) :]
        return f"[Split-turn compacted. Earlier prompt details are preserved in rolling summary.]\n{tail}"

    def _flush_note(self, turns: list[Turn], reason: str, key: str) -> str:
        lines = [
            f"Compaction flush ({reason}) for lane {key}.",
            "The following older turns were compacted from in-memory context and preserved as durable notes:",
        ]
        shown = turns[:FLUSH_NOTE_MAX_TURNS]
        lines.extend(f"{i + 1}. {turn.interaction.describe()}" for i, turn in enumerate(shown))
        if len(turns) > len(shown):
            lines.append(f"... {len(turns) - len(shown)} additional compacted turns omitted in this note.")
        return "\n".join(lines)

    async def run_compaction(
        self,
        key: str,
        lane: ContextLane,
        summarize: Summarizer,
        *,
        reason: str,
        workspace_root: str | None = None,
    ) -> bool:
        """Compact *lane* once. Returns True when turns were rewritten.

        If the summarizer fails the lane is left untouched and the error
        propagates; history is never dropped without a summary.
        """
        if lane.compaction_in_flight:
            return False
        lane.compaction_in_flight = True
        try:
            plan = self.prepare_compaction(lane)
            if plan is None:
                return False

            if workspace_root and plan.turns_to_summarize:
                tags = ["compaction", "context-memory", normalize_app_context(lane.recent_turns[0].app_context)]
                try:
                    append_memory_note(workspace_root, self._flush_note(plan.turns_to_summarize, reason, key), tags)
                except (OSError, ToolError) as e:
                    logger.warning("[ContextMemory] failed to write compaction flush note lane=%s: %s", key, e)

            next_summary = lane.summary
            if plan.turns_to_summarize:
                next_summary = await self._summarize_turns(summarize, next_summary, plan.turns_to_summarize)

            if plan.is_split_turn:
                split_turn = plan.keep_turns[plan.split_turn_index]
                split_summary = await self._summarize_turns(summarize, "", [split_turn], SPLIT_TURN_HEADER)
                if next_summary:
                    next_summary = f"{next_summary}\n\n---\n\nSplit Turn Context:\n{split_summary}"
                else:
                    next_summary = f"Split Turn Context:\n{split_summary}"

                compacted_state = deterministic_state_summary(
                    split_turn.interaction, json.dumps(split_turn.state_summary.to_dict())
                )
                compacted_state.ui_state = "Turn details compacted due to context budget. Refer to rolling summary."
                compacted = replace(
                    split_turn,
                    user_prompt=self._split_prompt_tail(split_turn.user_prompt),
                    state_summary=compacted_state,
                    usage=None,
                    estimated_tokens=0,
                )
                compacted.estimated_tokens = self.estimate_turn_tokens(compacted)
                plan.keep_turns[plan.split_turn_index] = compacted

            lane.summary = (next_summary or "").strip()
            lane.recent_turns = plan.keep_turns
            logger.info(
                "[ContextMemory] compaction lane=%s reason=%s tokens_before=%d compacted=%d kept=%d",
                key, reason, plan.tokens_before, len(plan.turns_to_summarize), len(lane.recent_turns),
            )
            return True
        finally:
            lane.compaction_in_flight = False

    async def maybe_compact_before_request(
        self,
        key: str,
        lane: ContextLane,
        summarize: Summarizer,
        *,
        context_window: int,
        system_prompt: str = "",
        incoming_user_message: str = "",
        workspace_root: str | None = None,
    ) -> bool:
        if context_window <= 0:
            return False
        tokens = self.estimate_lane_tokens(lane, system_prompt, incoming_user_message)
        self._record_estimate(key, lane, tokens, context_window)
        if not self.should_compact(tokens, context_window):
            return False
        return await self.run_compaction(key, lane, summarize, reason="pre_send", workspace_root=workspace_root)

    def queue_background_compaction(
        self,
        key: str,
        lane: ContextLane,
        summarize: Summarizer,
        *,
        context_window: int,
        workspace_root: str | None = None,
    ) -> asyncio.Task:
        """Schedule a compaction check without blocking the caller."""
        lane.compaction_queued = True
        task = asyncio.get_running_loop().create_task(
            self._background_compaction(key, lane, summarize, context_window, workspace_root)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _background_compaction(
        self, key: str, lane: ContextLane, summarize: Summarizer, context_window: int, workspace_root: str | None
    ) -> None:
        while lane.compaction_in_flight:
            await asyncio.sleep(self.retry_delay)
        if not lane.compaction_queued:
            return  # coalesced into an earlier run
        lane.compaction_queued = False
        if context_window <= 0:
            return
        try:
            tokens = self.estimate_lane_tokens(lane)
            self._record_estimate(key, lane, tokens, context_window)
            if tokens > self.threshold(context_window):
                await self.run_compaction(key, lane, summarize, reason="background", workspace_root=workspace_root)
        except Exception as e:
            logger.warning("[ContextMemory] background compaction failed lane=%s: %s", key, e)

    async def drain(self) -> None:
        """Wait for scheduled background compactions (used at shutdown and in tests)."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        await asyncio.gather(*list(self._background), return_exceptions=True)
        self._background.clear()

    # --- Turns ---

    async def summarize_turn_state(
        self,
        summarize: Summarizer,
        interaction: Interaction,
        output_text: str,
        lane_summary: str = "",
        *,
        lane_key: str = "",
    ) -> TurnStateSummary:
        """Ask the model for a strict-JSON turn snapshot; fall back mechanically on failure."""
        prompt = "\n".join([
            "Summarize this completed turn into a structured state snapshot.",
            "Return JSON only. No markdown.",
            "Schema:",
            '{"goal":"string","ui_state":"string","actions_taken":["string"],"open_issues":["string"],"next_steps":["string"]}',
            "",
            f"App context: {normalize_app_context(interaction.app_context)}",
            f"Interaction: {interaction.describe()}",
            "",
            "Rolling summary context (for continuity):",
            (lane_summary or "(none)")[:3000],
            "",
            "Assistant output (trimmed):",
            (output_text or "")[:8000] or "(empty)",
        ])
        try:
            text = await summarize(TURN_STATE_SYSTEM_PROMPT, prompt, 900)
        except Exception as e:
            logger.warning("[ContextMemory] turn summary fallback lane=%s: %s", lane_key, e)
            return deterministic_state_summary(interaction, output_text)
        return normalize_turn_state_summary(extract_json_object(text), interaction, output_text)

    def record_turn(
        self,
        key: str,
        lane: ContextLane,
        *,
        app_context: str,
        interaction: Interaction,
        user_prompt: str,
        state_summary: TurnStateSummary,
        usage: UsageSnapshot | None,
        context_window: int,
    ) -> Turn:
        turn = Turn(
            turn_id=make_id("turn"),
            timestamp=int(time.time() * 1000),
            app_context=app_context,
            interaction=interaction,
            user_prompt=user_prompt,
            state_summary=state_summary,
            usage=usage,
        )
        turn.estimated_tokens = self.estimate_turn_tokens(turn)
        lane.recent_turns.append(turn)
        self._record_estimate(key, lane, self.estimate_lane_tokens(lane), context_window)
        return turn

    def build_compacted_user_message(
        self, lane: ContextLane, app_context: str, interaction: Interaction, user_message: str
    ) -> str:
        """Render summary + recent turns + the current request as one user message."""
        parts = [
            f"Current App Context: {normalize_app_context(app_context)}",
            (
                f"Context Memory Mode: compacted (reserveTokens={self.settings.reserve_tokens}, "
                f"keepRecentTokens={self.settings.keep_recent_tokens})"
            ),
        ]
        if lane.summary:
            parts.append(f"Compacted Summary:\n{lane.summary}")
        if lane.recent_turns:
            recent = "\n\n".join(
                f"{i + 1}. {turn.interaction.describe()}\nState: {turn.state_summary.inline()}"
                for i, turn in enumerate(lane.recent_turns)
            )
            parts.append(f"Recent Turns (detailed tail):\n{recent}")
        parts.append(f"Current Interaction:\n{interaction.describe()}")
        parts.append(f"Current Turn Request:\n{user_message}")
        return "\n\n".join(parts)
