"""emit_screen revision state and streamed partial previews."""

import time
from dataclasses import dataclass, field
from typing import Callable

from .adapter import StreamEvent
from .errors import ToolError
from .output import as_text

DEFAULT_MAX_HTML_CHARS = 240_000
MAX_REVISION_NOTE_CHARS = 200
PARTIAL_MIN_CHAR_DELTA = 64
PARTIAL_MIN_INTERVAL_SEC = 0.120

# App contexts whose turns may finish without publishing a screen.
PUBLISH_EXEMPT_CONTEXTS = frozenset({"system_settings_page", "insights_app"})


def requires_emit_screen(app_context: str) -> bool:
    return (app_context or "").strip() not in PUBLISH_EXEMPT_CONTEXTS


@dataclass
class EmitScreenPayload:
    html: str
    app_context: str = ""
    revision_note: str = ""
    is_final: bool = False


@dataclass
class RenderOutputState:
    """Committed screen revisions for one turn. Revisions only ever go up."""

    render_count: int = 0
    latest_html: str = ""
    last_is_final: bool = False

    def apply(self, payload: EmitScreenPayload, tool_call_id: str = "") -> tuple[StreamEvent, str]:
        """Commit *payload* as the next revision; return the stream event and tool text."""
        self.render_count += 1
        self.latest_html = payload.html
        self.last_is_final = payload.is_final

        metadata = {
            "toolName": "emit_screen",
            "revision": self.render_count,
            "html": payload.html,
            "isFinal": payload.is_final,
        }
        if tool_call_id:
            metadata["toolCallId"] = tool_call_id
        if payload.app_context:
            metadata["appContext"] = payload.app_context
        if payload.revision_note:
            metadata["revisionNote"] = payload.revision_note
        event = StreamEvent(type="render_output", metadata=metadata)

        final_hint = ", final" if payload.is_final else ""
        note_hint = f" note='{payload.revision_note}'" if payload.revision_note else ""
        text = f"[emit_screen] rendered revision {self.render_count} ({len(payload.html)} chars{final_hint}){note_hint}"
        return event, text


def validate_emit_screen_args(args: dict, max_html_chars: int = DEFAULT_MAX_HTML_CHARS) -> EmitScreenPayload:
    """Check emit_screen arguments; raises ToolError with a model-facing message."""
    source = args if isinstance(args, dict) else {}
    max_html_chars = max(1_000, int(max_html_chars))

    html = as_text(source.get("html"))
    if not html.strip():
        raise ToolError("emit_screen requires a non-empty html field.")
    if len(html) > max_html_chars:
        raise ToolError(f"emit_screen html exceeds max length ({max_html_chars} chars).")

    return EmitScreenPayload(
        html=html,
        app_context=as_text(source.get("appContext")).strip(),
        revision_note=as_text(source.get("revisionNote")).strip()[:MAX_REVISION_NOTE_CHARS],
        is_final=bool(source.get("isFinal")),
    )


def seed_render_state(seed, app_context: str, max_html_chars: int = DEFAULT_MAX_HTML_CHARS) -> RenderOutputState:
    """Start a turn from the client's last known screen when it belongs to *app_context*."""
    if not isinstance(seed, dict):
        return RenderOutputState()
    html = seed.get("html") if isinstance(seed.get("html"), str) else ""
    if not html.strip():
        return RenderOutputState()
    seed_context = seed.get("appContext")
    if isinstance(seed_context, str) and seed_context.strip() and seed_context.strip() != app_context:
        return RenderOutputState()

    try:
        revision = int(float(seed.get("revision")))
    except (TypeError, ValueError):
        revision = 1
    return RenderOutputState(
        render_count=revision if revision > 0 else 1,
        latest_html=html[:max_html_chars],
        last_is_final=bool(seed.get("isFinal")),
    )


# ------------------------------------------------------------------
# Partial previews
# ------------------------------------------------------------------


@dataclass
class _PartialRecord:
    html: str
    emitted_at: float


@dataclass
class PartialPublishThrottle:
    """Rate-limits render_output_partial events per streaming tool call.

    A partial goes out when the html changed and either it grew or shrank by
    at least ``min_char_delta`` or ``min_interval`` passed since the last one.
    Partials never touch :class:`RenderOutputState`.
    """

    max_html_chars: int = DEFAULT_MAX_HTML_CHARS
    min_char_delta: int = PARTIAL_MIN_CHAR_DELTA
    min_interval: float = PARTIAL_MIN_INTERVAL_SEC
    clock: Callable[[], float] = time.monotonic
    _last: dict[str, _PartialRecord] = field(default_factory=dict)

    def offer(self, tool_call_id: str, index: int, args: dict) -> StreamEvent | None:
        if not isinstance(args, dict):
            return None
        op = args.get("op")
        op = op.strip().lower() if isinstance(op, str) and op.strip() else "replace"
        if op != "replace":
            return None
        html = args.get("html") if isinstance(args.get("html"), str) else ""
        if not html:
            return None

        call_id = (tool_call_id or "").strip()
        key = call_id or f"emit_screen_partial_{index}"
        previous = self._last.get(key)
        now = self.clock()
        if previous is not None and previous.html == html:
            return None
        delta = abs(len(html) - len(previous.html)) if previous else len(html)
        due_by_length = delta >= self.min_char_delta
        due_by_time = previous is None or now - previous.emitted_at >= self.min_interval
        if not due_by_length and not due_by_time:
            return None
        self._last[key] = _PartialRecord(html=html, emitted_at=now)

        metadata = {"toolName": "emit_screen", "html": html[: self.max_html_chars], "isFinal": bool(args.get("isFinal"))}
        if call_id:
            metadata["toolCallId"] = call_id
        app_context = args.get("appContext")
        if isinstance(app_context, str) and app_context.strip():
            metadata["appContext"] = app_context.strip()
        note = args.get("revisionNote")
        if isinstance(note, str) and note.strip():
            metadata["revisionNote"] = note.strip()[:MAX_REVISION_NOTE_CHARS]
        return StreamEvent(type="render_output_partial", metadata=metadata)

    def forget(self, tool_call_id: str) -> None:
        self._last.pop((tool_call_id or "").strip(), None)
