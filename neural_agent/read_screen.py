"""Bounded introspection of the latest committed screen (read_screen tool)."""

import hashlib
import json
import re
from dataclasses import dataclass

from .errors import ToolError
from .output import as_text, clamp_int
from .render_output import RenderOutputState

READ_SCREEN_MODES = ("meta", "outline", "snippet")
DEFAULT_SNIPPET_MAX_CHARS = 1200
MAX_SNIPPET_MAX_CHARS = 4000
OUTLINE_MAX_INTERACTION_IDS = 30
OUTLINE_MAX_HEADINGS = 12
OUTLINE_MAX_CONTROLS = 20
MAX_READS_PER_TURN = 2

_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_INTERACTION_ID_RE = re.compile(r"data-interaction-id\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE)
_HEADING_RE = re.compile(r"<(h[1-6])\b[^>]*>([\s\S]*?)</\1>", re.IGNORECASE)
_CONTROL_RE = re.compile(r"<(button|input|select|textarea|a)\b([^>]*)>", re.IGNORECASE)
_CONTROL_ATTRS = (
    ("id", re.compile(r"\sid\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE), "#{}"),
    ("name", re.compile(r"\sname\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE), "name={}"),
    ("type", re.compile(r"\stype\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE), "type={}"),
    ("label", re.compile(r"\saria-label\s*=\s*[\"']([^\"']+)[\"']", re.IGNORECASE), "label={}"),
)


@dataclass
class ReadScreenUsage:
    """Per-turn read budget: two reads, the second flagged as recovery."""

    read_count: int = 0
    recovery_read_used: bool = False


@dataclass(frozen=True)
class ReadScreenArgs:
    mode: str = "meta"
    max_chars: int = DEFAULT_SNIPPET_MAX_CHARS
    recovery: bool = False


def _strip_tags(text: str) -> str:
    return _SPACE_RE.sub(" ", _TAG_RE.sub(" ", text)).strip()


def extract_interaction_ids(html: str) -> list[str]:
    ids = []
    for match in _INTERACTION_ID_RE.finditer(html):
        value = match.group(1).strip()
        if value and value not in ids:
            ids.append(value)
    return ids


def extract_headings(html: str) -> list[str]:
    return [text for text in (_strip_tags(m.group(2)) for m in _HEADING_RE.finditer(html)) if text]


def extract_controls(html: str) -> list[str]:
    controls = []
    for match in _CONTROL_RE.finditer(html):
        attrs = match.group(2)
        parts = [match.group(1).lower()]
        for _, pattern, template in _CONTROL_ATTRS:
            found = pattern.search(attrs)
            if found:
                parts.append(template.format(found.group(1)))
        controls.append(" ".join(parts))
    return controls


def html_hash(html: str) -> str:
    return hashlib.sha256(html.encode("utf-8")).hexdigest()[:16]


def validate_read_screen_args(args: dict) -> ReadScreenArgs:
    source = args if isinstance(args, dict) else {}
    mode = as_text(source.get("mode")).strip().lower() or "meta"
    if mode not in READ_SCREEN_MODES:
        raise ToolError(f"read_screen mode must be one of: {', '.join(READ_SCREEN_MODES)}.")
    max_chars = clamp_int(
        source.get("maxChars"), min_value=1, max_value=MAX_SNIPPET_MAX_CHARS, fallback=DEFAULT_SNIPPET_MAX_CHARS
    )
    return ReadScreenArgs(mode=mode, max_chars=max_chars, recovery=bool(source.get("recovery")))


def build_payload(
    *,
    revision: int,
    html: str,
    is_final: bool,
    app_context: str = "",
    mode: str = "meta",
    max_chars: int = DEFAULT_SNIPPET_MAX_CHARS,
) -> dict:
    """Build the read_screen payload; meta always, outline or snippet by mode."""
    interaction_ids = extract_interaction_ids(html)
    meta = {
        "revision": revision,
        "htmlChars": len(html),
        "interactionIdCount": len(interaction_ids),
        "isFinal": is_final,
        "hash": html_hash(html),
    }
    if app_context.strip():
        meta["appContext"] = app_context.strip()

    payload: dict = {"meta": meta}
    if mode == "outline":
        payload["outline"] = {
            "interactionIds": interaction_ids[:OUTLINE_MAX_INTERACTION_IDS],
            "headings": extract_headings(html)[:OUTLINE_MAX_HEADINGS],
            "controls": extract_controls(html)[:OUTLINE_MAX_CONTROLS],
        }
    elif mode == "snippet":
        limit = clamp_int(max_chars, min_value=1, max_value=MAX_SNIPPET_MAX_CHARS, fallback=DEFAULT_SNIPPET_MAX_CHARS)
        payload["snippet"] = html[:limit]
    return payload


def format_result(payload: dict) -> str:
    return f"[read_screen] {json.dumps(payload, indent=2)}"


def run_read_screen(args: dict, render_state: RenderOutputState, usage: ReadScreenUsage, app_context: str = "") -> str:
    """Execute one read_screen call against *render_state*, charging *usage*.

    Raises ToolError when nothing was published yet, the arguments are bad
    or the per-turn budget is spent. *usage* only changes on success.
    """
    if not render_state.render_count or not render_state.latest_html:
        raise ToolError("read_screen is unavailable before first emit_screen revision.")

    parsed = validate_read_screen_args(args)
    if usage.read_count >= MAX_READS_PER_TURN:
        raise ToolError(f"read_screen call budget exceeded (max {MAX_READS_PER_TURN} calls per turn).")
    if usage.read_count == 1:
        if not parsed.recovery:
            raise ToolError("read_screen second call requires recovery=true.")
        if usage.recovery_read_used:
            raise ToolError("read_screen recovery call already used this turn.")

    payload = build_payload(
        revision=render_state.render_count,
        html=render_state.latest_html,
        is_final=render_state.last_is_final,
        app_context=app_context,
        mode=parsed.mode,
        max_chars=parsed.max_chars,
    )
    usage.read_count += 1
    if parsed.recovery:
        usage.recovery_read_used = True
    return format_result(payload)
