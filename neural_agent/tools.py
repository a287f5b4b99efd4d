"""Tool catalogue, argument models and the dispatcher.

Every tool is a :class:`ToolSpec` in the closed ``TOOLS`` mapping: a
pydantic argument model (which also yields the JSON schema sent to the
provider) plus an async handler. :class:`ToolDispatcher` validates the
arguments, applies the onboarding and tier gates, and converts every
expected failure into an error :class:`ToolResult` so the loop can continue.
"""

import asyncio
import json
import logging
import os
import re
import stat
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .adapter import ToolResult
from .config import RuntimeConfig
from .errors import OnboardingIncompleteError, ToolError, WorkspacePolicyError
from .memory_files import read_memory_file, search_memory
from .output import build_tool_result_text, clamp_int
from .read_screen import ReadScreenUsage, run_read_screen
from .render_output import RenderOutputState, validate_emit_screen_args
from .sandbox import (
    ResolvedPath,
    ensure_not_reserved,
    is_path_inside_workspace,
    resolve_path_for_read,
    resolve_path_for_write,
)
from .search import SearchOutcome, run_google_search
from .secret_guard import SECRET_BLOCKED_MESSAGE, looks_sensitive_secret
from .shell import run_bash, run_process

logger = logging.getLogger("neural_agent.tools")

DEFAULT_FIND_RESULTS = 200
DEFAULT_FIND_DEPTH = 8
DEFAULT_LS_ENTRIES = 200
DEFAULT_GREP_RESULTS = 200
MAX_READ_OFFSET = 50_000_000

SCREEN_TOOLS = ("emit_screen", "read_screen")
ONBOARDING_ALLOWED_TOOLS = frozenset({
    "emit_screen",
    "read_screen",
    "onboarding_get_state",
    "onboarding_set_workspace_root",
    "save_provider_key",
    "onboarding_set_model_preferences",
    "read",
    "write",
    "edit",
    "onboarding_complete",
})


# ------------------------------------------------------------------
# Argument models
# ------------------------------------------------------------------


def _bounds(minimum: int | None = None, maximum: int | None = None) -> dict:
    extra = {}
    if minimum is not None:
        extra["minimum"] = minimum
    if maximum is not None:
        extra["maximum"] = maximum
    return extra


class ToolArgs(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class EmitScreenArgs(ToolArgs):
    html: str = Field(description="Full HTML snapshot for the current window content area.")
    app_context: str = Field("", alias="appContext", description="Optional app context id for diagnostics.")
    revision_note: str = Field("", alias="revisionNote", description="Optional short note describing this revision.")
    is_final: bool = Field(
        False, alias="isFinal", description="True when this is the intended final render for this turn."
    )


class ScreenReadArgs(ToolArgs):
    mode: str = Field("meta", description="Read mode: meta | outline | snippet.")
    max_chars: float = Field(
        1200, alias="maxChars", description="Maximum snippet length for snippet mode.", json_schema_extra=_bounds(1, 4000)
    )
    recovery: bool = Field(False, description="Set true only for a second recovery read in the same turn.")


class ReadArgs(ToolArgs):
    path: str = Field(description="Workspace-relative file path.")
    offset: float = Field(0, description="Character offset for partial reads.", json_schema_extra=_bounds(0))
    limit: float = Field(0, description="Maximum characters to return.", json_schema_extra=_bounds(1, 12000))


class WriteArgs(ToolArgs):
    path: str = Field(description="Workspace-relative file path.")
    content: str = Field(description="Text content to write.")
    append: bool = Field(False, description="Append content instead of replacing file.")


class EditArgs(ToolArgs):
    path: str = Field(description="Workspace-relative file path.")
    old_text: str = Field(alias="oldText", description="Text to replace.")
    new_text: str = Field(alias="newText", description="Replacement text.")
    replace_all: bool = Field(False, alias="replaceAll", description="Replace all occurrences.")


class GrepArgs(ToolArgs):
    pattern: str = Field(description="Regex or plain-text pattern.")
    path: str = Field(".", description="Workspace-relative starting path. Defaults to workspace root.")
    case_sensitive: bool = Field(
        True, alias="caseSensitive", description="Use case-sensitive matching. Defaults true."
    )
    max_results: float = Field(
        DEFAULT_GREP_RESULTS, alias="maxResults", description="Maximum matches.", json_schema_extra=_bounds(1, 2000)
    )


class FindArgs(ToolArgs):
    path: str = Field(".", description="Workspace-relative starting path. Defaults to workspace root.")
    pattern: str = Field("", description="Wildcard pattern (for example '*.ts').")
    type: str = Field("any", description="Filter by 'file', 'directory', or 'any'.")
    max_depth: float = Field(
        DEFAULT_FIND_DEPTH, alias="maxDepth", description="Directory walk depth.", json_schema_extra=_bounds(0, 32)
    )
    max_results: float = Field(
        DEFAULT_FIND_RESULTS, alias="maxResults", description="Maximum returned paths.", json_schema_extra=_bounds(1, 500)
    )
    include_hidden: bool = Field(False, alias="includeHidden", description="Include hidden files/directories.")


class LsArgs(ToolArgs):
    path: str = Field(".", description="Workspace-relative directory path. Defaults to '.'.")
    max_entries: float = Field(
        DEFAULT_LS_ENTRIES, alias="maxEntries", description="Maximum entries to return.", json_schema_extra=_bounds(1, 500)
    )
    include_hidden: bool = Field(False, alias="includeHidden", description="Include hidden entries.")


class BashArgs(ToolArgs):
    command: str = Field(description="Shell command to execute in workspace root.")


class GoogleSearchArgs(ToolArgs):
    query: str = Field(description="Search query")
    count: float = Field(5, description="Maximum number of results", json_schema_extra=_bounds(1, 10))


class MemorySearchArgs(ToolArgs):
    query: str = Field(description="Search query for memory recall.")
    limit: float = Field(5, description="Maximum results.", json_schema_extra=_bounds(1, 50))


class MemoryGetArgs(ToolArgs):
    path: str = Field(description="Workspace-relative path, e.g. memory/2026-02-16.md or MEMORY.md.")
    offset: float = Field(0, description="Character offset.", json_schema_extra=_bounds(0))
    limit: float = Field(0, description="Maximum characters.", json_schema_extra=_bounds(1, 50000))


class NoArgs(ToolArgs):
    pass


class SetWorkspaceRootArgs(ToolArgs):
    workspace_root: str = Field(alias="workspaceRoot", description="Requested workspace root path.")


class SaveProviderKeyArgs(ToolArgs):
    provider_id: str = Field(alias="providerId", description="Provider identifier.")
    api_key: str = Field(alias="apiKey", description="Provider API key.")


class ModelPreferencesArgs(ToolArgs):
    provider_id: str = Field(alias="providerId", description="Provider identifier.")
    model_id: str = Field(alias="modelId", description="Model identifier.")
    tool_tier: str = Field("", alias="toolTier", description="Tool tier (none|standard|experimental).")


class CompleteOnboardingArgs(ToolArgs):
    summary: str = Field("", description="Optional completion summary note.")


# ------------------------------------------------------------------
# Context
# ------------------------------------------------------------------


class OnboardingHandlers(ABC):
    """Onboarding actions bound to one turn (session, credentials, catalog)."""

    @abstractmethod
    async def get_state(self, workspace_root: str) -> dict: ...

    @abstractmethod
    async def set_workspace_root(self, requested_root: str, current_root: str) -> dict: ...

    @abstractmethod
    async def save_provider_key(self, provider_id: str, api_key: str, workspace_root: str) -> dict: ...

    @abstractmethod
    async def set_model_preferences(self, provider_id: str, model_id: str, tool_tier: str, workspace_root: str) -> dict: ...

    @abstractmethod
    async def complete(self, summary: str, workspace_root: str) -> dict: ...

    @abstractmethod
    async def on_memory_file_written(self, workspace_root: str, path: str, mode: str) -> None: ...


SearchFn = Callable[[str, str | None, str | None, int], Awaitable[SearchOutcome]]


@dataclass
class ToolContext:
    """Mutable per-attempt state the handlers act on."""

    workspace_root: str
    config: RuntimeConfig = field(default_factory=RuntimeConfig)
    app_context: str = ""
    tool_tier: str = "standard"
    onboarding_mode: bool = False
    onboarding: OnboardingHandlers | None = None
    render_state: RenderOutputState = field(default_factory=RenderOutputState)
    read_usage: ReadScreenUsage = field(default_factory=ReadScreenUsage)
    emit_count: int = 0
    google_search_api_key: str | None = None
    google_search_cx: str | None = None
    search: SearchFn = run_google_search
    # names offered to the model for this request; None leaves dispatch open
    allowed_tools: frozenset[str] | None = None
    tool_call_id: str = ""


Handler = Callable[[ToolContext, ToolArgs], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[ToolArgs]
    handler: Handler
    summary: str | None = None  # one-liner for the guidance prompt

    def parameters_schema(self) -> dict:
        return _strip_titles(self.args_model.model_json_schema(by_alias=True))

    def to_provider_schema(self) -> dict:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters_schema()},
        }

    def to_dict(self) -> dict:
        return {"name": self.name, "description": self.description, "parameters": self.parameters_schema()}


def _strip_titles(schema):
    if isinstance(schema, dict):
        return {key: _strip_titles(value) for key, value in schema.items() if key != "title"}
    if isinstance(schema, list):
        return [_strip_titles(value) for value in schema]
    return schema


def _ok(prefix: str, body, ctx: ToolContext, hint: str = "") -> ToolResult:
    return ToolResult(text=build_tool_result_text(prefix, body, ctx.config.max_output_chars, hint))


def _json(value) -> str:
    return json.dumps(value or {}, indent=2)


def is_memory_path(relative_path: str) -> bool:
    normalized = relative_path.replace("\\", "/").lower()
    return normalized == "memory.md" or normalized.startswith("memory/")


# ------------------------------------------------------------------
# Screen tools
# ------------------------------------------------------------------


async def _emit_screen(ctx: ToolContext, args: EmitScreenArgs) -> ToolResult:
    limit = ctx.config.emit_screen_max_calls
    if ctx.emit_count >= limit:
        return ToolResult(text=f"emit_screen call budget exceeded ({limit} calls per turn).", is_error=True)
    payload = validate_emit_screen_args(args.model_dump(by_alias=True), ctx.config.emit_screen_max_html_chars)
    event, text = ctx.render_state.apply(payload, ctx.tool_call_id)
    ctx.emit_count += 1
    return ToolResult(text=text, events=[event])


async def _read_screen(ctx: ToolContext, args: ScreenReadArgs) -> ToolResult:
    return ToolResult(text=run_read_screen(args.model_dump(by_alias=True), ctx.render_state, ctx.read_usage, ctx.app_context))


# ------------------------------------------------------------------
# File tools
# ------------------------------------------------------------------


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as f:
        return f.read()


def _write_text(path: str, text: str, append: bool = False) -> None:
    # Encode before opening so an unencodable payload never truncates the file.
    try:
        data = text.encode("utf-8")
    except UnicodeEncodeError as e:
        raise ToolError(f"Content is not valid UTF-8 text ({e.reason} at position {e.start}).") from e
    with open(path, "ab" if append else "wb") as f:
        f.write(data)


async def _read(ctx: ToolContext, args: ReadArgs) -> ToolResult:
    target = resolve_path_for_read(ctx.workspace_root, args.path, allow_file=True, allow_directory=False)
    max_read = ctx.config.max_read_chars
    offset = clamp_int(args.offset, min_value=0, max_value=MAX_READ_OFFSET, fallback=0)
    limit = clamp_int(args.limit or max_read, min_value=1, max_value=max_read, fallback=max_read)
    source = _read_text(target.canonical_path)
    start = min(offset, len(source))
    end = min(start + limit, len(source))
    body = source[start:end]
    if end < len(source):
        body += f"\n\n[truncated file; continue with read(path={target.relative_path}, offset={end})]"
    return _ok(f"[read] {target.relative_path}", body, ctx, "[truncated file output]")


async def _notify_memory_write(ctx: ToolContext, target: ResolvedPath, mode: str) -> None:
    if ctx.onboarding_mode and ctx.onboarding is not None and is_memory_path(target.relative_path):
        await ctx.onboarding.on_memory_file_written(ctx.workspace_root, target.relative_path, mode)


async def _write(ctx: ToolContext, args: WriteArgs) -> ToolResult:
    if looks_sensitive_secret(args.content):
        return ToolResult(text=SECRET_BLOCKED_MESSAGE, is_error=True)
    target = resolve_path_for_write(ctx.workspace_root, args.path, ensure_parent_dir=True)
    _write_text(target.canonical_path, args.content, append=args.append)
    await _notify_memory_write(ctx, target, "append" if args.append else "write")
    verb = "appended" if args.append else "wrote"
    return ToolResult(text=f"[write] {verb} {len(args.content)} chars to {target.relative_path}")


async def _edit(ctx: ToolContext, args: EditArgs) -> ToolResult:
    target = resolve_path_for_read(ctx.workspace_root, args.path, allow_file=True, allow_directory=False)
    ensure_not_reserved(target, ctx.workspace_root)
    if not args.old_text:
        return ToolResult(text="edit requires non-empty oldText.", is_error=True)
    if looks_sensitive_secret(args.new_text):
        return ToolResult(text=SECRET_BLOCKED_MESSAGE, is_error=True)

    original = _read_text(target.canonical_path)
    if args.replace_all:
        count = original.count(args.old_text)
        updated = original.replace(args.old_text, args.new_text)
    else:
        count = 1 if args.old_text in original else 0
        updated = original.replace(args.old_text, args.new_text, 1)
    if count == 0:
        return ToolResult(text=f"edit could not find target text in {target.relative_path}.", is_error=True)

    _write_text(target.canonical_path, updated)
    await _notify_memory_write(ctx, target, "edit")
    return ToolResult(text=f"[edit] {target.relative_path} replacements={count}")


async def _ls(ctx: ToolContext, args: LsArgs) -> ToolResult:
    max_entries = clamp_int(args.max_entries, min_value=1, max_value=500, fallback=DEFAULT_LS_ENTRIES)
    target = resolve_path_for_read(ctx.workspace_root, args.path.strip() or ".", allow_file=False, allow_directory=True)
    with os.scandir(target.canonical_path) as it:
        entries = [entry for entry in it if args.include_hidden or not entry.name.startswith(".")]
    entries.sort(key=lambda e: (not e.is_dir(follow_symlinks=False), e.name.lower(), e.name))

    rows = []
    for entry in entries[:max_entries]:
        if entry.is_dir(follow_symlinks=False):
            kind = "dir"
        elif entry.is_file(follow_symlinks=False):
            kind = "file"
        elif entry.is_symlink():
            kind = "link"
        else:
            kind = "other"
        rows.append(f"{kind}\t{entry.name}")
    if len(entries) > max_entries:
        rows.append(f"... ({len(entries) - max_entries} more entries)")
    return _ok(f"[ls] {target.relative_path}", "\n".join(rows) or "(empty directory)", ctx)


def _wildcard(pattern: str) -> re.Pattern | None:
    source = pattern.strip()
    if not source:
        return None
    escaped = re.escape(source).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{escaped}$", re.IGNORECASE)


def walk_find(
    workspace_root: str,
    start: str,
    *,
    pattern: str = "",
    wanted_type: str = "any",
    max_depth: int = DEFAULT_FIND_DEPTH,
    max_results: int = DEFAULT_FIND_RESULTS,
    include_hidden: bool = False,
) -> list[str]:
    """Breadth-first walk from *start*; symlinks are resolved and must stay inside."""
    matcher = _wildcard(pattern)
    results = []
    visited = {start}
    queue = deque([(start, 0)])
    while queue and len(results) < max_results:
        current, depth = queue.popleft()
        try:
            mode = os.stat(current).st_mode
        except OSError:
            continue
        is_dir = stat.S_ISDIR(mode)
        label = "directory" if is_dir else "file" if stat.S_ISREG(mode) else "other"
        if wanted_type in ("any", label) and (matcher is None or matcher.match(os.path.basename(current))):
            relative = os.path.relpath(current, workspace_root) if current != workspace_root else "."
            results.append(f"{label}\t{relative}")
            if len(results) >= max_results:
                break

        if not is_dir or depth >= max_depth:
            continue
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError:
            continue
        for entry in entries:
            if not include_hidden and entry.name.startswith("."):
                continue
            candidate = entry.path
            if entry.is_symlink():
                candidate = os.path.realpath(entry.path)
                if not os.path.exists(candidate):
                    continue
            if not is_path_inside_workspace(candidate, workspace_root) or candidate in visited:
                continue
            visited.add(candidate)
            queue.append((candidate, depth + 1))
    return results


async def _find(ctx: ToolContext, args: FindArgs) -> ToolResult:
    start = resolve_path_for_read(ctx.workspace_root, args.path.strip() or ".", allow_file=True, allow_directory=True)
    wanted = args.type.strip().lower()
    lines = await asyncio.to_thread(
        walk_find,
        ctx.workspace_root,
        start.canonical_path,
        pattern=args.pattern,
        wanted_type=wanted if wanted in ("file", "directory") else "any",
        max_depth=clamp_int(args.max_depth, min_value=0, max_value=32, fallback=DEFAULT_FIND_DEPTH),
        max_results=clamp_int(args.max_results, min_value=1, max_value=500, fallback=DEFAULT_FIND_RESULTS),
        include_hidden=args.include_hidden,
    )
    return _ok("[find] results", "\n".join(lines) or "(no matches)", ctx, "[truncated find output; narrow pattern/maxDepth]")


async def _grep(ctx: ToolContext, args: GrepArgs) -> ToolResult:
    pattern = args.pattern.strip()
    if not pattern:
        raise WorkspacePolicyError("GREP_PATTERN_REQUIRED", "grep requires a non-empty pattern.")
    target = resolve_path_for_read(ctx.workspace_root, args.path.strip() or ".", allow_file=True, allow_directory=True)
    relative = target.relative_path
    max_results = clamp_int(args.max_results, min_value=1, max_value=2000, fallback=DEFAULT_GREP_RESULTS)
    timeout = ctx.config.tool_cmd_timeout_sec
    hint = "[truncated grep output; refine pattern/path]"
    no_matches = ToolResult(text=f"[grep] {relative}\n(no matches)")

    rg_args = ["rg", "--line-number", "--no-heading", "--color", "never", "--max-count", str(max_results)]
    if not args.case_sensitive:
        rg_args.append("--ignore-case")
    rg_args += ["--", pattern, relative]
    rg = await run_process(rg_args, cwd=ctx.workspace_root, timeout_sec=timeout)
    if not rg.error:
        if rg.timed_out:
            return ToolResult(text="grep timed out.", is_error=True)
        if rg.exit_code == 0:
            return _ok(f"[grep] {relative}", rg.combined or "(no matches)", ctx, hint)
        if rg.exit_code == 1:
            return no_matches

    grep_args = ["grep", "-R", "-n"]
    if not args.case_sensitive:
        grep_args.append("-i")
    grep_args += ["--", pattern, relative]
    fallback = await run_process(grep_args, cwd=ctx.workspace_root, timeout_sec=timeout)
    if fallback.timed_out:
        return ToolResult(text="grep timed out.", is_error=True)
    if fallback.error:
        return ToolResult(text=f"grep unavailable: {fallback.error}", is_error=True)
    if fallback.exit_code == 1:
        return no_matches
    if fallback.exit_code != 0:
        return ToolResult(text=f"grep failed with exit code {fallback.exit_code}.", is_error=True)
    return _ok(f"[grep] {relative}", fallback.combined or "(no matches)", ctx, hint)


async def _bash(ctx: ToolContext, args: BashArgs) -> ToolResult:
    command = args.command.strip()
    if not command:
        return ToolResult(text="bash requires a non-empty command.", is_error=True)
    if looks_sensitive_secret(command):
        return ToolResult(text=SECRET_BLOCKED_MESSAGE, is_error=True)
    return await run_bash(
        command,
        ctx.workspace_root,
        timeout_sec=ctx.config.tool_cmd_timeout_sec,
        max_output_chars=ctx.config.max_output_chars,
    )


# ------------------------------------------------------------------
# Memory and search tools
# ------------------------------------------------------------------


async def _memory_search(ctx: ToolContext, args: MemorySearchArgs) -> ToolResult:
    query = args.query.strip()
    if not query:
        return ToolResult(text="memory_search requires a non-empty query.", is_error=True)
    hits = search_memory(ctx.workspace_root, query, clamp_int(args.limit, min_value=1, max_value=50, fallback=5))
    body = "\n\n".join(f"{i + 1}. path={hit.path} score={hit.score}\n{hit.snippet}" for i, hit in enumerate(hits))
    return _ok("[memory_search] results", body or "(no memory matches)", ctx, "[truncated memory search output; narrow query]")


async def _memory_get(ctx: ToolContext, args: MemoryGetArgs) -> ToolResult:
    path = args.path.strip()
    if not path:
        return ToolResult(text="memory_get requires a non-empty path.", is_error=True)
    max_read = ctx.config.max_read_chars
    result = read_memory_file(
        ctx.workspace_root,
        path,
        clamp_int(args.offset, min_value=0, max_value=MAX_READ_OFFSET, fallback=0),
        clamp_int(args.limit or max_read, min_value=1, max_value=max_read, fallback=max_read),
    )
    body = result.content
    if result.end < result.total_chars:
        body += f"\n\n[truncated file; continue with memory_get(path={result.path}, offset={result.end})]"
    return _ok(f"[memory_get] {result.path}", body, ctx, "[truncated memory output]")


async def _google_search(ctx: ToolContext, args: GoogleSearchArgs) -> ToolResult:
    count = clamp_int(args.count, min_value=1, max_value=10, fallback=5)
    outcome = await ctx.search(args.query.strip(), ctx.google_search_api_key, ctx.google_search_cx, count)
    if not outcome.ok:
        return ToolResult(text=outcome.message or "google_search failed.", is_error=True)
    return _ok("[google_search] results", json.dumps(outcome.items, indent=2), ctx, "[truncated search results; rerun with narrower query]")


# ------------------------------------------------------------------
# Onboarding tools
# ------------------------------------------------------------------


def _handlers(ctx: ToolContext, tool_name: str) -> OnboardingHandlers:
    if ctx.onboarding is None:
        raise ToolError(f"{tool_name} handler is unavailable.")
    return ctx.onboarding


async def _onboarding_get_state(ctx: ToolContext, args: NoArgs) -> ToolResult:
    state = await _handlers(ctx, "onboarding_get_state").get_state(ctx.workspace_root)
    return _ok("[onboarding_get_state] state", _json(state), ctx, "[truncated onboarding state]")


async def _onboarding_set_workspace_root(ctx: ToolContext, args: SetWorkspaceRootArgs) -> ToolResult:
    handlers = _handlers(ctx, "onboarding_set_workspace_root")
    requested = args.workspace_root.strip()
    if not requested:
        return ToolResult(text="onboarding_set_workspace_root requires workspaceRoot.", is_error=True)
    result = await handlers.set_workspace_root(requested, ctx.workspace_root)
    result_text = build_tool_result_text(
        "[onboarding_set_workspace_root] updated", _json(result), ctx.config.max_output_chars,
        "[truncated onboarding workspace update]",
    )
    return ToolResult(text=result_text, next_workspace_root=result.get("workspaceRoot") or ctx.workspace_root)


async def _save_provider_key(ctx: ToolContext, args: SaveProviderKeyArgs) -> ToolResult:
    handlers = _handlers(ctx, "save_provider_key")
    provider_id = args.provider_id.strip()
    api_key = args.api_key.strip()
    if not provider_id or not api_key:
        return ToolResult(text="save_provider_key requires providerId and apiKey.", is_error=True)
    result = await handlers.save_provider_key(provider_id, api_key, ctx.workspace_root)
    return _ok("[save_provider_key] stored", _json(result), ctx, "[truncated save_provider_key result]")


async def _onboarding_set_model_preferences(ctx: ToolContext, args: ModelPreferencesArgs) -> ToolResult:
    handlers = _handlers(ctx, "onboarding_set_model_preferences")
    provider_id = args.provider_id.strip()
    model_id = args.model_id.strip()
    if not provider_id or not model_id:
        return ToolResult(text="onboarding_set_model_preferences requires providerId and modelId.", is_error=True)
    result = await handlers.set_model_preferences(provider_id, model_id, args.tool_tier.strip(), ctx.workspace_root)
    return _ok(
        "[onboarding_set_model_preferences] saved", _json(result), ctx,
        "[truncated onboarding model preferences result]",
    )


async def _onboarding_complete(ctx: ToolContext, args: CompleteOnboardingArgs) -> ToolResult:
    handlers = _handlers(ctx, "onboarding_complete")
    result = await handlers.complete(args.summary.strip(), ctx.workspace_root)
    return _ok("[onboarding_complete] completed", _json(result), ctx, "[truncated onboarding completion result]")


# ------------------------------------------------------------------
# Registry
# ------------------------------------------------------------------


TOOLS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec(
            "emit_screen",
            "Publish a full HTML snapshot for the current window. This is the canonical user-visible output channel.",
            EmitScreenArgs, _emit_screen, "Publish user-visible window HTML to the host UI",
        ),
        ToolSpec(
            "read_screen",
            "Read current rendered screen state in bounded form for state-aware edits.",
            ScreenReadArgs, _read_screen, "Read current rendered screen state in bounded form",
        ),
        ToolSpec(
            "onboarding_get_state",
            "Get onboarding lifecycle state and checkpoint progress.",
            NoArgs, _onboarding_get_state, "Read onboarding lifecycle and checkpoint state",
        ),
        ToolSpec(
            "onboarding_set_workspace_root",
            "Set and validate the workspace root used during onboarding.",
            SetWorkspaceRootArgs, _onboarding_set_workspace_root, "Set workspace root for onboarding runtime",
        ),
        ToolSpec(
            "save_provider_key",
            "Save provider API key through secure session credential storage.",
            SaveProviderKeyArgs, _save_provider_key, "Save provider API key to secure session storage",
        ),
        ToolSpec(
            "onboarding_set_model_preferences",
            "Persist onboarding model and tool-tier preferences.",
            ModelPreferencesArgs, _onboarding_set_model_preferences, "Persist onboarding model/provider preferences",
        ),
        ToolSpec(
            "onboarding_complete",
            "Attempt onboarding completion after required checkpoints are satisfied.",
            CompleteOnboardingArgs, _onboarding_complete, "Request onboarding completion after required checkpoints",
        ),
        ToolSpec("read", "Read a UTF-8 text file from the configured workspace.", ReadArgs, _read, "Read file contents"),
        ToolSpec(
            "bash", "Run a workspace-scoped shell command with command timeout enforcement.",
            BashArgs, _bash, "Execute bash commands (ls, grep, find, etc.)",
        ),
        ToolSpec(
            "edit", "Apply a targeted string replacement in a workspace file.",
            EditArgs, _edit, "Make surgical edits to files (find exact text and replace)",
        ),
        ToolSpec("write", "Write or append UTF-8 text in a workspace file.", WriteArgs, _write, "Create or overwrite files"),
        ToolSpec(
            "grep", "Search for text patterns in workspace files.",
            GrepArgs, _grep, "Search file contents for patterns (respects .gitignore)",
        ),
        ToolSpec(
            "find", "List workspace paths matching a pattern.",
            FindArgs, _find, "Find files by glob pattern (respects .gitignore)",
        ),
        ToolSpec("ls", "List a workspace directory.", LsArgs, _ls, "List directory contents"),
        ToolSpec(
            "memory_search", "Search durable memory files in the current workspace.",
            MemorySearchArgs, _memory_search, "Search durable workspace memory files",
        ),
        ToolSpec(
            "memory_get", "Read a specific memory file from the current workspace.",
            MemoryGetArgs, _memory_get, "Read a durable workspace memory file",
        ),
        ToolSpec(
            "google_search", "Search the web with Google Custom Search and return top results.",
            GoogleSearchArgs, _google_search,
        ),
    )
}

_ONBOARDING_ORDER = (
    "emit_screen", "read_screen", "onboarding_get_state", "onboarding_set_workspace_root", "save_provider_key",
    "onboarding_set_model_preferences", "read", "write", "edit", "onboarding_complete",
)
_STANDARD_ORDER = (
    "emit_screen", "read_screen", "read", "write", "edit", "grep", "find", "ls", "bash", "memory_search", "memory_get",
)


def reachable_tools(tool_tier: str, *, onboarding_required: bool = False, include_google_search: bool = True) -> list[ToolSpec]:
    if onboarding_required:
        return [TOOLS[name] for name in _ONBOARDING_ORDER]
    if tool_tier == "none":
        return [TOOLS[name] for name in SCREEN_TOOLS]
    specs = [TOOLS[name] for name in _STANDARD_ORDER]
    if include_google_search:
        specs.append(TOOLS["google_search"])
    return specs


def build_guidance_prompt(specs: list[ToolSpec]) -> str:
    """Tool list plus guideline bullets for the tools that are present."""
    names = []
    for spec in specs:
        if spec.summary and spec.name not in names:
            names.append(spec.name)
    if not names:
        return ""
    present = set(names)

    guidelines = []
    if "emit_screen" in present:
        guidelines.append("Use emit_screen to publish all user-visible UI output; do not rely on plain text output.")
    if "read_screen" in present:
        guidelines += [
            "Default: do NOT call read_screen. Call it only when current screen state is required and cannot be inferred.",
            "When reading screen state, use the lightest read mode first (meta, then outline, then snippet).",
            "Use at most one read_screen call per turn unless explicitly recovering from stale state.",
            "After read_screen, publish updated user-visible output with emit_screen in the same turn unless blocked.",
        ]
    explorers = present & {"grep", "find", "ls"}
    if "bash" in present and not explorers:
        guidelines.append("Use bash for file operations like ls, rg, find")
    elif "bash" in present:
        guidelines.append("Prefer grep/find/ls tools over bash for file exploration (faster, respects .gitignore)")
    if {"read", "edit"} <= present:
        guidelines.append("Use read to examine files before editing. You must use this tool instead of cat or sed.")
    if "memory_search" in present:
        guidelines.append("Use memory_search before asking repeated preference questions.")
    if present & {"onboarding_get_state", "onboarding_complete"}:
        guidelines.append("In onboarding mode, complete required checkpoints before calling onboarding_complete.")
    if "edit" in present:
        guidelines.append("Use edit for precise changes (old text must match exactly)")
    if "write" in present:
        guidelines.append("Use write only for new files or complete rewrites")
    if present & {"edit", "write"}:
        guidelines.append(
            "When summarizing your actions, output plain text directly - do NOT use cat or bash to display what you did"
        )
    guidelines += ["Be concise in your responses", "Show file paths clearly when working with files"]

    return "\n".join([
        "Available tools:",
        "\n".join(f"- {name}: {TOOLS[name].summary}" for name in names),
        "",
        "In addition to the tools above, you may have access to other custom tools depending on the project.",
        "",
        "Guidelines:",
        "\n".join(f"- {line}" for line in guidelines),
    ])


def _validation_message(tool_name: str, error: ValidationError) -> str:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err['loc']) or 'arguments'}: {err['msg']}" for err in error.errors()
    )
    return f"Invalid arguments for {tool_name}: {problems}"


class ToolDispatcher:
    """Executes tool calls by name against a :class:`ToolContext`."""

    def __init__(self, tools: dict[str, ToolSpec] | None = None):
        self.tools = TOOLS if tools is None else tools

    async def execute(self, name: str, raw_args, ctx: ToolContext, tool_call_id: str = "") -> ToolResult:
        tool_name = (name or "").strip()
        if ctx.onboarding_mode and tool_name not in ONBOARDING_ALLOWED_TOOLS:
            return ToolResult(
                text=f"Tool '{tool_name}' is blocked during required onboarding. Use onboarding actions only.",
                is_error=True,
            )
        if ctx.tool_tier == "none" and not ctx.onboarding_mode and tool_name not in SCREEN_TOOLS:
            return ToolResult(text="Tool access disabled by tool tier policy.", is_error=True)
        spec = self.tools.get(tool_name)
        if spec is None:
            return ToolResult(text=f"Unknown tool '{tool_name}'.", is_error=True)
        if ctx.allowed_tools is not None and tool_name not in ctx.allowed_tools:
            return ToolResult(text=f"Tool '{tool_name}' is not available for this request.", is_error=True)

        try:
            args = spec.args_model.model_validate(raw_args if isinstance(raw_args, dict) else {})
        except ValidationError as e:
            return ToolResult(text=_validation_message(tool_name, e), is_error=True)

        ctx.tool_call_id = tool_call_id
        try:
            return await spec.handler(ctx, args)
        except WorkspacePolicyError as e:
            return ToolResult(text=e.message, is_error=True, code=e.code)
        except OnboardingIncompleteError as e:
            return ToolResult(text=e.message, is_error=True, code=e.code)
        except ToolError as e:
            return ToolResult(text=str(e), is_error=True)
        except OSError as e:
            logger.debug("Tool %s failed with OS error: %s", tool_name, e)
            return ToolResult(text=str(e), is_error=True)
        except UnicodeError as e:
            logger.debug("Tool %s failed with encoding error: %s", tool_name, e)
            return ToolResult(text=f"Tool '{tool_name}' received text that cannot be encoded: {e}", is_error=True)
        finally:
            ctx.tool_call_id = ""
