"""Durable Markdown memory inside the workspace (core files plus memory/*.md)."""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

from .errors import ToolError, WorkspacePolicyError
from .ids import iso_now
from .output import as_text
from .sandbox import resolve_path_for_read

logger = logging.getLogger("neural_agent.memory_files")

MEMORY_DIR = "memory"
MAX_SEARCH_FILE_CHARS = 120_000
DEFAULT_SEARCH_LIMIT = 5
SNIPPET_CHARS = 420
MAX_NOTE_TAGS = 12
BOOTSTRAP_MAX_CHARS = 4_000

CORE_FILES = {
    "AGENTS.md": (
        "# Agent Workspace\n\n"
        "This directory stores long-lived agent behavior and memory artifacts.\n"
        "Edit these files carefully; they are read by the runtime.\n"
    ),
    "SOUL.md": "# Soul\n\nDescribe preferred collaboration style, tone, and high-level operating principles.\n",
    "USER.md": "# User\n\nCapture stable user profile notes, preferences, and recurring constraints.\n",
    "TOOLS.md": "# Tools\n\nDocument local environment setup notes, installed CLIs, and tool quirks.\n",
    "IDENTITY.md": "# Identity\n\nRecord agent identity, role boundaries, and operating commitments.\n",
    "HEARTBEAT.md": "# Heartbeat\n\nMaintain startup and periodic operational checklist items.\n",
    "MEMORY.md": "# Memory\n\nStore durable user preferences, constraints, and recurring workflows.\n",
}

# (file, label, read cap) in prompt order.
_BOOTSTRAP_SECTIONS = (
    ("AGENTS.md", "Agent Instructions", 1_200),
    ("SOUL.md", "Soul Guidance", 900),
    ("USER.md", "User Profile", 900),
    ("TOOLS.md", "Tool Notes", 700),
    ("IDENTITY.md", "Identity", 700),
    ("HEARTBEAT.md", "Heartbeat", 700),
    ("MEMORY.md", "Durable Memory", 1_700),
)

_WORD_SPLIT = re.compile(r"[^a-z0-9_]+")


@dataclass
class ScaffoldResult:
    workspace_root: str
    created: list[str] = field(default_factory=list)
    existing: list[str] = field(default_factory=list)


@dataclass
class MemoryHit:
    path: str
    score: int
    snippet: str


@dataclass
class MemoryRead:
    path: str
    content: str
    offset: int
    end: int
    total_chars: int


def date_key(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y-%m-%d")


def _create_once(path: Path, content: str) -> bool:
    try:
        with path.open("x", encoding="utf-8") as f:
            f.write(content)
    except FileExistsError:
        return False
    return True


def ensure_scaffold(workspace_root: str, now: datetime | None = None) -> ScaffoldResult:
    """Create the core files and today's daily note if missing. Never overwrites."""
    root = Path(workspace_root)
    (root / MEMORY_DIR).mkdir(parents=True, exist_ok=True)
    result = ScaffoldResult(workspace_root=str(root))
    today = date_key(now)
    targets = dict(CORE_FILES)
    targets[f"{MEMORY_DIR}/{today}.md"] = f"# {today}\n\nDaily durable memory notes.\n"
    for relative, content in targets.items():
        if _create_once(root / relative, content):
            result.created.append(relative)
        else:
            result.existing.append(relative)
    if result.created:
        logger.debug("Scaffolded %s in %s", ", ".join(result.created), root)
    return result


def list_memory_paths(workspace_root: str) -> list[str]:
    root = Path(workspace_root)
    paths = [name for name in CORE_FILES if (root / name).exists()]
    memory_dir = root / MEMORY_DIR
    if memory_dir.is_dir():
        paths.extend(
            f"{MEMORY_DIR}/{entry.name}"
            for entry in memory_dir.iterdir()
            if entry.is_file() and entry.name.lower().endswith(".md")
        )
    return sorted(paths)


def read_memory_file(workspace_root: str, relative_path: str, offset: int = 0, limit: int = 12_000) -> MemoryRead:
    cleaned = as_text(relative_path).strip().replace("\\", "/")
    if not cleaned:
        raise ToolError("memory_get requires a non-empty path.")
    target = resolve_path_for_read(workspace_root, cleaned)
    source = Path(target.canonical_path).read_text(encoding="utf-8", errors="replace")
    start = max(0, min(int(offset or 0), len(source)))
    limit = max(1, min(50_000, int(limit or 12_000)))
    end = min(len(source), start + limit)
    return MemoryRead(path=cleaned, content=source[start:end], offset=start, end=end, total_chars=len(source))


def append_memory_note(workspace_root: str, note: str, tags: list[str] | None = None, now: datetime | None = None) -> dict:
    """Append a timestamped entry to today's ``memory/YYYY-MM-DD.md``."""
    text = as_text(note).strip()
    if not text:
        raise ToolError("append_memory_note requires non-empty note text.")
    now = now or datetime.now().astimezone()
    memory_dir = Path(workspace_root, MEMORY_DIR)
    memory_dir.mkdir(parents=True, exist_ok=True)
    file_name = f"{date_key(now)}.md"
    timestamp = iso_now(now)
    clean_tags = [t for t in (as_text(tag).strip() for tag in (tags or [])) if t][:MAX_NOTE_TAGS]

    lines = [f"## {timestamp}"]
    if clean_tags:
        lines.append(f"Tags: {', '.join(clean_tags)}")
    lines.extend([text, ""])
    entry = "\n".join(lines) + "\n"
    with (memory_dir / file_name).open("a", encoding="utf-8") as f:
        f.write(entry)
    return {"path": f"{MEMORY_DIR}/{file_name}", "charsAppended": len(entry), "timestamp": timestamp}


def _query_words(query: str) -> list[str]:
    return [word for word in _WORD_SPLIT.split(as_text(query).lower()) if len(word) >= 2]


def _score(content: str, words: list[str]) -> tuple[int, int]:
    source = content.lower()
    score = 0
    first = -1
    for word in words:
        index = source.find(word)
        while index >= 0:
            score += 1
            if first < 0 or index < first:
                first = index
            index = source.find(word, index + len(word))
    return score, first


def _snippet(content: str, first_match: int, max_chars: int = SNIPPET_CHARS) -> str:
    if len(content) <= max_chars:
        return content
    if first_match < 0:
        return content[:max_chars]
    start = max(0, first_match - max_chars // 2)
    return content[start : start + max_chars]


def search_memory(workspace_root: str, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> list[MemoryHit]:
    """Rank memory files by occurrences of the query's words."""
    words = _query_words(query)
    if not words:
        return []
    root = os.path.abspath(workspace_root)
    hits = []
    for relative in list_memory_paths(root):
        try:
            target = resolve_path_for_read(root, relative)
            source = Path(target.canonical_path).read_text(encoding="utf-8", errors="replace")
        except (WorkspacePolicyError, OSError):
            continue
        bounded = source[:MAX_SEARCH_FILE_CHARS]
        score, first = _score(bounded, words)
        if score > 0:
            hits.append(MemoryHit(path=relative, score=score, snippet=_snippet(bounded, first)))
    hits.sort(key=lambda hit: (-hit.score, hit.path))
    return hits[: max(1, min(50, int(limit or DEFAULT_SEARCH_LIMIT)))]


def build_bootstrap_context(workspace_root: str, app_context: str = "", max_chars: int = BOOTSTRAP_MAX_CHARS) -> str:
    """System-prompt block quoting the core memory files."""
    chunks = []
    for relative, label, cap in _BOOTSTRAP_SECTIONS:
        try:
            content = read_memory_file(workspace_root, relative, 0, cap).content.strip()
        except (WorkspacePolicyError, OSError):
            continue
        if content:
            chunks.append(f"{label} ({relative}):\n{content}")
    if not chunks:
        return ""
    header = "Workspace Memory Context:"
    if app_context:
        header += f"\nCurrent app context: {app_context}"
    combined = f"{header}\n\n" + "\n\n".join(chunks)
    return combined[:max_chars]
