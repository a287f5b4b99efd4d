"""Workspace sandbox: every tool path resolves inside one canonical root.

Paths are never clamped or rewritten. Anything that would land outside the
root, before or after following symlinks, raises WorkspacePolicyError.
"""

import os
from dataclasses import dataclass, field

from .errors import WorkspacePolicyError

# Host-owned state (onboarding state and event log); tools may not write here.
RESERVED_DIR = ".neural"


@dataclass(frozen=True)
class WorkspacePolicy:
    default_workspace_root: str = "./workspace"
    allowed_roots: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def create(cls, default_workspace_root: str = "", allowed_roots: list[str] | None = None) -> "WorkspacePolicy":
        roots = tuple(
            os.path.abspath(entry.strip()) for entry in (allowed_roots or []) if entry and entry.strip()
        )
        return cls(default_workspace_root=(default_workspace_root or "").strip() or "./workspace", allowed_roots=roots)


@dataclass(frozen=True)
class WorkspaceResolution:
    configured_root: str
    canonical_root: str


@dataclass(frozen=True)
class ResolvedPath:
    canonical_path: str
    relative_path: str
    is_dir: bool = False


def is_path_inside_workspace(candidate: str, workspace_root: str) -> bool:
    candidate = os.path.abspath(candidate)
    root = os.path.abspath(workspace_root)
    if candidate == root:
        return True
    return candidate.startswith(root.rstrip(os.sep) + os.sep)


def is_reserved_path(candidate: str, workspace_root: str) -> bool:
    relative = os.path.relpath(os.path.abspath(candidate), os.path.abspath(workspace_root))
    head = relative.split(os.sep, 1)[0]
    return os.path.normcase(head) == os.path.normcase(RESERVED_DIR)


def ensure_not_reserved(target: ResolvedPath, workspace_root: str) -> None:
    """Refuse model-driven writes into the host-owned state directory."""
    if is_reserved_path(target.canonical_path, workspace_root):
        raise WorkspacePolicyError(
            "WORKSPACE_PATH_RESERVED",
            f"Path '{target.relative_path}' is reserved for host state and cannot be modified.",
            {"inputPath": target.relative_path},
        )


def _existing_realpath(target: str) -> str | None:
    try:
        return os.path.realpath(target, strict=True)
    except FileNotFoundError:
        return None


def _assert_inside(target: str, workspace_root: str, details: dict | None = None) -> None:
    if is_path_inside_workspace(target, workspace_root):
        return
    raise WorkspacePolicyError(
        "WORKSPACE_PATH_ESCAPE_BLOCKED",
        f"Path '{target}' is outside workspace root '{workspace_root}'.",
        details,
    )


def _normalize_relative(input_path, label: str, allow_dot: bool) -> str:
    raw = input_path.strip() if isinstance(input_path, str) else ""
    if not raw:
        raise WorkspacePolicyError("WORKSPACE_PATH_REQUIRED", f"{label} is required.")
    if "\0" in raw:
        raise WorkspacePolicyError("WORKSPACE_PATH_INVALID", f"{label} contains a null byte.")
    if os.path.isabs(raw):
        raise WorkspacePolicyError(
            "WORKSPACE_PATH_ABSOLUTE_BLOCKED",
            f"{label} must be relative to the configured workspace root.",
            {"inputPath": raw},
        )
    normalized = os.path.normpath(raw)
    if not allow_dot and normalized in (".", ""):
        raise WorkspacePolicyError(
            "WORKSPACE_PATH_INVALID",
            f"{label} must point to a file or directory inside the workspace.",
            {"inputPath": raw},
        )
    if normalized == ".." or normalized.startswith(".." + os.sep):
        raise WorkspacePolicyError(
            "WORKSPACE_PATH_ESCAPE_BLOCKED",
            f"{label} escapes the workspace root.",
            {"inputPath": raw},
        )
    return normalized


def resolve_workspace_root(requested_root: str | None, policy: WorkspacePolicy | None = None) -> WorkspaceResolution:
    """Create (if needed) and canonicalize the workspace root, then check policy."""
    policy = policy or WorkspacePolicy()
    configured = (requested_root or "").strip() or policy.default_workspace_root.strip()
    if not configured:
        raise WorkspacePolicyError(
            "WORKSPACE_ROOT_REQUIRED",
            "workspaceRoot must be configured before running workspace tools.",
        )

    absolute = os.path.abspath(os.path.expanduser(configured))
    os.makedirs(absolute, exist_ok=True)
    canonical = os.path.realpath(absolute)

    allowed = [_existing_realpath(root) or root for root in policy.allowed_roots]
    if allowed and not any(is_path_inside_workspace(canonical, root) for root in allowed):
        raise WorkspacePolicyError(
            "WORKSPACE_ROOT_OUT_OF_POLICY",
            f"workspaceRoot '{canonical}' is outside allowed policy roots.",
            {"requestedWorkspaceRoot": configured, "canonicalWorkspaceRoot": canonical, "allowedRoots": allowed},
        )
    return WorkspaceResolution(configured_root=configured, canonical_root=canonical)


def _relative(target: str, root: str) -> str:
    return os.path.relpath(target, root) if target != root else "."


def resolve_path_for_read(
    workspace_root: str,
    input_path,
    *,
    allow_file: bool = True,
    allow_directory: bool = False,
) -> ResolvedPath:
    """Resolve an existing path; symlinks are followed and re-checked."""
    normalized = _normalize_relative(input_path or ".", "path", allow_dot=True)
    raw_target = os.path.abspath(os.path.join(workspace_root, normalized))
    _assert_inside(raw_target, workspace_root, {"inputPath": input_path, "resolvedPath": raw_target})

    canonical = _existing_realpath(raw_target)
    if canonical is None:
        raise WorkspacePolicyError(
            "WORKSPACE_PATH_NOT_FOUND",
            f"Path '{input_path}' does not exist in workspace.",
            {"inputPath": input_path},
        )
    _assert_inside(canonical, workspace_root, {"inputPath": input_path, "resolvedPath": canonical})

    is_dir = os.path.isdir(canonical)
    if is_dir and not allow_directory:
        raise WorkspacePolicyError(
            "WORKSPACE_PATH_EXPECTED_FILE", f"Path '{input_path}' is a directory; expected a file."
        )
    if not is_dir and not allow_file:
        raise WorkspacePolicyError(
            "WORKSPACE_PATH_EXPECTED_DIRECTORY", f"Path '{input_path}' is a file; expected a directory."
        )
    return ResolvedPath(canonical_path=canonical, relative_path=_relative(canonical, workspace_root), is_dir=is_dir)


def resolve_path_for_write(workspace_root: str, input_path, *, ensure_parent_dir: bool = True) -> ResolvedPath:
    """Resolve a write target. The parent is created, canonicalized and re-checked."""
    normalized = _normalize_relative(input_path, "path", allow_dot=False)
    target = os.path.abspath(os.path.join(workspace_root, normalized))
    _assert_inside(target, workspace_root, {"inputPath": input_path, "resolvedPath": target})
    ensure_not_reserved(ResolvedPath(canonical_path=target, relative_path=normalized), workspace_root)

    parent = os.path.dirname(target)
    # Walk up to the first existing ancestor before creating anything so a
    # symlinked ancestor pointing outside never gets directories made through it.
    ancestor = parent
    while not os.path.exists(ancestor):
        ancestor = os.path.dirname(ancestor)
    _assert_inside(os.path.realpath(ancestor), workspace_root, {"inputPath": input_path, "parentPath": ancestor})
    if ensure_parent_dir:
        os.makedirs(parent, exist_ok=True)
    canonical_parent = os.path.realpath(parent)
    _assert_inside(canonical_parent, workspace_root, {"inputPath": input_path, "parentPath": canonical_parent})

    existing = _existing_realpath(target)
    if existing is not None:
        _assert_inside(existing, workspace_root, {"inputPath": input_path, "resolvedPath": existing})
    elif os.path.islink(target):
        # Dangling symlink: writing would create its (outside) target.
        link_target = os.path.realpath(target)
        _assert_inside(link_target, workspace_root, {"inputPath": input_path, "resolvedPath": link_target})

    final = existing or os.path.join(canonical_parent, os.path.basename(target))
    resolved = ResolvedPath(canonical_path=final, relative_path=_relative(final, workspace_root))
    ensure_not_reserved(resolved, workspace_root)
    return resolved
