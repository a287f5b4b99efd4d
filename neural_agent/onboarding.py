"""Persisted onboarding lifecycle: pending -> active -> completed, plus revisit.

State lives in ``<workspace>/.neural/onboarding-state.json`` and is rewritten
(normalized) on every read and mutation. Events append to
``<workspace>/.neural/onboarding-events.jsonl``.
"""

import json
import logging
import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path

from .config import normalize_tool_tier
from .errors import NeuralAgentError, OnboardingIncompleteError
from .ids import iso_now, make_id
from .sandbox import RESERVED_DIR

logger = logging.getLogger("neural_agent.onboarding")

STATE_VERSION = "1"
STATE_DIR = RESERVED_DIR
STATE_FILE = "onboarding-state.json"
EVENTS_FILE = "onboarding-events.jsonl"
ONBOARDING_APP_CONTEXT = "onboarding_app"

CHECKPOINTS = ("workspace_ready", "provider_ready", "model_ready", "memory_seeded", "completed")
REQUIRED_COMPLETION_CHECKPOINTS = ("workspace_ready", "provider_ready", "model_ready", "memory_seeded")
LIFECYCLES = ("pending", "active", "completed", "revisit")


def _empty_checkpoints() -> dict[str, bool]:
    return {name: False for name in CHECKPOINTS}


def _str(value) -> str:
    return value if isinstance(value, str) else ""


def _normalize_lifecycle(lifecycle, completed: bool) -> str:
    if lifecycle == "revisit":
        return "revisit"
    if completed:
        return "completed"
    if lifecycle in ("pending", "active"):
        return lifecycle
    return "pending"


def _normalize_checkpoints(raw, completed: bool) -> dict[str, bool]:
    checkpoints = _empty_checkpoints()
    if isinstance(raw, dict):
        for name in CHECKPOINTS:
            if isinstance(raw.get(name), bool):
                checkpoints[name] = raw[name]
    checkpoints["workspace_ready"] = True
    if completed:
        checkpoints = {name: True for name in CHECKPOINTS}
    return checkpoints


@dataclass
class OnboardingState:
    workspace_root: str
    version: str = STATE_VERSION
    completed: bool = False
    lifecycle: str = "pending"
    run_id: str = ""
    started_at: str = ""
    completed_at: str = ""
    reopened_at: str = ""
    provider_configured: bool = False
    provider_id: str = ""
    model_id: str = ""
    tool_tier: str = "standard"
    checkpoints: dict[str, bool] = field(default_factory=_empty_checkpoints)
    last_error: str = ""

    @classmethod
    def from_dict(cls, raw: dict, workspace_root: str) -> "OnboardingState":
        """Normalize a persisted (camelCase) record."""
        raw = raw if isinstance(raw, dict) else {}
        completed = bool(raw.get("completed"))
        checkpoints = _normalize_checkpoints(raw.get("checkpoints"), completed)
        run_id = _str(raw.get("runId")).strip()
        return cls(
            workspace_root=os.path.abspath(workspace_root or "."),
            completed=completed,
            lifecycle=_normalize_lifecycle(raw.get("lifecycle"), completed),
            run_id=run_id,
            started_at=_str(raw.get("startedAt")),
            completed_at=_str(raw.get("completedAt")),
            reopened_at=_str(raw.get("reopenedAt")),
            provider_configured=bool(raw.get("providerConfigured")) or checkpoints["provider_ready"],
            provider_id=_str(raw.get("providerId")),
            model_id=_str(raw.get("modelId")),
            tool_tier=normalize_tool_tier(raw.get("toolTier")),
            checkpoints=checkpoints,
            last_error=_str(raw.get("lastError")),
        )

    @classmethod
    def default(cls, workspace_root: str, now: datetime | None = None) -> "OnboardingState":
        checkpoints = _empty_checkpoints()
        checkpoints["workspace_ready"] = True
        return cls(workspace_root=os.path.abspath(workspace_root or "."), started_at=iso_now(now), checkpoints=checkpoints)

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "completed": self.completed,
            "lifecycle": self.lifecycle,
            "runId": self.run_id,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "reopenedAt": self.reopened_at,
            "workspaceRoot": self.workspace_root,
            "providerConfigured": self.provider_configured,
            "providerId": self.provider_id,
            "modelId": self.model_id,
            "toolTier": self.tool_tier,
            "checkpoints": dict(self.checkpoints),
            "lastError": self.last_error,
        }

    @property
    def onboarding_required(self) -> bool:
        return not self.completed

    def missing_required_checkpoints(self) -> list[str]:
        return [name for name in REQUIRED_COMPLETION_CHECKPOINTS if not self.checkpoints.get(name)]


def state_path(workspace_root: str) -> Path:
    return Path(os.path.abspath(workspace_root or "."), STATE_DIR, STATE_FILE)


def _write(path: Path, state: OnboardingState) -> None:
    path.write_text(json.dumps(state.to_dict(), indent=2) + "\n", encoding="utf-8")


def load_state(workspace_root: str) -> OnboardingState:
    """Read (creating if absent) and normalize the onboarding state."""
    path = state_path(workspace_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        state = OnboardingState.default(workspace_root)
    except (OSError, ValueError) as e:
        logger.warning("Onboarding state at %s unreadable, resetting: %s", path, e)
        state = OnboardingState.default(workspace_root)
        state.last_error = f"State read failed: {e}"
    else:
        state = OnboardingState.from_dict(raw, workspace_root)
    _write(path, state)
    return state


def save_state(workspace_root: str, state: OnboardingState) -> OnboardingState:
    """Persist *state* under *workspace_root*, re-normalizing it first."""
    path = state_path(workspace_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    normalized = OnboardingState.from_dict(state.to_dict(), workspace_root)
    _write(path, normalized)
    return normalized


def _run_id(now: datetime | None) -> str:
    return make_id("onboard", int(now.timestamp() * 1000) if now else None)


# ------------------------------------------------------------------
# Transitions
# ------------------------------------------------------------------


def start_run(workspace_root: str, *, force_revisit: bool = False, now: datetime | None = None) -> OnboardingState:
    state = load_state(workspace_root)
    if state.completed and not force_revisit:
        return state
    checkpoints = dict(state.checkpoints)
    if not state.completed:
        checkpoints["workspace_ready"] = True
    nxt = replace(
        state,
        lifecycle="revisit" if force_revisit else "active",
        run_id=state.run_id or _run_id(now),
        started_at=state.started_at or iso_now(now),
        reopened_at=iso_now(now) if force_revisit else state.reopened_at,
        last_error="",
        checkpoints=checkpoints,
    )
    return save_state(state.workspace_root, nxt)


def reopen(workspace_root: str, *, now: datetime | None = None) -> OnboardingState:
    state = load_state(workspace_root)
    nxt = replace(state, lifecycle="revisit", run_id=_run_id(now), reopened_at=iso_now(now), last_error="")
    return save_state(state.workspace_root, nxt)


def set_checkpoint(workspace_root: str, checkpoint: str, value: bool = True) -> OnboardingState:
    """Low-level checkpoint write. Not reachable from model tools."""
    if checkpoint not in CHECKPOINTS:
        raise NeuralAgentError(f"Unknown onboarding checkpoint '{checkpoint}'.")
    state = load_state(workspace_root)
    nxt = replace(state, checkpoints={**state.checkpoints, checkpoint: bool(value)})
    if checkpoint == "completed" and value:
        nxt.completed = True
        nxt.lifecycle = "completed"
        nxt.completed_at = iso_now()
    return save_state(state.workspace_root, nxt)


def set_provider_configuration(
    workspace_root: str,
    *,
    provider_configured: bool | None = None,
    provider_id: str = "",
    model_id: str = "",
    tool_tier: str = "",
    model_ready: bool | None = None,
) -> OnboardingState:
    """Record provider/model choices. ``model_ready`` defaults to "a model id was given"."""
    state = load_state(workspace_root)
    provider_id = (provider_id or "").strip()
    model_id = (model_id or "").strip()
    checkpoints = dict(state.checkpoints)
    if provider_configured is not None:
        checkpoints["provider_ready"] = bool(provider_configured)
    if model_ready is not None:
        checkpoints["model_ready"] = bool(model_ready)
    elif model_id:
        checkpoints["model_ready"] = True
    nxt = replace(
        state,
        provider_configured=state.provider_configured if provider_configured is None else bool(provider_configured),
        provider_id=provider_id or state.provider_id,
        model_id=model_id or state.model_id,
        tool_tier=normalize_tool_tier(tool_tier or state.tool_tier),
        checkpoints=checkpoints,
    )
    if not nxt.completed and nxt.lifecycle == "pending":
        nxt.lifecycle = "active"
    return save_state(state.workspace_root, nxt)


def set_workspace_root(current_root: str, next_root: str) -> OnboardingState:
    """Move the whole persisted state to *next_root*; workspace_ready is set there."""
    current = load_state(current_root)
    destination = os.path.abspath(next_root)
    migrated = replace(
        current,
        workspace_root=destination,
        checkpoints={**current.checkpoints, "workspace_ready": True},
        last_error="",
    )
    return save_state(destination, migrated)


def complete(workspace_root: str, *, now: datetime | None = None) -> OnboardingState:
    """Gated completion: every required checkpoint must already be true.

    On failure the message is persisted as ``lastError`` and
    :class:`OnboardingIncompleteError` names the missing checkpoints.
    """
    state = load_state(workspace_root)
    missing = state.missing_required_checkpoints()
    if missing:
        error = OnboardingIncompleteError(missing)
        save_state(state.workspace_root, replace(state, last_error=error.message))
        raise error
    nxt = replace(
        state,
        completed=True,
        lifecycle="completed",
        completed_at=iso_now(now),
        last_error="",
        checkpoints={**state.checkpoints, "completed": True},
    )
    return save_state(state.workspace_root, nxt)


# ------------------------------------------------------------------
# Event log and prompt
# ------------------------------------------------------------------


def append_event(
    workspace_root: str,
    event: str,
    *,
    run_id: str = "",
    lifecycle: str = "",
    checkpoint: str = "",
    details: dict | None = None,
    now: datetime | None = None,
) -> dict:
    root = os.path.abspath(workspace_root or ".")
    path = Path(root, STATE_DIR, EVENTS_FILE)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "timestamp": iso_now(now),
        "event": (event or "").strip() or "unknown_event",
        "runId": (run_id or "").strip(),
        "lifecycle": (lifecycle or "").strip(),
        "checkpoint": (checkpoint or "").strip(),
        "workspaceRoot": root,
        "details": details if isinstance(details, dict) else {},
    }
    with path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(payload) + "\n")
    return payload


def build_policy_prompt(state: OnboardingState | None) -> str:
    """System-prompt block describing host-enforced onboarding rules."""
    if state is None or state.completed:
        return ""
    missing = state.missing_required_checkpoints()
    if missing:
        checkpoint_hint = f"Missing checkpoints: {', '.join(missing)}."
    else:
        checkpoint_hint = "All required checkpoints satisfied. Call onboarding_complete."
    snapshot = {
        "lifecycle": state.lifecycle,
        "completed": state.completed,
        "runId": state.run_id,
        "checkpoints": state.checkpoints,
        "workspaceRoot": state.workspace_root,
        "providerConfigured": state.provider_configured,
        "providerId": state.provider_id,
        "modelId": state.model_id,
    }
    return "\n".join([
        "Onboarding Runtime Policy (host-enforced):",
        "- Onboarding remains mandatory until completion is confirmed by host state.",
        "- Use onboarding actions only while onboarding is required.",
        f"- Required completion checkpoints: {', '.join(REQUIRED_COMPLETION_CHECKPOINTS)}.",
        "- provider_ready is required and is true only when selected provider has a usable API key.",
        "- model_ready is required and is true only when selected provider/model resolves in runtime catalog.",
        "- Establish provider_ready and model_ready first, then satisfy memory_seeded.",
        "- To satisfy memory_seeded, write a short durable note into MEMORY.md or memory/YYYY-MM-DD.md using write/edit.",
        "- Do not claim completion unless onboarding_complete returns success.",
        checkpoint_hint,
        "",
        f"Onboarding state snapshot: {json.dumps(snapshot, indent=2)}",
    ])
