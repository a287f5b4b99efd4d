"""Runtime configuration read from the environment and an optional JSON file."""

import json
import logging
import math
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

logger = logging.getLogger("neural_agent.config")


def parse_number_env(key: str, fallback: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    """Read an int from the environment, clamped to [min_value, max_value]."""
    raw = os.environ.get(key)
    try:
        value = float(raw) if raw is not None and raw.strip() else float(fallback)
    except ValueError:
        value = float(fallback)
    if not math.isfinite(value):
        value = float(fallback)
    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return math.floor(value)


def parse_path_list_env(key: str) -> list[str]:
    raw = os.environ.get(key, "")
    return [entry.strip() for entry in raw.split(",") if entry.strip()]


@dataclass(frozen=True)
class CompactionSettings:
    reserve_tokens: int = 16384
    keep_recent_tokens: int = 20000


@dataclass(frozen=True)
class RuntimeConfig:
    port: int = 8787
    default_workspace_root: str = "./workspace"
    workspace_policy_roots: tuple[str, ...] = ()
    default_provider: str = "gemini"
    default_model: str = "gemini/gemini-2.5-flash"
    tool_cmd_timeout_sec: int = 30
    emit_screen_max_html_chars: int = 240_000
    emit_screen_max_calls: int = 24
    max_output_chars: int = 16_000
    max_read_chars: int = 12_000
    max_output_tokens: int = 8192
    production: bool = False
    compaction: CompactionSettings = field(default_factory=CompactionSettings)

    @property
    def allowed_roots(self) -> list[str]:
        """Policy roots; the process working directory when none are configured."""
        return list(self.workspace_policy_roots) or [os.getcwd()]

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        return cls(
            port=parse_number_env("NEURAL_COMPUTER_SERVER_PORT", 8787, min_value=1, max_value=65535),
            default_workspace_root=os.environ.get("NEURAL_COMPUTER_WORKSPACE_ROOT", "").strip() or "./workspace",
            workspace_policy_roots=tuple(parse_path_list_env("NEURAL_COMPUTER_WORKSPACE_POLICY_ROOTS")),
            default_provider=os.environ.get("NEURAL_COMPUTER_DEFAULT_PROVIDER", "").strip() or "gemini",
            default_model=os.environ.get("NEURAL_COMPUTER_DEFAULT_MODEL", "").strip() or "gemini/gemini-2.5-flash",
            tool_cmd_timeout_sec=parse_number_env(
                "NEURAL_COMPUTER_TOOL_CMD_TIMEOUT_SEC", 30, min_value=1, max_value=600
            ),
            emit_screen_max_html_chars=parse_number_env(
                "NEURAL_COMPUTER_EMIT_SCREEN_MAX_HTML_CHARS", 240_000, min_value=16_000, max_value=1_000_000
            ),
            emit_screen_max_calls=parse_number_env(
                "NEURAL_COMPUTER_EMIT_SCREEN_MAX_CALLS", 24, min_value=1, max_value=256
            ),
            production=os.environ.get("NEURAL_COMPUTER_ENV", "").strip().lower() == "production",
        )

    def with_overrides(self, overrides: dict) -> "RuntimeConfig":
        """Apply known keys from a config-file dict; unknown keys are ignored."""
        known = {f.name for f in fields(self)} - {"compaction"}
        updates = {}
        for key, value in overrides.items():
            if key not in known:
                logger.debug("Ignoring unknown config key %r", key)
                continue
            if key == "workspace_policy_roots":
                value = tuple(str(v) for v in value)
            updates[key] = value
        return replace(self, **updates)


def load_runtime_config(config_path: str | None = None) -> RuntimeConfig:
    config = RuntimeConfig.from_env()
    if config_path:
        path = Path(config_path)
        if path.exists():
            config = config.with_overrides(json.loads(path.read_text()))
        else:
            logger.warning("Config file %s not found, using environment only", config_path)
    return config


TOOL_TIERS = ("none", "standard", "experimental")


def normalize_tool_tier(tool_tier) -> str:
    return tool_tier if tool_tier in TOOL_TIERS else "standard"
