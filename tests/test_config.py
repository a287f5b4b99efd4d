"""Tests for neural_agent.config, neural_agent.output and neural_agent.ids."""

import json
import os
import re

import pytest

from neural_agent.config import RuntimeConfig, load_runtime_config, normalize_tool_tier, parse_number_env
from neural_agent.ids import base36, iso_now, make_id
from neural_agent.output import LimitedBuffer, build_tool_result_text, clamp_int


class TestRuntimeConfig:
    def test_defaults(self, monkeypatch):
        for key in list(os.environ):
            if key.startswith("NEURAL_COMPUTER_"):
                monkeypatch.delenv(key)
        config = RuntimeConfig.from_env()
        assert config.port == 8787
        assert config.default_workspace_root == "./workspace"
        assert config.workspace_policy_roots == ()
        assert config.tool_cmd_timeout_sec == 30
        assert config.emit_screen_max_html_chars == 240_000
        assert config.emit_screen_max_calls == 24
        assert config.compaction.reserve_tokens == 16384
        assert config.compaction.keep_recent_tokens == 20000
        assert not config.production
        assert config.allowed_roots == [os.getcwd()]

    def test_env(self, monkeypatch):
        monkeypatch.setenv("NEURAL_COMPUTER_SERVER_PORT", "9001")
        monkeypatch.setenv("NEURAL_COMPUTER_WORKSPACE_POLICY_ROOTS", "/a, /b,,")
        monkeypatch.setenv("NEURAL_COMPUTER_TOOL_CMD_TIMEOUT_SEC", "9999")
        monkeypatch.setenv("NEURAL_COMPUTER_EMIT_SCREEN_MAX_HTML_CHARS", "10")
        monkeypatch.setenv("NEURAL_COMPUTER_ENV", "Production")
        config = RuntimeConfig.from_env()
        assert config.port == 9001
        assert config.workspace_policy_roots == ("/a", "/b")
        assert config.tool_cmd_timeout_sec == 600
        assert config.emit_screen_max_html_chars == 16_000
        assert config.production

    def test_parse_number_env_garbage(self, monkeypatch):
        monkeypatch.setenv("SOME_NUMBER", "abc")
        assert parse_number_env("SOME_NUMBER", 7) == 7
        monkeypatch.setenv("SOME_NUMBER", "inf")
        assert parse_number_env("SOME_NUMBER", 7) == 7

    def test_config_file_overrides(self, tmp_path, monkeypatch):
        monkeypatch.delenv("NEURAL_COMPUTER_SERVER_PORT", raising=False)
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"port": 9100, "workspace_policy_roots": ["/srv"], "unknown": 1}))
        config = load_runtime_config(str(path))
        assert config.port == 9100
        assert config.workspace_policy_roots == ("/srv",)

    def test_missing_config_file(self, tmp_path):
        config = load_runtime_config(str(tmp_path / "nope.json"))
        assert isinstance(config, RuntimeConfig)

    @pytest.mark.parametrize("tier, expected", [("none", "none"), ("experimental", "experimental"), ("bogus", "standard"), (None, "standard")])
    def test_normalize_tool_tier(self, tier, expected):
        assert normalize_tool_tier(tier) == expected


class TestOutputHelpers:
    @pytest.mark.parametrize(
        "value, expected",
        [(5, 5), ("7.9", 7), (None, 3), ("x", 3), (float("nan"), 3), (-4, 1), (500, 100), (True, 3)],
    )
    def test_clamp_int(self, value, expected):
        assert clamp_int(value, min_value=1, max_value=100, fallback=3) == expected

    def test_build_tool_result_text(self):
        assert build_tool_result_text("[x]", "body", 100) == "[x]\nbody"
        text = build_tool_result_text("[x]", "a" * 50, 10, "more?")
        assert text == "[x]\naaaaaa\n\nmore?"

    def test_limited_buffer(self):
        buffer = LimitedBuffer(5)
        buffer.append("abc")
        buffer.append("defg")
        buffer.append("h")
        assert buffer.text == "abcde"
        assert buffer.truncated


class TestIds:
    def test_base36(self):
        assert base36(0) == "0"
        assert base36(35) == "z"
        assert base36(36) == "10"

    def test_make_id(self):
        value = make_id("turn", now_ms=36)
        assert re.fullmatch(r"turn_10_[0-9a-z]{6}", value)

    def test_iso_now(self):
        assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", iso_now())
