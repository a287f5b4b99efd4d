"""Tests for neural_agent.shell."""

import os

import pytest

from neural_agent.errors import WorkspacePolicyError
from neural_agent.shell import check_command, run_bash, run_process, split_command_tokens


class TestSplitCommandTokens:
    def test_quotes_kept_together(self):
        assert split_command_tokens("grep -n \"two words\" 'a b' plain") == ["grep", "-n", "two words", "a b", "plain"]

    def test_operators_split_from_words(self):
        assert split_command_tokens("echo x>/tmp/y 2>&1|wc -l") == [
            "echo", "x", ">", "/tmp/y", "2", ">&", "1", "|", "wc", "-l",
        ]

    def test_quoted_operator_stays_in_word(self):
        assert split_command_tokens("grep \"a > b\" notes.txt") == ["grep", "a > b", "notes.txt"]


class TestCheckCommand:
    @pytest.mark.parametrize(
        "command, code",
        [
            ("echo `whoami`", "BASH_COMMAND_UNSAFE_SYNTAX"),
            ("echo $HOME", "BASH_COMMAND_UNSAFE_SYNTAX"),
            ("echo $(id)", "BASH_COMMAND_UNSAFE_SYNTAX"),
            ("cat ../secret", "BASH_COMMAND_PATH_ESCAPE"),
            ("cd /tmp", "BASH_COMMAND_CD_ESCAPE"),
            ("ls && pushd ~", "BASH_COMMAND_CD_ESCAPE"),
            ("ls ~/", "BASH_COMMAND_HOME_BLOCKED"),
            ("cat /etc/passwd", "BASH_COMMAND_PATH_OUTSIDE_WORKSPACE"),
            ("echo x >/tmp/y", "BASH_COMMAND_PATH_OUTSIDE_WORKSPACE"),
            ("echo x>/tmp/y", "BASH_COMMAND_PATH_OUTSIDE_WORKSPACE"),
            ("echo x 2>>/tmp/y", "BASH_COMMAND_PATH_OUTSIDE_WORKSPACE"),
            ("wc -l </etc/passwd", "BASH_COMMAND_PATH_OUTSIDE_WORKSPACE"),
            ("echo x;cat /etc/hosts", "BASH_COMMAND_PATH_OUTSIDE_WORKSPACE"),
            ("echo 'unterminated", "BASH_COMMAND_UNSAFE_SYNTAX"),
            ("echo x > .neural/onboarding-state.json", "WORKSPACE_PATH_RESERVED"),
            ("cat .neural/onboarding-events.jsonl", "WORKSPACE_PATH_RESERVED"),
        ],
    )
    def test_blocked(self, workspace, command, code):
        with pytest.raises(WorkspacePolicyError) as excinfo:
            check_command(command, workspace)
        assert excinfo.value.code == code

    def test_too_long(self, workspace):
        with pytest.raises(WorkspacePolicyError) as excinfo:
            check_command("echo " + "a" * 5000, workspace)
        assert excinfo.value.code == "BASH_COMMAND_TOO_LONG"

    def test_symlink_escape(self, workspace, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        os.symlink(outside, os.path.join(workspace, "out"))
        with pytest.raises(WorkspacePolicyError) as excinfo:
            check_command("ls out", workspace)
        assert excinfo.value.code == "BASH_COMMAND_SYMLINK_ESCAPE"

    @pytest.mark.parametrize(
        "command", ["ls -la", "echo hello > notes/a.txt", "cat ./readme.md | wc -l", "cd src", "echo hi>out.txt 2>&1"]
    )
    def test_allowed(self, workspace, command):
        check_command(command, workspace)

    def test_absolute_path_inside_workspace(self, workspace):
        check_command(f"ls {workspace}", workspace)


class TestRunProcess:
    @pytest.mark.asyncio
    async def test_captures_output(self, workspace):
        result = await run_process(["echo", "hi"], cwd=workspace, timeout_sec=5)
        assert result.exit_code == 0
        assert result.stdout.strip() == "hi"
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_bounded_capture(self, workspace):
        result = await run_process(["printf", "%0200d", "0"], cwd=workspace, timeout_sec=5, max_output_chars=50)
        assert len(result.stdout) == 50
        assert result.stdout_truncated

    @pytest.mark.asyncio
    async def test_missing_binary(self, workspace):
        result = await run_process(["definitely-not-a-real-binary-xyz"], cwd=workspace, timeout_sec=5)
        assert result.exit_code is None
        assert result.error


class TestRunBash:
    @pytest.mark.asyncio
    async def test_success(self, workspace):
        result = await run_bash("echo hello", workspace, timeout_sec=10, max_output_chars=1000)
        assert not result.is_error
        assert result.text == "[bash] success\nhello"

    @pytest.mark.asyncio
    async def test_runs_in_workspace(self, workspace):
        result = await run_bash("pwd -P", workspace, timeout_sec=10, max_output_chars=1000)
        assert result.text.endswith(workspace)

    @pytest.mark.asyncio
    async def test_no_output(self, workspace):
        result = await run_bash("true", workspace, timeout_sec=10, max_output_chars=1000)
        assert result.text == "[bash] success\n(no output)"

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, workspace):
        result = await run_bash("echo boom >&2; exit 3", workspace, timeout_sec=10, max_output_chars=1000)
        assert result.is_error
        assert result.text.startswith("[bash] exit 3")
        assert "boom" in result.text

    @pytest.mark.asyncio
    async def test_timeout(self, workspace):
        result = await run_bash("sleep 5", workspace, timeout_sec=1, max_output_chars=1000)
        assert result.is_error
        assert result.text == "Command timed out after 1s."

    @pytest.mark.asyncio
    async def test_truncated(self, workspace):
        result = await run_bash("seq 1 500", workspace, timeout_sec=10, max_output_chars=100)
        assert result.text.endswith("[truncated bash output; rerun with narrower command]")

    @pytest.mark.asyncio
    async def test_cd_into_missing_directory_fails(self, workspace):
        result = await run_bash("cd src", workspace, timeout_sec=10, max_output_chars=1000)
        assert result.is_error

    @pytest.mark.asyncio
    async def test_policy_violation_raises_before_spawn(self, workspace):
        with pytest.raises(WorkspacePolicyError):
            await run_bash("cat /etc/hosts", workspace, timeout_sec=10, max_output_chars=1000)
