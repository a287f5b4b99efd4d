"""Workspace-confined subprocess execution for the bash and grep tools."""

import asyncio
import codecs
import json
import logging
import os
import re
import shlex
import signal
from dataclasses import dataclass

from .adapter import ToolResult
from .errors import WorkspacePolicyError
from .output import LimitedBuffer, build_tool_result_text
from .sandbox import is_path_inside_workspace, is_reserved_path

logger = logging.getLogger("neural_agent.shell")

MAX_COMMAND_LENGTH = 4_000
MAX_CAPTURE_CHARS = 120_000
KILL_GRACE_SEC = 1.0
POLICY_ERROR_PREFIX = "WORKSPACE_POLICY_ERROR:"
POLICY_EXIT_CODE = 120
TEMP_DIR_NAME = ".neural-computer-tmp"
BASH_TRUNCATION_HINT = "[truncated bash output; rerun with narrower command]"

_OPERATOR_CHARS = frozenset("();<>|&")
_EXPANSION_RE = re.compile(r"\$\(|\$\{|\$[A-Za-z_]")
_PARENT_RE = re.compile(r"\.\.(/|\\|$)")
_CD_ESCAPE_RE = re.compile(r"(^|[;&|]\s*)(cd|pushd)\s+([/~]|-\b|\.\.)", re.IGNORECASE)


@dataclass
class ProcessResult:
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    error: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False

    @property
    def combined(self) -> str:
        return f"{self.stdout}{self.stderr}".strip()


def split_command_tokens(command: str) -> list[str]:
    """Split like the shell does: quotes removed, and runs of ``();<>|&``
    returned as their own tokens so ``x>/tmp/y`` yields ``x``, ``>``, ``/tmp/y``.
    """
    lexer = shlex.shlex(command, posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    lexer.commenters = ""
    return list(lexer)


def _is_operator(token: str) -> bool:
    return bool(token) and all(ch in _OPERATOR_CHARS for ch in token)


def check_command(command: str, workspace_root: str) -> None:
    """Reject *command* before spawning anything if it could reach outside the root."""
    if len(command) > MAX_COMMAND_LENGTH:
        raise WorkspacePolicyError(
            "BASH_COMMAND_TOO_LONG", f"bash command exceeds {MAX_COMMAND_LENGTH} characters."
        )
    if "`" in command:
        raise WorkspacePolicyError(
            "BASH_COMMAND_UNSAFE_SYNTAX", "Backticks are blocked by workspace command policy."
        )
    if _EXPANSION_RE.search(command):
        raise WorkspacePolicyError(
            "BASH_COMMAND_UNSAFE_SYNTAX",
            "Shell variable or command expansion is blocked by workspace command policy.",
        )
    if _PARENT_RE.search(command):
        raise WorkspacePolicyError(
            "BASH_COMMAND_PATH_ESCAPE", "Parent-directory traversal is blocked by workspace command policy."
        )
    if _CD_ESCAPE_RE.search(command):
        raise WorkspacePolicyError(
            "BASH_COMMAND_CD_ESCAPE", "cd/pushd to paths outside the workspace is blocked."
        )
    try:
        tokens = split_command_tokens(command)
    except ValueError as e:
        raise WorkspacePolicyError(
            "BASH_COMMAND_UNSAFE_SYNTAX", f"bash command could not be parsed: {e}."
        ) from e

    redirect_target = False
    for index, token in enumerate(tokens):
        if _is_operator(token):
            redirect_target = "<" in token or ">" in token
            continue
        is_target, redirect_target = redirect_target, False
        cleaned = token.strip().rstrip(",")
        if not cleaned or (cleaned.startswith("-") and not is_target):
            continue
        if cleaned == "~" or cleaned.startswith("~/"):
            raise WorkspacePolicyError(
                "BASH_COMMAND_HOME_BLOCKED",
                "Home-directory path expansion is blocked by workspace command policy.",
            )

        exists_in_workspace = index > 0 and os.path.exists(os.path.join(workspace_root, cleaned))
        looks_like_path = is_target or "/" in cleaned or exists_in_workspace
        if not looks_like_path:
            continue

        if cleaned.startswith("/"):
            candidate = os.path.abspath(cleaned)
        else:
            candidate = os.path.abspath(os.path.join(workspace_root, cleaned))
        if not is_path_inside_workspace(candidate, workspace_root):
            raise WorkspacePolicyError(
                "BASH_COMMAND_PATH_OUTSIDE_WORKSPACE",
                f"Command references path '{cleaned}' outside workspace root.",
            )
        try:
            real_candidate = os.path.realpath(candidate, strict=True)
        except FileNotFoundError:
            real_candidate = candidate  # new path inside the workspace
        if not is_path_inside_workspace(real_candidate, workspace_root):
            raise WorkspacePolicyError(
                "BASH_COMMAND_SYMLINK_ESCAPE",
                f"Command path '{cleaned}' resolves outside workspace root.",
            )
        if is_reserved_path(candidate, workspace_root) or is_reserved_path(real_candidate, workspace_root):
            raise WorkspacePolicyError(
                "WORKSPACE_PATH_RESERVED",
                f"Command path '{cleaned}' is reserved for host state.",
            )


def build_bash_script(command: str, workspace_root: str) -> str:
    """Wrap *command* so every simple command re-asserts the working directory."""
    return "\n".join([
        "set -euo pipefail",
        "set -f",
        f"workspace_root={json.dumps(workspace_root)}",
        'cd "$workspace_root"',
        "__enforce_workspace() {",
        "  local current",
        '  current="$(pwd -P)"',
        '  case "$current" in',
        '    "$workspace_root"|"$workspace_root"/*) ;;',
        "    *)",
        f"      echo \"{POLICY_ERROR_PREFIX} command attempted to leave workspace root '$workspace_root'.\" >&2",
        f"      exit {POLICY_EXIT_CODE}",
        "      ;;",
        "  esac",
        "}",
        "trap '__enforce_workspace' DEBUG",
        command,
    ])


# ------------------------------------------------------------------
# Process runner
# ------------------------------------------------------------------


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


async def _terminate(process: asyncio.subprocess.Process) -> None:
    _signal_group(process, signal.SIGTERM)
    try:
        await asyncio.wait_for(process.wait(), KILL_GRACE_SEC)
    except asyncio.TimeoutError:
        _signal_group(process, signal.SIGKILL)
        await process.wait()


async def _pump(stream: asyncio.StreamReader, buffer: LimitedBuffer) -> None:
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            buffer.append(decoder.decode(b"", final=True))
            return
        buffer.append(decoder.decode(chunk))


async def run_process(
    argv: list[str],
    *,
    cwd: str,
    timeout_sec: float,
    env: dict | None = None,
    stdin_text: str | None = None,
    max_output_chars: int = MAX_CAPTURE_CHARS,
) -> ProcessResult:
    """Run *argv* with bounded capture; on timeout SIGTERM, then SIGKILL after a grace period."""
    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
    except OSError as e:
        return ProcessResult(exit_code=None, error=str(e))

    stdout = LimitedBuffer(max_output_chars)
    stderr = LimitedBuffer(max_output_chars)

    if stdin_text is not None:
        try:
            process.stdin.write(stdin_text.encode())
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("%s closed stdin early", argv[0])
        finally:
            process.stdin.close()

    collector = asyncio.gather(_pump(process.stdout, stdout), _pump(process.stderr, stderr), process.wait())
    timed_out = False
    try:
        await asyncio.wait_for(asyncio.shield(collector), timeout_sec)
    except asyncio.TimeoutError:
        timed_out = True
        logger.info("%s timed out after %ss, terminating", argv[0], timeout_sec)
        await _terminate(process)
        try:
            await asyncio.wait_for(collector, KILL_GRACE_SEC)
        except asyncio.TimeoutError:
            pass  # orphaned descendants still hold the pipes

    return ProcessResult(
        exit_code=process.returncode,
        stdout=stdout.text,
        stderr=stderr.text,
        timed_out=timed_out,
        stdout_truncated=stdout.truncated,
        stderr_truncated=stderr.truncated,
    )


async def run_bash(command: str, workspace_root: str, *, timeout_sec: int, max_output_chars: int) -> ToolResult:
    """Validate and run one bash command inside *workspace_root*."""
    check_command(command, workspace_root)
    temp_dir = os.path.join(workspace_root, TEMP_DIR_NAME)
    os.makedirs(temp_dir, exist_ok=True)

    env = {**os.environ, "HOME": workspace_root, "TMPDIR": temp_dir, "PWD": workspace_root}
    execution = await run_process(
        ["bash", "--noprofile", "--norc"],
        cwd=workspace_root,
        env=env,
        timeout_sec=timeout_sec,
        stdin_text=build_bash_script(command, workspace_root) + "\n",
    )

    if execution.timed_out:
        return ToolResult(text=f"Command timed out after {round(timeout_sec)}s.", is_error=True)
    if execution.error:
        return ToolResult(text=f"bash failed to start: {execution.error}", is_error=True)
    if POLICY_ERROR_PREFIX in execution.stderr:
        line = next(line for line in execution.stderr.split("\n") if POLICY_ERROR_PREFIX in line)
        text = line.replace(POLICY_ERROR_PREFIX, "", 1).strip()
        return ToolResult(text=text or "Command blocked by workspace policy.", is_error=True)

    if execution.exit_code != 0:
        return ToolResult(
            text=build_tool_result_text(
                f"[bash] exit {execution.exit_code}",
                execution.combined or "Command failed without stderr output.",
                max_output_chars,
                BASH_TRUNCATION_HINT,
            ),
            is_error=True,
        )
    return ToolResult(
        text=build_tool_result_text(
            "[bash] success", execution.combined or "(no output)", max_output_chars, BASH_TRUNCATION_HINT
        )
    )
