"""neural-agent: sandboxed agent-execution backend for streaming tool loops."""

from importlib.metadata import version as _pkg_version

from .adapter import AgentAdapter, StreamEvent, ToolResult

__version__ = _pkg_version("neural-agent")
__all__ = ["AgentAdapter", "StreamEvent", "ToolResult", "__version__"]
