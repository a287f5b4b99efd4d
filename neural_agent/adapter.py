"""Agent adapter interface: implement this to serve a turn engine over HTTP."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from .cancellation import CancellationToken
from .errors import ApiError


@dataclass
class StreamEvent:
    """A single event in an NDJSON turn stream.

    Types:
        chunk                  fallback visible text delta
        thought                ephemeral reasoning / system status text
        render_output_partial  advisory in-progress emit_screen payload
        render_output          committed screen revision (revision, html, isFinal, note)
        tool_call_start        provider started a tool call
        tool_call_result       tool finished (text trimmed for display)
        done                   turn complete
        error                  terminal failure (content = user-facing message)
    """

    type: str
    content: str = ""
    name: str = ""
    usage: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"type": self.type, "content": self.content}
        if self.name:
            payload["name"] = self.name
        if self.usage:
            payload["usage"] = self.usage
        if self.metadata:
            payload.update(self.metadata)  # flatten to top level
        return payload


@dataclass
class ToolResult:
    """Outcome of one tool call, fed back to the model as a tool message."""

    text: str
    is_error: bool = False
    code: str = ""
    events: list[StreamEvent] = field(default_factory=list)
    next_workspace_root: str | None = None


def _not_supported(feature: str) -> ApiError:
    return ApiError(501, "NOT_SUPPORTED", f"{feature} is not supported by this adapter.")


class AgentAdapter(ABC):
    """Implement this to plug a turn engine into the neural-agent server.

    Four methods are required: initialize, shutdown, prepare_turn and
    stream_turn.  Everything else has a default so a minimal adapter stays
    small.
    """

    # --- Lifecycle (required) ---

    @abstractmethod
    async def initialize(self, config_path: str | None = None) -> None:
        """Boot the engine. Called once at startup."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Tear down the engine. Called once at exit."""
        ...

    # --- Turns (required) ---

    @abstractmethod
    async def prepare_turn(self, body: dict) -> Any:
        """Validate a stream request before any byte is sent.

        Raise :class:`ApiError` (or ``WorkspacePolicyError``) to reject the
        request with a plain JSON error response.
        """
        ...

    @abstractmethod
    def stream_turn(self, prepared: Any, cancel: CancellationToken) -> AsyncIterator[StreamEvent]:
        """Run one turn and yield its events. The last event is done or error."""
        ...

    # --- Catalog and credentials (optional) ---

    async def catalog(self) -> dict:
        return {"providers": [], "defaults": {}}

    async def set_credential(self, session_id: str, provider_id: str, api_key: str) -> dict:
        raise _not_supported("Credential storage")

    async def remove_credential(self, session_id: str, provider_id: str) -> dict:
        raise _not_supported("Credential storage")

    # --- Onboarding (optional) ---

    async def onboarding_state(self, query: dict) -> dict:
        raise _not_supported("Onboarding")

    async def reopen_onboarding(self, body: dict) -> dict:
        raise _not_supported("Onboarding")

    async def complete_onboarding(self, body: dict) -> dict:
        raise _not_supported("Onboarding")

    # --- Diagnostics (optional) ---

    async def context_memory_snapshot(self, session_id: str = "", app_context: str = "") -> list[dict]:
        """Describe in-memory context lanes, optionally filtered."""
        return []

    async def list_tools(self) -> list[dict]:
        """List reachable tool definitions."""
        return []

    async def health(self) -> dict:
        """Health check data."""
        return {"status": "ok"}

    # --- Extensibility hooks (optional) ---

    def extra_routes(self) -> list | None:
        """Return additional aiohttp routes as (method, path, handler) tuples."""
        return None

    def public_route_prefixes(self) -> list[str]:
        """Return path prefixes that skip authentication.

        Default: ["/health"]; the health endpoint is always public.
        """
        return ["/health"]
