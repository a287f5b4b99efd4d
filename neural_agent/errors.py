"""Typed errors shared by the sandbox, tools, onboarding and HTTP layers."""

from typing import Any


class NeuralAgentError(Exception):
    """Base class for every error raised on purpose by neural-agent."""


class WorkspacePolicyError(NeuralAgentError):
    """A path or command violated the workspace sandbox.

    ``code`` is stable (e.g. ``WORKSPACE_PATH_ESCAPE_BLOCKED``) so callers can
    branch on it; ``message`` is shown to the model as-is.
    """

    def __init__(self, code: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class ToolError(NeuralAgentError):
    """Tool-level failure (bad arguments, budget, missing precondition)."""


class OnboardingIncompleteError(NeuralAgentError):
    code = "ONBOARDING_INCOMPLETE"

    def __init__(self, missing: list[str]):
        self.missing = list(missing)
        self.message = f"Cannot complete onboarding. Missing checkpoints: {', '.join(self.missing)}."
        super().__init__(self.message)

    @property
    def details(self) -> dict:
        return {"missingCheckpoints": self.missing}


class ApiError(NeuralAgentError):
    """Request error rendered by the HTTP layer as ``{"ok": false, "error": ...}``."""

    def __init__(self, status: int, code: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.message = message
        self.details = details

    def to_payload(self) -> dict:
        return {
            "ok": False,
            "error": {"code": self.code, "message": self.message, "details": self.details},
        }
