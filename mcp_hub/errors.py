"""
Error taxonomy for the hub.

Everything the supervisor, selector and plan engine raise derives from
HubError. The plan engine catches these at the step boundary and turns
them into failed step results; only BackendUnavailable ends a request.
"""

from __future__ import annotations


class HubError(Exception):
    """Base class for all hub errors."""


class TransportError(HubError):
    """Raised when a JSON-RPC exchange with a tool server fails."""


class TransportTimeout(TransportError):
    """No response arrived within the per-call timeout."""

    def __init__(self, method: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.1f}s waiting for '{method}'")
        self.method = method
        self.timeout = timeout


class TransportClosed(TransportError):
    """The byte stream to the tool server closed or could not be written."""


class ProcessHandshakeFailed(HubError):
    """The initialize / initialized / tools/list sequence did not complete."""

    def __init__(self, server: str, reason: str):
        super().__init__(f"Handshake with '{server}' failed: {reason}")
        self.server = server
        self.reason = reason


class UnknownTool(HubError):
    """A tool name that no registered server (or built-in) exports."""

    def __init__(self, name: str | None):
        super().__init__(f"unknown tool: {name}")
        self.name = name


class ArgumentValidationFailed(HubError):
    """Generated tool arguments do not satisfy the tool's parameter schema."""

    def __init__(self, tool: str, reason: str):
        super().__init__(f"Invalid arguments for '{tool}': {reason}")
        self.tool = tool
        self.reason = reason


ArgumentError = ArgumentValidationFailed


class ToolExecutionFailed(HubError):
    """The tool server reported an error for a tools/call request."""


class ApprovalDenied(HubError):
    """A confirm-class tool was not approved for execution."""


class ModelDecisionUnparseable(HubError):
    """A model reply matched none of the expected decision shapes."""


class BackendUnavailable(HubError):
    """The language-model backend could not be reached."""
