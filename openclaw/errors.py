"""Exception types shared across OpenClaw subsystems."""

from __future__ import annotations


class OpenClawError(Exception):
    """Base class for all OpenClaw errors."""


class SessionNotFoundError(OpenClawError, LookupError):
    """Raised when a turn targets a session id the store does not know."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionPersistenceError(OpenClawError):
    """Raised by the session store in strict mode when a log write fails."""


class LLMProtocolError(OpenClawError):
    """The backend answered, but the payload was not a usable message."""


class MethodNotFoundError(OpenClawError, LookupError):
    """No RPC handler is registered under the requested method name."""

    def __init__(self, method: str) -> None:
        super().__init__(f"unknown method: {method}")
        self.method = method


class InvalidParamsError(OpenClawError, ValueError):
    """An RPC handler rejected its parameters."""
