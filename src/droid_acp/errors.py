"""Exceptions raised by the Droid ACP bridge."""

from __future__ import annotations


class DroidAcpError(Exception):
    """Base class for all bridge errors."""


class ConfigurationError(DroidAcpError):
    """Raised when required configuration (e.g. the API key) is missing."""


class SessionNotFoundError(DroidAcpError, ValueError):
    """Raised for session-scoped calls on an unknown session id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionCancelledError(DroidAcpError):
    """Raised when prompting a session that has been cancelled."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session cancelled: {session_id}")
        self.session_id = session_id


class PromptInProgressError(DroidAcpError):
    """Raised when a prompt arrives while another is still pending."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Prompt already in progress for session: {session_id}")
        self.session_id = session_id


class DroidProcessError(DroidAcpError):
    """Raised when the droid process cannot be spawned or goes away."""


class DroidInitTimeoutError(DroidProcessError):
    """Raised when the droid does not answer initialize_session in time."""


__all__ = [
    "ConfigurationError",
    "DroidAcpError",
    "DroidInitTimeoutError",
    "DroidProcessError",
    "PromptInProgressError",
    "SessionCancelledError",
    "SessionNotFoundError",
]
