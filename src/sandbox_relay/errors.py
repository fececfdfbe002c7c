"""Error taxonomy for sandbox sessions.

Every error raised across the session/execution boundary derives from
``RelayError`` and carries the HTTP status the API surface maps it to.
"""

from __future__ import annotations


class RelayError(Exception):
    """Base class for errors surfaced to callers."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidArgument(RelayError):
    """A required field (sandbox id, prompt, script) is missing or empty."""

    status_code = 400


class NotFound(RelayError):
    """The referenced session is not in the registry."""

    status_code = 404

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Sandbox not found or expired: {session_id}. Create a new session.")
        self.session_id = session_id


class ProviderError(RelayError):
    """A create/run/write/kill call against the sandbox provider failed."""

    status_code = 500


class ExecutionTimeout(RelayError):
    """An execution's explicit timeout elapsed before the command exited."""

    status_code = 504
