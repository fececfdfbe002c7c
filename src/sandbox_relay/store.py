"""Session storage backends.

The registry keeps its records behind the ``SessionStore`` protocol so a
multi-instance deployment could swap in a shared backend. Only the
in-process store ships here; sessions are bound to the process that created
them and are lost on restart.
"""

from __future__ import annotations

from typing import Protocol

from sandbox_relay.models import SandboxSession


class SessionStore(Protocol):
    """Synchronous map of session id → record.

    Callers (the registry) serialize access; implementations need not lock.
    """

    def get(self, session_id: str) -> SandboxSession | None: ...

    def put(self, session: SandboxSession) -> None: ...

    def delete(self, session_id: str) -> bool: ...

    def values(self) -> list[SandboxSession]: ...

    def __contains__(self, session_id: object) -> bool: ...

    def __len__(self) -> int: ...


class InMemorySessionStore:
    """Process-local dict-backed store."""

    def __init__(self) -> None:
        self._sessions: dict[str, SandboxSession] = {}

    def get(self, session_id: str) -> SandboxSession | None:
        return self._sessions.get(session_id)

    def put(self, session: SandboxSession) -> None:
        self._sessions[session.id] = session

    def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None

    def values(self) -> list[SandboxSession]:
        return list(self._sessions.values())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
