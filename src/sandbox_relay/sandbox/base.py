"""Sandbox provider protocol — the interface every sandbox backend implements.

A provider allocates remote sandboxes; each allocation yields a handle that
can run shell commands (with live stdout/stderr callbacks), write files, and
be killed. The relay core depends only on these protocols; the E2B backend
lives in ``sandbox_relay.sandbox.e2b``.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

OutputCallback = Callable[[str], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class CommandOutput:
    """Result of one command run inside a sandbox."""

    exit_code: int
    stdout: str
    stderr: str


@runtime_checkable
class SandboxHandle(Protocol):
    """Live connection to one remote sandbox."""

    @property
    def sandbox_id(self) -> str:
        ...

    async def run(
        self,
        cmd: str,
        *,
        timeout: float = 60,
        cwd: str | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandOutput:
        """Execute a shell command. ``timeout=0`` means no limit."""
        ...

    async def write_file(self, path: str, content: str) -> None:
        """Write a text file inside the sandbox."""
        ...

    async def kill(self) -> None:
        """Terminate the remote sandbox."""
        ...


@runtime_checkable
class SandboxProvider(Protocol):
    """Allocates sandboxes from a template."""

    @property
    def name(self) -> str:
        """Provider name, e.g. 'e2b'."""
        ...

    async def create(
        self,
        template: str,
        *,
        timeout: float,
        envs: dict[str, str],
    ) -> SandboxHandle:
        """Provision a sandbox that lives for at most ``timeout`` seconds."""
        ...
