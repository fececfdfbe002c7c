"""Shared fixtures: an in-process sandbox provider and wired-up components."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest
import pytest_asyncio

from sandbox_relay.activity import ActivityLogger
from sandbox_relay.artifacts import ArtifactScanner
from sandbox_relay.config import (
    ActivitySettings,
    ArtifactSettings,
    ExecutionSettings,
    RelayConfig,
    SandboxSettings,
    SessionSettings,
)
from sandbox_relay.executor import CommandPipeline
from sandbox_relay.registry import SessionRegistry
from sandbox_relay.sandbox.base import CommandOutput


@dataclass
class Reply:
    """Scripted outcome for one command."""

    exit_code: int = 0
    stdout: list[str] = field(default_factory=lambda: ["ok\n"])
    stderr: list[str] = field(default_factory=list)


class FakeHandle:
    """In-memory sandbox: records commands, replays scripted output."""

    def __init__(self, sandbox_id: str):
        self._id = sandbox_id
        self.commands: list[tuple[str, dict]] = []
        self.files: dict[str, str] = {}
        self.recent_files: list[str] = []
        self.reply = Reply()
        self.replies: dict[str, Reply] = {}  # substring of the command -> reply
        self.run_error: Exception | None = None
        self.scan_error: Exception | None = None
        self.write_error: Exception | None = None
        self.kill_error: Exception | None = None
        self.kill_delay: float = 0.0
        self.gate: asyncio.Event | None = None  # blocks agent commands until set
        self.killed = False
        self.kill_calls = 0
        self.active = 0
        self.max_active = 0

    @property
    def sandbox_id(self) -> str:
        return self._id

    @property
    def agent_commands(self) -> list[str]:
        return [cmd for cmd, _ in self.commands if not cmd.startswith("find ")]

    async def run(self, cmd, *, timeout=60, cwd=None, on_stdout=None, on_stderr=None):
        self.commands.append((cmd, {"timeout": timeout, "cwd": cwd}))

        if cmd.startswith("find "):
            if self.scan_error is not None:
                raise self.scan_error
            return CommandOutput(exit_code=0, stdout="\n".join(self.recent_files), stderr="")

        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.run_error is not None:
                raise self.run_error
            reply = next((r for marker, r in self.replies.items() if marker in cmd), self.reply)
            for chunk in reply.stdout:
                if on_stdout is not None:
                    await on_stdout(chunk)
            for chunk in reply.stderr:
                if on_stderr is not None:
                    await on_stderr(chunk)
            return CommandOutput(
                exit_code=reply.exit_code,
                stdout="".join(reply.stdout),
                stderr="".join(reply.stderr),
            )
        finally:
            self.active -= 1

    async def write_file(self, path, content):
        if self.write_error is not None:
            raise self.write_error
        self.files[path] = content

    async def kill(self):
        self.kill_calls += 1
        if self.kill_delay:
            await asyncio.sleep(self.kill_delay)
        if self.kill_error is not None:
            raise self.kill_error
        self.killed = True


class FakeProvider:
    """Hands out FakeHandles with ids sb_1, sb_2, ..."""

    def __init__(self):
        self.handles: dict[str, FakeHandle] = {}
        self.create_calls: list[dict] = []
        self.created: list[FakeHandle] = []
        self.create_error: Exception | None = None
        self.next_ids: list[str] = []
        self._counter = 0

    @property
    def name(self) -> str:
        return "fake"

    async def create(self, template, *, timeout, envs):
        self.create_calls.append({"template": template, "timeout": timeout, "envs": envs})
        if self.create_error is not None:
            raise self.create_error
        if self.next_ids:
            sandbox_id = self.next_ids.pop(0)
        else:
            self._counter += 1
            sandbox_id = f"sb_{self._counter}"
        handle = FakeHandle(sandbox_id)
        self.created.append(handle)
        self.handles.setdefault(sandbox_id, handle)
        return handle


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def sandbox_settings():
    return SandboxSettings(template="test-template")


@pytest.fixture
def registry(provider, sandbox_settings):
    return SessionRegistry(provider, sandbox_settings, idle_timeout=600)


@pytest.fixture
def scanner():
    return ArtifactScanner(ArtifactSettings())


@pytest.fixture
def pipeline(registry, scanner):
    return CommandPipeline(registry, scanner, ExecutionSettings())


@pytest_asyncio.fixture
async def activity_logger(tmp_path):
    """Activity logger backed by a temp database."""
    logger = ActivityLogger(str(tmp_path / "activity.db"))
    await logger.initialize()
    yield logger
    await logger.close()


@pytest.fixture
def relay_config(tmp_path):
    """Full config with the background sweep off and storage under tmp_path."""
    return RelayConfig(
        sandbox=SandboxSettings(template="test-template"),
        sessions=SessionSettings(idle_timeout=600, sweep_interval=0, shutdown_deadline=1),
        activity=ActivitySettings(db_path=str(tmp_path / "activity.db")),
    )
