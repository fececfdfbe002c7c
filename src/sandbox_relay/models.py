"""Core data models for sandbox-relay."""

from __future__ import annotations

import asyncio
import enum
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from sandbox_relay.sandbox.base import SandboxHandle


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Session ──────────────────────────────────────────────────────────────────


class SessionStatus(str, enum.Enum):
    ACTIVE = "active"
    IDLE = "idle"
    TERMINATED = "terminated"


class ExecutionSummary(BaseModel):
    """Outcome of the most recent finished command in a session."""

    kind: Literal["agent", "script"]
    exit_code: int | None = None
    error: str | None = None
    stdout_chars: int = 0
    stderr_chars: int = 0
    artifact_count: int = 0
    finished_at: datetime = Field(default_factory=utcnow)


# ── Repository ───────────────────────────────────────────────────────────────

_REPO_NAME = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class RepoSpec(BaseModel):
    """GitHub repository to clone into a new session."""

    model_config = ConfigDict(populate_by_name=True)

    full_name: str = Field(alias="fullName")  # owner/name
    branch: str = "main"

    @field_validator("full_name")
    @classmethod
    def _owner_and_name(cls, v: str) -> str:
        if not _REPO_NAME.match(v):
            raise ValueError(f"repo must look like owner/name, got {v!r}")
        return v

    @field_validator("branch")
    @classmethod
    def _plain_branch(cls, v: str) -> str:
        if not v.strip() or v.startswith("-"):
            raise ValueError(f"invalid branch name {v!r}")
        return v


class RepoInfo(BaseModel):
    """Repository attached to a session and whether the clone succeeded."""

    model_config = ConfigDict(frozen=True)

    full_name: str
    branch: str
    cloned: bool = False


@dataclass
class SandboxSession:
    """Registry record for one live sandbox.

    The handle is owned by this record alone; snapshots handed to callers
    (``SessionInfo``) never carry it.
    """

    id: str
    handle: SandboxHandle
    template: str
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime | None = None
    terminated: bool = False
    running: int = 0  # commands currently executing
    last_execution: ExecutionSummary | None = None
    repo: RepoInfo | None = None
    exec_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def __post_init__(self) -> None:
        if self.last_activity is None:
            self.last_activity = self.created_at

    def touch(self, now: datetime | None = None) -> datetime:
        """Bump last_activity; never moves backwards or stands still."""
        now = now or utcnow()
        if now <= self.last_activity:
            now = self.last_activity + timedelta(microseconds=1)
        self.last_activity = now
        return now

    def idle_seconds(self, now: datetime | None = None) -> float:
        return ((now or utcnow()) - self.last_activity).total_seconds()

    def status(self, idle_timeout: float, now: datetime | None = None) -> SessionStatus:
        if self.terminated:
            return SessionStatus.TERMINATED
        if self.idle_seconds(now) > idle_timeout:
            return SessionStatus.IDLE
        return SessionStatus.ACTIVE

    def info(self, idle_timeout: float, now: datetime | None = None) -> SessionInfo:
        now = now or utcnow()
        return SessionInfo(
            id=self.id,
            template=self.template,
            status=self.status(idle_timeout, now),
            created_at=self.created_at,
            last_activity=self.last_activity,
            age_seconds=max(0.0, (now - self.created_at).total_seconds()),
            idle_seconds=max(0.0, self.idle_seconds(now)),
            running=self.running > 0,
            last_execution=self.last_execution,
            repo=self.repo,
        )

    @property
    def repo_cloned(self) -> bool:
        return self.repo is not None and self.repo.cloned


class SessionInfo(BaseModel):
    """Immutable snapshot of a session's metadata."""

    model_config = ConfigDict(frozen=True)

    id: str
    template: str
    status: SessionStatus
    created_at: datetime
    last_activity: datetime
    age_seconds: float
    idle_seconds: float
    running: bool = False
    last_execution: ExecutionSummary | None = None
    repo: RepoInfo | None = None


class SessionCreateConfig(BaseModel):
    """Caller-supplied options for a new session."""

    template: str | None = None
    base_url: str | None = Field(default=None, alias="baseUrl")
    repo: RepoSpec | None = None

    model_config = ConfigDict(populate_by_name=True)


# ── Execution ────────────────────────────────────────────────────────────────


class ExecutionRequest(BaseModel):
    session_id: str
    prompt: str
    working_directory: str | None = None
    timeout_ms: int | None = None  # 0 / None → wait indefinitely
    skip_permissions: bool | None = None


class ExecutionResult(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0
    artifacts: list[str] = Field(default_factory=list)
    duration_ms: int = 0


# ── Stream Events ────────────────────────────────────────────────────────────


class _Event(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True)


class StartEvent(_Event):
    type: Literal["start"] = "start"
    session_id: str = Field(alias="sandboxId")


class StdoutEvent(_Event):
    type: Literal["stdout"] = "stdout"
    data: str


class StderrEvent(_Event):
    type: Literal["stderr"] = "stderr"
    data: str


class CompleteEvent(_Event):
    type: Literal["complete"] = "complete"
    exit_code: int = Field(alias="exitCode")
    output: str


class ErrorEvent(_Event):
    type: Literal["error"] = "error"
    message: str


StreamEvent = Annotated[
    Union[StartEvent, StdoutEvent, StderrEvent, CompleteEvent, ErrorEvent],
    Field(discriminator="type"),
]

TERMINAL_EVENT_TYPES = frozenset({"complete", "error"})
