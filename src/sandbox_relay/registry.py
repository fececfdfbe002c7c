"""Session Registry — authoritative map of live sandbox sessions.

Tracks every sandbox this process has provisioned, keyed by the
provider-assigned sandbox id. All reads and writes of the map go through a
single ``asyncio.Lock``; remote provider calls (create, kill) are made
outside the lock so one slow sandbox never blocks the others.

Records handed out to callers are ``SessionInfo`` snapshots; the live
``SandboxSession`` (and its handle) stays inside the registry and is only
lent to the execution pipeline via ``acquire()``.

Ids are never reused within the process lifetime: removed ids are retired,
and a provider that hands back a known id is treated as a provider fault.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sandbox_relay.activity import ActivityEventType
from sandbox_relay.errors import InvalidArgument, NotFound, ProviderError
from sandbox_relay.models import (
    ExecutionSummary,
    RepoInfo,
    SandboxSession,
    SessionCreateConfig,
    SessionInfo,
    SessionStatus,
    utcnow,
)
from sandbox_relay.reaper import IdleReaper
from sandbox_relay.store import InMemorySessionStore, SessionStore

if TYPE_CHECKING:
    from sandbox_relay.activity import ActivityLogger
    from sandbox_relay.config import SandboxSettings
    from sandbox_relay.sandbox.base import SandboxProvider

logger = logging.getLogger(__name__)


def require_session_id(session_id: str | None) -> str:
    if not session_id or not session_id.strip():
        raise InvalidArgument("sandboxId is required")
    return session_id


class SessionRegistry:
    """Process-local registry of sandbox sessions."""

    def __init__(
        self,
        provider: SandboxProvider,
        settings: SandboxSettings,
        *,
        idle_timeout: float = 600.0,
        store: SessionStore | None = None,
        activity: ActivityLogger | None = None,
    ) -> None:
        self.provider = provider
        self.settings = settings
        self.idle_timeout = idle_timeout
        self.activity = activity
        self._store: SessionStore = store if store is not None else InMemorySessionStore()
        self._retired: set[str] = set()
        self._lock = asyncio.Lock()
        self.reaper = IdleReaper(self, idle_timeout=idle_timeout)

    # ── Create ───────────────────────────────────────────────────────────────

    async def create(self, config: SessionCreateConfig | None = None) -> SessionInfo:
        """Provision a sandbox and register it.

        Runs an idle sweep first so capacity isn't wasted on dead sessions.
        Nothing is registered when the provider fails.
        """
        config = config or SessionCreateConfig()
        await self.reaper.sweep()

        template = config.template or self.settings.template
        envs = self.settings.build_envs(config.base_url)

        try:
            handle = await self.provider.create(
                template,
                timeout=self.settings.create_timeout,
                envs=envs,
            )
        except Exception as e:
            logger.error("Sandbox creation failed (template=%s): %s", template, e)
            raise ProviderError(f"Failed to create sandbox: {e}") from e

        session = SandboxSession(id=handle.sandbox_id, handle=handle, template=template)
        async with self._lock:
            duplicate = session.id in self._store or session.id in self._retired
            if not duplicate:
                self._store.put(session)
            info = session.info(self.idle_timeout)

        if duplicate:
            logger.error("Provider returned an already-used sandbox id %s", session.id)
            try:
                await handle.kill()
            except Exception:
                logger.warning("Failed to kill duplicate sandbox %s", session.id, exc_info=True)
            raise ProviderError(f"Provider returned an already-used sandbox id: {session.id}")

        logger.info("Session created: %s (template=%s)", session.id, template)
        if self.activity:
            await self.activity.record(
                session.id, ActivityEventType.SESSION_CREATED, template=template
            )
        return info

    # ── Lookup ───────────────────────────────────────────────────────────────

    async def get(self, session_id: str) -> SessionInfo:
        """Snapshot of one session. Does not count as activity."""
        session_id = require_session_id(session_id)
        async with self._lock:
            session = self._live(session_id)
            return session.info(self.idle_timeout)

    async def list(self) -> list[SessionInfo]:
        async with self._lock:
            now = utcnow()
            return [s.info(self.idle_timeout, now) for s in self._store.values() if not s.terminated]

    async def touch(self, session_id: str) -> datetime:
        """Mark the session as active now."""
        session_id = require_session_id(session_id)
        async with self._lock:
            return self._live(session_id).touch()

    async def status(self, session_id: str) -> SessionInfo:
        """Status query for one session.

        Counts as activity unless the session has already crossed the idle
        threshold; an expired session is reported as idle and left for the
        reaper rather than revived by being looked at.
        """
        session_id = require_session_id(session_id)
        async with self._lock:
            session = self._live(session_id)
            now = utcnow()
            if session.status(self.idle_timeout, now) is SessionStatus.ACTIVE:
                session.touch(now)
            return session.info(self.idle_timeout)

    def __len__(self) -> int:
        return len(self._store)

    # ── Removal ──────────────────────────────────────────────────────────────

    async def remove(self, session_id: str) -> bool:
        """Drop the record without contacting the provider."""
        async with self._lock:
            session = self._store.get(session_id)
            if session is not None:
                session.terminated = True
            self._retired.add(session_id)
            return self._store.delete(session_id)

    async def terminate(self, session_id: str) -> None:
        """Kill the sandbox, then forget it.

        The record is removed even if the kill fails; the failure is then
        reported to the caller as a ProviderError.
        """
        session_id = require_session_id(session_id)
        async with self._lock:
            session = self._live(session_id)
            session.terminated = True

        kill_error: Exception | None = None
        try:
            await session.handle.kill()
        except Exception as e:
            kill_error = e
            logger.warning("Kill failed for session %s: %s", session_id, e)

        await self.remove(session_id)
        logger.info("Session terminated: %s", session_id)
        if self.activity:
            await self.activity.record(
                session_id,
                ActivityEventType.SESSION_TERMINATED,
                content=str(kill_error) if kill_error else None,
            )
        if kill_error is not None:
            raise ProviderError(f"Failed to kill sandbox {session_id}: {kill_error}") from kill_error

    # ── Internal (pipeline / reaper) ─────────────────────────────────────────

    async def acquire(self, session_id: str) -> SandboxSession:
        """Return the live record for work against it, bumping activity."""
        session_id = require_session_id(session_id)
        async with self._lock:
            session = self._live(session_id)
            session.touch()
            return session

    async def begin_execution(self, session: SandboxSession) -> None:
        async with self._lock:
            if session.terminated:
                raise NotFound(session.id)
            session.running += 1
            session.touch()

    async def finish_execution(self, session: SandboxSession, summary: ExecutionSummary) -> None:
        async with self._lock:
            session.running = max(0, session.running - 1)
            session.last_execution = summary
            if not session.terminated:
                session.touch()

    async def refresh(self, session: SandboxSession) -> None:
        """Count output from a running command as activity."""
        async with self._lock:
            if not session.terminated:
                session.touch()

    async def attach_repo(self, session_id: str, repo: RepoInfo) -> None:
        async with self._lock:
            self._live(session_id).repo = repo

    async def claim_idle(self, now: datetime | None = None) -> list[SandboxSession]:
        """Mark and return every session past the idle threshold.

        A running command keeps its session alive only by producing output
        (see ``refresh``); one that hangs silently past the threshold is
        reaped like any other idle session. Claimed sessions are flagged
        terminated so concurrent sweeps and terminate calls never kill them
        twice.
        """
        now = now or utcnow()
        async with self._lock:
            claimed = []
            for session in self._store.values():
                if session.terminated:
                    continue
                if session.idle_seconds(now) > self.idle_timeout:
                    session.terminated = True
                    claimed.append(session)
            return claimed

    async def claim_all(self) -> list[SandboxSession]:
        async with self._lock:
            claimed = [s for s in self._store.values() if not s.terminated]
            for session in claimed:
                session.terminated = True
            return claimed

    def _live(self, session_id: str) -> SandboxSession:
        session = self._store.get(session_id)
        if session is None or session.terminated:
            raise NotFound(session_id)
        return session
