"""Idle Reaper — reclaims sandboxes nobody is using.

A sweep claims every session whose last activity is older than the idle
threshold, kills the claimed sandboxes concurrently, and removes them from
the registry whether or not the kill succeeded. Kill failures are logged
and never propagate: the caller that triggered the sweep (usually a
``create`` for some unrelated session) must not see them.

Sweeps run inline before every ``create``, periodically in the background
(``start()``/``stop()``), and once more as ``drain()`` at shutdown, where
every remaining session is killed within a bounded deadline.

The same loop also prunes activity history older than the configured
retention window: once at ``start()`` and then at most once per
``PRUNE_INTERVAL``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime
from typing import TYPE_CHECKING

from sandbox_relay.activity import ActivityEventType

if TYPE_CHECKING:
    from sandbox_relay.models import SandboxSession
    from sandbox_relay.registry import SessionRegistry

logger = logging.getLogger(__name__)

PRUNE_INTERVAL = 3600.0  # seconds between activity prunes


class IdleReaper:
    """Sweeps a SessionRegistry for idle sessions."""

    def __init__(self, registry: SessionRegistry, idle_timeout: float = 600.0) -> None:
        self.registry = registry
        self.idle_timeout = idle_timeout
        self.interval: float = 0.0
        self.retention_hours: float = 0.0
        self._next_prune = 0.0
        self._running = False
        self._task: asyncio.Task | None = None

    # ── Sweeps ───────────────────────────────────────────────────────────────

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Kill and forget every idle session. Returns the reaped ids."""
        claimed = await self.registry.claim_idle(now)
        if not claimed:
            return []

        logger.info("Reaping %d idle session(s): %s", len(claimed), [s.id for s in claimed])
        await asyncio.gather(*(self._reap(s, reason="idle") for s in claimed))
        return [s.id for s in claimed]

    async def drain(self, deadline: float = 10.0) -> list[str]:
        """Kill every registered session, waiting at most ``deadline`` seconds.

        Kills still pending at the deadline are abandoned; the registry is
        emptied regardless.
        """
        claimed = await self.registry.claim_all()
        if not claimed:
            return []

        logger.info("Draining %d session(s) at shutdown", len(claimed))
        kills = asyncio.gather(
            *(self._kill(s) for s in claimed),
            return_exceptions=True,
        )
        try:
            await asyncio.wait_for(kills, timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("Shutdown drain exceeded %.1fs; abandoning pending kills", deadline)

        for session in claimed:
            await self.registry.remove(session.id)
        return [s.id for s in claimed]

    async def _reap(self, session: SandboxSession, reason: str) -> None:
        killed = await self._kill(session)
        await self.registry.remove(session.id)
        if self.registry.activity:
            await self.registry.activity.record(
                session.id,
                ActivityEventType.SESSION_REAPED,
                reason=reason,
                killed=killed,
            )

    async def _kill(self, session: SandboxSession) -> bool:
        try:
            await session.handle.kill()
            return True
        except Exception as e:
            logger.warning("Failed to kill sandbox %s: %s", session.id, e)
            return False

    # ── Background loop ──────────────────────────────────────────────────────

    async def prune_activity(self) -> int:
        """Drop activity history older than ``retention_hours`` (0 keeps all)."""
        activity = self.registry.activity
        if activity is None or self.retention_hours <= 0:
            return 0
        self._next_prune = time.monotonic() + PRUNE_INTERVAL
        deleted = await activity.prune_old_activity(hours=self.retention_hours)
        if deleted:
            logger.info(
                "Pruned %d activity event(s) older than %.0fh", deleted, self.retention_hours
            )
        return deleted

    async def start(self, interval: float, *, retention_hours: float = 0.0) -> None:
        """Run ``sweep()`` every ``interval`` seconds until ``stop()``."""
        self.retention_hours = retention_hours
        await self.prune_activity()
        if interval <= 0:
            logger.info("Idle reaper background sweep disabled")
            return
        self.interval = interval
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="idle-reaper")
        logger.info(
            "Idle reaper started (interval=%.0fs, idle_timeout=%.0fs)",
            interval,
            self.idle_timeout,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Idle reaper stopped")

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                await self.sweep()
                if time.monotonic() >= self._next_prune:
                    await self.prune_activity()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Idle sweep error")
