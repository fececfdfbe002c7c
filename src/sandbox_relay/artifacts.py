"""Artifact Scanner — finds files a command just created or modified.

Runs ``find`` inside the sandbox for regular files modified within a short
window, capped to a bounded count. Scans are best-effort: any failure is
logged and yields an empty list so the execution that triggered the scan
still succeeds.
"""

from __future__ import annotations

import logging
import shlex
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sandbox_relay.config import ArtifactSettings
    from sandbox_relay.sandbox.base import SandboxHandle

logger = logging.getLogger(__name__)


class ArtifactScanner:
    def __init__(self, settings: ArtifactSettings) -> None:
        self.settings = settings

    def recent_files_command(self, directories: list[str], patterns: list[str] | None = None) -> str:
        """Build the ``find`` pipeline for recently modified files."""
        roots = " ".join(shlex.quote(d) for d in directories)
        name_filter = ""
        if patterns:
            names = " -o ".join(f"-name {shlex.quote(p)}" for p in patterns)
            name_filter = f" \\( {names} \\)"
        return (
            f"find {roots} -type f{name_filter} -mmin -{int(self.settings.window_minutes)}"
            f" 2>/dev/null | head -n {int(self.settings.max_files)}"
        )

    async def scan_recent(self, handle: SandboxHandle, directory: str) -> list[str]:
        """Files under ``directory`` modified within the window."""
        return await self._scan(handle, self.recent_files_command([directory]))

    async def scan_screenshots(
        self, handle: SandboxHandle, directories: list[str] | None = None
    ) -> list[str]:
        """Recently written image files (screenshots) under the given dirs."""
        command = self.recent_files_command(
            directories or self.settings.screenshot_dirs,
            self.settings.screenshot_patterns,
        )
        return await self._scan(handle, command)

    async def _scan(self, handle: SandboxHandle, command: str) -> list[str]:
        try:
            result = await handle.run(command, timeout=self.settings.scan_timeout)
        except Exception as e:
            logger.warning("Artifact scan failed in sandbox %s: %s", handle.sandbox_id, e)
            return []

        paths: list[str] = []
        for line in result.stdout.splitlines():
            path = line.strip()
            if path and path not in paths:
                paths.append(path)
        return paths[: self.settings.max_files]
