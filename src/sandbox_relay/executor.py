"""Command Execution Pipeline — runs one unit of work inside a session's sandbox.

Two variants:
- ``run_agent``: pipes a prompt into the agent CLI in a working directory,
  then inventories recently modified files there.
- ``run_script``: writes a browser-automation script verbatim into the
  sandbox, runs it with the fixed interpreter, then inventories screenshots.

Both accumulate stdout/stderr chunks while forwarding each chunk, in the
order produced, to optional async callbacks (the streaming channel uses
these). Session activity is refreshed on entry, on every output chunk and on
completion. A provider failure is reported as ``ProviderError`` and leaves the
session registered.

Sessions with a cloned repository also get ``clone_repo`` (at create time),
``commit``, ``push`` and ``diff``, which run short git commands in the
project directory under the same per-session serialization.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shlex
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from sandbox_relay.activity import ActivityEventType
from sandbox_relay.config import GitSettings
from sandbox_relay.errors import (
    ExecutionTimeout,
    InvalidArgument,
    NotFound,
    ProviderError,
    RelayError,
)
from sandbox_relay.models import ExecutionRequest, ExecutionResult, ExecutionSummary, RepoInfo
from sandbox_relay.registry import require_session_id
from sandbox_relay.repo import (
    DiffStats,
    build_clone_command,
    build_commit_command,
    build_diff_commands,
    build_identity_command,
    build_push_command,
    clone_url,
    is_auth_failure,
    parse_diff,
)
from sandbox_relay.sandbox.base import CommandOutput, OutputCallback

if TYPE_CHECKING:
    from sandbox_relay.artifacts import ArtifactScanner
    from sandbox_relay.config import ExecutionSettings
    from sandbox_relay.models import RepoSpec, SandboxSession
    from sandbox_relay.registry import SessionRegistry
    from sandbox_relay.sandbox.base import SandboxHandle

logger = logging.getLogger(__name__)


def build_agent_command(
    prompt: str,
    working_directory: str,
    *,
    agent_command: str = "claude",
    skip_permissions: bool = True,
) -> str:
    """Shell command that feeds ``prompt`` to the agent CLI on stdin.

    The prompt and directory are single-quoted with ``shlex.quote`` (embedded
    single quotes become ``'"'"'``), so their content is always data to the
    shell. ``printf '%s\\n'`` passes the prompt through byte-for-byte, unlike
    ``echo``, which some shells let interpret backslash escapes.
    """
    flags = "-p --dangerously-skip-permissions" if skip_permissions else "-p"
    return (
        f"cd {shlex.quote(working_directory)} && "
        f"printf '%s\\n' {shlex.quote(prompt)} | {agent_command} {flags}"
    )


class CommandPipeline:
    """Executes agent prompts and scripts against registered sessions."""

    def __init__(
        self,
        registry: SessionRegistry,
        scanner: ArtifactScanner,
        settings: ExecutionSettings,
        git: GitSettings | None = None,
    ) -> None:
        self.registry = registry
        self.scanner = scanner
        self.settings = settings
        self.git = git or GitSettings()

    def project_dir(self, repo: RepoInfo | None) -> str:
        """Default working directory: the clone when there is one, else home."""
        if repo is not None and repo.cloned:
            return self.git.project_dir
        return self.settings.home_dir

    # ── Agent prompt ─────────────────────────────────────────────────────────

    async def run_agent(
        self,
        request: ExecutionRequest,
        *,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> ExecutionResult:
        session_id = require_session_id(request.session_id)
        if not request.prompt or not request.prompt.strip():
            raise InvalidArgument("prompt is required")

        session = await self.registry.acquire(session_id)
        workdir = request.working_directory or self.project_dir(session.repo)
        skip = (
            self.settings.skip_permissions
            if request.skip_permissions is None
            else request.skip_permissions
        )
        command = build_agent_command(
            request.prompt,
            workdir,
            agent_command=self.settings.agent_command,
            skip_permissions=skip,
        )
        logger.info("Running agent in %s (session=%s)", workdir, session_id)

        async def produce(handle: SandboxHandle) -> tuple[CommandOutput, list[str], int]:
            output, duration_ms = await self._run(
                handle,
                command,
                session=session,
                timeout_ms=request.timeout_ms,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
            artifacts = await self.scanner.scan_recent(handle, workdir)
            return output, artifacts, duration_ms

        return await self._execute(session, "agent", request.prompt, produce)

    # ── Browser-automation script ────────────────────────────────────────────

    async def run_script(
        self,
        session_id: str,
        script: str,
        *,
        timeout_ms: int | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> ExecutionResult:
        session_id = require_session_id(session_id)
        if not script or not script.strip():
            raise InvalidArgument("script is required")

        script_path = self.settings.script_path
        command = f"{self.settings.script_interpreter} {shlex.quote(script_path)}"
        session = await self.registry.acquire(session_id)
        logger.info("Running script %s (session=%s)", script_path, session_id)

        async def produce(handle: SandboxHandle) -> tuple[CommandOutput, list[str], int]:
            try:
                await handle.write_file(script_path, script)
            except Exception as e:
                raise ProviderError(f"Failed to write script to sandbox: {e}") from e
            output, duration_ms = await self._run(
                handle,
                command,
                session=session,
                timeout_ms=timeout_ms,
                cwd=self.settings.script_cwd,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
            )
            screenshots = await self.scanner.scan_screenshots(handle)
            return output, screenshots, duration_ms

        return await self._execute(session, "script", command, produce)

    # ── Repository ───────────────────────────────────────────────────────────

    async def clone_repo(self, session_id: str, repo: RepoSpec) -> RepoInfo:
        """Clone ``repo`` into the project directory of a fresh session.

        A failed clone is not an error: the session stays usable and the
        returned ``RepoInfo`` says ``cloned=False``. With a token set, an
        authentication failure is retried once against the public URL.
        """
        session = await self.registry.acquire(session_id)
        git = self.git
        token = git.token
        description = f"git clone {repo.full_name} ({repo.branch})"

        urls = [clone_url(repo.full_name, token)]
        if token:
            urls.append(clone_url(repo.full_name))

        cloned = False
        for attempt, url in enumerate(urls):
            command = build_clone_command(url, repo.branch, git.project_dir, depth=git.clone_depth)
            try:
                output = await self._git(session, description, command, git.clone_timeout)
            except (ProviderError, ExecutionTimeout) as e:
                logger.warning("Clone of %s failed (session=%s): %s", repo.full_name, session_id, e)
                break
            if output.exit_code == 0:
                cloned = True
                break
            logger.warning(
                "Clone of %s exited %d (session=%s)", repo.full_name, output.exit_code, session_id
            )
            if attempt == 0 and len(urls) > 1 and is_auth_failure(output.stderr):
                logger.info("Retrying clone of %s with the public URL", repo.full_name)
                continue
            break

        if cloned:
            identity = build_identity_command(git.project_dir, git.user_name, git.user_email)
            try:
                await self._git(session, "git config user", identity, git.diff_timeout)
            except RelayError as e:
                logger.warning("Failed to set git identity (session=%s): %s", session_id, e)
            logger.info("Cloned %s into %s (session=%s)", repo.full_name, git.project_dir, session_id)

        info = RepoInfo(full_name=repo.full_name, branch=repo.branch, cloned=cloned)
        await self.registry.attach_repo(session_id, info)
        return info

    async def commit(self, session_id: str, message: str | None = None) -> CommandOutput:
        """Stage everything in the project directory and commit it."""
        session = await self._cloned_session(session_id)
        message = message if message and message.strip() else self.git.commit_message
        command = build_commit_command(self.git.project_dir, message)
        return await self._git(session, "git commit", command, self.git.commit_timeout)

    async def push(self, session_id: str) -> CommandOutput:
        """Push the cloned branch back to ``origin``."""
        session = await self._cloned_session(session_id)
        command = build_push_command(self.git.project_dir, session.repo.branch)
        return await self._git(session, "git push", command, self.git.push_timeout)

    async def diff(self, session_id: str) -> DiffStats:
        """Working-tree diff stats; all zeros for a session without a clone."""
        session_id = require_session_id(session_id)
        session = await self.registry.acquire(session_id)
        if not session.repo_cloned:
            return DiffStats()
        shortstat_cmd, names_cmd = build_diff_commands(self.git.project_dir)
        shortstat = await self._git(session, "git diff", shortstat_cmd, self.git.diff_timeout)
        names = await self._git(session, "git diff", names_cmd, self.git.diff_timeout)
        return parse_diff(shortstat.stdout, names.stdout)

    async def _cloned_session(self, session_id: str) -> SandboxSession:
        session_id = require_session_id(session_id)
        session = await self.registry.acquire(session_id)
        if not session.repo_cloned:
            raise InvalidArgument("No repo cloned in this sandbox")
        return session

    async def _git(
        self, session: SandboxSession, description: str, command: str, timeout: float
    ) -> CommandOutput:
        """Run one git command in the session, serialized like other commands."""
        lock = session.exec_lock if self.settings.serialize_commands else contextlib.nullcontext()
        activity = self.registry.activity

        async with lock:
            if session.terminated:
                raise NotFound(session.id)
            if activity:
                await activity.record(
                    session.id, ActivityEventType.COMMAND_STARTED, content=description, kind="git"
                )
            try:
                output, duration_ms = await self._run(
                    session.handle, command, session=session, timeout_ms=int(timeout * 1000)
                )
            except RelayError as e:
                if activity:
                    await activity.record(
                        session.id, ActivityEventType.COMMAND_FAILED, content=e.message, kind="git"
                    )
                raise
            if activity:
                await activity.record(
                    session.id,
                    ActivityEventType.COMMAND_COMPLETED,
                    exit_code=output.exit_code,
                    duration_ms=duration_ms,
                    kind="git",
                )
        await self.registry.refresh(session)
        return output

    # ── Shared machinery ─────────────────────────────────────────────────────

    async def _execute(
        self,
        session: SandboxSession,
        kind: str,
        description: str,
        produce: Callable[[SandboxHandle], Awaitable[tuple[CommandOutput, list[str], int]]],
    ) -> ExecutionResult:
        """Serialize on the session, run ``produce`` and record the outcome."""
        lock = session.exec_lock if self.settings.serialize_commands else contextlib.nullcontext()
        activity = self.registry.activity

        async with lock:
            await self.registry.begin_execution(session)
            if activity:
                await activity.record(
                    session.id, ActivityEventType.COMMAND_STARTED, content=description, kind=kind
                )
            try:
                output, artifacts, duration_ms = await produce(session.handle)
            except RelayError as e:
                await self.registry.finish_execution(
                    session, ExecutionSummary(kind=kind, error=e.message)
                )
                if activity:
                    await activity.record(
                        session.id, ActivityEventType.COMMAND_FAILED, content=e.message, kind=kind
                    )
                raise
            except BaseException as e:
                reason = "cancelled" if isinstance(e, asyncio.CancelledError) else str(e)
                await self.registry.finish_execution(
                    session, ExecutionSummary(kind=kind, error=reason)
                )
                raise

            await self.registry.finish_execution(
                session,
                ExecutionSummary(
                    kind=kind,
                    exit_code=output.exit_code,
                    stdout_chars=len(output.stdout),
                    stderr_chars=len(output.stderr),
                    artifact_count=len(artifacts),
                ),
            )
            if activity:
                await activity.record(
                    session.id,
                    ActivityEventType.COMMAND_COMPLETED,
                    exit_code=output.exit_code,
                    duration_ms=duration_ms,
                    kind=kind,
                    artifacts=len(artifacts),
                )

        return ExecutionResult(
            stdout=output.stdout,
            stderr=output.stderr,
            exit_code=output.exit_code,
            artifacts=artifacts,
            duration_ms=duration_ms,
        )

    async def _run(
        self,
        handle: SandboxHandle,
        command: str,
        *,
        session: SandboxSession | None = None,
        timeout_ms: int | None = None,
        cwd: str | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> tuple[CommandOutput, int]:
        """Run ``command``, accumulating output and relaying each chunk.

        Each chunk refreshes ``session``'s activity, so a command that keeps
        producing output is never reaped while a silent one can be.
        """
        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []

        async def handle_stdout(chunk: str) -> None:
            if not chunk:
                return
            if session is not None:
                await self.registry.refresh(session)
            if on_stdout is not None:
                await on_stdout(chunk)
            stdout_chunks.append(chunk)

        async def handle_stderr(chunk: str) -> None:
            if not chunk:
                return
            if session is not None:
                await self.registry.refresh(session)
            if on_stderr is not None:
                await on_stderr(chunk)
            stderr_chunks.append(chunk)

        timeout = (timeout_ms or 0) / 1000
        run = handle.run(
            command,
            timeout=timeout,
            cwd=cwd,
            on_stdout=handle_stdout,
            on_stderr=handle_stderr,
        )

        t0 = time.monotonic()
        try:
            if timeout > 0:
                result = await asyncio.wait_for(run, timeout=timeout)
            else:
                result = await run
        except (asyncio.TimeoutError, TimeoutError) as e:
            if timeout > 0:
                raise ExecutionTimeout(f"Command timed out after {timeout_ms}ms") from e
            # No limit was requested; the provider gave up on its own
            logger.error("Provider timed out in sandbox %s: %s", handle.sandbox_id, e)
            raise ProviderError(f"Command execution failed: {str(e) or 'provider timeout'}") from e
        except Exception as e:
            logger.error("Command failed in sandbox %s: %s", handle.sandbox_id, e)
            raise ProviderError(f"Command execution failed: {e}") from e
        duration_ms = int((time.monotonic() - t0) * 1000)

        if result.exit_code != 0:
            logger.info("Command exited %d in sandbox %s", result.exit_code, handle.sandbox_id)

        output = CommandOutput(
            exit_code=result.exit_code,
            stdout="".join(stdout_chunks) or result.stdout,
            stderr="".join(stderr_chunks) or result.stderr,
        )
        return output, duration_ms
