"""Agent sessions API — action endpoint, SSE stream, and activity history.

Endpoints:
    - POST /agent-sessions                      action: create | run | playwright | commit |
                                                push | diff | terminate | status
    - GET  /agent-sessions/stream               live SSE stream of one agent run
    - GET  /agent-sessions/{sandbox_id}/activity  historical session events

Synchronous actions answer with JSON; failures carry a human-readable
``error`` field and 400 (invalid argument), 404 (unknown session), 500
(provider or internal fault) or 504 (execution timeout). The stream is
validated before it opens; once the first frame is sent every failure is
delivered in-band as an ``error`` event.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from sandbox_relay.activity import ActivityEventType
from sandbox_relay.errors import InvalidArgument, RelayError
from sandbox_relay.models import ExecutionRequest, SessionCreateConfig, SessionInfo, utcnow
from sandbox_relay.playwright import PlaywrightAction, build_playwright_script
from sandbox_relay.streaming import open_stream, sse_frames

if TYPE_CHECKING:
    from sandbox_relay.activity import ActivityLogger
    from sandbox_relay.executor import CommandPipeline
    from sandbox_relay.registry import SessionRegistry
    from sandbox_relay.sandbox.base import CommandOutput

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/agent-sessions", tags=["agent-sessions"])

ACTIONS = ("create", "run", "playwright", "commit", "push", "diff", "terminate", "status")

# Module-level references (configured at startup)
_registry: SessionRegistry | None = None
_pipeline: CommandPipeline | None = None
_activity: ActivityLogger | None = None


def configure(
    registry: SessionRegistry,
    pipeline: CommandPipeline,
    activity: ActivityLogger | None = None,
) -> None:
    """Wire the router to the session registry and execution pipeline."""
    global _registry, _pipeline, _activity
    _registry = registry
    _pipeline = pipeline
    _activity = activity
    logger.info("Agent sessions router configured (activity=%s)", "yes" if activity else "no")


# ── Request bodies ───────────────────────────────────────────────────────────


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RunOptions(_Body):
    working_directory: str | None = Field(default=None, alias="workingDirectory")
    timeout_ms: int | None = Field(default=None, alias="timeoutMs", ge=0)
    skip_permissions: bool | None = Field(default=None, alias="dangerouslySkipPermissions")


class RunBody(_Body):
    sandbox_id: str | None = Field(default=None, alias="sandboxId")
    prompt: str | None = None
    options: RunOptions = Field(default_factory=RunOptions)


class PlaywrightBody(_Body):
    sandbox_id: str | None = Field(default=None, alias="sandboxId")
    script: str | None = None
    url: str | None = None
    actions: list[PlaywrightAction] = Field(default_factory=list)
    timeout_ms: int | None = Field(default=None, alias="timeoutMs", ge=0)


class CreateBody(_Body):
    config: SessionCreateConfig = Field(default_factory=SessionCreateConfig)


class SessionRefBody(_Body):
    sandbox_id: str | None = Field(default=None, alias="sandboxId")


class CommitBody(_Body):
    sandbox_id: str | None = Field(default=None, alias="sandboxId")
    message: str | None = None


def _parse(model: type[BaseModel], body: dict[str, Any]) -> Any:
    try:
        return model.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        where = ".".join(str(p) for p in first["loc"])
        raise InvalidArgument(f"Invalid request field {where}: {first['msg']}") from e


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _require_configured() -> tuple[SessionRegistry, CommandPipeline]:
    if _registry is None or _pipeline is None:
        raise RuntimeError("Agent sessions router not configured")
    return _registry, _pipeline


def _session_payload(info: SessionInfo) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "sandboxId": info.id,
        "template": info.template,
        "status": info.status.value,
        "createdAt": info.created_at.isoformat(),
        "lastActivity": info.last_activity.isoformat(),
        "age": int(info.age_seconds * 1000),  # ms
        "idle": int(info.idle_seconds * 1000),
        "running": info.running,
    }
    if info.last_execution is not None:
        last = info.last_execution
        payload["lastExecution"] = {
            "kind": last.kind,
            "exitCode": last.exit_code,
            "error": last.error,
            "finishedAt": last.finished_at.isoformat(),
        }
    if info.repo is not None:
        payload["repo"] = {
            "fullName": info.repo.full_name,
            "branch": info.repo.branch,
            "cloned": info.repo.cloned,
        }
    return payload


# ── Action endpoint ──────────────────────────────────────────────────────────


@router.post("")
async def handle_action(request: Request) -> JSONResponse:
    """Dispatch one session action."""
    try:
        body = await request.json()
    except ValueError:
        return _error(400, "Request body must be JSON")
    if not isinstance(body, dict):
        return _error(400, "Request body must be a JSON object")

    action = body.get("action")
    if action not in ACTIONS:
        return _error(400, f"Invalid action. Use: {', '.join(ACTIONS)}")

    try:
        registry, pipeline = _require_configured()
        if action == "create":
            return await _create(registry, pipeline, _parse(CreateBody, body))
        if action == "run":
            return await _run(pipeline, _parse(RunBody, body))
        if action == "playwright":
            return await _playwright(pipeline, _parse(PlaywrightBody, body))
        if action == "commit":
            return await _commit(pipeline, _parse(CommitBody, body))
        if action == "push":
            return await _push(pipeline, _parse(SessionRefBody, body))
        if action == "diff":
            return await _diff(pipeline, _parse(SessionRefBody, body))
        if action == "terminate":
            return await _terminate(registry, _parse(SessionRefBody, body))
        return await _status(registry, _parse(SessionRefBody, body))
    except RelayError as e:
        if e.status_code >= 500:
            logger.warning("Action %s failed: %s", action, e.message)
        return _error(e.status_code, e.message)
    except Exception as e:
        logger.exception("Unhandled error in action %s", action)
        return _error(500, str(e) or "Unknown error")


async def _create(
    registry: SessionRegistry, pipeline: CommandPipeline, body: CreateBody
) -> JSONResponse:
    info = await registry.create(body.config)
    repo = None
    if body.config.repo is not None:
        repo = await pipeline.clone_repo(info.id, body.config.repo)
    return JSONResponse(
        {
            "success": True,
            "sandboxId": info.id,
            "template": info.template,
            "createdAt": info.created_at.isoformat(),
            "repoCloned": bool(repo and repo.cloned),
            "projectDir": pipeline.project_dir(repo),
        }
    )


async def _run(pipeline: CommandPipeline, body: RunBody) -> JSONResponse:
    result = await pipeline.run_agent(
        ExecutionRequest(
            session_id=body.sandbox_id or "",
            prompt=body.prompt or "",
            working_directory=body.options.working_directory,
            timeout_ms=body.options.timeout_ms,
            skip_permissions=body.options.skip_permissions,
        )
    )
    return JSONResponse(
        {
            "success": True,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exitCode": result.exit_code,
            "files": result.artifacts,
        }
    )


async def _playwright(pipeline: CommandPipeline, body: PlaywrightBody) -> JSONResponse:
    script = body.script
    if not (script and script.strip()) and body.url:
        try:
            script = build_playwright_script(body.url, body.actions)
        except ValueError as e:
            raise InvalidArgument(str(e)) from e
    result = await pipeline.run_script(
        body.sandbox_id or "",
        script or "",
        timeout_ms=body.timeout_ms,
    )
    return JSONResponse(
        {
            "success": True,
            "stdout": result.stdout,
            "stderr": result.stderr,
            "exitCode": result.exit_code,
            "screenshots": result.artifacts,
        }
    )


def _git_payload(output: CommandOutput, ok: str, failed: str) -> JSONResponse:
    success = output.exit_code == 0
    return JSONResponse(
        {
            "success": success,
            "stdout": output.stdout,
            "stderr": output.stderr,
            "exitCode": output.exit_code,
            "message": ok if success else failed,
        }
    )


async def _commit(pipeline: CommandPipeline, body: CommitBody) -> JSONResponse:
    output = await pipeline.commit(body.sandbox_id or "", body.message)
    return _git_payload(output, "Changes committed", "Commit failed")


async def _push(pipeline: CommandPipeline, body: SessionRefBody) -> JSONResponse:
    output = await pipeline.push(body.sandbox_id or "")
    return _git_payload(output, "Changes pushed to remote", "Push failed")


async def _diff(pipeline: CommandPipeline, body: SessionRefBody) -> JSONResponse:
    stats = await pipeline.diff(body.sandbox_id or "")
    return JSONResponse(
        {
            "success": True,
            "additions": stats.additions,
            "deletions": stats.deletions,
            "changedFiles": stats.changed_files,
            "files": stats.files,
        }
    )


async def _terminate(registry: SessionRegistry, body: SessionRefBody) -> JSONResponse:
    await registry.terminate(body.sandbox_id or "")
    return JSONResponse({"success": True, "message": "Sandbox terminated successfully"})


async def _status(registry: SessionRegistry, body: SessionRefBody) -> JSONResponse:
    if body.sandbox_id:
        info = await registry.status(body.sandbox_id)
        return JSONResponse({"success": True, **_session_payload(info)})

    sessions = await registry.list()
    return JSONResponse(
        {
            "success": True,
            "count": len(sessions),
            "sandboxes": [_session_payload(s) for s in sessions],
            "timestamp": utcnow().isoformat(),
        }
    )


# ── SSE Streaming ─────────────────────────────────────────────────────────────


@router.get("/stream")
async def stream_run(
    sandbox_id: str | None = Query(default=None, alias="sandboxId"),
    prompt: str | None = Query(default=None),
):
    """Run a prompt and stream its output via SSE.

    Connect with EventSource:
    ```javascript
    const es = new EventSource('/agent-sessions/stream?sandboxId=sb_1&prompt=list%20files');
    es.onmessage = (e) => console.log(JSON.parse(e.data));
    ```

    Event payloads (all delivered as unnamed ``data:`` frames):
    - {type: "start", sandboxId}
    - {type: "stdout", data} / {type: "stderr", data}
    - {type: "complete", exitCode, output}
    - {type: "error", message}
    """
    if not (sandbox_id and sandbox_id.strip()) or not (prompt and prompt.strip()):
        return _error(400, "sandboxId and prompt are required for streaming")

    try:
        registry, pipeline = _require_configured()
        await registry.get(sandbox_id)
    except RelayError as e:
        return _error(e.status_code, e.message)

    channel = open_stream(pipeline, ExecutionRequest(session_id=sandbox_id, prompt=prompt))
    return StreamingResponse(
        sse_frames(channel),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )


# ── Activity history ──────────────────────────────────────────────────────────


@router.get("/{sandbox_id}/activity")
async def get_session_activity(
    sandbox_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    event_types: str | None = Query(
        default=None,
        alias="eventTypes",
        description="Comma-separated event types (e.g. 'command_started,command_completed')",
    ),
):
    """Historical activity for one session, newest first.

    Works for terminated and reaped sessions too; history outlives the
    registry record.
    """
    if _activity is None:
        return _error(503, "Activity log not configured")

    type_filter = None
    if event_types:
        try:
            type_filter = [ActivityEventType(t.strip()) for t in event_types.split(",")]
        except ValueError as e:
            return _error(400, f"Invalid event type: {e}")

    events = await _activity.get_session_activity(
        sandbox_id, limit=limit, offset=offset, event_types=type_filter
    )
    return {
        "sandboxId": sandbox_id,
        "count": len(events),
        "offset": offset,
        "events": [e.to_dict() for e in events],
    }
