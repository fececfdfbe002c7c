"""Streaming Transport — one execution as an ordered sequence of events.

The pipeline runs in its own task and publishes typed events onto an
``ExecutionChannel`` (an asyncio queue); a consumer iterates the channel and
forwards each event to the wire. The producer guarantees the grammar

    start (stdout | stderr)* (complete | error)

so the consumer can always tell a clean end from a failed one. That holds for
cancelled executions too (server shutdown): they end with an ``error`` event.

A consumer that goes away just closes the channel: the execution task keeps
running to completion and its outcome is still recorded on the session
(``last_execution``) for a later status query.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from sandbox_relay.errors import RelayError
from sandbox_relay.models import (
    TERMINAL_EVENT_TYPES,
    CompleteEvent,
    ErrorEvent,
    StartEvent,
    StderrEvent,
    StdoutEvent,
    StreamEvent,
)

if TYPE_CHECKING:
    from sandbox_relay.executor import CommandPipeline
    from sandbox_relay.models import ExecutionRequest

logger = logging.getLogger(__name__)

# Execution tasks outlive their HTTP connections; hold references here
_background_tasks: set[asyncio.Task] = set()


class ExecutionChannel:
    """Single-consumer event queue for one execution."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self._queue: asyncio.Queue[StreamEvent] = asyncio.Queue()
        self._closed = False
        self._published = 0
        self._ended = False
        self.task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def publish(self, event: StreamEvent) -> None:
        """Enqueue an event; dropped silently once the consumer is gone."""
        self.publish_nowait(event)

    def publish_nowait(self, event: StreamEvent) -> None:
        if self._ended:
            return
        self._published += 1
        self._ended = event.type in TERMINAL_EVENT_TYPES
        if not self._closed:
            self._queue.put_nowait(event)

    def abort(self, message: str) -> None:
        """End the stream with an error unless a terminal event already went out."""
        if self._ended:
            return
        if self._published == 0:
            self.publish_nowait(StartEvent(session_id=self.session_id))
        self.publish_nowait(ErrorEvent(message=message))

    def close(self) -> None:
        """Stop relaying. Does not touch the running execution."""
        if not self._closed:
            self._closed = True
            logger.info("Stream consumer detached from session %s", self.session_id)

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield events in production order, ending after the terminal one."""
        try:
            while True:
                event = await self._queue.get()
                yield event
                if event.type in TERMINAL_EVENT_TYPES:
                    return
        finally:
            self.close()


def open_stream(pipeline: CommandPipeline, request: ExecutionRequest) -> ExecutionChannel:
    """Start ``request`` in the background and return its event channel."""
    channel = ExecutionChannel(request.session_id)
    task = asyncio.create_task(
        _produce(pipeline, request, channel),
        name=f"stream-{request.session_id}",
    )
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    task.add_done_callback(lambda t: _end_if_cancelled(t, channel))
    channel.task = task
    return channel


def _end_if_cancelled(task: asyncio.Task, channel: ExecutionChannel) -> None:
    # Covers tasks cancelled mid-run and ones cancelled before they started
    if task.cancelled():
        channel.abort("Execution cancelled")


async def _produce(
    pipeline: CommandPipeline, request: ExecutionRequest, channel: ExecutionChannel
) -> None:
    await channel.publish(StartEvent(session_id=request.session_id))

    async def on_stdout(chunk: str) -> None:
        await channel.publish(StdoutEvent(data=chunk))

    async def on_stderr(chunk: str) -> None:
        await channel.publish(StderrEvent(data=chunk))

    try:
        result = await pipeline.run_agent(request, on_stdout=on_stdout, on_stderr=on_stderr)
    except RelayError as e:
        await channel.publish(ErrorEvent(message=e.message))
    except Exception as e:
        logger.exception("Streaming execution failed (session=%s)", request.session_id)
        await channel.publish(ErrorEvent(message=str(e) or type(e).__name__))
    else:
        await channel.publish(CompleteEvent(exit_code=result.exit_code, output=result.stdout))


async def cancel_background_tasks() -> int:
    """Cancel in-flight stream executions and wait for them to unwind.

    Only tasks on the running loop are touched. Returns how many were cancelled.
    """
    loop = asyncio.get_running_loop()
    tasks = [t for t in _background_tasks if t.get_loop() is loop and not t.done()]
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Cancelled %d in-flight stream execution(s)", len(tasks))
    return len(tasks)


def format_sse(event: StreamEvent) -> str:
    """Frame one event as ``data: <json>\\n\\n``."""
    return f"data: {json.dumps(event.to_wire())}\n\n"


async def sse_frames(channel: ExecutionChannel) -> AsyncIterator[str]:
    """Wire-format frames for a channel, for ``StreamingResponse``."""
    try:
        async for event in channel.events():
            yield format_sse(event)
    finally:
        channel.close()
