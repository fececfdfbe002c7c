"""E2B sandbox backend — runs commands in an E2B cloud sandbox.

Wraps ``e2b.AsyncSandbox``. The API key is read by the SDK from
``E2B_API_KEY`` unless one is passed explicitly.
"""

from __future__ import annotations

import logging
from typing import Any

from e2b import AsyncSandbox, TimeoutException

from sandbox_relay.sandbox.base import CommandOutput, OutputCallback

logger = logging.getLogger(__name__)


class E2BHandle:
    """SandboxHandle backed by a live ``AsyncSandbox``."""

    def __init__(self, inner: Any) -> None:
        self._inner = inner

    @property
    def sandbox_id(self) -> str:
        return self._inner.sandbox_id

    async def run(
        self,
        cmd: str,
        *,
        timeout: float = 60,
        cwd: str | None = None,
        on_stdout: OutputCallback | None = None,
        on_stderr: OutputCallback | None = None,
    ) -> CommandOutput:
        """Execute a shell command inside the E2B sandbox.

        E2B delivers output chunks through the ``on_stdout``/``on_stderr``
        callbacks as they arrive and raises on non-zero exit; that exception
        carries the same fields as a normal result and is unwrapped here.
        """
        kwargs: dict[str, Any] = {"timeout": timeout}
        if cwd:
            kwargs["cwd"] = cwd
        if on_stdout is not None:
            kwargs["on_stdout"] = on_stdout
        if on_stderr is not None:
            kwargs["on_stderr"] = on_stderr

        try:
            result = await self._inner.commands.run(cmd, **kwargs)
        except TimeoutException as error:
            raise TimeoutError(str(error)) from error
        except Exception as error:
            # CommandExitException on non-zero exit
            if (
                hasattr(error, "exit_code")
                and hasattr(error, "stdout")
                and hasattr(error, "stderr")
            ):
                result = error
            else:
                raise

        exit_code = getattr(result, "exit_code", None)
        return CommandOutput(
            exit_code=exit_code if isinstance(exit_code, int) else 0,
            stdout=getattr(result, "stdout", "") or "",
            stderr=getattr(result, "stderr", "") or "",
        )

    async def write_file(self, path: str, content: str) -> None:
        """Write a text file; E2B creates parent directories automatically."""
        await self._inner.files.write(path, content)

    async def kill(self) -> None:
        await self._inner.kill()


class E2BProvider:
    """SandboxProvider that allocates E2B sandboxes from a template."""

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key

    @property
    def name(self) -> str:
        return "e2b"

    async def create(
        self,
        template: str,
        *,
        timeout: float,
        envs: dict[str, str],
    ) -> E2BHandle:
        kwargs: dict[str, Any] = {
            "template": template,
            "timeout": int(timeout),
            "envs": envs,
        }
        if self._api_key:
            kwargs["api_key"] = self._api_key
        inner = await AsyncSandbox.create(**kwargs)
        logger.info("E2B sandbox created: id=%s template=%s", inner.sandbox_id, template)
        return E2BHandle(inner)
