"""Tests for the E2B sandbox backend (SDK mocked)."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from e2b import TimeoutException

from sandbox_relay.config import SandboxSettings
from sandbox_relay.sandbox import SandboxHandle, create_provider
from sandbox_relay.sandbox import e2b as e2b_backend
from sandbox_relay.sandbox.e2b import E2BHandle, E2BProvider


def _inner(sandbox_id="sb_e2b"):
    inner = MagicMock()
    inner.sandbox_id = sandbox_id
    inner.commands.run = AsyncMock(
        return_value=SimpleNamespace(exit_code=0, stdout="hi\n", stderr="")
    )
    inner.files.write = AsyncMock()
    inner.kill = AsyncMock()
    return inner


class CommandExitError(Exception):
    def __init__(self, exit_code, stdout, stderr):
        super().__init__(f"exit {exit_code}")
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class TestE2BHandle:
    async def test_run_passes_options(self):
        inner = _inner()
        handle = E2BHandle(inner)
        on_stdout = AsyncMock()

        result = await handle.run("ls", timeout=30, cwd="/app", on_stdout=on_stdout)

        assert result.exit_code == 0
        assert result.stdout == "hi\n"
        inner.commands.run.assert_awaited_once_with(
            "ls", timeout=30, cwd="/app", on_stdout=on_stdout
        )

    async def test_nonzero_exit_is_unwrapped(self):
        inner = _inner()
        inner.commands.run.side_effect = CommandExitError(3, "partial", "boom")

        result = await E2BHandle(inner).run("false")

        assert result.exit_code == 3
        assert result.stdout == "partial"
        assert result.stderr == "boom"

    async def test_sdk_timeout_becomes_timeout_error(self):
        inner = _inner()
        inner.commands.run.side_effect = TimeoutException("too slow")

        with pytest.raises(TimeoutError):
            await E2BHandle(inner).run("sleep 999")

    async def test_other_errors_propagate(self):
        inner = _inner()
        inner.commands.run.side_effect = ConnectionError("gone")

        with pytest.raises(ConnectionError):
            await E2BHandle(inner).run("ls")

    async def test_write_and_kill(self):
        inner = _inner()
        handle = E2BHandle(inner)

        await handle.write_file("/app/x.mjs", "code")
        await handle.kill()

        inner.files.write.assert_awaited_once_with("/app/x.mjs", "code")
        inner.kill.assert_awaited_once()

    def test_satisfies_protocol(self):
        assert isinstance(E2BHandle(_inner()), SandboxHandle)


class TestE2BProvider:
    async def test_create(self, monkeypatch):
        fake_sdk = MagicMock()
        fake_sdk.create = AsyncMock(return_value=_inner("sb_new"))
        monkeypatch.setattr(e2b_backend, "AsyncSandbox", fake_sdk)

        handle = await E2BProvider(api_key="k").create(
            "anthropic-claude-code", timeout=300, envs={"A": "1"}
        )

        assert handle.sandbox_id == "sb_new"
        fake_sdk.create.assert_awaited_once_with(
            template="anthropic-claude-code", timeout=300, envs={"A": "1"}, api_key="k"
        )

    async def test_create_without_key_defers_to_sdk(self, monkeypatch):
        fake_sdk = MagicMock()
        fake_sdk.create = AsyncMock(return_value=_inner())
        monkeypatch.setattr(e2b_backend, "AsyncSandbox", fake_sdk)

        await E2BProvider().create("t", timeout=60, envs={})

        assert "api_key" not in fake_sdk.create.await_args.kwargs


class TestCreateProvider:
    def test_e2b(self, monkeypatch):
        monkeypatch.setenv("E2B_API_KEY", "from-env")
        provider = create_provider(SandboxSettings())
        assert isinstance(provider, E2BProvider)
        assert provider.name == "e2b"

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown sandbox provider"):
            create_provider(SandboxSettings(provider="docker"))
