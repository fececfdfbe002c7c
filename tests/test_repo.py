"""Tests for repository cloning and the commit / push / diff operations."""

from __future__ import annotations

import shlex

import pytest

from sandbox_relay.activity import ActivityEventType
from sandbox_relay.artifacts import ArtifactScanner
from sandbox_relay.config import ArtifactSettings, ExecutionSettings, GitSettings
from sandbox_relay.errors import InvalidArgument, NotFound
from sandbox_relay.executor import CommandPipeline
from sandbox_relay.models import ExecutionRequest, RepoSpec
from sandbox_relay.registry import SessionRegistry
from sandbox_relay.repo import (
    DiffStats,
    build_clone_command,
    build_commit_command,
    build_push_command,
    clone_url,
    parse_diff,
)

from conftest import Reply

PROJECT = "/home/user/project"


@pytest.fixture(autouse=True)
def no_github_token(monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)


async def _cloned(registry, pipeline, branch="main"):
    await registry.create()
    return await pipeline.clone_repo("sb_1", RepoSpec(full_name="acme/web", branch=branch))


def _clones(handle):
    return [cmd for cmd in handle.agent_commands if cmd.startswith("git clone")]


class TestCommandBuilders:
    def test_clone_url(self):
        assert clone_url("acme/web") == "https://github.com/acme/web.git"
        assert clone_url("acme/web", "tok") == "https://tok@github.com/acme/web.git"

    def test_clone_command(self):
        assert build_clone_command("https://github.com/acme/web.git", "main", PROJECT) == (
            "git clone --branch main --single-branch --depth 50 "
            "https://github.com/acme/web.git /home/user/project"
        )

    def test_clone_branch_is_quoted(self):
        cmd = build_clone_command("https://github.com/a/b.git", "feat/x;id", PROJECT, depth=1)
        assert "--branch 'feat/x;id' " in cmd
        assert "--depth 1 " in cmd

    def test_commit_message_is_data(self):
        message = "fix: it's \"done\"; rm -rf / $(whoami)"
        cmd = build_commit_command(PROJECT, message)
        assert cmd == f"cd {PROJECT} && git add -A && git commit -m {shlex.quote(message)}"
        assert shlex.split(cmd)[-1] == message

    def test_push_branch_is_quoted(self):
        assert build_push_command(PROJECT, "a b") == f"cd {PROJECT} && git push origin 'a b'"


class TestParseDiff:
    def test_full_shortstat(self):
        stats = parse_diff(" 3 files changed, 10 insertions(+), 2 deletions(-)\n", "a\nb\nc\n")
        assert stats == DiffStats(additions=10, deletions=2, changed_files=3, files=["a", "b", "c"])

    def test_deletions_only(self):
        stats = parse_diff(" 1 file changed, 4 deletions(-)\n", "gone.txt\n")
        assert (stats.changed_files, stats.additions, stats.deletions) == (1, 0, 4)

    def test_insertion_singular(self):
        stats = parse_diff(" 1 file changed, 1 insertion(+)\n", "new.txt\n")
        assert (stats.additions, stats.deletions) == (1, 0)

    def test_clean_tree(self):
        assert parse_diff("", "") == DiffStats()


class TestCloneRepo:
    async def test_clone_and_configure_identity(self, registry, pipeline, provider):
        repo = await _cloned(registry, pipeline)

        assert repo.cloned is True
        handle = provider.handles["sb_1"]
        assert _clones(handle) == [
            "git clone --branch main --single-branch --depth 50 "
            "https://github.com/acme/web.git /home/user/project"
        ]
        assert handle.agent_commands[1].startswith(f"cd {PROJECT} && git config user.email ")
        info = await registry.get("sb_1")
        assert info.repo.full_name == "acme/web"
        assert info.repo.cloned is True

    async def test_token_auth_failure_retries_public(
        self, registry, pipeline, provider, monkeypatch
    ):
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_test")
        await registry.create()
        handle = provider.handles["sb_1"]
        handle.replies = {
            "ghp_test@": Reply(exit_code=128, stdout=[], stderr=["fatal: Authentication failed\n"])
        }

        repo = await pipeline.clone_repo("sb_1", RepoSpec(full_name="acme/web"))

        assert repo.cloned is True
        clones = _clones(handle)
        assert len(clones) == 2
        assert "https://ghp_test@github.com/acme/web.git" in clones[0]
        assert "https://github.com/acme/web.git" in clones[1]

    async def test_failed_clone_leaves_usable_session(self, registry, pipeline, provider):
        await registry.create()
        handle = provider.handles["sb_1"]
        handle.replies = {
            "git clone": Reply(exit_code=128, stdout=[], stderr=["fatal: Remote branch x not found\n"])
        }

        repo = await pipeline.clone_repo("sb_1", RepoSpec(full_name="acme/web", branch="x"))

        assert repo.cloned is False
        assert len(_clones(handle)) == 1
        await pipeline.run_agent(ExecutionRequest(session_id="sb_1", prompt="hi"))
        assert handle.agent_commands[-1].startswith("cd /home/user && ")

    async def test_provider_failure_during_clone(self, registry, pipeline, provider):
        await registry.create()
        provider.handles["sb_1"].run_error = ConnectionError("reset")

        repo = await pipeline.clone_repo("sb_1", RepoSpec(full_name="acme/web"))

        assert repo.cloned is False
        assert (await registry.get("sb_1")).repo.cloned is False

    async def test_agent_runs_in_project_dir(self, registry, pipeline, provider):
        await _cloned(registry, pipeline)

        await pipeline.run_agent(ExecutionRequest(session_id="sb_1", prompt="fix the bug"))

        assert provider.handles["sb_1"].agent_commands[-1].startswith(f"cd {PROJECT} && ")

    async def test_explicit_working_directory_wins(self, registry, pipeline, provider):
        await _cloned(registry, pipeline)

        await pipeline.run_agent(
            ExecutionRequest(session_id="sb_1", prompt="x", working_directory="/tmp")
        )

        assert provider.handles["sb_1"].agent_commands[-1].startswith("cd /tmp && ")

    async def test_token_never_reaches_activity_log(
        self, provider, sandbox_settings, activity_logger, monkeypatch
    ):
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_secret")
        registry = SessionRegistry(provider, sandbox_settings, activity=activity_logger)
        pipeline = CommandPipeline(registry, ArtifactScanner(ArtifactSettings()), ExecutionSettings())
        await registry.create()

        await pipeline.clone_repo("sb_1", RepoSpec(full_name="acme/web"))

        events = await activity_logger.get_session_activity(
            "sb_1", event_types=[ActivityEventType.COMMAND_STARTED]
        )
        assert events
        assert all("ghp_secret" not in (e.content or "") for e in events)

    async def test_unknown_session(self, pipeline):
        with pytest.raises(NotFound):
            await pipeline.clone_repo("sb_missing", RepoSpec(full_name="acme/web"))


class TestCommit:
    async def test_requires_clone(self, registry, pipeline):
        await registry.create()
        with pytest.raises(InvalidArgument, match="No repo cloned"):
            await pipeline.commit("sb_1", "msg")

    async def test_commit_quotes_message(self, registry, pipeline, provider):
        await _cloned(registry, pipeline)
        message = "it's \"quoted\"; echo pwned"

        output = await pipeline.commit("sb_1", message)

        assert output.exit_code == 0
        assert provider.handles["sb_1"].agent_commands[-1] == build_commit_command(PROJECT, message)

    async def test_default_message(self, registry, pipeline, provider):
        await _cloned(registry, pipeline)

        await pipeline.commit("sb_1", "   ")

        cmd = provider.handles["sb_1"].agent_commands[-1]
        assert shlex.split(cmd)[-1] == GitSettings().commit_message

    async def test_failed_commit_is_a_result(self, registry, pipeline, provider):
        await _cloned(registry, pipeline)
        provider.handles["sb_1"].replies = {
            "git commit": Reply(exit_code=1, stdout=["nothing to commit\n"], stderr=[])
        }

        output = await pipeline.commit("sb_1")

        assert output.exit_code == 1
        assert "nothing to commit" in output.stdout


class TestPush:
    async def test_pushes_cloned_branch(self, registry, pipeline, provider):
        await _cloned(registry, pipeline, branch="release/1.0")

        await pipeline.push("sb_1")

        assert provider.handles["sb_1"].agent_commands[-1] == (
            f"cd {PROJECT} && git push origin release/1.0"
        )

    async def test_requires_clone(self, registry, pipeline):
        await registry.create()
        with pytest.raises(InvalidArgument):
            await pipeline.push("sb_1")


class TestDiff:
    async def test_no_clone_reports_zeros(self, registry, pipeline, provider):
        await registry.create()

        assert await pipeline.diff("sb_1") == DiffStats()
        assert provider.handles["sb_1"].commands == []

    async def test_parses_working_tree(self, registry, pipeline, provider):
        await _cloned(registry, pipeline)
        provider.handles["sb_1"].replies = {
            "--shortstat": Reply(stdout=[" 2 files changed, 5 insertions(+), 1 deletion(-)\n"]),
            "--name-only": Reply(stdout=["app.py\n", "README.md\n"]),
        }

        stats = await pipeline.diff("sb_1")

        assert stats == DiffStats(
            additions=5, deletions=1, changed_files=2, files=["app.py", "README.md"]
        )

    async def test_missing_session_id(self, pipeline):
        with pytest.raises(InvalidArgument):
            await pipeline.diff("")
