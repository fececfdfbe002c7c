"""Git workspace commands for sessions with a cloned repository.

Every user-supplied value (repository name, branch, commit message, paths)
is passed through ``shlex.quote``. Repository names are additionally
validated as ``owner/name`` by ``RepoSpec`` before they get here.
"""

from __future__ import annotations

import re
import shlex

from pydantic import BaseModel, Field

_SHORTSTAT = re.compile(
    r"(\d+) files? changed(?:, (\d+) insertions?\(\+\))?(?:, (\d+) deletions?\(-\))?"
)


class DiffStats(BaseModel):
    additions: int = 0
    deletions: int = 0
    changed_files: int = 0
    files: list[str] = Field(default_factory=list)


def clone_url(full_name: str, token: str | None = None) -> str:
    if token:
        return f"https://{token}@github.com/{full_name}.git"
    return f"https://github.com/{full_name}.git"


def build_clone_command(url: str, branch: str, project_dir: str, *, depth: int = 50) -> str:
    return (
        f"git clone --branch {shlex.quote(branch)} --single-branch --depth {int(depth)} "
        f"{shlex.quote(url)} {shlex.quote(project_dir)}"
    )


def build_identity_command(project_dir: str, user_name: str, user_email: str) -> str:
    return (
        f"cd {shlex.quote(project_dir)} && "
        f"git config user.email {shlex.quote(user_email)} && "
        f"git config user.name {shlex.quote(user_name)}"
    )


def build_commit_command(project_dir: str, message: str) -> str:
    return f"cd {shlex.quote(project_dir)} && git add -A && git commit -m {shlex.quote(message)}"


def build_push_command(project_dir: str, branch: str) -> str:
    return f"cd {shlex.quote(project_dir)} && git push origin {shlex.quote(branch)}"


def build_diff_commands(project_dir: str) -> tuple[str, str]:
    """(shortstat, name-only) commands for the working tree diff."""
    cd = f"cd {shlex.quote(project_dir)}"
    return f"{cd} && git diff --shortstat", f"{cd} && git diff --name-only"


def parse_diff(shortstat: str, names: str) -> DiffStats:
    """Combine ``git diff --shortstat`` and ``--name-only`` output."""
    stats = DiffStats(files=[line for line in names.splitlines() if line.strip()])
    match = _SHORTSTAT.search(shortstat or "")
    if match:
        stats.changed_files = int(match.group(1))
        stats.additions = int(match.group(2) or 0)
        stats.deletions = int(match.group(3) or 0)
    return stats


def is_auth_failure(stderr: str) -> bool:
    return "Authentication" in (stderr or "")
