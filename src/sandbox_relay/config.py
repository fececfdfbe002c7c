"""Configuration loading for sandbox-relay.

Reads an optional YAML config file and applies environment overrides.
Pydantic models validate the schema; every field has a working default so
the relay can start with nothing but the provider and agent API keys set.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# Default AI routing endpoint exported into each sandbox
AI_GATEWAY_BASE_URL = "https://ai-gateway.vercel.sh"


# ── Config Models ────────────────────────────────────────────────────────────


class SandboxSettings(BaseModel):
    """How sandboxes are provisioned."""

    provider: str = "e2b"
    template: str = "anthropic-claude-code"
    provider_api_key_env: str = "E2B_API_KEY"
    agent_api_key_env: str = "VERCEL_AI_GATEWAY_API_KEY"
    base_url: str = AI_GATEWAY_BASE_URL
    create_timeout: int = 300  # seconds a new sandbox may live
    extra_envs: dict[str, str] = Field(default_factory=dict)

    @field_validator("create_timeout")
    @classmethod
    def _positive_timeout(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"sandbox.create_timeout must be positive, got {v}")
        return v

    @property
    def provider_api_key(self) -> str | None:
        return os.environ.get(self.provider_api_key_env) or None

    @property
    def agent_api_key(self) -> str | None:
        return os.environ.get(self.agent_api_key_env) or None

    def build_envs(self, base_url: str | None = None) -> dict[str, str]:
        """Environment variables exported into every new sandbox.

        The agent CLI reads ANTHROPIC_AUTH_TOKEN only when ANTHROPIC_API_KEY
        is present and empty, so the latter is always set to "".
        """
        envs = {
            "ANTHROPIC_BASE_URL": base_url or self.base_url,
            "ANTHROPIC_AUTH_TOKEN": self.agent_api_key or "",
            "ANTHROPIC_API_KEY": "",
            "PLAYWRIGHT_BROWSERS_PATH": "0",
        }
        envs.update(self.extra_envs)
        return envs


class SessionSettings(BaseModel):
    idle_timeout: float = 600.0  # seconds without activity before reaping
    sweep_interval: float = 60.0  # background sweep period; 0 disables
    shutdown_deadline: float = 10.0  # max seconds to wait for kills at exit

    @field_validator("idle_timeout")
    @classmethod
    def _positive_idle(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"sessions.idle_timeout must be positive, got {v}")
        return v


class ExecutionSettings(BaseModel):
    home_dir: str = "/home/user"
    agent_command: str = "claude"
    skip_permissions: bool = True
    serialize_commands: bool = True
    script_path: str = "/app/agent-script.mjs"
    script_cwd: str = "/app"
    script_interpreter: str = "PLAYWRIGHT_BROWSERS_PATH=0 node"


class ArtifactSettings(BaseModel):
    window_minutes: int = 5
    max_files: int = 50
    scan_timeout: float = 10.0
    screenshot_patterns: list[str] = Field(
        default_factory=lambda: ["*.png", "*.jpg", "*.jpeg", "*.webp"]
    )
    screenshot_dirs: list[str] = Field(default_factory=lambda: ["/home/user", "/app"])


class GitSettings(BaseModel):
    """Repository cloning and the commit / push / diff actions."""

    project_dir: str = "/home/user/project"
    token_env: str = "GITHUB_TOKEN"
    clone_depth: int = 50
    clone_timeout: float = 180.0
    commit_timeout: float = 30.0
    push_timeout: float = 60.0
    diff_timeout: float = 5.0
    user_name: str = "Sandbox Relay Agent"
    user_email: str = "agent@sandbox-relay.local"
    commit_message: str = "Changes by sandbox-relay agent"

    @field_validator("clone_depth")
    @classmethod
    def _positive_depth(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"git.clone_depth must be positive, got {v}")
        return v

    @property
    def token(self) -> str | None:
        return os.environ.get(self.token_env) or None


class ActivitySettings(BaseModel):
    enabled: bool = True
    db_path: str = ""  # empty → <data_dir>/activity.db
    retention_hours: float = 72.0  # events older than this are pruned; 0 keeps everything

    @field_validator("retention_hours")
    @classmethod
    def _non_negative_retention(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"activity.retention_hours must be >= 0, got {v}")
        return v


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    data_dir: str = ".sandbox-relay"


class RelayConfig(BaseModel):
    sandbox: SandboxSettings = Field(default_factory=SandboxSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    artifacts: ArtifactSettings = Field(default_factory=ArtifactSettings)
    git: GitSettings = Field(default_factory=GitSettings)
    activity: ActivitySettings = Field(default_factory=ActivitySettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    @property
    def activity_db_path(self) -> Path:
        if self.activity.db_path:
            return Path(self.activity.db_path)
        return Path(self.server.data_dir) / "activity.db"


# ── Loading ──────────────────────────────────────────────────────────────────


def load_config(config_path: Path | None = None) -> RelayConfig:
    """Load relay configuration.

    Args:
        config_path: YAML file to read. ``None`` falls back to
            ``$SANDBOX_RELAY_CONFIG`` and then to pure defaults.

    Returns:
        Validated RelayConfig with environment overrides applied.

    Raises:
        FileNotFoundError: If an explicitly named config file doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    if config_path is None:
        env_path = os.environ.get("SANDBOX_RELAY_CONFIG", "").strip()
        config_path = Path(env_path) if env_path else None

    raw: dict = {}
    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"sandbox-relay config not found: {config_path}")
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    config = RelayConfig(**raw)

    # Environment variable overrides for deployment
    template = os.environ.get("SANDBOX_RELAY_TEMPLATE", "").strip()
    if template:
        config.sandbox.template = template

    base_url = os.environ.get("SANDBOX_RELAY_BASE_URL", "").strip()
    if base_url:
        config.sandbox.base_url = base_url

    idle_timeout = os.environ.get("SANDBOX_RELAY_IDLE_TIMEOUT", "").strip()
    if idle_timeout:
        config.sessions = SessionSettings(
            **{**config.sessions.model_dump(), "idle_timeout": float(idle_timeout)}
        )

    create_timeout = os.environ.get("SANDBOX_RELAY_CREATE_TIMEOUT", "").strip()
    if create_timeout:
        config.sandbox = SandboxSettings(
            **{**config.sandbox.model_dump(), "create_timeout": int(create_timeout)}
        )

    data_dir = os.environ.get("SANDBOX_RELAY_DATA_DIR", "").strip()
    if data_dir:
        config.server.data_dir = data_dir

    logger.info(
        "Loaded sandbox-relay config: provider=%s template=%s idle_timeout=%ss",
        config.sandbox.provider,
        config.sandbox.template,
        config.sessions.idle_timeout,
    )
    return config
