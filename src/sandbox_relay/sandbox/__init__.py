"""Sandbox provider abstraction.

Provides the SandboxProvider/SandboxHandle protocols and the
create_provider() factory that dispatches to the configured backend.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import CommandOutput, OutputCallback, SandboxHandle, SandboxProvider

if TYPE_CHECKING:
    from sandbox_relay.config import SandboxSettings


def create_provider(settings: SandboxSettings) -> SandboxProvider:
    """Build the provider named by ``settings.provider``."""
    if settings.provider == "e2b":
        from .e2b import E2BProvider

        return E2BProvider(api_key=settings.provider_api_key)
    raise ValueError(f"Unknown sandbox provider: {settings.provider}")


__all__ = [
    "CommandOutput",
    "OutputCallback",
    "SandboxHandle",
    "SandboxProvider",
    "create_provider",
]
