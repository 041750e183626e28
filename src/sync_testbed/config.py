"""Runtime settings for sync-testbed.

All knobs live on one pydantic-settings model so CI can steer a test
session purely through environment variables::

    SYNC_TESTBED_SCHEMA_PATH=packages/database/prisma/schema.prisma
    SYNC_TESTBED_MIGRATION_COMMAND=packages/database/node_modules/.bin/prisma
    SYNC_TESTBED_KEEP_CONTAINERS=true

Override precedence is kwargs > env vars > ``.env`` > field defaults.

Readiness windows are not configurable here; they belong to the image
specs in :mod:`sync_testbed.backends`. The two timeouts below bound
individual docker CLI invocations only.
"""

from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import urlparse

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SyncTestbedSettings(BaseSettings):
    """Settings for provisioning sessions, the CLI and the pytest plugin."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_TESTBED_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Container runtime ────────────────────────────────────────
    docker_cmd: str | None = Field(
        default=None,
        description="Path to the docker CLI (discovered on PATH if unset)",
    )
    host_address: str | None = Field(
        default=None,
        description="Host at which mapped ports are reachable (derived from DOCKER_HOST if unset)",
    )
    network_prefix: str = Field(default="sync-testbed", description="Prefix for network names")
    label_prefix: str = Field(default="sync.testbed", description="Prefix for container labels")
    command_timeout_seconds: int = Field(default=60, description="Timeout for a single docker command")
    pull_timeout_seconds: int = Field(
        default=600,
        description="Timeout for docker run, which may include an image pull",
    )

    # ── Images ───────────────────────────────────────────────────
    postgres_image: str | None = Field(default=None, description="Override the database image")
    redis_image: str | None = Field(default=None, description="Override the cache image")
    electric_image: str | None = Field(default=None, description="Override the sync-service image")

    # ── Migrations ───────────────────────────────────────────────
    migration_command: str = Field(
        default="prisma",
        description="Schema tool executable (e.g. node_modules/.bin/prisma)",
    )
    schema_path: Path | None = Field(default=None, description="Schema definition file")
    migration_cwd: Path | None = Field(default=None, description="Working directory for the schema tool")

    # ── Session ──────────────────────────────────────────────────
    keep_containers: bool = Field(default=False, description="Skip teardown (for debugging)")
    log_level: str = "INFO"
    log_json: bool | None = None

    @property
    def resolved_host(self) -> str:
        """Address the test process uses to reach published ports."""
        if self.host_address:
            return self.host_address
        docker_host = os.environ.get("DOCKER_HOST", "")
        if docker_host.startswith(("tcp://", "http://", "https://")):
            hostname = urlparse(docker_host).hostname
            if hostname:
                return hostname
        return "localhost"


__all__ = ["SyncTestbedSettings"]
