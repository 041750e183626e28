"""Schema migrations against a freshly provisioned database.

Runs the external schema tool (Prisma) as a subprocess::

    prisma db push --force-reset --accept-data-loss --skip-generate --schema <path>

The push is destructive: the schema is reset and re-applied, discarding
any data. That is acceptable because every testbed database is fresh and
disposable.

The tool reads its targets from ``DATABASE_URL`` (pooled) and
``DIRECT_URL`` (direct). Both get the same external URI since nothing
pools in front of the testbed database. The variables travel in an
explicit :class:`MigrationEnvironment` handed to the subprocess;
``os.environ`` is never touched.

Output is passed straight through to the parent's stdout/stderr for
diagnostics and never parsed. Only the exit status matters.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sync_testbed.descriptors import ExternalDescriptor
from sync_testbed.errors import ConfigurationError, MigrationError
from sync_testbed.logging import get_logger

logger = get_logger(__name__)

PUSH_ARGS = ("db", "push", "--force-reset", "--accept-data-loss", "--skip-generate")


@dataclass(frozen=True)
class MigrationEnvironment:
    """Environment for one schema-tool invocation.

    ``base`` is a snapshot of the variables the tool inherits (the parent
    environment by default); the connection variables are layered on top
    in :meth:`as_env`.
    """

    database_url: str
    direct_url: str
    base: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    @classmethod
    def for_descriptor(
        cls,
        descriptor: ExternalDescriptor,
        base: Mapping[str, str] | None = None,
    ) -> MigrationEnvironment:
        if not isinstance(descriptor, ExternalDescriptor):
            raise ConfigurationError(
                "Migrations run from the test process and need an external "
                f"descriptor, got {type(descriptor).__name__}"
            )
        if base is None:
            return cls(database_url=descriptor.uri, direct_url=descriptor.uri)
        return cls(database_url=descriptor.uri, direct_url=descriptor.uri, base=dict(base))

    def as_env(self) -> dict[str, str]:
        return {
            **self.base,
            "DATABASE_URL": self.database_url,
            "DIRECT_URL": self.direct_url,
        }


class MigrationRunner:
    """Applies a schema definition file with the external schema tool.

    Parameters
    ----------
    command
        Tool executable, e.g. ``packages/database/node_modules/.bin/prisma``.
    schema_path
        Schema definition file passed via ``--schema``.
    cwd
        Working directory for the tool (defaults to the schema's directory).
    """

    def __init__(
        self,
        command: str,
        schema_path: Path | str | None,
        cwd: Path | str | None = None,
    ) -> None:
        self.command = command
        self.schema_path = Path(schema_path) if schema_path else None
        self.cwd = Path(cwd) if cwd else None

    @classmethod
    def from_settings(cls, settings: Any) -> MigrationRunner:
        return cls(
            command=settings.migration_command,
            schema_path=settings.schema_path,
            cwd=settings.migration_cwd,
        )

    def build_command(self) -> list[str]:
        """Full argv for the push, validating the schema path and working directory."""
        if self.schema_path is None:
            raise ConfigurationError(
                "No schema file configured. Set SYNC_TESTBED_SCHEMA_PATH or pass schema_path."
            )
        if not self.schema_path.is_file():
            raise ConfigurationError(f"Schema file not found: {self.schema_path}")
        if self.cwd is not None and not self.cwd.is_dir():
            raise ConfigurationError(f"Migration working directory not found: {self.cwd}")
        return [self.command, *PUSH_ARGS, "--schema", str(self.schema_path.resolve())]

    async def apply(
        self,
        descriptor: ExternalDescriptor,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        """Reset and re-apply the schema against ``descriptor``.

        Blocks until the tool exits.

        Raises
        ------
        ConfigurationError
            If ``descriptor`` is not external, or the schema file or working
            directory is missing.
        MigrationError
            If the tool exits non-zero. A missing tool reports exit 127, one
            that cannot be executed exit 126.
        """
        environment = MigrationEnvironment.for_descriptor(descriptor, base=base_env)
        cmd = self.build_command()
        cwd = self.cwd or self.schema_path.parent

        logger.info(
            "migration.started",
            schema=str(self.schema_path),
            database=descriptor.redacted_uri,
        )
        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                env=environment.as_env(),
                cwd=str(cwd),
            )
        except FileNotFoundError as exc:
            raise MigrationError(
                f"Schema tool not found: {self.command}",
                exit_code=127,
                cause=exc,
            ).with_context(command=self.command) from exc
        except OSError as exc:
            raise MigrationError(
                f"Schema tool could not be executed: {self.command}: {exc}",
                exit_code=126,
                cause=exc,
            ).with_context(command=self.command) from exc

        exit_code = await process.wait()
        duration_ms = (time.monotonic() - start) * 1000

        if exit_code != 0:
            logger.error("migration.failed", exit_code=exit_code, duration_ms=f"{duration_ms:.0f}")
            raise MigrationError(
                f"Schema push exited with code {exit_code}: {' '.join(cmd)}",
                exit_code=exit_code,
            ).with_context(command=self.command)

        logger.info("migration.completed", duration_ms=f"{duration_ms:.0f}")


__all__ = ["PUSH_ARGS", "MigrationEnvironment", "MigrationRunner"]
