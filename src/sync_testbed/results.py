"""Provisioning results handed back to callers.

Every result is a frozen dataclass created once, on a successful start,
and held by the caller for the rest of the test session. Stopping the
containers is the caller's job; see
:meth:`sync_testbed.workflow.ProvisioningSession.teardown`.

``EnvironmentSummary`` is the pydantic view of a whole environment used by
the CLI's ``--json`` output. Passwords are redacted there.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from pydantic import BaseModel, Field

from sync_testbed.backends import DATABASE_ALIAS, POSTGRES
from sync_testbed.container import ContainerHandle, NetworkHandle
from sync_testbed.descriptors import ExternalDescriptor, InternalDescriptor, url_host

# ---------------------------------------------------------------------------
# Per-service results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DatabaseProvision:
    """A running database attached to the session network."""

    handle: ContainerHandle
    external: ExternalDescriptor
    network: NetworkHandle

    @property
    def url(self) -> str:
        return self.external.uri

    def internal_descriptor(self) -> InternalDescriptor:
        """Descriptor sibling containers use: alias host, fixed port, TLS off."""
        return self.external.to_internal(host=DATABASE_ALIAS, port=POSTGRES.port)


@dataclass(frozen=True)
class MigratedDatabase:
    """Proof that migrations completed against ``database``.

    Only :meth:`sync_testbed.provisioners.Provisioner.apply_migrations`
    creates these.
    """

    database: DatabaseProvision

    @property
    def handle(self) -> ContainerHandle:
        return self.database.handle

    @property
    def external(self) -> ExternalDescriptor:
        return self.database.external

    @property
    def network(self) -> NetworkHandle:
        return self.database.network

    def internal_descriptor(self) -> InternalDescriptor:
        return self.database.internal_descriptor()


@dataclass(frozen=True)
class CacheProvision:
    """A running cache reachable from the test process."""

    handle: ContainerHandle
    internal_port: int

    @property
    def url(self) -> str:
        return f"redis://{url_host(self.handle.host)}:{self.handle.get_mapped_port(self.internal_port)}"


@dataclass(frozen=True)
class SyncServiceProvision:
    """A running sync service.

    ``origin`` is for the test process; ``upstream`` is what the container
    itself was given to reach the database.
    """

    handle: ContainerHandle
    origin: str
    upstream: InternalDescriptor


@dataclass(frozen=True)
class ProvisionedEnvironment:
    """Everything one session started."""

    run_id: str
    network: NetworkHandle
    database: MigratedDatabase
    cache: CacheProvision | None = None
    sync_service: SyncServiceProvision | None = None

    @property
    def handles(self) -> list[ContainerHandle]:
        handles = [self.database.handle]
        if self.sync_service is not None:
            handles.append(self.sync_service.handle)
        if self.cache is not None:
            handles.append(self.cache.handle)
        return handles


# ---------------------------------------------------------------------------
# Serialisable summary
# ---------------------------------------------------------------------------


class ContainerSummary(BaseModel):
    """One running container, as shown by the CLI."""

    component: str
    container_id: str
    container_name: str
    image: str
    endpoint: str
    ports: dict[str, int] = Field(default_factory=dict)


class EnvironmentSummary(BaseModel):
    """JSON-friendly view of a :class:`ProvisionedEnvironment`."""

    run_id: str
    network: str
    created_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    database_url: str
    database_internal_url: str
    cache_url: str | None = None
    sync_origin: str | None = None
    containers: list[ContainerSummary] = Field(default_factory=list)

    @classmethod
    def from_environment(cls, env: ProvisionedEnvironment) -> EnvironmentSummary:
        database = env.database
        containers = [
            _summarise("database", database.handle, database.external.redacted_uri),
        ]
        if env.sync_service is not None:
            containers.append(
                _summarise("sync_service", env.sync_service.handle, env.sync_service.origin)
            )
        if env.cache is not None:
            containers.append(_summarise("cache", env.cache.handle, env.cache.url))

        return cls(
            run_id=env.run_id,
            network=env.network.name,
            database_url=database.external.redacted_uri,
            database_internal_url=database.internal_descriptor().redacted_uri,
            cache_url=env.cache.url if env.cache else None,
            sync_origin=env.sync_service.origin if env.sync_service else None,
            containers=containers,
        )


def _summarise(component: str, handle: ContainerHandle, endpoint: str) -> ContainerSummary:
    return ContainerSummary(
        component=component,
        container_id=handle.container_id,
        container_name=handle.container_name,
        image=handle.image,
        endpoint=endpoint,
        ports={str(internal): mapped for internal, mapped in handle.ports.items()},
    )


__all__ = [
    "CacheProvision",
    "ContainerSummary",
    "DatabaseProvision",
    "EnvironmentSummary",
    "MigratedDatabase",
    "ProvisionedEnvironment",
    "SyncServiceProvision",
]
