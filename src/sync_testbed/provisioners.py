"""Per-service provisioning steps.

Each method starts exactly one piece of infrastructure and returns an
immutable result, or raises. Nothing is retried and nothing is rolled
back; the caller sequences the steps and owns cleanup.

Dependency order::

    create_network ─▶ create_database ─▶ apply_migrations ─▶ create_sync_service
    create_cache  (independent, may run concurrently with the chain above)

Example::

    provisioner = Provisioner.from_settings(SyncTestbedSettings(), run_id="abc123")
    network = await provisioner.create_network()
    database = await provisioner.create_database(network)
    migrated = await provisioner.apply_migrations(database)
    sync = await provisioner.create_sync_service(migrated, network)
"""

from __future__ import annotations

import uuid

from sync_testbed.backends import ELECTRIC, POSTGRES, REDIS, resolve_image
from sync_testbed.config import SyncTestbedSettings
from sync_testbed.container import ContainerManager, NetworkHandle
from sync_testbed.descriptors import ExternalDescriptor, url_host
from sync_testbed.errors import ConfigurationError
from sync_testbed.logging import get_logger
from sync_testbed.migrations import MigrationRunner
from sync_testbed.results import (
    CacheProvision,
    DatabaseProvision,
    MigratedDatabase,
    SyncServiceProvision,
)

logger = get_logger(__name__)


class Provisioner:
    """Starts the testbed's containers one at a time.

    Parameters
    ----------
    manager
        Container runtime adapter.
    migrations
        Runner for the schema tool.
    run_id
        Session identifier stamped on every network and container.
    settings
        Image overrides are read from here.
    """

    def __init__(
        self,
        manager: ContainerManager,
        migrations: MigrationRunner,
        run_id: str | None = None,
        settings: SyncTestbedSettings | None = None,
    ) -> None:
        self.manager = manager
        self.migrations = migrations
        self.run_id = run_id or uuid.uuid4().hex[:12]
        settings = settings or SyncTestbedSettings()
        self.postgres = resolve_image(POSTGRES, settings.postgres_image)
        self.redis = resolve_image(REDIS, settings.redis_image)
        self.electric = resolve_image(ELECTRIC, settings.electric_image)

    @classmethod
    def from_settings(cls, settings: SyncTestbedSettings, run_id: str | None = None) -> Provisioner:
        return cls(
            manager=ContainerManager.from_settings(settings),
            migrations=MigrationRunner.from_settings(settings),
            run_id=run_id,
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Network
    # ------------------------------------------------------------------

    async def create_network(self) -> NetworkHandle:
        """Create an isolated network unique to this invocation."""
        return await self.manager.create_network(self.run_id)

    # ------------------------------------------------------------------
    # Database + migrations
    # ------------------------------------------------------------------

    async def create_database(self, network: NetworkHandle) -> DatabaseProvision:
        """Start the database on ``network`` and wait until it accepts connections.

        The container answers to the ``database`` alias on the network and
        runs with ``listen_addresses=*`` and ``wal_level=logical``. The
        returned descriptor is the external one (host-mapped port).
        """
        spec = self.postgres
        handle = await self.manager.start_backend(spec, self.run_id, network=network)
        external = ExternalDescriptor(
            scheme=spec.scheme,
            user=spec.default_user,
            password=spec.default_password,
            host=handle.host,
            port=handle.get_mapped_port(spec.port),
            database=spec.default_database,
        )
        logger.info(
            "database.ready",
            container=handle.container_name,
            url=external.redacted_uri,
            alias=spec.network_alias,
        )
        return DatabaseProvision(handle=handle, external=external, network=network)

    async def apply_migrations(self, database: DatabaseProvision) -> MigratedDatabase:
        """Reset and push the schema, returning the migrated-database token."""
        await self.migrations.apply(database.external)
        return MigratedDatabase(database=database)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    async def create_cache(self) -> CacheProvision:
        """Start the cache with the image's default configuration."""
        handle = await self.manager.start_backend(self.redis, self.run_id)
        cache = CacheProvision(handle=handle, internal_port=self.redis.port)
        logger.info("cache.ready", container=handle.container_name, url=cache.url)
        return cache

    # ------------------------------------------------------------------
    # Sync service
    # ------------------------------------------------------------------

    async def create_sync_service(
        self,
        database: DatabaseProvision | MigratedDatabase,
        network: NetworkHandle,
    ) -> SyncServiceProvision:
        """Start the sync service on ``network`` pointed at the database alias.

        The upstream connection is not validated. An unmigrated database is
        accepted; the service starts and fails later, on its own terms.

        Raises
        ------
        ConfigurationError
            If the database container is not attached to ``network``.
        ProvisioningError
            If the container fails to start.
        """
        if not database.handle.is_attached_to(network):
            raise ConfigurationError(
                f"Database {database.handle.container_name} is not attached to "
                f"network {network.name}; the sync service could not resolve it"
            ).with_context(container=database.handle.container_name, network=network.name)
        if not isinstance(database, MigratedDatabase):
            logger.warning(
                "sync_service.unmigrated_database",
                container=database.handle.container_name,
            )

        spec = self.electric
        upstream = database.internal_descriptor()
        handle = await self.manager.start_service(
            spec,
            self.run_id,
            network=network,
            extra_env={spec.upstream_env: upstream.uri},
        )
        origin = f"http://{url_host(handle.host)}:{handle.get_mapped_port(spec.internal_port)}"
        logger.info(
            "sync_service.ready",
            container=handle.container_name,
            origin=origin,
            upstream=upstream.redacted_uri,
        )
        return SyncServiceProvision(handle=handle, origin=origin, upstream=upstream)


__all__ = ["Provisioner"]
