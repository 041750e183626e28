"""Session orchestrator for sync-testbed.

``ProvisioningSession`` runs the whole sequence for a test session and
keeps track of what it started so the caller can tear it down:

    ┌─ database branch ───────────────────────────────────────────────┐
    │ network ─▶ database ─▶ migrations ─▶ sync service               │
    └─────────────────────────────────────────────────────────────────┘
    ┌─ cache branch ─┐
    │ cache          │   (concurrent, no ordering constraint)
    └────────────────┘

Both branches always run to completion; one failing never cancels or
changes the outcome of the other. Afterwards the first error is re-raised,
the database branch's taking precedence. Nothing is retried and nothing is
cleaned up on failure unless the caller asks for it, either explicitly via
:meth:`ProvisioningSession.teardown` or implicitly through ``async with``.

Example::

    async with ProvisioningSession(SyncTestbedSettings(schema_path=...)) as env:
        print(env.database.external.uri, env.sync_service.origin)
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

from sync_testbed.config import SyncTestbedSettings
from sync_testbed.container import ContainerHandle, ContainerManager, NetworkHandle
from sync_testbed.errors import ConfigurationError
from sync_testbed.logging import LogContext, get_logger
from sync_testbed.migrations import MigrationRunner
from sync_testbed.provisioners import Provisioner
from sync_testbed.results import (
    CacheProvision,
    MigratedDatabase,
    ProvisionedEnvironment,
    SyncServiceProvision,
)

logger = get_logger(__name__)


class ProvisioningSession:
    """Provisions, tracks and tears down one disposable environment.

    Parameters
    ----------
    settings
        Session settings; read from the environment when omitted.
    manager
        Container runtime adapter (built from settings when omitted).
    migrations
        Schema tool runner (built from settings when omitted).
    include_cache
        Start the cache alongside the database branch.
    include_sync_service
        Start the sync service after migrations.
    """

    def __init__(
        self,
        settings: SyncTestbedSettings | None = None,
        *,
        manager: ContainerManager | None = None,
        migrations: MigrationRunner | None = None,
        include_cache: bool = True,
        include_sync_service: bool = True,
        run_id: str | None = None,
    ) -> None:
        self.settings = settings or SyncTestbedSettings()
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.manager = manager or ContainerManager.from_settings(self.settings)
        self.provisioner = Provisioner(
            manager=self.manager,
            migrations=migrations or MigrationRunner.from_settings(self.settings),
            run_id=self.run_id,
            settings=self.settings,
        )
        self.include_cache = include_cache
        self.include_sync_service = include_sync_service
        self.environment: ProvisionedEnvironment | None = None
        self._started: list[ContainerHandle] = []
        self._network: NetworkHandle | None = None

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    async def provision(self) -> ProvisionedEnvironment:
        """Run both branches and return the assembled environment.

        Raises
        ------
        SyncTestbedError
            The first failure of either branch, after both have finished.
        """
        if self.environment is not None:
            raise ConfigurationError(f"Session {self.run_id} is already provisioned")

        async with LogContext(run_id=self.run_id):
            logger.info(
                "session.provisioning",
                cache=self.include_cache,
                sync_service=self.include_sync_service,
            )
            branches: list[Any] = [self._database_branch()]
            if self.include_cache:
                branches.append(self._cache_branch())

            outcomes = await asyncio.gather(*branches, return_exceptions=True)

            for outcome in outcomes:
                if isinstance(outcome, BaseException):
                    logger.error("session.failed", error=str(outcome))
                    raise outcome

            network, database, sync_service = outcomes[0]
            cache = outcomes[1] if self.include_cache else None

            self.environment = ProvisionedEnvironment(
                run_id=self.run_id,
                network=network,
                database=database,
                cache=cache,
                sync_service=sync_service,
            )
            logger.info("session.ready", containers=len(self._started))
            return self.environment

    async def _database_branch(
        self,
    ) -> tuple[NetworkHandle, MigratedDatabase, SyncServiceProvision | None]:
        self._network = network = await self.provisioner.create_network()

        database = await self.provisioner.create_database(network)
        self._started.append(database.handle)

        migrated = await self.provisioner.apply_migrations(database)

        sync_service = None
        if self.include_sync_service:
            sync_service = await self.provisioner.create_sync_service(migrated, network)
            self._started.append(sync_service.handle)

        return network, migrated, sync_service

    async def _cache_branch(self) -> CacheProvision:
        cache = await self.provisioner.create_cache()
        self._started.append(cache.handle)
        return cache

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def teardown(self) -> None:
        """Stop everything this session started and remove its network.

        Containers are stopped in reverse start order. A label sweep then
        removes anything left behind by a failed start. Failures are logged,
        never raised.
        """
        async with LogContext(run_id=self.run_id):
            for handle in reversed(self._started):
                try:
                    await self.manager.stop_container(handle)
                except Exception as e:  # noqa: BLE001
                    logger.warning("teardown.failed", container=handle.container_name, error=str(e))

            try:
                await self.manager.cleanup(self.run_id)
            except Exception as e:  # noqa: BLE001
                logger.warning("teardown.sweep_failed", error=str(e))

            if self._network is not None:
                try:
                    await self.manager.remove_network(self._network)
                except Exception as e:  # noqa: BLE001
                    logger.warning("teardown.failed", network=self._network.name, error=str(e))

            self._started.clear()
            self._network = None
            self.environment = None
            logger.info("session.torn_down")

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    async def __aenter__(self) -> ProvisionedEnvironment:
        try:
            return await self.provision()
        except BaseException:
            if not self.settings.keep_containers:
                await self.teardown()
            raise

    async def __aexit__(self, *exc_info: Any) -> None:
        if self.settings.keep_containers:
            logger.info("session.kept", run_id=self.run_id)
            return
        await self.teardown()


__all__ = ["ProvisioningSession"]
