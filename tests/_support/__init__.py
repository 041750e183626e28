"""
Test support utilities for sync-testbed tests.

Helpers that don't fit as pytest fixtures but are shared across test
files: fake container runtimes, scripted docker output and small
builders for results.
"""

from __future__ import annotations

from sync_testbed.container import ContainerHandle, NetworkHandle
from sync_testbed.descriptors import ExternalDescriptor
from sync_testbed.results import DatabaseProvision


def make_network(name: str = "sync-testbed-abc123def456", run_id: str = "run0123456789") -> NetworkHandle:
    return NetworkHandle(name=name, network_id="0123456789ab", run_id=run_id)


def make_database(network: NetworkHandle, mapped_port: int = 49153, attached: bool = True) -> DatabaseProvision:
    """A DatabaseProvision as Provisioner.create_database would return it."""
    networks = {network.name: "172.18.0.2"} if attached else {"bridge": "172.17.0.2"}
    handle = ContainerHandle(
        container_id="abcdef012345",
        container_name="sync-testbed-postgres-run01234-beef",
        image="docker.io/postgres:14",
        host="localhost",
        ports={5432: mapped_port},
        networks=networks,
        aliases=("database",) if attached else (),
    )
    external = ExternalDescriptor(
        scheme="postgresql",
        user="test",
        password="test",
        host="localhost",
        port=mapped_port,
        database="test",
    )
    return DatabaseProvision(handle=handle, external=external, network=network)


def make_environment(run_id: str = "run0123456789", with_cache: bool = True, with_sync: bool = True):
    """A fully provisioned ProvisionedEnvironment without touching docker."""
    from sync_testbed.results import (
        CacheProvision,
        MigratedDatabase,
        ProvisionedEnvironment,
        SyncServiceProvision,
    )

    network = make_network(run_id=run_id)
    migrated = MigratedDatabase(database=make_database(network))

    cache = None
    if with_cache:
        cache = CacheProvision(
            handle=ContainerHandle(
                container_id="cafe00000001",
                container_name="sync-testbed-redis-run01234-cafe",
                image="docker.io/redis:7.2",
                host="localhost",
                ports={6379: 49160},
                networks={"bridge": "172.17.0.4"},
            ),
            internal_port=6379,
        )

    sync_service = None
    if with_sync:
        sync_service = SyncServiceProvision(
            handle=ContainerHandle(
                container_id="e1ec00000001",
                container_name="sync-testbed-electric-run01234-e1ec",
                image="electricsql/electric:1.0.0-beta.15",
                host="localhost",
                ports={3000: 49170},
                networks={network.name: "172.18.0.3"},
            ),
            origin="http://localhost:49170",
            upstream=migrated.internal_descriptor(),
        )

    return ProvisionedEnvironment(
        run_id=run_id,
        network=network,
        database=migrated,
        cache=cache,
        sync_service=sync_service,
    )
