"""pytest fixtures exposing a provisioned environment to test suites.

Loaded automatically through the ``pytest11`` entry point. Every fixture is
session-scoped: the environment is provisioned once, on first use, and torn
down when the session ends (unless ``SYNC_TESTBED_KEEP_CONTAINERS`` is set).

Usage::

    def test_reads_shape(sync_origin, sync_database_url):
        ...

Tests that request the environment are skipped when Docker is not
available.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator

import pytest

from sync_testbed.config import SyncTestbedSettings
from sync_testbed.container import ContainerManager
from sync_testbed.errors import ConfigurationError
from sync_testbed.results import ProvisionedEnvironment
from sync_testbed.workflow import ProvisioningSession


def cache_url(env: ProvisionedEnvironment) -> str:
    if env.cache is None:
        raise ConfigurationError(
            f"Environment {env.run_id} was provisioned without a cache"
        ).with_context(run_id=env.run_id)
    return env.cache.url


def sync_service_origin(env: ProvisionedEnvironment) -> str:
    if env.sync_service is None:
        raise ConfigurationError(
            f"Environment {env.run_id} was provisioned without a sync service"
        ).with_context(run_id=env.run_id)
    return env.sync_service.origin


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "docker: requires a running Docker daemon")


@pytest.fixture(scope="session")
def sync_testbed_settings() -> SyncTestbedSettings:
    """Settings for the session environment; override to customise."""
    return SyncTestbedSettings()


@pytest.fixture(scope="session")
def sync_testbed_environment(
    sync_testbed_settings: SyncTestbedSettings,
) -> Iterator[ProvisionedEnvironment]:
    """Network, migrated database, cache and sync service for the session."""
    if not ContainerManager.is_docker_available(sync_testbed_settings.docker_cmd):
        pytest.skip("Docker is not available")

    session = ProvisioningSession(sync_testbed_settings)
    try:
        env = asyncio.run(session.provision())
    except BaseException:
        if not sync_testbed_settings.keep_containers:
            asyncio.run(session.teardown())
        raise

    yield env

    if not sync_testbed_settings.keep_containers:
        asyncio.run(session.teardown())


@pytest.fixture(scope="session")
def sync_database_url(sync_testbed_environment: ProvisionedEnvironment) -> str:
    """External database URI (valid from the test process only)."""
    return sync_testbed_environment.database.external.uri


@pytest.fixture(scope="session")
def sync_cache_url(sync_testbed_environment: ProvisionedEnvironment) -> str:
    """External cache URL."""
    return cache_url(sync_testbed_environment)


@pytest.fixture(scope="session")
def sync_origin(sync_testbed_environment: ProvisionedEnvironment) -> str:
    """Base URL of the sync service."""
    return sync_service_origin(sync_testbed_environment)
