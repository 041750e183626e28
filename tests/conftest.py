"""
Shared pytest fixtures and configuration for sync-testbed tests.

This module provides:
- Location-based auto-marking (unit / integration / docker)
- Fake container runtime and schema tool for sequencing tests
- Settings isolated from the developer's environment

Usage:
    Fixtures are auto-discovered by pytest. Use them as function arguments.

    async def test_something(fake_manager, fake_migrations):
        ...
"""

import sys
from pathlib import Path
from typing import Generator

import pytest

# Ensure the package is importable without installation
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent.parent))

from sync_testbed.config import SyncTestbedSettings
from tests._support.fake_runtime import FakeContainerManager, FakeMigrationRunner


# =============================================================================
# Test Markers Configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        test_path = Path(item.fspath).relative_to(Path(__file__).parent)

        if "integration" in str(test_path):
            item.add_marker(pytest.mark.integration)

        markers = {mark.name for mark in item.iter_markers()}
        if not markers.intersection({"unit", "integration", "docker"}):
            item.add_marker(pytest.mark.unit)


# =============================================================================
# Environment isolation
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Strip SYNC_TESTBED_* and DOCKER_HOST so local settings never leak in."""
    import os

    for key in list(os.environ):
        if key.startswith("SYNC_TESTBED_") or key == "DOCKER_HOST":
            monkeypatch.delenv(key, raising=False)
    yield


# =============================================================================
# Fakes
# =============================================================================


@pytest.fixture
def settings(tmp_path: Path) -> SyncTestbedSettings:
    """Settings with a real (empty) schema file and no .env lookup."""
    schema = tmp_path / "schema.prisma"
    schema.write_text("// test schema\n")
    return SyncTestbedSettings(_env_file=None, schema_path=schema, docker_cmd="docker")


@pytest.fixture
def fake_manager() -> FakeContainerManager:
    return FakeContainerManager()


@pytest.fixture
def fake_migrations(fake_manager: FakeContainerManager) -> FakeMigrationRunner:
    """Migration runner sharing the manager's event log."""
    return FakeMigrationRunner(fake_manager.events)
