"""Tests for the structured error hierarchy."""

from __future__ import annotations

import pytest


class TestHierarchy:
    """Every error is a SyncTestbedError with a fixed category."""

    @pytest.mark.parametrize(
        "name, category",
        [
            ("ProvisioningError", "PROVISIONING"),
            ("DockerNotFoundError", "PROVISIONING"),
            ("ConfigurationError", "CONFIGURATION"),
            ("SyncTestbedError", "INTERNAL"),
        ],
    )
    def test_default_categories(self, name, category):
        import sync_testbed.errors as errors

        err = getattr(errors, name)("boom")
        assert isinstance(err, errors.SyncTestbedError)
        assert err.category.value == category
        assert err.retryable is False

    def test_docker_not_found_is_provisioning(self):
        from sync_testbed.errors import DockerNotFoundError, ProvisioningError

        assert issubclass(DockerNotFoundError, ProvisioningError)

    def test_migration_error_carries_exit_code(self):
        from sync_testbed.errors import ErrorCategory, MigrationError

        err = MigrationError("prisma exited with code 3", exit_code=3)
        assert err.exit_code == 3
        assert err.context.exit_code == 3
        assert err.category == ErrorCategory.MIGRATION


class TestContext:
    """Structured context and serialisation."""

    def test_with_context_known_and_extra(self):
        from sync_testbed.errors import ProvisioningError

        err = ProvisioningError("start failed").with_context(
            container="sync-testbed-postgres-1a2b",
            image="postgres:14",
            attempt=1,
        )
        assert err.context.container == "sync-testbed-postgres-1a2b"
        assert err.context.image == "postgres:14"
        assert err.context.extra == {"attempt": 1}

    def test_with_context_is_fluent(self):
        from sync_testbed.errors import ConfigurationError

        err = ConfigurationError("bad")
        assert err.with_context(network="n") is err

    def test_to_dict(self):
        from sync_testbed.errors import MigrationError

        data = MigrationError("push failed", exit_code=1).with_context(command="prisma").to_dict()
        assert data == {
            "error_type": "MigrationError",
            "message": "push failed",
            "category": "MIGRATION",
            "retryable": False,
            "context": {"command": "prisma", "exit_code": 1},
        }

    def test_cause_is_chained(self):
        from sync_testbed.errors import ProvisioningError

        cause = OSError("no such file")
        err = ProvisioningError("exec failed", cause=cause)
        assert err.__cause__ is cause
        assert err.to_dict()["cause"] == "OSError: no such file"

    def test_repr(self):
        from sync_testbed.errors import ConfigurationError

        assert repr(ConfigurationError("bad port")) == "ConfigurationError('bad port', category=CONFIGURATION)"
