"""Tests for the schema migration runner.

The schema tool subprocess is mocked; no Node.js or Prisma required.
"""

from __future__ import annotations

import os
from unittest.mock import AsyncMock, patch

import pytest

from tests._support import make_database, make_network
from tests._support.fake_runtime import FakeProcess

EXEC = "sync_testbed.migrations.asyncio.create_subprocess_exec"


@pytest.fixture
def schema(tmp_path):
    path = tmp_path / "prisma" / "schema.prisma"
    path.parent.mkdir()
    path.write_text("// schema\n")
    return path


@pytest.fixture
def external():
    return make_database(make_network()).external


class TestMigrationEnvironment:
    """Explicit subprocess environment."""

    def test_both_urls_get_external_uri(self, external):
        from sync_testbed.migrations import MigrationEnvironment

        env = MigrationEnvironment.for_descriptor(external, base={"PATH": "/usr/bin"}).as_env()
        assert env == {
            "PATH": "/usr/bin",
            "DATABASE_URL": external.uri,
            "DIRECT_URL": external.uri,
        }

    def test_inherits_parent_environment(self, external, monkeypatch):
        from sync_testbed.migrations import MigrationEnvironment

        monkeypatch.setenv("NODE_OPTIONS", "--max-old-space-size=512")
        env = MigrationEnvironment.for_descriptor(external).as_env()
        assert env["NODE_OPTIONS"] == "--max-old-space-size=512"

    def test_rejects_internal_descriptor(self, external):
        from sync_testbed.errors import ConfigurationError
        from sync_testbed.migrations import MigrationEnvironment

        with pytest.raises(ConfigurationError, match="external descriptor"):
            MigrationEnvironment.for_descriptor(external.to_internal("database", 5432))


class TestBuildCommand:
    """Argument vector for the push."""

    def test_push_arguments(self, schema):
        from sync_testbed.migrations import MigrationRunner

        cmd = MigrationRunner("prisma", schema).build_command()
        assert cmd == [
            "prisma", "db", "push",
            "--force-reset", "--accept-data-loss", "--skip-generate",
            "--schema", str(schema.resolve()),
        ]

    def test_no_schema_configured(self):
        from sync_testbed.errors import ConfigurationError
        from sync_testbed.migrations import MigrationRunner

        with pytest.raises(ConfigurationError, match="SYNC_TESTBED_SCHEMA_PATH"):
            MigrationRunner("prisma", None).build_command()

    def test_schema_missing(self, tmp_path):
        from sync_testbed.errors import ConfigurationError
        from sync_testbed.migrations import MigrationRunner

        with pytest.raises(ConfigurationError, match="Schema file not found"):
            MigrationRunner("prisma", tmp_path / "missing.prisma").build_command()

    def test_cwd_missing(self, schema, tmp_path):
        from sync_testbed.errors import ConfigurationError
        from sync_testbed.migrations import MigrationRunner

        with pytest.raises(ConfigurationError, match="working directory not found"):
            MigrationRunner("prisma", schema, cwd=tmp_path / "gone").build_command()

    def test_from_settings(self, settings):
        from sync_testbed.migrations import MigrationRunner

        runner = MigrationRunner.from_settings(settings)
        assert runner.command == "prisma"
        assert runner.schema_path == settings.schema_path
        assert runner.cwd is None


class TestApply:
    """Running the schema tool."""

    @pytest.mark.asyncio
    async def test_success(self, schema, external, monkeypatch):
        from sync_testbed.migrations import MigrationRunner

        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("DIRECT_URL", raising=False)
        before = dict(os.environ)

        with patch(EXEC, AsyncMock(return_value=FakeProcess(0))) as exec_mock:
            await MigrationRunner("prisma", schema).apply(external)

        kwargs = exec_mock.call_args.kwargs
        assert kwargs["env"]["DATABASE_URL"] == external.uri
        assert kwargs["env"]["DIRECT_URL"] == external.uri
        assert kwargs["cwd"] == str(schema.parent)
        assert exec_mock.call_args.args[:3] == ("prisma", "db", "push")
        # Output passes through to the parent.
        assert "stdout" not in kwargs and "stderr" not in kwargs
        assert dict(os.environ) == before

    @pytest.mark.asyncio
    async def test_explicit_cwd(self, schema, external, tmp_path):
        from sync_testbed.migrations import MigrationRunner

        with patch(EXEC, AsyncMock(return_value=FakeProcess(0))) as exec_mock:
            await MigrationRunner("prisma", schema, cwd=tmp_path).apply(external)
        assert exec_mock.call_args.kwargs["cwd"] == str(tmp_path)

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, schema, external):
        from sync_testbed.errors import MigrationError
        from sync_testbed.migrations import MigrationRunner

        with patch(EXEC, AsyncMock(return_value=FakeProcess(1))):
            with pytest.raises(MigrationError, match="exited with code 1") as exc_info:
                await MigrationRunner("prisma", schema).apply(external)
        assert exc_info.value.exit_code == 1
        assert exc_info.value.context.command == "prisma"

    @pytest.mark.asyncio
    async def test_tool_not_found(self, schema, external):
        from sync_testbed.errors import MigrationError
        from sync_testbed.migrations import MigrationRunner

        with patch(EXEC, AsyncMock(side_effect=FileNotFoundError("prisma"))):
            with pytest.raises(MigrationError, match="Schema tool not found") as exc_info:
                await MigrationRunner("prisma", schema).apply(external)
        assert exc_info.value.exit_code == 127

    @pytest.mark.asyncio
    async def test_internal_descriptor_never_runs_tool(self, schema, external):
        from sync_testbed.errors import ConfigurationError
        from sync_testbed.migrations import MigrationRunner

        with patch(EXEC, AsyncMock(return_value=FakeProcess(0))) as exec_mock:
            with pytest.raises(ConfigurationError):
                await MigrationRunner("prisma", schema).apply(external.to_internal("database", 5432))
        exec_mock.assert_not_called()

    @pytest.mark.asyncio
    async def test_tool_not_executable(self, schema, external):
        from sync_testbed.errors import MigrationError
        from sync_testbed.migrations import MigrationRunner

        with patch(EXEC, AsyncMock(side_effect=PermissionError(13, "Permission denied", "prisma"))):
            with pytest.raises(MigrationError, match="could not be executed") as exc_info:
                await MigrationRunner("prisma", schema).apply(external)
        assert exc_info.value.exit_code == 126
        assert isinstance(exc_info.value.__cause__, PermissionError)

    @pytest.mark.asyncio
    async def test_missing_cwd_never_runs_tool(self, schema, external, tmp_path):
        from sync_testbed.errors import ConfigurationError
        from sync_testbed.migrations import MigrationRunner

        runner = MigrationRunner("prisma", schema, cwd=tmp_path / "gone")
        with patch(EXEC, AsyncMock(return_value=FakeProcess(0))) as exec_mock:
            with pytest.raises(ConfigurationError, match="working directory not found"):
                await runner.apply(external)
        exec_mock.assert_not_called()
