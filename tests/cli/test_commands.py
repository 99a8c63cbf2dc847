"""
Tests for the portsync CLI.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from typer.testing import CliRunner

from portsync.cli import app
from portsync.errors import IdentityConflictError


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


def test_init_db_creates_schema(runner, db_url, tmp_path):
    result = runner.invoke(app, ["init-db", "--db-url", db_url])

    assert result.exit_code == 0
    assert "Database schema ready" in result.output
    assert (tmp_path / "cli.db").exists()


def test_snapshot_of_unknown_account(runner, db_url):
    result = runner.invoke(app, ["snapshot", "--account-id", "1", "--db-url", db_url])

    assert result.exit_code == 0
    assert "unknown" in result.output
    assert "Positions" in result.output


def test_status_reports_never_refreshed(runner, db_url):
    result = runner.invoke(app, ["status", "-a", "1", "--db-url", db_url])

    assert result.exit_code == 0
    assert "never" in result.output
    assert "portfolio" in result.output


def test_refresh_failure_exits_with_error(runner):
    engine = MagicMock()
    engine.orchestrator.refresh = AsyncMock(side_effect=IdentityConflictError(7))

    with patch("portsync.cli.commands.get_shared_engine", AsyncMock(return_value=engine)), patch(
        "portsync.cli.commands.shutdown_shared_engine", AsyncMock()
    ):
        result = runner.invoke(app, ["refresh", "-a", "1", "--client-id", "7"])

    assert result.exit_code == 1
    assert "already in use" in result.output


def test_refresh_rejects_invalid_port(runner):
    result = runner.invoke(app, ["refresh", "-a", "1", "--port", "70000"])

    assert result.exit_code == 1
    assert "Invalid port" in result.output
