# tests/unit/test_cli.py: Unit tests for the 'aipm-state' command.

import json

import pytest
from typer.testing import CliRunner

from aipmstate import cli
from aipmstate.store import StateStore
from aipmstate.util.errors import ExitCode

runner = CliRunner()


@pytest.fixture
def cli_store(monkeypatch, store: StateStore) -> StateStore:
    """Routes every command to the fixture store instead of a real repository."""
    monkeypatch.setattr(cli, "build_store", lambda workspace, config_path: store)
    return store


def test_init_and_get(cli_store: StateStore):
    """Tests that init builds the document and get prints plain values."""
    result = runner.invoke(cli.app, ["init"])
    assert result.exit_code == 0
    assert cli_store.exists()

    result = runner.invoke(cli.app, ["get", "runtime.currentBranch"])
    assert result.exit_code == 0
    assert result.stdout.strip() == "AIPM_MAIN"

    result = runner.invoke(cli.app, ["get", "decisions.canCreateBranch"])
    assert result.stdout.strip() == "true"

    result = runner.invoke(cli.app, ["get", "runtime.branches.all", "--json"])
    assert json.loads(result.stdout) == ["AIPM_MAIN", "AIPM_feature/login"]


def test_get_follows_repository_changes(cli_store: StateStore, facts):
    """Tests that get re-syncs a checkout and rebuilds an unreadable state file."""
    cli_store.initialize()
    facts.current = "AIPM_feature/login"
    result = runner.invoke(cli.app, ["get", "runtime.currentBranch"])
    assert result.stdout.strip() == "AIPM_feature/login"

    cli_store.paths.state_file.write_text("{not json")
    result = runner.invoke(cli.app, ["get", "computed.prefix"])
    assert result.exit_code == 0
    assert result.stdout.strip() == "AIPM_"


def test_get_missing_path_exit_code(cli_store: StateStore):
    """Tests that a missing path exits with the not-found code."""
    cli_store.initialize()
    result = runner.invoke(cli.app, ["get", "runtime.nothing"])
    assert result.exit_code == ExitCode.NOT_FOUND


def test_dump_prints_document(cli_store: StateStore):
    """Tests that dump emits the whole document as JSON."""
    result = runner.invoke(cli.app, ["dump"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["computed"]["prefix"] == "AIPM_"


def test_report_command(cli_store: StateStore):
    """Tests that KEY=VALUE pairs become the report payload."""
    cli_store.initialize()
    result = runner.invoke(cli.app, ["report", "branch-created", "name=AIPM_feature/cli", "baseBranch=AIPM_MAIN"])
    assert result.exit_code == 0
    assert cli_store.get("runtime.currentBranch") == "AIPM_feature/cli"

    result = runner.invoke(cli.app, ["report", "branch-created", "AIPM_feature/cli"])
    assert result.exit_code == ExitCode.VALIDATION_FAILED


def test_validate_command(cli_store: StateStore):
    """Tests exit codes for a consistent and a corrupted document."""
    cli_store.initialize()
    assert runner.invoke(cli.app, ["validate"]).exit_code == 0

    document = json.loads(cli_store.paths.state_file.read_text())
    document["computed"]["mainBranch"] = "main"
    cli_store.paths.state_file.write_text(json.dumps(document))
    assert runner.invoke(cli.app, ["validate"]).exit_code == ExitCode.VALIDATION_FAILED
    assert runner.invoke(cli.app, ["repair"]).exit_code == ExitCode.CONSISTENCY_ERROR


def test_refresh_unknown_scope(cli_store: StateStore):
    """Tests that an unknown refresh scope exits with the invalid-path code."""
    cli_store.initialize()
    result = runner.invoke(cli.app, ["refresh", "everything"])
    assert result.exit_code == ExitCode.INVALID_PATH


def test_start_and_stop(cli_store: StateStore):
    """Tests session commands, including the second-start failure."""
    assert runner.invoke(cli.app, ["start", "--project", "billing"]).exit_code == 0
    assert cli_store.get("runtime.session.project") == "billing"
    assert runner.invoke(cli.app, ["start"]).exit_code == ExitCode.SESSION_ERROR
    assert runner.invoke(cli.app, ["stop"]).exit_code == 0
    assert runner.invoke(cli.app, ["stop"]).exit_code == ExitCode.SESSION_ERROR
    assert runner.invoke(cli.app, ["start", "--framework", "--project", "x"]).exit_code == 1


def test_summary(cli_store: StateStore):
    """Tests that the summary table renders the current branch."""
    result = runner.invoke(cli.app, ["summary"])
    assert result.exit_code == 0
    assert "AIPM_MAIN" in result.stdout
