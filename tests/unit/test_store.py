# tests/unit/test_store.py: Unit tests for the workspace state store.

import json
import logging
from pathlib import Path

import pytest

from aipmstate.computer import compute_all
from aipmstate.config import OpinionsConfig, config_from_raw
from aipmstate.decisions import make_decisions
from aipmstate.document import SECTIONS, STATE_VERSION
from aipmstate.lock import LockManager
from aipmstate.store import StateStore
from aipmstate.util.errors import (
    ConsistencyError,
    GitError,
    InvalidPathError,
    LockTimeoutError,
    PathNotFoundError,
)
from aipmstate.util.log import set_log_level

from conftest import FakeGitFacts

REQUIRED = """
workspace:
  name: {name}
branching: {{}}
memory: {{}}
lifecycle: {{}}
workflows: {{}}
"""


def test_initialize_builds_every_section(initialized: StateStore):
    """Tests that initialize writes a complete, consistent document."""
    document = initialized.document()
    assert set(SECTIONS) <= set(document)
    assert document["metadata"]["version"] == STATE_VERSION
    assert document["metadata"]["lastOperation"] == "initialize"
    assert document["metadata"]["lastRefresh"] is not None
    assert document["computed"] == compute_all(OpinionsConfig())
    assert document["runtime"]["currentBranch"] == "AIPM_MAIN"
    assert document["runtime"]["branches"]["all"] == ["AIPM_MAIN", "AIPM_feature/login"]
    assert "AIPM_feature/login" in document["runtime"]["branches"]["details"]
    assert document["decisions"] == make_decisions(document["computed"], document["runtime"])
    assert initialized.validate().clean


def test_get_reads_nested_values(initialized: StateStore):
    """Tests dotted-path reads, list indexing and defaults."""
    assert initialized.get("computed.prefix") == "AIPM_"
    assert initialized.get("runtime.branches.all.1") == "AIPM_feature/login"
    assert initialized.get("runtime.nothing", None) is None
    with pytest.raises(PathNotFoundError):
        initialized.get("runtime.nothing")
    with pytest.raises(InvalidPathError):
        initialized.get("runtime..git")


def test_get_before_initialize(store: StateStore):
    """Tests that reads on an uninitialized workspace report NotFound."""
    with pytest.raises(PathNotFoundError):
        store.get("runtime.currentBranch")
    assert store.get("runtime.currentBranch", "none") == "none"


def test_update_writes_runtime_only(initialized: StateStore):
    """Tests that runtime values can be updated and other sections cannot."""
    initialized.update("runtime.custom.flag", True)
    assert initialized.get("runtime.custom.flag") is True
    assert initialized.get("metadata.lastOperation") == "update runtime.custom.flag"

    with pytest.raises(InvalidPathError, match="not writable"):
        initialized.update("computed.prefix", "X_")
    with pytest.raises(InvalidPathError):
        initialized.update("runtime", {})
    assert initialized.get("computed.prefix") == "AIPM_"


def test_update_batch_is_all_or_nothing(initialized: StateStore):
    """Tests that one bad entry keeps every other entry of the batch from landing."""
    before = initialized.paths.state_file.read_bytes()
    with pytest.raises(InvalidPathError):
        initialized.update_batch({"runtime.a": 1, "metadata.version": "2.0"})
    with pytest.raises(InvalidPathError):
        initialized.update_batch([("runtime.b", 1), ("runtime.currentBranch.name", "x")])
    assert initialized.paths.state_file.read_bytes() == before

    initialized.update_batch({"runtime.a": 1, "runtime.b": 2})
    assert initialized.get("runtime.a") == 1
    assert initialized.get("runtime.b") == 2


def test_increment_append_remove(initialized: StateStore):
    """Tests the read-modify-write helpers."""
    assert initialized.increment("runtime.git.stashCount") == 1
    assert initialized.increment("runtime.git.stashCount", 2) == 3
    initialized.append("runtime.notes", "first")
    initialized.append("runtime.notes", "second")
    assert initialized.get("runtime.notes") == ["first", "second"]
    assert initialized.remove("runtime.notes") == ["first", "second"]
    with pytest.raises(PathNotFoundError):
        initialized.get("runtime.notes")
    with pytest.raises(InvalidPathError, match="integer"):
        initialized.increment("runtime.currentBranch")


def test_uncommitted_update_is_not_visible_after_crash(initialized: StateStore, tmp_path: Path, facts):
    """Tests that a transaction that never commits leaves no trace for other readers."""
    tx = initialized.begin("test")
    initialized.update("runtime.test", "x")
    assert tx.get("runtime.test") == "x"

    recovered = StateStore(tmp_path, facts, config=OpinionsConfig(), lock_timeout=1)
    with pytest.raises(PathNotFoundError):
        recovered.get("runtime.test")

    initialized.rollback(tx)
    with pytest.raises(PathNotFoundError):
        initialized.get("runtime.test")


def test_lock_timeout_leaves_document_unchanged(initialized: StateStore):
    """Tests that a write blocked by another lock holder fails without touching the file."""
    initialized._lock_timeout = 0.2
    before = initialized.paths.state_file.read_bytes()
    other = LockManager(initialized.paths.lock_file)
    handle = other.acquire(1)
    try:
        with pytest.raises(LockTimeoutError):
            initialized.update("runtime.blocked", True)
    finally:
        other.release(handle)
    assert initialized.paths.state_file.read_bytes() == before


def test_refresh_runtime_recomputes_decisions(initialized: StateStore, facts: FakeGitFacts):
    """Tests that a dirty tree observed on refresh blocks branch creation in the stored decisions."""
    assert initialized.get("decisions.canCreateBranch") is True
    facts.clean = False
    facts.uncommitted = 3
    initialized.refresh("runtime")
    document = initialized.document()
    assert document["runtime"]["git"]["uncommittedCount"] == 3
    assert document["decisions"]["canCreateBranch"] is False
    assert make_decisions(document["computed"], document["runtime"])["canCreateBranch"] is False


def test_refresh_scopes(initialized: StateStore, facts: FakeGitFacts):
    """Tests the narrower refresh scopes and rejection of unknown ones."""
    facts.ahead, facts.behind = 2, 1
    initialized.refresh("remote")
    assert initialized.get("runtime.git.diverged") is True

    facts.branches.append("AIPM_feature/new")
    initialized.refresh("branches")
    assert "AIPM_feature/new" in initialized.get("runtime.branches.all")

    initialized.refresh("decisions")
    assert initialized.get("metadata.lastOperation") == "refresh decisions"
    initialized.refresh("computed")
    assert initialized.validate().ok

    with pytest.raises(InvalidPathError, match="Unknown refresh scope"):
        initialized.refresh("everything")


def test_validate_and_repair_branch_drift(initialized: StateStore, facts: FakeGitFacts):
    """Tests that a checkout outside the store is reported as drift and repaired."""
    facts.current = "AIPM_feature/login"
    report = initialized.validate()
    assert report.ok
    assert report.drift_sections() == ["runtime"]

    initialized.repair()
    assert initialized.get("runtime.currentBranch") == "AIPM_feature/login"
    assert initialized.get("decisions.currentBranchType") == "feature"
    assert initialized.validate().clean


def test_stale_decisions_are_drift(initialized: StateStore):
    """Tests that hand-edited decisions are detected and recomputed by repair."""
    document = json.loads(initialized.paths.state_file.read_text())
    document["decisions"]["canCreateBranch"] = False
    initialized.paths.state_file.write_text(json.dumps(document))

    assert initialized.validate().drift_sections() == ["decisions"]
    initialized.repair()
    assert initialized.get("decisions.canCreateBranch") is True


def test_corrupted_computed_is_fatal(initialized: StateStore):
    """Tests that a computed section that does not match rawConfig blocks writes."""
    document = json.loads(initialized.paths.state_file.read_text())
    document["computed"]["prefix"] = "BROKEN_"
    initialized.paths.state_file.write_text(json.dumps(document))

    report = initialized.validate()
    assert not report.ok
    assert report.errors[0].section == "computed"
    with pytest.raises(ConsistencyError, match="aipm-state init") as excinfo:
        initialized.repair()
    assert excinfo.value.fatal
    with pytest.raises(ConsistencyError):
        initialized.update("runtime.x", 1)

    initialized.initialize()
    assert initialized.validate().clean


def test_invalid_json_is_fatal(initialized: StateStore):
    """Tests that an unparsable state file is reported as a fatal consistency error."""
    initialized.paths.state_file.write_text("{not json")
    with pytest.raises(ConsistencyError) as excinfo:
        initialized.get("runtime.currentBranch")
    assert excinfo.value.fatal


def test_initialize_rebuilds_unparsable_document(initialized: StateStore):
    """Tests that a re-initialization replaces a state file that is not JSON."""
    initialized.paths.state_file.write_text("{not json")
    with pytest.raises(ConsistencyError):
        initialized.update("runtime.x", 1)

    initialized.initialize()
    assert initialized.get("computed.prefix") == "AIPM_"
    assert initialized.validate().clean


def test_failed_rebuild_keeps_unparsable_bytes(initialized: StateStore, facts: FakeGitFacts):
    """Tests that a rebuild that fails restores the unreadable file as it was."""
    initialized.paths.state_file.write_text("{not json")
    facts.fail = {"all_branches"}
    with pytest.raises(GitError):
        initialized.initialize()
    assert initialized.paths.state_file.read_text() == "{not json"


def test_ensure_loaded_rebuilds_empty_document(initialized: StateStore):
    """Tests that ensure_loaded re-initializes a truncated state file."""
    initialized.paths.state_file.write_text("")
    document = initialized.ensure_loaded()
    assert document["runtime"]["currentBranch"] == "AIPM_MAIN"
    assert initialized.validate().clean


def test_initialize_keeps_sessions_and_creation_time(initialized: StateStore):
    """Tests that a full rebuild carries session state and createdAt over."""
    initialized.update("runtime.session", {"id": "framework-abc", "active": True})
    created = initialized.get("metadata.createdAt")
    initialized.initialize()
    assert initialized.get("runtime.session.id") == "framework-abc"
    assert initialized.get("metadata.createdAt") == created


def test_ensure_loaded_initializes_and_follows_config(tmp_path: Path, facts: FakeGitFacts):
    """Tests that ensure_loaded builds a missing document and rebuilds on config change."""
    config_path = tmp_path / "opinions.yaml"
    config_path.write_text(REQUIRED.format(name="AIPM"))
    store = StateStore(tmp_path, facts, config_path=config_path, lock_timeout=1)
    document = store.ensure_loaded()
    assert document["metadata"]["configPath"] == str(config_path.resolve())
    assert store.get("computed.prefix") == "AIPM_"

    config_path.write_text(REQUIRED.format(name="TEAM"))
    facts.branches = ["TEAM_MAIN"]
    facts.current = "TEAM_MAIN"
    reloaded = StateStore(tmp_path, facts, config_path=config_path, lock_timeout=1)
    assert reloaded.ensure_loaded()["computed"]["mainBranch"] == "TEAM_MAIN"


def test_ensure_loaded_refreshes_old_runtime(initialized: StateStore, facts: FakeGitFacts):
    """Tests that a max_age forces a runtime sync when lastRefresh is too old."""
    document = json.loads(initialized.paths.state_file.read_text())
    document["metadata"]["lastRefresh"] = "2020-01-01T00:00:00+00:00"
    initialized.paths.state_file.write_text(json.dumps(document))
    facts.stashes = 4
    initialized.ensure_loaded(max_age=60)
    assert initialized.get("runtime.git.stashCount") == 4


def test_ensure_loaded_follows_checkout(initialized: StateStore, facts: FakeGitFacts):
    """Tests that a branch switched outside the store is picked up before use."""
    facts.current = "AIPM_feature/login"
    document = initialized.ensure_loaded()
    assert document["runtime"]["currentBranch"] == "AIPM_feature/login"
    assert document["decisions"]["currentBranchType"] == "feature"
    assert initialized.get("metadata.lastOperation") == "sync runtime"


def test_status_drift_is_reported_and_repaired(initialized: StateStore, facts: FakeGitFacts):
    """Tests that working-tree changes made outside the store count as runtime drift."""
    facts.clean = False
    facts.uncommitted = 3
    report = initialized.validate()
    assert report.ok
    assert report.drift_sections() == ["runtime", "runtime"]
    assert "uncommittedCount" in report.drift[1].message
    assert initialized.validate(observe=False).clean

    initialized.repair()
    assert initialized.get("runtime.git.uncommittedCount") == 3
    assert initialized.get("decisions.canCreateBranch") is False
    assert initialized.validate().clean


def test_passed_config_applies_log_level(tmp_path: Path, facts: FakeGitFacts):
    """Tests that defaults.logging.level is honored for a config handed to the store."""
    config = config_from_raw({"defaults": {"logging": {"level": "debug"}}})
    store = StateStore(tmp_path, facts, config=config, lock_timeout=1)
    try:
        store.initialize()
        assert logging.getLogger("aipmstate").level == logging.DEBUG
    finally:
        set_log_level("info")


def test_store_requires_git_facts(tmp_path: Path):
    """Tests that the store refuses anything that is not a GitFacts implementation."""
    with pytest.raises(TypeError):
        StateStore(tmp_path, object())
