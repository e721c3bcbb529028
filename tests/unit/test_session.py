# tests/unit/test_session.py: Unit tests for session start and end.

from pathlib import Path

import pytest

from aipmstate.config import config_from_raw
from aipmstate.session import active_session, end_session, start_session
from aipmstate.store import StateStore
from aipmstate.util.errors import SessionError


def test_start_and_end_session(initialized: StateStore):
    """Tests the full lifecycle of one session."""
    session = start_session(initialized)
    assert session["id"].startswith("framework-")
    assert session["branch"] == "AIPM_MAIN"
    assert active_session(initialized)["id"] == session["id"]

    ended = end_session(initialized)
    assert ended["id"] == session["id"]
    assert ended["endedAt"] is not None
    assert active_session(initialized) is None
    history = initialized.get("runtime.sessionHistory")
    assert [entry["id"] for entry in history] == [session["id"]]


def test_only_one_active_session(initialized: StateStore):
    """Tests that a second start fails unless forced, and forcing archives the old one."""
    first = start_session(initialized)
    with pytest.raises(SessionError, match="already active"):
        start_session(initialized)

    second = start_session(initialized, "project", "billing", force=True)
    assert second["project"] == "billing"
    history = initialized.get("runtime.sessionHistory")
    assert history[-1]["id"] == first["id"]
    assert history[-1]["supersededBy"] == second["id"]


def test_session_arguments_are_checked(initialized: StateStore):
    """Tests rejection of unknown contexts and nameless project sessions."""
    with pytest.raises(SessionError, match="Unknown session context"):
        start_session(initialized, "client")
    with pytest.raises(SessionError, match="project name"):
        start_session(initialized, "project")
    with pytest.raises(SessionError, match="No active session"):
        end_session(initialized)


def test_sessions_disabled(tmp_path: Path, facts):
    """Tests that sessions cannot start when configuration disables them."""
    config = config_from_raw({"sessions": {"enabled": False}})
    store = StateStore(tmp_path, facts, config=config, lock_timeout=1)
    store.initialize()
    before = store.paths.state_file.read_bytes()
    with pytest.raises(SessionError, match="disabled"):
        start_session(store)
    assert store.paths.state_file.read_bytes() == before


def test_session_history_is_bounded(tmp_path: Path, facts):
    """Tests that only the configured number of past sessions is kept."""
    config = config_from_raw({"defaults": {"limits": {"sessionHistory": 2}}})
    store = StateStore(tmp_path, facts, config=config, lock_timeout=1)
    store.initialize()
    ids = []
    for _ in range(3):
        ids.append(start_session(store)["id"])
        end_session(store)
    assert [entry["id"] for entry in store.get("runtime.sessionHistory")] == ids[1:]
