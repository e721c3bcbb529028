# tests/unit/conftest.py: Shared fixtures for the state core tests.

from typing import Dict, List, Optional, Tuple

import pytest

from aipmstate.config import OpinionsConfig
from aipmstate.gitfacts import GitFacts
from aipmstate.store import StateStore
from aipmstate.util.errors import GitError


class FakeGitFacts(GitFacts):
    """In-memory repository facts; set `fail` to make a query raise GitError."""

    def __init__(
        self,
        current: str = "AIPM_MAIN",
        branches: Optional[List[str]] = None,
        clean: bool = True,
        uncommitted: int = 0,
        ahead: int = 0,
        behind: int = 0,
        stashes: int = 0,
        merged: Optional[List[str]] = None,
        dates: Optional[Dict[str, Tuple[str, str]]] = None,
    ):
        self.current = current
        self.branches = list(branches if branches is not None else [current])
        self.clean = clean
        self.uncommitted = uncommitted
        self.ahead = ahead
        self.behind = behind
        self.stashes = stashes
        self.merged = list(merged or [])
        self.dates = dict(dates or {})
        self.operation = None
        self.fail = set()

    def _check(self, name):
        if name in self.fail:
            raise GitError(f"git query '{name}' failed")

    def current_branch(self):
        self._check("current_branch")
        return self.current

    def all_branches(self):
        self._check("all_branches")
        return list(self.branches)

    def is_clean(self):
        self._check("is_clean")
        return self.clean

    def uncommitted_count(self):
        self._check("uncommitted_count")
        return self.uncommitted

    def ahead_behind(self):
        self._check("ahead_behind")
        return self.ahead, self.behind

    def stash_count(self):
        self._check("stash_count")
        return self.stashes

    def upstream_of(self, branch):
        self._check("upstream_of")
        return None

    def merged_branches(self, target):
        self._check("merged_branches")
        return [target] + list(self.merged)

    def branch_commit(self, ref):
        self._check("branch_commit")
        return f"sha-{ref}"

    def branch_creation_date(self, branch):
        return self.dates.get(branch, (None, None))[0]

    def branch_last_commit_date(self, branch):
        return self.dates.get(branch, (None, None))[1]

    def operation_in_progress(self):
        return self.operation


@pytest.fixture
def opinions() -> OpinionsConfig:
    """The compiled-in default opinions (workspace AIPM, prefix AIPM_)."""
    return OpinionsConfig()


@pytest.fixture
def facts() -> FakeGitFacts:
    return FakeGitFacts(branches=["AIPM_MAIN", "AIPM_feature/login"])


@pytest.fixture
def store(tmp_path, facts, opinions) -> StateStore:
    """A store over an empty workspace with a short lock timeout."""
    return StateStore(tmp_path, facts, config=opinions, lock_timeout=1)


@pytest.fixture
def initialized(store) -> StateStore:
    store.initialize()
    return store
