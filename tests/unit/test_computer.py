# tests/unit/test_computer.py: Unit tests for the computed section.

import re

import pytest

from aipmstate.computer import (
    branch_patterns,
    classify_branch,
    compute_all,
    lifecycle_matrix,
    protected_branches,
    resolve_template,
    workflow_rules,
)
from aipmstate.config import OpinionsConfig, config_from_raw
from aipmstate.util.fs import canonical_json


def test_feature_pattern_glob():
    """Tests that the feature pattern is prefixed and globbed."""
    patterns = branch_patterns(OpinionsConfig())
    feature = patterns["feature"]
    assert feature["full"] == "AIPM_feature/{description}"
    assert feature["glob"] == "AIPM_feature/*"
    assert feature["literalPrefix"] == "AIPM_feature/"
    assert re.match(feature["regex"], "AIPM_feature/login")
    assert not re.match(feature["regex"], "feature/login")


def test_multi_placeholder_pattern():
    """Tests that every placeholder becomes a wildcard and the separators stay literal."""
    bugfix = branch_patterns(OpinionsConfig())["bugfix"]
    assert bugfix["glob"] == "AIPM_bugfix/*-*"
    assert re.match(bugfix["regex"], "AIPM_bugfix/42-crash")
    assert not re.match(bugfix["regex"], "AIPM_bugfix/42")


def test_naming_references_resolve():
    """Tests that {naming.x} expands to the referenced template."""
    naming = {"base": "work/{id}", "hotfix": "{naming.base}-hot"}
    assert resolve_template("{naming.hotfix}", naming) == "work/{id}-hot"


def test_classify_longest_literal_prefix_wins():
    """Tests that the most specific pattern claims a branch."""
    config = config_from_raw({"naming": {"wip": "feature/wip-{description}"}})
    patterns = branch_patterns(config)
    assert classify_branch("AIPM_feature/wip-login", patterns) == "wip"
    assert classify_branch("AIPM_feature/login", patterns) == "feature"
    assert classify_branch("main", patterns) is None
    assert classify_branch(None, patterns) is None


def test_classify_tie_goes_to_first_declared():
    """Tests that equally specific patterns resolve in declaration order."""
    config = config_from_raw({"naming": {"task": "work/{id}", "spike": "work/{topic}"}})
    assert classify_branch("AIPM_work/7", branch_patterns(config)) == "task"


def test_protected_branches():
    """Tests the protected set: user branches, prefixed suffixes and the main branch."""
    config = config_from_raw({
        "branching": {"protectedBranches": {"userBranches": ["main"], "aipmBranchSuffixes": ["MAIN", "STABLE"]}}
    })
    protected = protected_branches(config)
    assert protected["mainBranch"] == "AIPM_MAIN"
    assert protected["aipmBranches"] == [
        {"suffix": "MAIN", "full": "AIPM_MAIN"},
        {"suffix": "STABLE", "full": "AIPM_STABLE"},
    ]
    assert protected["all"] == ["main", "AIPM_MAIN", "AIPM_STABLE"]


def test_lifecycle_matrix():
    """Tests timing, trigger and description for each kind of rule."""
    config = config_from_raw({"lifecycle": {"chore": {"daysToKeep": 0}}})
    types = lifecycle_matrix(config)["types"]
    assert types["release"]["timing"] == "never"
    assert types["release"]["description"] == "Keep forever"
    assert types["bugfix"]["timing"] == "scheduled"
    assert types["bugfix"]["trigger"] == "mergeDate"
    assert types["bugfix"]["description"] == "Delete 14 days after merge"
    assert types["feature"]["trigger"] == "lastCommit"
    assert types["chore"]["timing"] == "immediate"
    assert types["session"]["maxSessions"] == 5
    assert set(types) == set(config.naming)


def test_workflow_branch_flow_substitutes_main_branch():
    """Tests that {mainBranch} in flow rules is replaced with the real branch."""
    flow = workflow_rules(OpinionsConfig())["branchFlow"]
    assert flow["targets"]["default"] == "AIPM_MAIN"
    assert flow["targets"]["byType"]["feature"] == "AIPM_MAIN"
    assert flow["targets"]["byType"]["session"] == "parent"
    assert flow["sources"]["byType"]["session"] == "current"


def test_compute_all_is_reproducible():
    """Tests that computing twice from the same configuration is byte-identical."""
    config = config_from_raw({"workspace": {"name": "TEAM"}})
    first = compute_all(config)
    second = compute_all(config_from_raw(config.to_raw()))
    assert canonical_json(first) == canonical_json(second)
    assert first["prefix"] == "TEAM_"
    assert first["sessionNamePattern"]["full"] == "TEAM_session/{timestamp}"


@pytest.mark.parametrize("branch,expected", [
    ("AIPM_session/20260101-120000", "session"),
    ("AIPM_release/1.2.0", "release"),
    ("AIPM_docs/readme", "docs"),
    ("AIPM_MAIN", None),
])
def test_classify_default_types(branch, expected):
    """Tests classification against the default naming table."""
    assert classify_branch(branch, branch_patterns(OpinionsConfig())) == expected
