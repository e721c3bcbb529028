# src/aipmstate/document.py: The persisted state document and dotted-path access.
# The document has five sections: metadata, rawConfig, computed, runtime and
# decisions. Callers address values with dotted paths ('runtime.git.ahead'),
# and only the runtime section may be written that way. check_document()
# separates hard errors (a corrupt document) from drift (stale but repairable).

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .computer import compute_all
from .config import OpinionsConfig, config_from_raw
from .decisions import make_decisions
from .util.errors import (
    ConfigError,
    ConsistencyError,
    InvalidPathError,
    PathNotFoundError,
)
from .util.fs import canonical_json

STATE_VERSION = "1.0"
SECTIONS = ("metadata", "rawConfig", "computed", "runtime", "decisions")
WRITABLE_SECTIONS = ("runtime",)


class _Missing:
    def __repr__(self):
        return "MISSING"


MISSING: Any = _Missing()


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


# --- Dotted paths ---

def split_path(path: str) -> List[str]:
    if not isinstance(path, str) or not path:
        raise InvalidPathError("A state path must be a non-empty string")
    parts = path.split(".")
    if any(part == "" for part in parts):
        raise InvalidPathError(f"Malformed state path '{path}'", section=parts[0] or None)
    return parts


def _index(node, part: str) -> Optional[int]:
    if isinstance(node, list) and part.isdigit() and int(part) < len(node):
        return int(part)
    return None


def get_path(document: Dict[str, Any], path: str, default: Any = MISSING) -> Any:
    """Looks up a dotted path; numeric segments index into lists."""
    parts = split_path(path)
    node: Any = document
    for part in parts:
        if isinstance(node, dict) and part in node:
            node = node[part]
            continue
        index = _index(node, part)
        if index is None:
            if default is MISSING:
                raise PathNotFoundError(f"State path '{path}' not found", section=parts[0])
            return default
        node = node[index]
    return node


def writable_parts(path: str) -> List[str]:
    """Splits a path and rejects writes outside the runtime section."""
    parts = split_path(path)
    if parts[0] not in WRITABLE_SECTIONS:
        raise InvalidPathError(
            f"State path '{path}' is not writable; only {', '.join(WRITABLE_SECTIONS)} may be updated",
            section=parts[0],
        )
    if len(parts) < 2:
        raise InvalidPathError(f"Refusing to replace the whole '{parts[0]}' section", section=parts[0])
    return parts


def _container(document: Dict[str, Any], parts: List[str], create: bool) -> Any:
    node: Any = document
    for depth, part in enumerate(parts):
        if isinstance(node, dict):
            child = node.get(part)
            if child is None and create:
                child = {}
                node[part] = child
            elif child is None:
                raise PathNotFoundError(f"State path '{'.'.join(parts[:depth + 1])}' not found", section=parts[0])
            node = child
            continue
        index = _index(node, part)
        if index is None:
            raise InvalidPathError(
                f"'{'.'.join(parts[:depth])}' is not a container; cannot descend into '{part}'",
                section=parts[0],
            )
        node = node[index]
    if not isinstance(node, (dict, list)):
        raise InvalidPathError(f"'{'.'.join(parts)}' is not a container", section=parts[0])
    return node


def set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = writable_parts(path)
    parent = _container(document, parts[:-1], create=True)
    last = parts[-1]
    if isinstance(parent, dict):
        parent[last] = value
        return
    index = _index(parent, last)
    if index is None:
        raise InvalidPathError(f"List index '{last}' is out of range in '{path}'", section=parts[0])
    parent[index] = value


def remove_path(document: Dict[str, Any], path: str) -> Any:
    parts = writable_parts(path)
    parent = _container(document, parts[:-1], create=False)
    last = parts[-1]
    if isinstance(parent, dict):
        if last not in parent:
            raise PathNotFoundError(f"State path '{path}' not found", section=parts[0])
        return parent.pop(last)
    index = _index(parent, last)
    if index is None:
        raise PathNotFoundError(f"State path '{path}' not found", section=parts[0])
    return parent.pop(index)


# --- Building and checking documents ---

def parse_document(data) -> Dict[str, Any]:
    """Parses persisted bytes; anything but a JSON object is a fatal corruption."""
    try:
        document = json.loads(data)
    except ValueError as e:
        raise ConsistencyError(f"State document is not valid JSON: {e}", fatal=True) from e
    if not isinstance(document, dict):
        raise ConsistencyError("State document is not a JSON object", fatal=True)
    return document


def build_document(
    config: OpinionsConfig,
    computed: Dict[str, Any],
    runtime: Dict[str, Any],
    config_path: Optional[str] = None,
    created_at: Optional[str] = None,
) -> Dict[str, Any]:
    """Assembles a complete document; decisions are derived, never passed in."""
    return {
        "metadata": {
            "version": STATE_VERSION,
            "configHash": config.content_hash(),
            "configPath": config_path,
            "createdAt": created_at or utc_now(),
            "lastRefresh": None,
            "lastOperation": None,
            "lastUpdate": None,
            "operationDuration": None,
        },
        "rawConfig": config.to_raw(),
        "computed": computed,
        "runtime": runtime,
        "decisions": make_decisions(computed, runtime),
    }


@dataclass
class Issue:
    section: str
    message: str
    fatal: bool = False


@dataclass
class ValidationReport:
    errors: List[Issue] = field(default_factory=list)
    drift: List[Issue] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def clean(self) -> bool:
        return not self.errors and not self.drift

    def drift_sections(self) -> List[str]:
        return [issue.section for issue in self.drift]

    def raise_for_errors(self) -> None:
        if self.errors:
            first = self.errors[0]
            raise ConsistencyError(
                "; ".join(issue.message for issue in self.errors),
                section=first.section,
                fatal=any(issue.fatal for issue in self.errors),
            )


DRIFT_FACTS = ("currentBranch", "git.isClean", "git.uncommittedCount")


def runtime_drift(runtime: Dict[str, Any], observed: Dict[str, Any]) -> List[Issue]:
    """Compares stored runtime facts against freshly observed status facts."""
    issues = []
    for path in DRIFT_FACTS:
        stored = get_path(runtime, path, None)
        live = get_path(observed, path, None)
        if stored != live:
            issues.append(Issue("runtime", f"runtime.{path} is {stored!r} but the repository reports {live!r}"))
    return issues


def check_document(document: Dict[str, Any], observed: Optional[Dict[str, Any]] = None) -> ValidationReport:
    """
    Validates a document's structure and derived sections.

    Hard errors: a missing section, an unknown schema version, a rawConfig that
    does not resolve to itself, or a computed section that rawConfig does not
    reproduce. Drift: decisions that are stale, or runtime status facts
    (current branch, cleanliness, uncommitted count) that differ from
    `observed` when it is given.
    """
    report = ValidationReport()
    missing = [section for section in SECTIONS if not isinstance(document.get(section), dict)]
    for section in missing:
        report.errors.append(Issue(section, f"Required section '{section}' is missing", fatal=True))
    if missing:
        return report

    version = document["metadata"].get("version")
    if version != STATE_VERSION:
        report.errors.append(Issue("metadata", f"Unsupported state version {version!r}", fatal=True))

    try:
        config = config_from_raw(document["rawConfig"])
        expected = compute_all(config)
    except (ConfigError, ConsistencyError) as e:
        report.errors.append(Issue("rawConfig", f"rawConfig does not resolve: {e.message}", fatal=True))
        return report
    if canonical_json(config.to_raw()) != canonical_json(document["rawConfig"]):
        report.errors.append(Issue("rawConfig", "rawConfig is not a fully-resolved configuration", fatal=True))
    if canonical_json(expected) != canonical_json(document["computed"]):
        report.errors.append(Issue("computed", "computed is not reproducible from rawConfig", fatal=True))
        return report

    try:
        decisions = make_decisions(document["computed"], document["runtime"])
    except ConsistencyError as e:
        report.errors.append(Issue("computed", e.message, fatal=True))
        return report
    if canonical_json(decisions) != canonical_json(document["decisions"]):
        report.drift.append(Issue("decisions", "decisions are stale relative to computed and runtime"))

    if observed is not None:
        report.drift.extend(runtime_drift(document["runtime"], observed))
    return report
