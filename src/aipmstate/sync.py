# src/aipmstate/sync.py: Reconciles runtime facts with the repository.
# The engine pulls GitFacts into the document's runtime section, either all of
# it or one named subsection, and accepts pushed reports from callers that just
# changed the repository themselves. Every path runs inside one transaction, so
# decisions are recomputed and a failing git query leaves the document as it was.

import copy
from contextlib import contextmanager
from enum import Enum, auto
from typing import Any, Dict, Optional

from .document import utc_now
from .util.errors import ValidationError
from .util.log import get_logger

logger = get_logger(__name__)

SECTIONS = ("branches", "status", "remote")


class SyncState(Enum):
    """Lifecycle of a sync: IDLE -> SYNCING -> COMMITTED | ROLLED_BACK -> IDLE."""
    IDLE = auto()
    SYNCING = auto()
    COMMITTED = auto()
    ROLLED_BACK = auto()


# Required payload fields per event; other payload keys are optional.
EVENTS = {
    "branch-created": ("name",),
    "branch-deleted": ("name",),
    "branch-switched": ("name",),
    "commit-created": ("hash",),
    "files-staged": ("count",),
    "branch-merged": ("source",),
    "remote-synced": ("ahead", "behind"),
    "stash-saved": (),
    "stash-popped": (),
}

_INTEGER_FIELDS = ("count", "ahead", "behind")


def normalize_payload(event: str, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Checks an event name and its payload before anything is locked."""
    if event not in EVENTS:
        raise ValidationError(
            f"Unknown report event '{event}'",
            fields=["event"],
            value=event,
            allowed=list(EVENTS),
            section="runtime",
        )
    payload = dict(payload or {})
    missing = [key for key in EVENTS[event] if payload.get(key) in (None, "")]
    if missing:
        raise ValidationError(
            f"Event '{event}' requires payload field(s): {', '.join(missing)}",
            fields=missing,
            section="runtime",
        )
    for key in _INTEGER_FIELDS:
        if key in payload:
            try:
                payload[key] = int(payload[key])
            except (TypeError, ValueError) as e:
                raise ValidationError(
                    f"Payload field '{key}' must be an integer, got {payload[key]!r}",
                    fields=[key],
                    value=payload[key],
                    section="runtime",
                ) from e
    return payload


def apply_event(runtime: Dict[str, Any], event: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Returns the runtime section after `event`; the input is not modified."""
    runtime = copy.deepcopy(runtime)
    branches = runtime.setdefault("branches", {})
    names = branches.setdefault("all", [])
    merged = branches.setdefault("merged", [])
    details = branches.setdefault("details", {})
    git = runtime.setdefault("git", {})

    if event == "branch-created":
        name = payload["name"]
        if name not in names:
            names.append(name)
        runtime["currentBranch"] = name
        if payload.get("baseBranch"):
            details.setdefault(name, {})["parent"] = payload["baseBranch"]
    elif event == "branch-deleted":
        name = payload["name"]
        if name in names:
            names.remove(name)
        if name in merged:
            merged.remove(name)
        details.pop(name, None)
    elif event == "branch-switched":
        runtime["currentBranch"] = payload["name"]
    elif event == "commit-created":
        git["uncommittedCount"] = 0
        git["lastCommit"] = payload["hash"]
        git["isClean"] = True
        git["hasStaged"] = False
        git["stagedCount"] = 0
        if payload.get("message"):
            git["lastCommitMessage"] = payload["message"]
        current = runtime.get("currentBranch")
        if current in details:
            details[current]["head"] = payload["hash"]
    elif event == "files-staged":
        git["hasStaged"] = True
        git["stagedCount"] = payload["count"]
        if payload["count"] > 0:
            git["isClean"] = False
    elif event == "branch-merged":
        if payload["source"] not in merged:
            merged.append(payload["source"])
    elif event == "remote-synced":
        git["ahead"] = payload["ahead"]
        git["behind"] = payload["behind"]
        git["diverged"] = payload["ahead"] > 0 and payload["behind"] > 0
    elif event == "stash-saved":
        git["stashCount"] = (git.get("stashCount") or 0) + 1
    elif event == "stash-popped":
        git["stashCount"] = max(0, (git.get("stashCount") or 0) - 1)
    return runtime


class SyncEngine:
    """
    Moves repository facts into the state document.
    This class reads through the store's GitFacts and writes through its
    AtomicOperation; it never opens the state file itself.
    """

    def __init__(self, store):
        self.store = store
        self.state = SyncState.IDLE
        self.last_result: Optional[SyncState] = None

    @property
    def facts(self):
        return self.store.facts

    # --- Fact gathering ---

    def _is_managed(self, name: str, computed: Dict[str, Any]) -> bool:
        return name.startswith(computed["prefix"]) or name in computed["protectedBranches"]["all"]

    def collect_status(self) -> Dict[str, Any]:
        uncommitted = self.facts.uncommitted_count()
        return {
            "currentBranch": self.facts.current_branch(),
            "git": {
                "isClean": self.facts.is_clean(),
                "uncommittedCount": uncommitted,
                "stashCount": self.facts.stash_count(),
                "operationInProgress": self.facts.operation_in_progress(),
            },
        }

    def collect_remote(self) -> Dict[str, Any]:
        ahead, behind = self.facts.ahead_behind()
        return {
            "ahead": ahead,
            "behind": behind,
            "diverged": ahead > 0 and behind > 0,
            "upstream": self.facts.upstream_of(self.facts.current_branch()),
        }

    def collect_branches(self, computed: Dict[str, Any], previous: Dict[str, Any]) -> Dict[str, Any]:
        names = self.facts.all_branches()
        main = computed["mainBranch"]
        merged = []
        if main in names:
            merged = [name for name in self.facts.merged_branches(main) if name != main]
        previous_details = (previous.get("branches") or {}).get("details") or {}
        details = {}
        for name in names:
            if not self._is_managed(name, computed):
                continue
            detail = {
                "head": self.facts.branch_commit(name),
                "createdAt": self.facts.branch_creation_date(name),
                "lastCommitAt": self.facts.branch_last_commit_date(name),
                "upstream": self.facts.upstream_of(name),
            }
            parent = (previous_details.get(name) or {}).get("parent")
            if parent:
                detail["parent"] = parent
            details[name] = detail
        return {"all": names, "merged": merged, "details": details}

    def collect_runtime(self, computed: Dict[str, Any], previous: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """A complete runtime section; session fields carry over from `previous`."""
        previous = previous or {}
        status = self.collect_status()
        git = {
            "hasStaged": False,
            "stagedCount": 0,
            "lastCommit": (previous.get("git") or {}).get("lastCommit"),
            **status["git"],
            **self.collect_remote(),
        }
        return {
            "currentBranch": status["currentBranch"],
            "observedAt": utc_now(),
            "branches": self.collect_branches(computed, previous),
            "git": git,
            "session": previous.get("session"),
            "sessionHistory": list(previous.get("sessionHistory") or []),
        }

    def _gather(self, section: str, computed: Dict[str, Any], runtime: Dict[str, Any]):
        if section == "status":
            return self.collect_status()
        if section == "remote":
            return self.collect_remote()
        return self.collect_branches(computed, runtime)

    @staticmethod
    def _apply(section: str, runtime: Dict[str, Any], facts: Dict[str, Any]) -> None:
        git = runtime.setdefault("git", {})
        if section == "status":
            runtime["currentBranch"] = facts["currentBranch"]
            git.update(facts["git"])
            if facts["git"]["isClean"]:
                git["hasStaged"] = False
                git["stagedCount"] = 0
        elif section == "remote":
            git.update(facts)
        else:
            runtime["branches"] = facts

    # --- Transactions ---

    @contextmanager
    def _syncing(self, name: str):
        entered = False
        try:
            with self.store.atomic.run(name) as tx:
                entered = True
                self.state = SyncState.SYNCING
                yield tx
        except BaseException:
            if entered:
                self.last_result = SyncState.ROLLED_BACK
            raise
        else:
            self.last_result = SyncState.COMMITTED
        finally:
            self.state = SyncState.IDLE

    def _sync(self, name: str, sections) -> None:
        with self._syncing(name) as tx:
            computed = tx.document["computed"]
            runtime = tx.document["runtime"]
            gathered = [(section, self._gather(section, computed, runtime)) for section in sections]
            for section, facts in gathered:
                self._apply(section, runtime, facts)
            runtime["observedAt"] = utc_now()
            tx.mark_refreshed()
        logger.info(f"Synchronized runtime ({', '.join(sections)})")

    def full_sync(self) -> None:
        """Pulls every GitFacts field into runtime in one transaction."""
        self._sync("sync runtime", SECTIONS)

    def partial_sync(self, section: str) -> None:
        """Pulls one runtime subsection: 'branches', 'status' or 'remote'."""
        if section not in SECTIONS:
            raise ValidationError(
                f"Unknown runtime section '{section}'",
                fields=["section"],
                value=section,
                allowed=SECTIONS,
                section="runtime",
            )
        self._sync(f"sync {section}", (section,))

    def report(self, event: str, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Applies a caller-reported git mutation to runtime.

        Args:
            event: One of the names in EVENTS.
            payload: Event fields, e.g. {"name": ..., "baseBranch": ...}.

        Returns:
            The runtime section as committed.
        """
        payload = normalize_payload(event, payload)
        with self._syncing(f"report {event}") as tx:
            tx.document["runtime"] = apply_event(tx.document["runtime"], event, payload)
            tx.mark_refreshed()
            runtime = tx.document["runtime"]
        logger.info(f"Recorded '{event}' report")
        return runtime
