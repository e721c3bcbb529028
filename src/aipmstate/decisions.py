# src/aipmstate/decisions.py: Operational decisions from computed rules and live facts.
# Each decision category is its own pure function of (computed, runtime), and
# make_decisions() composes them into the document's 'decisions' section. The
# reference time for anything age-based is runtime.observedAt, so recomputing
# from a stored document always reproduces the stored decisions.

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .computer import classify_branch
from .util.errors import ConsistencyError

Decision = Dict[str, Any]


def parse_timestamp(value) -> Optional[datetime]:
    """Parses an ISO-8601 timestamp; naive values are taken as UTC."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _branches(runtime) -> Dict[str, Any]:
    return runtime.get("branches") or {}


def _details(runtime, name) -> Dict[str, Any]:
    return (_branches(runtime).get("details") or {}).get(name) or {}


def _protected(computed) -> List[str]:
    return computed["protectedBranches"]["all"]


def branch_creation(computed, runtime) -> Decision:
    """Can a new branch be created right now, and if not, why."""
    git = runtime.get("git") or {}
    reasons = []
    operation = git.get("operationInProgress")
    if operation:
        reasons.append(f"A git {operation} is in progress")
    dirty = git.get("isClean") is False or (git.get("uncommittedCount") or 0) > 0
    if computed["settings"]["requireCleanTree"] and dirty:
        reasons.append(
            f"Working tree has {git.get('uncommittedCount') or 0} uncommitted change(s) and a clean tree is required"
        )
    limit = (computed["lifecycleMatrix"]["types"].get("session") or {}).get("maxSessions")
    if limit and not computed["settings"]["allowMultipleSessions"]:
        sessions = [
            name for name in _branches(runtime).get("all") or []
            if classify_branch(name, computed["branchPatterns"]) == "session"
        ]
        if len(sessions) > limit:
            reasons.append(f"{len(sessions)} session branches exceed the limit of {limit}; clean up first")
    return {"canCreateBranch": not reasons, "cannotCreateReasons": reasons}


def current_branch_info(computed, runtime) -> Decision:
    current = runtime.get("currentBranch")
    return {
        "currentBranchType": classify_branch(current, computed["branchPatterns"]),
        "isCurrentBranchProtected": current in _protected(computed),
    }


def merge_target(computed, runtime) -> Decision:
    """Where the current branch merges to, looked up by its branch type."""
    strategy = computed["workflows"]["merging"]["strategy"]
    current = runtime.get("currentBranch")
    if not current or current in _protected(computed):
        return {"canMergeCurrentBranch": False, "mergeTarget": None, "mergeStrategy": strategy}

    targets = computed["workflows"]["branchFlow"]["targets"]
    branch_type = classify_branch(current, computed["branchPatterns"])
    rule = targets["byType"].get(branch_type, targets["default"]) if branch_type else targets["default"]

    if rule == "none":
        target = None
    elif rule == "parent":
        target = _details(runtime, current).get("parent") or computed["mainBranch"]
    else:
        target = rule
    if target == current:
        target = None
    return {"canMergeCurrentBranch": target is not None, "mergeTarget": target, "mergeStrategy": strategy}


def _lifecycle_reason(rule, merged: bool, detail, now) -> Optional[str]:
    if rule["timing"] == "never":
        return None
    if rule["trigger"] == "mergeDate":
        if not merged:
            return None
        event = "merge"
    else:
        event = "last commit"
    if rule["timing"] == "immediate":
        return f"delete immediately after {event}"
    reference = parse_timestamp(detail.get("lastCommitAt"))
    if reference is None or now is None:
        return None
    if reference + timedelta(days=rule["days"]) <= now:
        return f"{rule['days']} days since {event}"
    return None


def _activity_key(runtime, name):
    detail = _details(runtime, name)
    stamp = parse_timestamp(detail.get("createdAt")) or parse_timestamp(detail.get("lastCommitAt"))
    return stamp or datetime.min.replace(tzinfo=timezone.utc)


def cleanup_candidates(computed, runtime) -> Decision:
    """Branches whose lifecycle rule says they may be deleted now."""
    now = parse_timestamp(runtime.get("observedAt"))
    patterns = computed["branchPatterns"]
    matrix = computed["lifecycleMatrix"]["types"]
    protected = set(_protected(computed))
    current = runtime.get("currentBranch")
    branches = _branches(runtime)
    merged = set(branches.get("merged") or [])
    names = list(branches.get("all") or [])

    reasons: Dict[str, str] = {}
    sessions = []
    for name in names:
        branch_type = classify_branch(name, patterns)
        if branch_type is None:
            continue
        rule = matrix.get(branch_type)
        if rule is None:
            raise ConsistencyError(
                f"Branch type '{branch_type}' has no lifecycle rule",
                section="computed",
                fatal=True,
            )
        if branch_type == "session":
            sessions.append(name)
        if name in protected or name == current:
            continue
        reason = _lifecycle_reason(rule, name in merged, _details(runtime, name), now)
        if reason:
            reasons[name] = reason

    max_sessions = (matrix.get("session") or {}).get("maxSessions")
    if max_sessions and len(sessions) > max_sessions:
        oldest_first = sorted(sessions, key=lambda n: _activity_key(runtime, n))
        for name in oldest_first[: len(sessions) - max_sessions]:
            if name in protected or name == current or name in reasons:
                continue
            reasons[name] = f"more than {max_sessions} session branches"

    return {
        "cleanupCandidates": [name for name in names if name in reasons],
        "cleanupReasons": {name: reasons[name] for name in names if name in reasons},
    }


def stale_branches(computed, runtime) -> Decision:
    now = parse_timestamp(runtime.get("observedAt"))
    limit = computed["settings"]["branchAgeDays"]
    protected = set(_protected(computed))
    stale = []
    if now is not None:
        for name in _branches(runtime).get("all") or []:
            if name in protected or name == runtime.get("currentBranch"):
                continue
            if classify_branch(name, computed["branchPatterns"]) is None:
                continue
            last = parse_timestamp(_details(runtime, name).get("lastCommitAt"))
            if last is not None and now - last >= timedelta(days=limit):
                stale.append(name)
    return {"staleBranches": stale}


def next_session_name(computed, runtime) -> Decision:
    now = parse_timestamp(runtime.get("observedAt"))
    if now is None:
        return {"nextSessionName": None}
    name = computed["sessionNamePattern"]["full"]
    name = name.replace("{timestamp}", now.strftime("%Y%m%d-%H%M%S")).replace("{date}", now.strftime("%Y-%m-%d"))
    return {"nextSessionName": name}


def sync_decisions(computed, runtime) -> Decision:
    """Remote synchronization answers: True, False, or 'prompt' to ask the user."""
    settings = computed["settings"]
    sync = computed["workflows"]["synchronization"]
    git = runtime.get("git") or {}
    clean = git.get("isClean") is not False and not (git.get("uncommittedCount") or 0)

    pull = {"always": True, "never": False, "if-clean": clean}.get(sync["pullOnStart"], "prompt")
    branch_type = classify_branch(runtime.get("currentBranch"), computed["branchPatterns"])
    push = {"always": True, "never": False, "if-feature": branch_type == "feature"}.get(
        sync["pushOnStop"], "prompt"
    )
    return {
        "shouldFetchOnStart": bool(settings["fetchOnStart"]) and settings["teamSyncMode"] != "off",
        "shouldPullOnStart": pull,
        "shouldPushOnStop": push,
    }


def suggested_branch_type(computed, runtime) -> Decision:
    policy = computed["settings"]["onMissingBranchType"]
    patterns = computed["branchPatterns"]
    suggestion = None
    if policy == "use-feature":
        suggestion = "feature" if "feature" in patterns else next(iter(patterns), None)
    return {"suggestedBranchType": suggestion}


DECISION_FUNCTIONS = (
    branch_creation,
    current_branch_info,
    merge_target,
    cleanup_candidates,
    stale_branches,
    next_session_name,
    sync_decisions,
    suggested_branch_type,
)


def make_decisions(computed, runtime) -> Decision:
    """Composes every decision category into one section."""
    decisions: Decision = {}
    for decide in DECISION_FUNCTIONS:
        decisions.update(decide(computed, runtime))
    return decisions
