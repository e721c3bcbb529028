# src/aipmstate/computer.py: Pure derivations from the resolved configuration.
# Everything in the document's 'computed' section is produced here from the
# configuration alone: prefixed branch patterns with their globs and regexes,
# the protected-branch set, the lifecycle matrix and the workflow rule table.
# The functions do no I/O and depend on nothing but their input, so computing
# twice from the same rawConfig yields byte-identical output.

import re
from typing import Any, Dict, List, Optional

from .config import LifecycleRuleConfig, NAMING_REFERENCE, OpinionsConfig
from .util.errors import ConsistencyError

PLACEHOLDER = re.compile(r"\{([^{}]+)\}")

PROMPTS = {
    "branchCreation": {
        "startBehavior": "Create a new session branch before starting work?",
        "protectionResponse": "'{branch}' is protected. Create a working branch instead?",
        "typeSelection": "What type of branch do you want to create?",
    },
    "merging": {
        "featureComplete": "Work on '{branch}' looks complete. Merge it into '{target}'?",
        "conflictHandling": "Merge conflicts detected in '{branch}'. How should they be resolved?",
    },
    "synchronization": {
        "pullOnStart": "Pull the latest changes from the remote before starting?",
        "pushOnStop": "Push your changes to the remote before stopping?",
    },
    "cleanup": {
        "afterMerge": "'{branch}' has been merged. Delete it now?",
        "staleHandling": "{count} branch(es) have had no commits for {days} days. Review them now?",
        "failedWork": "'{branch}' was abandoned. What should happen to its work?",
    },
}


def _unique(items) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def resolve_template(template: str, naming: Dict[str, str]) -> str:
    """Expands {naming.<type>} references; the configuration loader rejects cycles."""
    def expand(match):
        return resolve_template(naming[match.group(1)], naming)
    return NAMING_REFERENCE.sub(expand, template)


def _template_regex(full: str) -> str:
    pieces = PLACEHOLDER.split(full)
    # re.split with one capture group alternates literal text and placeholder names.
    body = "".join(re.escape(piece) if i % 2 == 0 else "(.+)" for i, piece in enumerate(pieces))
    return f"^{body}$"


def make_pattern(prefix: str, template: str) -> Dict[str, str]:
    full = f"{prefix}{template}"
    return {
        "template": template,
        "full": full,
        "glob": PLACEHOLDER.sub("*", full),
        "regex": _template_regex(full),
        "literalPrefix": full.split("{", 1)[0],
    }


def branch_patterns(config: OpinionsConfig) -> Dict[str, Dict[str, str]]:
    """One Pattern per declared branch type, in declaration order."""
    return {
        branch_type: make_pattern(config.prefix, resolve_template(template, config.naming))
        for branch_type, template in config.naming.items()
    }


def classify_branch(name: Optional[str], patterns: Dict[str, Dict[str, str]]) -> Optional[str]:
    """
    Returns the branch type whose pattern matches `name`.

    The pattern with the longest literal prefix wins; equal lengths resolve to
    the type declared first.
    """
    if not name:
        return None
    best = None
    best_length = -1
    for branch_type, pattern in patterns.items():
        if re.match(pattern["regex"], name) and len(pattern["literalPrefix"]) > best_length:
            best = branch_type
            best_length = len(pattern["literalPrefix"])
    return best


def protected_branches(config: OpinionsConfig) -> Dict[str, Any]:
    protected = config.branching.protected_branches
    user = list(protected.user_branches)
    aipm = [{"suffix": suffix, "full": f"{config.prefix}{suffix}"} for suffix in protected.aipm_branch_suffixes]
    return {
        "userBranches": user,
        "aipmBranches": aipm,
        "mainBranch": config.main_branch,
        "all": _unique(user + [branch["full"] for branch in aipm] + [config.main_branch]),
    }


def lifecycle_rule(rule: LifecycleRuleConfig) -> Dict[str, Any]:
    days = rule.days_to_keep
    trigger = "mergeDate" if rule.delete_after_merge else "lastCommit"
    event = "merge" if rule.delete_after_merge else "last commit"
    if days == "never" or days == -1:
        timing, days, description = "never", None, "Keep forever"
    elif days == 0:
        timing, description = "immediate", f"Delete immediately after {event}"
    else:
        timing, description = "scheduled", f"Delete {days} days after {event}"
    return {
        "timing": timing,
        "days": days,
        "trigger": trigger,
        "deleteAfterMerge": rule.delete_after_merge,
        "maxSessions": rule.max_sessions,
        "description": description,
    }


def lifecycle_matrix(config: OpinionsConfig) -> Dict[str, Any]:
    for branch_type in config.lifecycle.rules:
        if branch_type not in config.naming:
            raise ConsistencyError(
                f"Lifecycle rule references unknown branch type '{branch_type}'",
                section="computed",
                fatal=True,
            )
    types = {
        branch_type: lifecycle_rule(config.lifecycle.rules.get(branch_type) or LifecycleRuleConfig())
        for branch_type in config.naming
    }
    glob = config.lifecycle.global_
    return {
        "types": types,
        "global": {
            "handleUncommitted": glob.handle_uncommitted,
            "conflictResolution": glob.conflict_resolution,
            "allowOverride": glob.allow_override,
            "trackActivity": glob.track_activity,
        },
    }


def _flow(rule, main_branch: str, naming: Dict[str, str], direction: str) -> Dict[str, Any]:
    by_type = {}
    for branch_type, target in rule.by_type.items():
        if branch_type not in naming:
            raise ConsistencyError(
                f"Branch flow {direction} reference unknown branch type '{branch_type}'",
                section="computed",
                fatal=True,
            )
        by_type[branch_type] = target.replace("{mainBranch}", main_branch)
    return {"default": rule.default.replace("{mainBranch}", main_branch), "byType": by_type}


def workflow_rules(config: OpinionsConfig) -> Dict[str, Any]:
    wf = config.workflows
    main = config.main_branch
    cleanup_prompts = dict(PROMPTS["cleanup"])
    cleanup_prompts["staleHandling"] = cleanup_prompts["staleHandling"].replace(
        "{days}", str(config.defaults.limits.branch_age_days)
    )
    return {
        "branchCreation": {
            "startBehavior": wf.branch_creation.start_behavior,
            "protectionResponse": wf.branch_creation.protection_response,
            "typeSelection": wf.branch_creation.type_selection,
            "prompts": dict(PROMPTS["branchCreation"]),
        },
        "merging": {
            "featureComplete": wf.merging.feature_complete,
            "conflictHandling": wf.merging.conflict_handling,
            "strategy": wf.merging.strategy,
            "prompts": dict(PROMPTS["merging"]),
        },
        "synchronization": {
            "pullOnStart": wf.synchronization.pull_on_start,
            "pushOnStop": wf.synchronization.push_on_stop,
            "autoBackup": wf.synchronization.auto_backup,
            "prompts": dict(PROMPTS["synchronization"]),
        },
        "cleanup": {
            "afterMerge": wf.cleanup.after_merge,
            "staleHandling": wf.cleanup.stale_handling,
            "failedWork": wf.cleanup.failed_work,
            "prompts": cleanup_prompts,
        },
        "branchFlow": {
            "sources": _flow(wf.branch_flow.sources, main, config.naming, "sources"),
            "targets": _flow(wf.branch_flow.targets, main, config.naming, "targets"),
            "parentTracking": wf.branch_flow.parent_tracking,
        },
    }


def settings(config: OpinionsConfig) -> Dict[str, Any]:
    """Scalar opinions the decision functions read."""
    return {
        "workspaceType": config.workspace.type,
        "validationMode": config.validation.mode,
        "requireCleanTree": config.validation.rules.require_clean_tree,
        "enforceNaming": config.validation.rules.enforce_naming,
        "blockWrongPrefix": config.validation.rules.block_wrong_prefix,
        "branchAgeDays": config.defaults.limits.branch_age_days,
        "sessionHistoryLimit": config.defaults.limits.session_history,
        "fetchOnStart": config.team.fetch_on_start,
        "teamSyncMode": config.team.sync_mode,
        "sessionsEnabled": config.sessions.enabled,
        "allowMultipleSessions": config.sessions.allow_multiple,
        "onMissingBranchType": config.error_handling.on_missing_branch_type,
        "lockTimeout": float(config.defaults.timeouts.lock),
        "gitTimeout": config.defaults.timeouts.git,
        "logLevel": config.defaults.logging.level,
    }


def compute_all(config: OpinionsConfig) -> Dict[str, Any]:
    """Builds the full 'computed' section."""
    session_template = resolve_template(config.sessions.name_pattern, config.naming)
    return {
        "prefix": config.prefix,
        "mainBranch": config.main_branch,
        "branchPatterns": branch_patterns(config),
        "protectedBranches": protected_branches(config),
        "lifecycleMatrix": lifecycle_matrix(config),
        "workflows": workflow_rules(config),
        "sessionNamePattern": make_pattern(config.prefix, session_template),
        "settings": settings(config),
    }
