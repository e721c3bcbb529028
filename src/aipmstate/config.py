# src/aipmstate/config.py: Pydantic models for the opinions document.
# This module defines the schema of 'opinions.yaml' as a tree of frozen Pydantic
# models whose defaults are the compiled-in opinions. Loading layers the explicit
# document over those defaults, enforces enum/boolean/number types and the
# cross-field prefix rules, and applies the document's onError policy
# (fail, warn or use-defaults) to anything that does not validate.

from __future__ import annotations

import copy
import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional, Union

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    field_validator,
    model_serializer,
    model_validator,
)
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel, to_snake

from .util.errors import ConfigError, ValidationError
from .util.fs import canonical_json
from .util.log import get_logger

logger = get_logger(__name__)

DEFAULT_WORKSPACE_NAME = "AIPM"
DEFAULT_PREFIX = "AIPM_"
DEFAULT_REQUIRED_SECTIONS = ["workspace", "branching", "memory", "lifecycle", "workflows"]
ON_ERROR_POLICIES = ("fail", "warn", "use-defaults")

DEFAULT_NAMING = {
    "feature": "feature/{description}",
    "bugfix": "bugfix/{issue-id}-{description}",
    "test": "test/{scope}",
    "session": "session/{timestamp}",
    "release": "release/{version}",
    "framework": "framework/{component}",
    "refactor": "refactor/{scope}",
    "docs": "docs/{scope}",
    "chore": "chore/{task}",
}

DEFAULT_LIFECYCLE = {
    "feature": {"deleteAfterMerge": False, "daysToKeep": 30},
    "bugfix": {"deleteAfterMerge": True, "daysToKeep": 14},
    "test": {"deleteAfterMerge": True, "daysToKeep": 14},
    "session": {"deleteAfterMerge": True, "daysToKeep": 7, "maxSessions": 5},
    "release": {"deleteAfterMerge": False, "daysToKeep": "never"},
    "framework": {"deleteAfterMerge": False, "daysToKeep": 90},
    "refactor": {"deleteAfterMerge": True, "daysToKeep": 30},
    "docs": {"deleteAfterMerge": True, "daysToKeep": 60},
    "chore": {"deleteAfterMerge": True, "daysToKeep": 7},
}

DEFAULT_FLOW_SOURCES = {
    "feature": "{mainBranch}",
    "bugfix": "{mainBranch}",
    "release": "{mainBranch}",
    "session": "current",
    "test": "current",
}

DEFAULT_FLOW_TARGETS = {
    "feature": "{mainBranch}",
    "bugfix": "{mainBranch}",
    "session": "parent",
    "test": "parent",
    "release": "none",
}

NAMING_REFERENCE = re.compile(r"\{naming\.([A-Za-z0-9_-]+)\}")


def _layer(defaults: Dict[str, Any], value: Any) -> Any:
    """Explicit keys first in their declared order, then the remaining defaults."""
    if value is None:
        value = {}
    if not isinstance(value, dict):
        return value
    merged = dict(value)
    for key, default in defaults.items():
        merged.setdefault(key, default)
    return merged


# --- Pydantic Models for the Opinions Schema ---

class _Section(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, validate_default=True)


class WorkspaceConfig(_Section):
    type: Literal["framework", "project"] = "framework"
    name: str = DEFAULT_WORKSPACE_NAME
    description: str = ""


class ProtectedBranchesConfig(_Section):
    user_branches: List[str] = Field(default_factory=list)
    aipm_branch_suffixes: List[str] = Field(default_factory=lambda: ["MAIN"])


class BranchingConfig(_Section):
    prefix: str = DEFAULT_PREFIX
    main_branch_suffix: str = "MAIN"
    protected_branches: ProtectedBranchesConfig = Field(default_factory=ProtectedBranchesConfig)


class LifecycleRuleConfig(_Section):
    delete_after_merge: StrictBool = False
    days_to_keep: Union[int, Literal["never"]] = 30
    max_sessions: Optional[int] = Field(default=None, ge=1)

    @field_validator("days_to_keep")
    @classmethod
    def _not_below_never(cls, value):
        if isinstance(value, int) and value < -1:
            raise ValueError("daysToKeep must be -1, 'never', or a non-negative number of days")
        return value


class LifecycleGlobalConfig(_Section):
    handle_uncommitted: Literal["stash", "commit", "fail"] = "stash"
    conflict_resolution: Literal["interactive", "ours", "theirs", "abort"] = "interactive"
    allow_override: StrictBool = False
    track_activity: StrictBool = True


class LifecycleConfig(_Section):
    """Per-branch-type rules sit beside 'global' on disk; in memory they live in `rules`."""
    global_: LifecycleGlobalConfig = Field(default_factory=LifecycleGlobalConfig, alias="global")
    rules: Dict[str, LifecycleRuleConfig] = Field(
        default_factory=lambda: {
            name: LifecycleRuleConfig.model_validate(rule) for name, rule in DEFAULT_LIFECYCLE.items()
        }
    )

    @model_validator(mode="before")
    @classmethod
    def _split_rules(cls, data):
        if not isinstance(data, dict) or "rules" in data:
            return data
        rules: Dict[str, Any] = {}
        for key, value in data.items():
            if key in ("global", "global_"):
                continue
            if isinstance(value, dict):
                rules[key] = {**DEFAULT_LIFECYCLE.get(key, {}), **value}
            else:
                rules[key] = value
        for name, rule in DEFAULT_LIFECYCLE.items():
            rules.setdefault(name, dict(rule))
        split = {"rules": rules}
        if "global" in data:
            split["global"] = data["global"]
        elif "global_" in data:
            split["global"] = data["global_"]
        return split

    @model_serializer(mode="wrap")
    def _flatten(self, handler):
        data = handler(self)
        rules = data.pop("rules", {})
        return {**data, **rules}


class MemoryConfig(_Section):
    entity_prefix: str = DEFAULT_PREFIX
    categories: List[str] = Field(
        default_factory=lambda: ["CONTEXT", "DECISION", "LEARNING", "TASK", "REVIEW"]
    )


class TeamConfig(_Section):
    sync_mode: Literal["auto", "prompt", "manual", "off"] = "prompt"
    fetch_on_start: StrictBool = True


class SessionsConfig(_Section):
    enabled: StrictBool = True
    auto_create: StrictBool = True
    cleanup_on_merge: StrictBool = True
    allow_multiple: StrictBool = False
    name_pattern: str = "{naming.session}"


class ValidationRulesConfig(_Section):
    enforce_naming: StrictBool = True
    block_wrong_prefix: StrictBool = True
    require_clean_tree: StrictBool = True
    validate_memory: StrictBool = True


class ValidationConfig(_Section):
    mode: Literal["strict", "relaxed", "gradual"] = "strict"
    rules: ValidationRulesConfig = Field(default_factory=ValidationRulesConfig)


class BranchCreationConfig(_Section):
    start_behavior: Literal["prompt", "always", "never"] = "prompt"
    protection_response: Literal["prompt", "warn", "block"] = "warn"
    type_selection: Literal["prompt", "auto"] = "prompt"


class MergingConfig(_Section):
    feature_complete: Literal["prompt", "auto", "manual"] = "prompt"
    conflict_handling: Literal["interactive", "ours", "theirs", "abort"] = "interactive"
    strategy: Literal["merge", "squash", "rebase"] = "merge"


class SynchronizationConfig(_Section):
    pull_on_start: Literal["always", "if-clean", "prompt", "never"] = "prompt"
    push_on_stop: Literal["always", "if-feature", "prompt", "never"] = "prompt"
    auto_backup: StrictBool = True


class CleanupConfig(_Section):
    after_merge: Literal["immediate", "prompt", "scheduled", "never"] = "prompt"
    stale_handling: Literal["notify", "archive", "delete", "ignore"] = "notify"
    failed_work: Literal["archive", "delete", "keep"] = "archive"


class SourceFlowConfig(_Section):
    default: str = "{mainBranch}"
    by_type: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_FLOW_SOURCES))

    @field_validator("by_type", mode="before")
    @classmethod
    def _layer_defaults(cls, value):
        return _layer(DEFAULT_FLOW_SOURCES, value)


class TargetFlowConfig(_Section):
    default: str = "{mainBranch}"
    by_type: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_FLOW_TARGETS))

    @field_validator("by_type", mode="before")
    @classmethod
    def _layer_defaults(cls, value):
        return _layer(DEFAULT_FLOW_TARGETS, value)


class BranchFlowConfig(_Section):
    sources: SourceFlowConfig = Field(default_factory=SourceFlowConfig)
    targets: TargetFlowConfig = Field(default_factory=TargetFlowConfig)
    parent_tracking: StrictBool = True


class WorkflowsConfig(_Section):
    branch_creation: BranchCreationConfig = Field(default_factory=BranchCreationConfig)
    merging: MergingConfig = Field(default_factory=MergingConfig)
    synchronization: SynchronizationConfig = Field(default_factory=SynchronizationConfig)
    cleanup: CleanupConfig = Field(default_factory=CleanupConfig)
    branch_flow: BranchFlowConfig = Field(default_factory=BranchFlowConfig)


class TimeoutsConfig(_Section):
    session: int = Field(default=3600, ge=0)
    operation: int = Field(default=30, ge=0)
    git: int = Field(default=120, ge=1)
    lock: float = Field(default=30.0, ge=0)


class LimitsConfig(_Section):
    backup_count: int = Field(default=10, ge=0)
    session_history_days: int = Field(default=30, ge=0)
    branch_age_days: int = Field(default=90, ge=1)
    session_history: int = Field(default=20, ge=0)


class LoggingConfig(_Section):
    level: Literal["debug", "info", "warn", "error"] = "info"


class DefaultsConfig(_Section):
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


class ErrorHandlingConfig(_Section):
    on_missing_branch_type: Literal["use-feature", "fail", "prompt"] = "use-feature"


class LoadingValidationConfig(_Section):
    required: List[str] = Field(default_factory=lambda: list(DEFAULT_REQUIRED_SECTIONS))
    on_error: Literal["fail", "warn", "use-defaults"] = "fail"
    hash_check: StrictBool = True


class PrefixRulesConfig(_Section):
    pattern: str = r"^[A-Z][A-Z0-9_]*_$"
    reserved: List[str] = Field(default_factory=lambda: ["GIT_", "HEAD_", "ORIG_"])


class LoadingContextConfig(_Section):
    prefix_rules: PrefixRulesConfig = Field(default_factory=PrefixRulesConfig)


class LoadingConfig(_Section):
    validation: LoadingValidationConfig = Field(default_factory=LoadingValidationConfig)
    context: LoadingContextConfig = Field(default_factory=LoadingContextConfig)


class OpinionsConfig(_Section):
    """The fully-resolved opinions tree. Unknown top-level sections are kept as-is."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True, validate_default=True, extra="allow"
    )

    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    branching: BranchingConfig = Field(default_factory=BranchingConfig)
    naming: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_NAMING))
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    team: TeamConfig = Field(default_factory=TeamConfig)
    sessions: SessionsConfig = Field(default_factory=SessionsConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    workflows: WorkflowsConfig = Field(default_factory=WorkflowsConfig)
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)
    loading: LoadingConfig = Field(default_factory=LoadingConfig)

    @model_validator(mode="before")
    @classmethod
    def _derive_prefixes(cls, data):
        # branching.prefix defaults to "<workspace name>_", memory.entityPrefix to the prefix.
        if not isinstance(data, dict):
            return data
        data = dict(data)
        workspace = data.get("workspace")
        name = DEFAULT_WORKSPACE_NAME
        if isinstance(workspace, dict) and isinstance(workspace.get("name"), str):
            name = workspace["name"]
        branching = data.get("branching")
        if branching is None:
            branching = {}
        if isinstance(branching, dict) and "prefix" not in branching:
            branching = {**branching, "prefix": f"{name}_"}
            data["branching"] = branching
        memory = data.get("memory")
        if memory is None:
            memory = {}
        if isinstance(memory, dict) and "entityPrefix" not in memory and "entity_prefix" not in memory:
            if isinstance(branching, dict) and isinstance(branching.get("prefix"), str):
                data["memory"] = {**memory, "entityPrefix": branching["prefix"]}
        return data

    @field_validator("naming", mode="before")
    @classmethod
    def _layer_naming(cls, value):
        return _layer(DEFAULT_NAMING, value)

    @property
    def prefix(self) -> str:
        return self.branching.prefix

    @property
    def main_branch(self) -> str:
        return f"{self.branching.prefix}{self.branching.main_branch_suffix}"

    def to_raw(self) -> Dict[str, Any]:
        """The resolved tree with on-disk keys, as stored in rawConfig."""
        return self.model_dump(mode="json", by_alias=True)

    def content_hash(self) -> str:
        """Stable digest over the resolved tree."""
        return hashlib.sha256(canonical_json(self.to_raw()).encode("utf-8")).hexdigest()


# --- Validation problems and the onError policy ---

@dataclass
class _Problem:
    error: ValidationError
    repair: Callable[[Dict[str, Any]], None]


def _key_of(node: Dict[str, Any], part) -> Optional[str]:
    # Locations use aliases; the document may spell a field by its Python name.
    if part in node:
        return part
    if isinstance(part, str):
        for candidate in (to_snake(part), f"{part}_"):
            if candidate in node:
                return candidate
    return None


def _walk(document: Dict[str, Any], loc) -> List[Union[str, int]]:
    """Maps a Pydantic error location onto the keys that exist in the document."""
    path: List[Union[str, int]] = []
    node: Any = document
    for part in loc:
        key = _key_of(node, part) if isinstance(node, dict) else None
        if key is not None:
            path.append(key)
            node = node[key]
        elif isinstance(node, list) and isinstance(part, int) and 0 <= part < len(node):
            path.append(part)
            node = node[part]
    return path


def _dotted(path) -> str:
    return ".".join(str(part) for part in path)


def _drop(document: Dict[str, Any], path) -> None:
    node: Any = document
    for part in path[:-1]:
        node = node[part]
    del node[path[-1]]


def _set(document: Dict[str, Any], path: List[str], value: Any) -> None:
    node = document
    for part in path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[path[-1]] = value


def _schema_problem(document: Dict[str, Any], err: Dict[str, Any]) -> _Problem:
    path = _walk(document, err["loc"])
    field = _dotted(path) or "<root>"
    allowed = None
    expected = (err.get("ctx") or {}).get("expected")
    if err.get("type") == "literal_error" and expected:
        allowed = re.findall(r"'([^']*)'", str(expected))
    message = f"{field}: {err['msg']} (got {err.get('input')!r})"
    if allowed:
        message = f"{field}: invalid value {err.get('input')!r}, allowed: {', '.join(allowed)}"
    error = ValidationError(message, fields=[field], value=err.get("input"), allowed=allowed)

    def repair(doc):
        if not path:
            raise ConfigError(f"Configuration cannot be repaired: {message}")
        _drop(doc, path)

    return _Problem(error, repair)


def _naming_reference_problems(config: OpinionsConfig) -> List[_Problem]:
    problems = []
    naming = config.naming

    def chain(name, seen):
        for ref in NAMING_REFERENCE.findall(naming.get(name, "")):
            if ref not in naming:
                return f"references unknown branch type '{ref}'"
            if ref in seen:
                return f"has a circular reference through '{ref}'"
            found = chain(ref, seen | {ref})
            if found:
                return found
        return None

    for name in naming:
        issue = chain(name, {name})
        if issue:
            def repair(doc, name=name):
                if name in DEFAULT_NAMING:
                    _set(doc, ["naming", name], DEFAULT_NAMING[name])
                else:
                    doc["naming"].pop(name, None)
            problems.append(_Problem(
                ValidationError(f"naming.{name} {issue}", fields=[f"naming.{name}"], value=naming[name]),
                repair,
            ))
    for ref in NAMING_REFERENCE.findall(config.sessions.name_pattern):
        if ref not in naming:
            problems.append(_Problem(
                ValidationError(
                    f"sessions.namePattern references unknown branch type '{ref}'",
                    fields=["sessions.namePattern"],
                    value=config.sessions.name_pattern,
                    allowed=list(naming),
                ),
                lambda doc: _drop(doc, ["sessions", "namePattern"]),
            ))
    return problems


def _cross_field_problems(config: OpinionsConfig) -> List[_Problem]:
    problems: List[_Problem] = []
    prefix = config.branching.prefix
    rules = config.loading.context.prefix_rules

    if config.memory.entity_prefix != prefix:
        problems.append(_Problem(
            ValidationError(
                f"branching.prefix ({prefix!r}) and memory.entityPrefix "
                f"({config.memory.entity_prefix!r}) must be equal",
                fields=["branching.prefix", "memory.entityPrefix"],
                value=(prefix, config.memory.entity_prefix),
            ),
            lambda doc: _set(doc, ["memory", "entityPrefix"], prefix),
        ))

    def reset_prefix(doc):
        _set(doc, ["branching", "prefix"], DEFAULT_PREFIX)
        _set(doc, ["memory", "entityPrefix"], DEFAULT_PREFIX)

    try:
        pattern = re.compile(rules.pattern)
    except re.error as e:
        problems.append(_Problem(
            ValidationError(
                f"loading.context.prefixRules.pattern is not a valid regular expression: {e}",
                fields=["loading.context.prefixRules.pattern"],
                value=rules.pattern,
            ),
            lambda doc: _drop(doc, ["loading", "context", "prefixRules", "pattern"]),
        ))
        pattern = None
    if pattern is not None and not pattern.match(prefix):
        problems.append(_Problem(
            ValidationError(
                f"branching.prefix {prefix!r} does not match pattern {rules.pattern!r}",
                fields=["branching.prefix"],
                value=prefix,
                allowed=[rules.pattern],
            ),
            reset_prefix,
        ))
    if prefix in rules.reserved:
        problems.append(_Problem(
            ValidationError(
                f"branching.prefix {prefix!r} is reserved",
                fields=["branching.prefix"],
                value=prefix,
                allowed=[f"not one of {', '.join(rules.reserved)}"],
            ),
            reset_prefix,
        ))

    for branch_type in config.lifecycle.rules:
        if branch_type not in config.naming:
            problems.append(_Problem(
                ValidationError(
                    f"lifecycle.{branch_type} has no matching naming.{branch_type} pattern",
                    fields=[f"lifecycle.{branch_type}"],
                    value=branch_type,
                    allowed=list(config.naming),
                ),
                lambda doc, t=branch_type: doc["lifecycle"].pop(t, None),
            ))

    flow = config.workflows.branch_flow
    for direction, rule in (("sources", flow.sources), ("targets", flow.targets)):
        for branch_type in rule.by_type:
            if branch_type not in config.naming:
                field = f"workflows.branchFlow.{direction}.byType.{branch_type}"
                problems.append(_Problem(
                    ValidationError(
                        f"{field} names an undeclared branch type",
                        fields=[field],
                        value=branch_type,
                        allowed=list(config.naming),
                    ),
                    lambda doc, d=direction, t=branch_type:
                        doc["workflows"]["branchFlow"][d]["byType"].pop(t, None),
                ))

    problems.extend(_naming_reference_problems(config))
    return problems


def _apply_policy(problems: List[_Problem], policy: str) -> None:
    if policy == "fail":
        first = problems[0].error
        fields: List[str] = []
        for problem in problems:
            fields.extend(f for f in problem.error.fields if f not in fields)
        raise ValidationError(
            "Configuration validation failed: " + "; ".join(p.error.message for p in problems),
            fields=fields,
            value=first.value,
            allowed=first.allowed,
        )
    for problem in problems:
        if policy == "warn":
            logger.warning(f"{problem.error.message}; using default")
        else:
            logger.debug(f"{problem.error.message}; using default")


def _resolve(document: Dict[str, Any], policy: str) -> OpinionsConfig:
    working = copy.deepcopy(document)
    # Each pass repairs at least one field, so the tree converges quickly.
    for _ in range(16):
        try:
            config = OpinionsConfig.model_validate(working)
        except PydanticValidationError as e:
            problems = [_schema_problem(working, err) for err in e.errors()]
            _apply_policy(problems, policy)
            for problem in problems:
                try:
                    problem.repair(working)
                except (KeyError, IndexError):
                    continue
            continue
        problems = _cross_field_problems(config)
        if not problems:
            return config
        _apply_policy(problems, policy)
        for problem in problems:
            problem.repair(working)
    raise ConfigError("Configuration could not be resolved with defaults.")


def _loading_validation(document: Dict[str, Any]) -> Dict[str, Any]:
    loading = document.get("loading")
    validation = loading.get("validation") if isinstance(loading, dict) else None
    return validation if isinstance(validation, dict) else {}


def _policy_of(document: Dict[str, Any], on_error: Optional[str]) -> str:
    if on_error is not None:
        if on_error not in ON_ERROR_POLICIES:
            raise ValidationError(
                f"onError policy {on_error!r} is not recognized",
                fields=["loading.validation.onError"],
                value=on_error,
                allowed=ON_ERROR_POLICIES,
            )
        return on_error
    declared = _loading_validation(document).get("onError")
    if declared in ON_ERROR_POLICIES:
        return declared
    return "fail"


def _check_required(document: Dict[str, Any], policy: str) -> None:
    required = _loading_validation(document).get("required")
    if not isinstance(required, list):
        required = DEFAULT_REQUIRED_SECTIONS
    missing = [section for section in required if section not in document]
    if not missing:
        return
    error = ValidationError(
        f"Required section(s) missing from configuration: {', '.join(missing)}",
        fields=missing,
        allowed=required,
    )
    if policy == "fail":
        raise error
    if policy == "warn":
        logger.warning(f"{error.message}; using defaults")


# --- Configuration Loading ---

def read_document(path) -> Dict[str, Any]:
    """Reads and parses an opinions YAML file into a plain mapping."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Configuration file not found: '{path}'")
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse configuration '{path}': {e}") from e
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigError(f"Configuration '{path}' must be a mapping at the top level.")
    return document


def load_config(path=None, on_error: Optional[str] = None) -> OpinionsConfig:
    """
    Loads, validates, and returns the opinions configuration.

    Args:
        path: The YAML document. When None, the compiled-in defaults are the
            whole configuration.
        on_error: Overrides the document's loading.validation.onError policy.

    Returns:
        The resolved, immutable configuration.

    Raises:
        ConfigError: If the file is missing or is not valid YAML.
        ValidationError: If a field is invalid and the policy is 'fail'.
    """
    document = read_document(path) if path is not None else {}
    policy = _policy_of(document, on_error)
    if path is not None:
        _check_required(document, policy)
    return _resolve(document, policy)


def config_from_raw(raw: Dict[str, Any]) -> OpinionsConfig:
    """Rebuilds a configuration from a stored rawConfig tree, strictly."""
    if not isinstance(raw, dict):
        raise ConfigError("rawConfig is not a mapping.")
    return _resolve(raw, "fail")


def dump_config(config: OpinionsConfig) -> str:
    """Serializes a configuration back to YAML with on-disk keys."""
    return yaml.safe_dump(config.to_raw(), sort_keys=False)
