# src/aipmstate/store.py: The state store for one workspace.
# StateStore owns the persisted document under <root>/.aipm/state. Reads are
# lock-free and served from the last atomically swapped file; every write goes
# through an AtomicOperation. Refresh re-derives a section from its source of
# truth (the opinions file for computed, GitFacts for runtime) and always leaves
# decisions recomputed.

import copy
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from .computer import compute_all
from .config import OpinionsConfig, load_config
from .decisions import parse_timestamp
from .document import (
    MISSING,
    Issue,
    ValidationReport,
    build_document,
    check_document,
    get_path,
    parse_document,
    runtime_drift,
    set_path,
    utc_now,
    writable_parts,
)
from .gitfacts import GitFacts, require_facts
from .lock import LockManager
from .sync import SECTIONS, SyncEngine
from .transaction import AtomicOperation, Transaction
from .util.errors import (
    ConsistencyError,
    InvalidPathError,
    PathNotFoundError,
)
from .util.fs import read_bytes
from .util.log import get_logger, set_log_level
from .util.paths import WorkspacePaths, find_config_path

logger = get_logger(__name__)

DEFAULT_LOCK_TIMEOUT = 30.0
REFRESH_SCOPES = ("all", "runtime", "computed", "decisions") + SECTIONS

Updates = Union[Dict[str, Any], Iterable[Tuple[str, Any]]]


class StateStore:
    """Reads and mutates the state document of one workspace."""

    def __init__(
        self,
        root,
        facts: GitFacts,
        config: Optional[OpinionsConfig] = None,
        config_path=None,
        lock_timeout: Optional[float] = None,
        lock_mechanism: str = "auto",
    ):
        self.facts = require_facts(facts)
        self.paths = WorkspacePaths.for_root(root)
        self.config_path = config_path
        self._pinned_config = config
        self._config = config
        self._resolved_config_path = None
        self._leveled_config: Optional[OpinionsConfig] = None
        self._lock_timeout = lock_timeout
        self.lock = LockManager(self.paths.lock_file, mechanism=lock_mechanism)
        self.atomic = AtomicOperation(self)
        self.sync = SyncEngine(self)
        self._cache: Optional[Tuple[Tuple[int, int, int], Dict[str, Any]]] = None

    # --- Configuration ---

    def config(self) -> OpinionsConfig:
        """The opinions configuration, loaded on first use."""
        if self._config is None:
            path = find_config_path(self.paths.root, self.config_path)
            self._config = load_config(path)
            self._resolved_config_path = str(path) if path else None
        if self._leveled_config is not self._config:
            set_log_level(self._config.defaults.logging.level)
            self._leveled_config = self._config
        return self._config

    @property
    def lock_timeout(self) -> float:
        if self._lock_timeout is not None:
            return self._lock_timeout
        if self._config is not None:
            return float(self._config.defaults.timeouts.lock)
        return DEFAULT_LOCK_TIMEOUT

    # --- Reads ---

    def exists(self) -> bool:
        return self.paths.state_file.is_file()

    def read(self) -> Optional[Dict[str, Any]]:
        """The persisted document, or None when the workspace is not initialized."""
        try:
            stat = self.paths.state_file.stat()
        except FileNotFoundError:
            self._cache = None
            return None
        key = (stat.st_mtime_ns, stat.st_size, stat.st_ino)
        if self._cache is not None and self._cache[0] == key:
            return self._cache[1]
        data = read_bytes(self.paths.state_file)
        if data is None:
            return None
        document = parse_document(data)
        self._cache = (key, document)
        return document

    def document(self) -> Dict[str, Any]:
        document = self.read()
        if document is None:
            raise PathNotFoundError("State document does not exist; initialize the workspace first")
        return copy.deepcopy(document)

    def get(self, path: str, default: Any = MISSING) -> Any:
        """
        Looks up a dotted path without taking the lock.

        Raises:
            PathNotFoundError: If the path does not resolve and no default is given.
        """
        document = self.read()
        if document is None:
            if default is not MISSING:
                return default
            raise PathNotFoundError(
                f"State path '{path}' not found; the workspace is not initialized",
                section=path.split(".", 1)[0] if isinstance(path, str) else None,
            )
        return copy.deepcopy(get_path(document, path, default))

    # --- Transactions ---

    def begin(self, name: str) -> Transaction:
        return self.atomic.begin(name)

    def commit(self, tx: Transaction) -> None:
        self.atomic.commit(tx)

    def rollback(self, tx: Transaction) -> None:
        self.atomic.rollback(tx)

    def transaction(self, name: str):
        """Context manager: commit on success, roll back on any error."""
        return self.atomic.run(name)

    def mutate(self, name: str, change: Callable[[Transaction], Any]) -> Any:
        """Applies `change` in the open transaction, or in a new one named `name`."""
        if self.atomic.active is not None:
            return change(self.atomic.active)
        with self.atomic.run(name) as tx:
            return change(tx)

    # --- Writes ---

    def initialize(self, config: Optional[OpinionsConfig] = None) -> Dict[str, Any]:
        """Full rebuild: config, computed, runtime and decisions under one lock."""
        self._config = config or self._pinned_config
        config = self.config()
        computed = compute_all(config)
        with self.atomic.run("initialize", verify=False) as tx:
            previous = tx.document
            runtime = self.sync.collect_runtime(computed, previous.get("runtime"))
            tx.document = build_document(
                config,
                computed,
                runtime,
                config_path=self._resolved_config_path,
                created_at=(previous.get("metadata") or {}).get("createdAt"),
            )
            tx.mark_refreshed()
            document = tx.document
        logger.info(f"Initialized state for workspace '{config.workspace.name}'")
        return copy.deepcopy(document)

    def update(self, path: str, value: Any) -> None:
        """Writes one runtime value; wrapped in its own transaction unless one is open."""
        writable_parts(path)
        self.mutate(f"update {path}", lambda tx: tx.set(path, value))

    def update_batch(self, updates: Updates) -> None:
        """Applies every update or none of them."""
        pairs = list(updates.items()) if isinstance(updates, dict) else [tuple(u) for u in updates]
        for pair in pairs:
            if len(pair) != 2:
                raise InvalidPathError(f"Batch entries must be (path, value) pairs, got {pair!r}")
            writable_parts(pair[0])

        def apply(tx: Transaction) -> None:
            staged = copy.deepcopy(tx.document)
            for path, value in pairs:
                set_path(staged, path, value)
            tx.document = staged

        self.mutate(f"update batch ({len(pairs)})", apply)

    def increment(self, path: str, delta: int = 1) -> int:
        def apply(tx: Transaction) -> int:
            current = tx.get(path, 0)
            if isinstance(current, bool) or not isinstance(current, int):
                raise InvalidPathError(f"State path '{path}' does not hold an integer", section="runtime")
            tx.set(path, current + delta)
            return current + delta
        writable_parts(path)
        return self.mutate(f"increment {path}", apply)

    def append(self, path: str, value: Any) -> None:
        def apply(tx: Transaction) -> None:
            current = tx.get(path, [])
            if not isinstance(current, list):
                raise InvalidPathError(f"State path '{path}' does not hold a list", section="runtime")
            tx.set(path, current + [value])
        writable_parts(path)
        self.mutate(f"append {path}", apply)

    def remove(self, path: str) -> Any:
        writable_parts(path)
        return self.mutate(f"remove {path}", lambda tx: tx.remove(path))

    def refresh(self, scope: str = "all") -> None:
        """
        Re-derives part of the document from its source of truth.

        Args:
            scope: 'all' rebuilds everything; 'runtime' re-syncs every runtime
                fact; 'branches', 'status' or 'remote' re-sync one subsection;
                'computed' reloads the configuration; 'decisions' recomputes
                decisions only.
        """
        if scope == "all":
            self.initialize()
        elif scope == "runtime":
            self.sync.full_sync()
        elif scope in SECTIONS:
            self.sync.partial_sync(scope)
        elif scope == "computed":
            self._refresh_computed()
        elif scope == "decisions":
            with self.atomic.run("refresh decisions"):
                pass
        else:
            raise InvalidPathError(
                f"Unknown refresh scope '{scope}'; expected one of {', '.join(REFRESH_SCOPES)}"
            )

    def _refresh_computed(self) -> None:
        self._config = self._pinned_config
        config = self.config()
        computed = compute_all(config)
        with self.atomic.run("refresh computed", verify=False) as tx:
            if not tx.document:
                raise PathNotFoundError("State document does not exist; initialize the workspace first")
            tx.document["rawConfig"] = config.to_raw()
            tx.document["computed"] = computed
            tx.document["metadata"]["configHash"] = config.content_hash()

    # --- Consistency ---

    def validate(self, observe: bool = True) -> ValidationReport:
        """Checks sections and derived values; with `observe`, compares live status facts."""
        document = self.read()
        if document is None:
            return ValidationReport(errors=[Issue("metadata", "State document does not exist", fatal=True)])
        observed = self.sync.collect_status() if observe else None
        return check_document(document, observed)

    def repair(self) -> ValidationReport:
        """
        Repairs drift by refreshing the drifted section.

        Raises:
            ConsistencyError: If computed or rawConfig is corrupted; that needs
                a full re-initialization.
        """
        report = self.validate(observe=True)
        if report.errors:
            raise ConsistencyError(
                "; ".join(issue.message for issue in report.errors)
                + "; run 'aipm-state init' to rebuild the state",
                section=report.errors[0].section,
                fatal=True,
            )
        sections = report.drift_sections()
        for issue in report.drift:
            logger.warning(f"Drift in {issue.section}: {issue.message}")
        if "runtime" in sections:
            self.refresh("runtime")
        elif "decisions" in sections:
            self.refresh("decisions")
        return report

    def ensure_loaded(self, max_age: Optional[float] = None) -> Dict[str, Any]:
        """
        Makes sure a current document exists before a command uses it.

        Initializes when the document is missing, unreadable, or built from a
        different configuration. Re-syncs runtime when the repository status
        drifted from the stored facts, or when lastRefresh is older than
        `max_age` seconds.
        """
        try:
            document = self.read()
        except ConsistencyError as e:
            logger.warning(f"{e.message}; re-initializing")
            return self.initialize()
        if document is None:
            return self.initialize()
        config = self.config()
        if (document.get("metadata") or {}).get("configHash") != config.content_hash():
            logger.info("Configuration changed since the state was built; re-initializing")
            return self.initialize(config)
        drift = runtime_drift(document.get("runtime"), self.sync.collect_status())
        if drift:
            for issue in drift:
                logger.info(f"Drift in runtime: {issue.message}")
            self.refresh("runtime")
        elif max_age is not None:
            last = parse_timestamp((document.get("metadata") or {}).get("lastRefresh"))
            now = parse_timestamp(utc_now())
            if last is None or now - last > timedelta(seconds=max_age):
                self.refresh("runtime")
        return self.document()

