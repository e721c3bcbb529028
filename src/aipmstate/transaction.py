# src/aipmstate/transaction.py: Begin/commit/rollback around state mutations.
# A transaction holds the state lock, a byte snapshot of the persisted
# document and a working copy. Mutations only touch the working copy; commit
# recomputes decisions, validates, and swaps the file in one atomic write.
# Rollback puts the snapshot back and always logs the operation name.

import copy
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .decisions import make_decisions
from .document import (
    MISSING,
    check_document,
    get_path,
    parse_document,
    remove_path,
    set_path,
    utc_now,
)
from .lock import LockHandle
from .util.errors import AipmStateError, ConsistencyError, TransactionError
from .util.fs import atomic_write, dump_json, read_bytes
from .util.log import get_logger, operation_context

logger = get_logger(__name__)


class Transaction:
    """One in-flight mutation of the state document."""

    def __init__(self, name: str, snapshot: Optional[bytes], document: Dict[str, Any], handle: LockHandle):
        self.name = name
        self.started_at = datetime.now(timezone.utc)
        self._started = time.monotonic()
        self.snapshot = snapshot
        self.document = document
        self.handle = handle
        self.state = "open"
        self.refreshed = False
        self._token = None

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def get(self, path: str, default: Any = MISSING) -> Any:
        return get_path(self.document, path, default)

    def set(self, path: str, value: Any) -> None:
        set_path(self.document, path, value)

    def remove(self, path: str) -> Any:
        return remove_path(self.document, path)

    def mark_refreshed(self) -> None:
        """Stamps metadata.lastRefresh on commit; used by syncs and reports."""
        self.refreshed = True

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self._started) * 1000)


class AtomicOperation:
    """Runs transactions against one store; at most one is open at a time."""

    def __init__(self, store):
        self.store = store
        self.active: Optional[Transaction] = None

    def _load_snapshot(self, verify: bool):
        snapshot = read_bytes(self.store.paths.state_file)
        if snapshot is None:
            if verify:
                raise TransactionError(
                    "State document does not exist; initialize the workspace first",
                    section="metadata",
                )
            return None, {}
        try:
            document = parse_document(snapshot)
        except ConsistencyError as e:
            if verify:
                raise
            # The unreadable bytes stay the rollback point.
            logger.warning(f"{e.message}; rebuilding it")
            return snapshot, {}
        if verify:
            report = check_document(document)
            fatal = [issue for issue in report.errors if issue.fatal]
            if fatal:
                raise ConsistencyError(
                    "State document is corrupted (" + "; ".join(i.message for i in fatal)
                    + "); re-initialize before making changes",
                    section=fatal[0].section,
                    fatal=True,
                )
        return snapshot, document

    def begin(self, name: str, verify: bool = True) -> Transaction:
        """
        Acquires the lock and snapshots the document.

        Args:
            name: Operation name, recorded in metadata.lastOperation.
            verify: Refuse to start when the persisted document is corrupt.
                Only a full re-initialization passes False.

        Raises:
            TransactionError: If a transaction is already open on this store.
            LockTimeoutError: If the lock is busy past the timeout.
            ConsistencyError: If verification finds a corrupted document.
        """
        if self.active is not None:
            raise TransactionError(
                f"Transaction '{self.active.name}' is already open; cannot begin '{name}'"
            )
        handle = self.store.lock.acquire(self.store.lock_timeout)
        try:
            snapshot, document = self._load_snapshot(verify)
        except BaseException:
            self.store.lock.release(handle)
            raise
        tx = Transaction(name, snapshot, copy.deepcopy(document), handle)
        tx._token = operation_context.set(name)
        self.active = tx
        logger.debug(f"Began transaction '{name}'")
        return tx

    def _check(self, tx: Transaction) -> None:
        if tx is not self.active or not tx.is_open:
            raise TransactionError(f"Transaction '{tx.name}' is not open", section="metadata")

    def _finish(self, tx: Transaction, state: str) -> None:
        tx.state = state
        self.active = None
        try:
            self.store.lock.release(tx.handle)
        finally:
            if tx._token is not None:
                operation_context.reset(tx._token)
                tx._token = None

    def commit(self, tx: Transaction) -> None:
        """Validates and persists the working copy, then releases the lock."""
        self._check(tx)
        try:
            document = tx.document
            document["decisions"] = make_decisions(document["computed"], document["runtime"])
            check_document(document).raise_for_errors()
            now = utc_now()
            metadata = document["metadata"]
            metadata["lastOperation"] = tx.name
            metadata["lastUpdate"] = now
            metadata["operationDuration"] = tx.elapsed_ms()
            if tx.refreshed:
                metadata["lastRefresh"] = now
            atomic_write(self.store.paths.state_file, dump_json(document))
        except AipmStateError:
            self.rollback(tx)
            raise
        except Exception as e:
            self.rollback(tx)
            raise TransactionError(f"Commit of '{tx.name}' failed: {e}") from e
        logger.info(f"Committed transaction '{tx.name}' in {metadata['operationDuration']}ms")
        self._finish(tx, "committed")

    def rollback(self, tx: Transaction) -> None:
        """Restores the snapshot verbatim and releases the lock."""
        self._check(tx)
        try:
            state_file = self.store.paths.state_file
            if read_bytes(state_file) != tx.snapshot:
                if tx.snapshot is None:
                    state_file.unlink()
                else:
                    atomic_write(state_file, tx.snapshot)
        finally:
            logger.warning(f"Rolled back transaction '{tx.name}'")
            self._finish(tx, "rolled-back")

    @contextmanager
    def run(self, name: str, verify: bool = True):
        """Begin, yield the transaction, and commit; any error rolls back."""
        tx = self.begin(name, verify=verify)
        try:
            yield tx
        except AipmStateError:
            if tx.is_open:
                self.rollback(tx)
            raise
        except Exception as e:
            if tx.is_open:
                self.rollback(tx)
            raise TransactionError(f"Operation '{name}' failed and was rolled back: {e}") from e
        except BaseException:
            if tx.is_open:
                self.rollback(tx)
            raise
        if tx.is_open:
            self.commit(tx)
