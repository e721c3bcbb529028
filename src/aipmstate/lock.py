# src/aipmstate/lock.py: Cross-process exclusive access to the state document.
# The primary mechanism is an OS advisory lock through filelock, which the
# kernel drops when the owning process dies. Where the filesystem cannot do
# advisory locking, an atomic mkdir of '<lock>.dir' is polled with exponential
# backoff instead. Either way acquisition is bounded by a timeout and release
# is idempotent.

import atexit
import json
import os
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Any, Optional

from filelock import FileLock, Timeout

from .util.errors import LockTimeoutError
from .util.log import get_logger
from .util.retry import poll_until

logger = get_logger(__name__)

MECHANISMS = ("auto", "os", "directory")


@dataclass
class LockHandle:
    """An acquired lock: who owns it, since when, and how it was taken."""
    path: Path
    mechanism: str
    owner_pid: int
    acquired_at: str
    timeout: float
    released: bool = False
    _lock: Optional[FileLock] = field(default=None, repr=False)
    _on_exit: Any = field(default=None, repr=False)


class LockManager:
    """Hands out at most one LockHandle at a time for a lock path."""

    def __init__(self, lock_path, mechanism: str = "auto"):
        if mechanism not in MECHANISMS:
            raise ValueError(f"Unknown lock mechanism '{mechanism}'")
        self.lock_path = Path(lock_path)
        self.dir_path = self.lock_path.with_name(self.lock_path.name + ".dir")
        self.mechanism = mechanism

    def acquire(self, timeout: float) -> LockHandle:
        """
        Acquires the lock, waiting at most `timeout` seconds.

        Raises:
            LockTimeoutError: If another holder keeps the lock past the timeout.
        """
        timeout = max(float(timeout), 0.0)
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()
        if self.mechanism in ("auto", "os"):
            try:
                return self._acquire_os(timeout)
            except (OSError, NotImplementedError) as e:
                if self.mechanism == "os":
                    raise
                logger.warning(f"Advisory file locking unavailable ({e}); using directory lock")
                timeout = max(0.0, timeout - (time.monotonic() - started))
        return self._acquire_directory(timeout)

    def release(self, handle: Optional[LockHandle]) -> None:
        """Releases a handle. Releasing twice, or releasing None, does nothing."""
        if handle is None or handle.released:
            return
        handle.released = True
        if handle.mechanism == "os":
            if handle._lock is not None and handle._lock.is_locked:
                handle._lock.release(force=True)
        else:
            if handle._on_exit is not None:
                atexit.unregister(handle._on_exit)
            self._remove_directory()
        logger.debug(f"Released state lock ({handle.mechanism})")

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def _acquire_os(self, timeout: float) -> LockHandle:
        lock = FileLock(str(self.lock_path))
        try:
            lock.acquire(timeout=timeout)
        except Timeout as e:
            logger.warning(f"Timed out after {timeout:g}s waiting for state lock")
            raise LockTimeoutError(
                f"Could not acquire state lock '{self.lock_path}' within {timeout:g}s; state is busy",
                section="metadata",
            ) from e
        logger.debug("Acquired state lock (os)")
        return LockHandle(
            path=self.lock_path,
            mechanism="os",
            owner_pid=os.getpid(),
            acquired_at=self._now(),
            timeout=timeout,
            _lock=lock,
        )

    def _try_mkdir(self) -> bool:
        try:
            os.mkdir(self.dir_path)
        except FileExistsError:
            return False
        return True

    def _owner(self) -> Optional[dict]:
        try:
            return json.loads((self.dir_path / "owner").read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def _acquire_directory(self, timeout: float) -> LockHandle:
        if not poll_until(self._try_mkdir, timeout):
            owner = self._owner()
            held_by = f" (held by pid {owner.get('pid')} since {owner.get('acquiredAt')})" if owner else ""
            logger.warning(f"Timed out after {timeout:g}s waiting for directory lock{held_by}")
            raise LockTimeoutError(
                f"Could not acquire state lock '{self.dir_path}' within {timeout:g}s{held_by}; state is busy",
                section="metadata",
            )
        handle = LockHandle(
            path=self.dir_path,
            mechanism="directory",
            owner_pid=os.getpid(),
            acquired_at=self._now(),
            timeout=timeout,
        )
        owner = {"pid": handle.owner_pid, "host": socket.gethostname(), "acquiredAt": handle.acquired_at}
        (self.dir_path / "owner").write_text(json.dumps(owner), encoding="utf-8")
        handle._on_exit = partial(self.release, handle)
        atexit.register(handle._on_exit)
        logger.debug("Acquired state lock (directory)")
        return handle

    def _remove_directory(self) -> None:
        try:
            (self.dir_path / "owner").unlink()
        except FileNotFoundError:
            pass
        try:
            self.dir_path.rmdir()
        except FileNotFoundError:
            pass
