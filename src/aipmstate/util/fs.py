# src/aipmstate/util/fs.py: Filesystem utilities.
# The state document is only ever swapped as a whole: content goes to a
# temporary file in the same directory, is flushed to disk, and then replaces
# the target with os.replace. Readers therefore see either the old or the new
# document, never a torn write.

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional


def atomic_write(path, content):
    """Write content (str or bytes) to a file atomically."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8") if isinstance(content, str) else content
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise


def read_bytes(path) -> Optional[bytes]:
    """Returns the file's bytes, or None when it does not exist."""
    try:
        return Path(path).read_bytes()
    except FileNotFoundError:
        return None


def dump_json(document: Any) -> str:
    """Serializes a document the way it is persisted."""
    return json.dumps(document, indent=2, ensure_ascii=False) + "\n"


def canonical_json(document: Any) -> str:
    """Key-sorted compact serialization used for comparisons and hashing."""
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
