# src/aipmstate/util/paths.py: Workspace and user-level path resolution.
# A workspace keeps its state under <root>/.aipm/state. The opinions document is
# looked up in the workspace first and then in the user's platform config
# directory, resolved through platformdirs on both Linux and Windows.

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import platformdirs

APP_NAME = "aipm"
CONFIG_FILENAME = "opinions.yaml"


def get_user_config_home() -> Path:
    """Get the per-user configuration directory for the application."""
    return Path(platformdirs.user_config_dir(APP_NAME))


def expand_path(path) -> Path:
    """Expand environment variables and user home directory in a path."""
    return Path(os.path.expandvars(os.path.expanduser(str(path)))).resolve()


@dataclass(frozen=True)
class WorkspacePaths:
    """Locations of the files owned by one workspace."""
    root: Path

    @property
    def aipm_dir(self) -> Path:
        return self.root / ".aipm"

    @property
    def state_dir(self) -> Path:
        return self.aipm_dir / "state"

    @property
    def state_file(self) -> Path:
        return self.state_dir / "workspace.json"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "workspace.lock"

    @classmethod
    def for_root(cls, root) -> "WorkspacePaths":
        return cls(expand_path(root))


def find_config_path(root, explicit=None) -> Optional[Path]:
    """
    Locates the opinions document for a workspace.

    Args:
        root: The workspace root directory.
        explicit: A path given by the caller; it wins when provided.

    Returns:
        The first existing candidate, or None when only defaults apply.
    """
    if explicit is not None:
        return expand_path(explicit)
    root = expand_path(root)
    candidates = [
        root / ".aipm" / CONFIG_FILENAME,
        root / CONFIG_FILENAME,
        get_user_config_home() / CONFIG_FILENAME,
    ]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None
