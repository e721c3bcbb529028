# src/aipmstate/gitwrap.py: Safe subprocess wrappers for Git.
# This module runs the system 'git' command with timeouts, a scrubbed
# environment and clear error mapping, and implements the GitFacts queries on
# top of it. Only read-only plumbing commands are issued; the state core never
# mutates the repository.

import os
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from .gitfacts import GitFacts
from .util.errors import GitError

# --- Core Git Execution ---

def run_git(
    args: List[str],
    cwd: Path,
    timeout: int = 120,
    check: bool = True,
    env: Optional[dict] = None,
) -> subprocess.CompletedProcess:
    """
    Runs a git command in a specified directory with a timeout and error handling.

    Args:
        args: A list of arguments for the git command.
        cwd: The working directory for the command.
        timeout: The command timeout in seconds.
        check: If True, raises GitError on a non-zero exit code.
        env: An optional dictionary of environment variables.

    Returns:
        The CompletedProcess object.

    Raises:
        GitError: If git is not found, the command fails, or it times out.
    """
    cwd = Path(cwd)
    if not cwd.is_dir():
        raise GitError(f"Git working directory not found: {cwd}")

    base_env = os.environ.copy()
    base_env["GIT_TERMINAL_PROMPT"] = "0"
    base_env["GIT_OPTIONAL_LOCKS"] = "0"
    base_env["LC_ALL"] = "C"
    if env:
        base_env.update(env)

    try:
        return subprocess.run(
            ["git"] + args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=check,
            env=base_env,
        )
    except FileNotFoundError as e:
        raise GitError("The 'git' command was not found. Is it installed and in your PATH?") from e
    except subprocess.CalledProcessError as e:
        error_message = (e.stderr or "").strip() or (e.stdout or "").strip()
        raise GitError(f"Git command '{' '.join(args)}' failed: {error_message}") from e
    except subprocess.TimeoutExpired as e:
        raise GitError(f"Git command '{' '.join(args)}' timed out after {timeout} seconds.") from e


def _lines(output: str) -> List[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]


# --- GitFacts over the git CLI ---

class GitRepository(GitFacts):
    """GitFacts backed by the git executable for one working tree."""

    def __init__(self, root, timeout: int = 120):
        self.root = Path(root)
        self.timeout = timeout

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return run_git(list(args), cwd=self.root, timeout=self.timeout, check=check)

    def _out(self, *args: str) -> str:
        return self._git(*args).stdout.strip()

    def current_branch(self) -> str:
        return self._out("rev-parse", "--abbrev-ref", "HEAD")

    def all_branches(self) -> List[str]:
        return _lines(self._out("for-each-ref", "--format=%(refname:short)", "refs/heads/"))

    def _status(self) -> List[str]:
        result = self._git("status", "--porcelain")
        return [line for line in result.stdout.splitlines() if line.strip()]

    def is_clean(self) -> bool:
        return not self._status()

    def uncommitted_count(self) -> int:
        return len(self._status())

    def ahead_behind(self) -> Tuple[int, int]:
        result = self._git("rev-list", "--left-right", "--count", "HEAD...@{upstream}", check=False)
        if result.returncode != 0:
            # No upstream configured.
            return 0, 0
        ahead, behind = result.stdout.split()
        return int(ahead), int(behind)

    def stash_count(self) -> int:
        return len(_lines(self._out("stash", "list")))

    def upstream_of(self, branch: str) -> Optional[str]:
        result = self._git("rev-parse", "--abbrev-ref", f"{branch}@{{upstream}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def merged_branches(self, target: str) -> List[str]:
        return _lines(self._out("branch", "--format=%(refname:short)", "--merged", target))

    def branch_commit(self, ref: str) -> str:
        return self._out("rev-parse", ref)

    def branch_creation_date(self, branch: str) -> Optional[str]:
        result = self._git(
            "reflog", "show", "--date=iso-strict", "--format=%gd", f"refs/heads/{branch}", "--",
            check=False,
        )
        entries = _lines(result.stdout) if result.returncode == 0 else []
        if not entries:
            return None
        # Oldest reflog entry looks like 'refs/heads/x@{2024-01-02T03:04:05+00:00}'.
        oldest = entries[-1]
        start = oldest.rfind("@{")
        if start == -1 or not oldest.endswith("}"):
            return None
        return oldest[start + 2:-1]

    def branch_last_commit_date(self, branch: str) -> Optional[str]:
        result = self._git("log", "-1", "--format=%cI", branch, "--", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def operation_in_progress(self) -> Optional[str]:
        git_dir = Path(self._out("rev-parse", "--git-dir"))
        if not git_dir.is_absolute():
            git_dir = self.root / git_dir
        if (git_dir / "rebase-merge").exists() or (git_dir / "rebase-apply").exists():
            return "rebase"
        if (git_dir / "MERGE_HEAD").exists():
            return "merge"
        if (git_dir / "CHERRY_PICK_HEAD").exists():
            return "cherry-pick"
        return None
