# src/aipmstate/gitfacts.py: The repository facts the state core consumes.
# GitFacts is the narrow read-only contract between the state document and the
# version-control repository. The store and the sync engine take an instance at
# construction time; there is no fallback to calling git directly.

from abc import ABC, abstractmethod
from typing import List, Optional, Tuple


class GitFacts(ABC):
    """Point-in-time queries about a repository. None of them mutate it."""

    @abstractmethod
    def current_branch(self) -> str:
        """Name of the checked-out branch ('HEAD' when detached)."""

    @abstractmethod
    def all_branches(self) -> List[str]:
        """Local branch names."""

    @abstractmethod
    def is_clean(self) -> bool:
        ...

    @abstractmethod
    def uncommitted_count(self) -> int:
        """Number of changed, staged or untracked paths."""

    @abstractmethod
    def ahead_behind(self) -> Tuple[int, int]:
        """Commits ahead of and behind the current branch's upstream."""

    @abstractmethod
    def stash_count(self) -> int:
        ...

    @abstractmethod
    def upstream_of(self, branch: str) -> Optional[str]:
        ...

    @abstractmethod
    def merged_branches(self, target: str) -> List[str]:
        """Local branches already merged into `target`."""

    @abstractmethod
    def branch_commit(self, ref: str) -> str:
        ...

    @abstractmethod
    def branch_creation_date(self, branch: str) -> Optional[str]:
        """ISO-8601 creation time, or None when it cannot be determined."""

    @abstractmethod
    def branch_last_commit_date(self, branch: str) -> Optional[str]:
        ...

    def operation_in_progress(self) -> Optional[str]:
        """'rebase', 'merge' or 'cherry-pick' while one is unfinished."""
        return None


def require_facts(facts) -> GitFacts:
    """Rejects anything that is not a GitFacts implementation at construction time."""
    if not isinstance(facts, GitFacts):
        raise TypeError(
            f"A GitFacts implementation is required, got {type(facts).__name__}"
        )
    return facts
