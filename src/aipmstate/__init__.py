# src/aipmstate/__init__.py: Workspace state core for AIPM.
# The package keeps one JSON state document per workspace, derived from the
# opinions configuration and the repository, and serves it to wrapper scripts
# through StateStore and the 'aipm-state' command.

from .gitfacts import GitFacts
from .store import StateStore

__version__ = "0.1.0"

__all__ = ["GitFacts", "StateStore", "__version__"]
