# src/aipmstate/util/errors.py: Typed exceptions and exit codes.
# Every failure raised by the state core maps to one of these types. Each error
# records which section of the state document it concerns and whether the
# persisted document was left untouched, so callers and scripts can tell a busy
# lock apart from a broken configuration or a corrupted document.

from enum import IntEnum
from typing import Iterable, Optional, Sequence


class ExitCode(IntEnum):
    """Process exit codes for scripting consumers."""
    OK = 0
    UNKNOWN_ERROR = 1
    CONFIG_ERROR = 10
    LOCK_TIMEOUT = 11
    VALIDATION_FAILED = 12
    CONSISTENCY_ERROR = 13
    TRANSACTION_ERROR = 14
    EXTERNAL_FACT_ERROR = 15
    NOT_FOUND = 16
    INVALID_PATH = 17
    SESSION_ERROR = 18


class AipmStateError(Exception):
    """Base exception for the state core."""
    exit_code = ExitCode.UNKNOWN_ERROR

    def __init__(self, message: str, section: Optional[str] = None, unchanged: bool = True):
        super().__init__(message)
        self.message = message
        self.section = section
        self.unchanged = unchanged

    def __str__(self) -> str:
        details = []
        if self.section:
            details.append(f"section: {self.section}")
        details.append("document unchanged" if self.unchanged else "document modified")
        return f"[{self.exit_code.name}] {self.message} ({'; '.join(details)})"


class ConfigError(AipmStateError):
    """The configuration document could not be read or parsed."""
    exit_code = ExitCode.CONFIG_ERROR

    def __init__(self, message: str, section: Optional[str] = "rawConfig", unchanged: bool = True):
        super().__init__(message, section=section, unchanged=unchanged)


class ValidationError(ConfigError):
    """A configuration field (or a pair of fields) violates a rule."""
    exit_code = ExitCode.VALIDATION_FAILED

    def __init__(
        self,
        message: str,
        fields: Sequence[str] = (),
        value: object = None,
        allowed: Optional[Iterable[object]] = None,
        section: Optional[str] = "rawConfig",
    ):
        super().__init__(message, section=section)
        self.fields = list(fields)
        self.value = value
        self.allowed = list(allowed) if allowed is not None else None


class LockTimeoutError(AipmStateError):
    """The state lock could not be acquired within the timeout."""
    exit_code = ExitCode.LOCK_TIMEOUT


class ConsistencyError(AipmStateError):
    """An invariant of the state document does not hold."""
    exit_code = ExitCode.CONSISTENCY_ERROR

    def __init__(self, message: str, section: Optional[str] = None, fatal: bool = False, unchanged: bool = True):
        super().__init__(message, section=section, unchanged=unchanged)
        self.fatal = fatal


class TransactionError(AipmStateError):
    """A transaction was misused or failed before commit."""
    exit_code = ExitCode.TRANSACTION_ERROR


class ExternalFactError(AipmStateError):
    """A query against the repository failed."""
    exit_code = ExitCode.EXTERNAL_FACT_ERROR

    def __init__(self, message: str, section: Optional[str] = "runtime", unchanged: bool = True):
        super().__init__(message, section=section, unchanged=unchanged)


class GitError(ExternalFactError):
    """Git command errors."""


class PathNotFoundError(AipmStateError):
    """A dotted path does not resolve to a value."""
    exit_code = ExitCode.NOT_FOUND


class InvalidPathError(AipmStateError):
    """A dotted path is malformed or may not be written."""
    exit_code = ExitCode.INVALID_PATH


class SessionError(AipmStateError):
    """A session could not be started or ended."""
    exit_code = ExitCode.SESSION_ERROR

    def __init__(self, message: str, section: Optional[str] = "runtime.session", unchanged: bool = True):
        super().__init__(message, section=section, unchanged=unchanged)
