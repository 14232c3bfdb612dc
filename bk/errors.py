"""
Error taxonomy for backup operations.

restic reports failures through its exit code:
- 1:  fatal error, no snapshot created
- 3:  some source data could not be read, incomplete snapshot created
- 10: repository does not exist
- 11: repository is already locked
- 12: incorrect password

Everything else non-zero is unclassified. Engine-level failures (missing
credentials, unknown references, duplicate heads) have their own classes.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


class BackupError(Exception):
    """Base class for every classified backup failure."""
    kind = 'backup_error'
    description = 'backup failed'

    def __str__(self):
        detail = super().__str__()
        return f"{self.description}: {detail}" if detail else self.description


class FatalError(BackupError):
    """Return code 1 - no snapshot created."""
    kind = 'fatal'
    description = 'fatal error (no snapshot created)'


class IncompleteError(BackupError):
    """Return code 3 - snapshot created but some source data was unreadable."""
    kind = 'incomplete'
    description = 'some source data could not be read (incomplete snapshot created)'


class RepositoryUnavailableError(BackupError):
    """Return code 10 - repository does not exist or is unreachable."""
    kind = 'repository_unavailable'
    description = 'repository does not exist'


class RepositoryLockedError(BackupError):
    """Return code 11 - repository is already locked."""
    kind = 'repository_locked'
    description = 'repository is already locked'


class IncorrectPasswordError(BackupError):
    """Return code 12 - incorrect password."""
    kind = 'incorrect_password'
    description = 'incorrect password'


class UnclassifiedError(BackupError):
    """Any other non-zero return code."""
    kind = 'unclassified'
    description = 'unrecognized failure'

    def __init__(self, code: int, message: str = ''):
        super().__init__(message or f"exit code {code}")
        self.code = code


class MissingCredentialError(BackupError):
    """No usable secret could be resolved before invoking restic."""
    kind = 'missing_credential'
    description = 'missing credential'


class DuplicateHeadError(BackupError):
    """More than one snapshot on a target carries this machine's head tag."""
    kind = 'duplicate_head'
    description = 'multiple head snapshots'


class UnknownReferenceError(BackupError):
    """A job references a path, target or channel that is not declared."""
    kind = 'unknown_reference'
    description = 'unknown reference'


class SourceError(FatalError):
    """Raised when a source path cannot be resolved."""
    kind = 'source_unavailable'
    description = 'source unavailable'


class RsyncError(BackupError):
    """rsync returned a non-zero exit code."""
    kind = 'rsync'
    description = 'rsync failed'

    def __init__(self, code: int, message: str = ''):
        super().__init__(message or f"exit code {code}")
        self.code = code


class OrphanedLineageError(BackupError):
    """
    The previous head was detached but the new archive was not created.

    The target is left without a head snapshot for this machine; the
    predecessor only remains reachable through its post-edit identifier.
    """
    kind = 'orphaned_lineage'
    description = 'head tag removed but archive creation failed'

    def __init__(self, parent: str, cause: BackupError):
        super().__init__(f"parent {parent} left without successor ({cause})")
        self.parent = parent
        self.cause = cause


class ScriptError(Exception):
    """Raised when the pre- or post-script fails. Aborts the run."""
    pass


EXIT_CODE_ERRORS = {
    1: FatalError,
    3: IncompleteError,
    10: RepositoryUnavailableError,
    11: RepositoryLockedError,
    12: IncorrectPasswordError,
}


def error_from_exit_code(code: int, stderr: str = '') -> Optional[BackupError]:
    """
    Map a restic exit code to the error taxonomy.

    Args:
        code: Process exit code
        stderr: Captured standard error, used as the error detail

    Returns:
        None for 0, otherwise a BackupError instance (never raises)
    """
    if code == 0:
        return None

    detail = _last_line(stderr)
    error_class = EXIT_CODE_ERRORS.get(code)
    if error_class is None:
        return UnclassifiedError(code, detail)
    return error_class(detail)


def _last_line(text: str) -> str:
    lines = [line.strip() for line in (text or '').splitlines() if line.strip()]
    return lines[-1] if lines else ''


@dataclass
class TargetResult:
    """Outcome of one job against one target."""
    target: str
    error: Optional[BackupError] = None
    summary: Optional[Dict[str, Any]] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.error is None
