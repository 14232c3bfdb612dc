"""
Per-machine backup lineage on a restic repository.

restic has no notion of "this machine's latest backup", and editing a
snapshot's tags changes its identifier. Lineage is therefore carried in tags:

- `head:<hostname>:<fingerprint>` marks the current endpoint of a machine's
  lineage; at most one snapshot per repository carries it.
- `parent:<id>` on every snapshot records the identifier its predecessor
  had *after* the head tag was removed from it.

Before each backup the head tag is moved off the current endpoint, and the
identifier restic reports for the edited snapshot becomes the new parent.
"""

import logging
from typing import Dict, List, Optional

from bk.errors import BackupError, DuplicateHeadError, IncompleteError, OrphanedLineageError
from bk.models import Snapshot
from .restic import ResticRepository


logger = logging.getLogger(__name__)

HEAD_PREFIX = 'head:'
PARENT_PREFIX = 'parent:'


class HeadTag:
    """Head marker for one machine."""

    def __init__(self, hostname: str, fingerprint: str):
        self.hostname = hostname
        self.fingerprint = fingerprint

    @classmethod
    def own(cls, identity) -> 'HeadTag':
        """Head marker for the running machine (HostIdentity)."""
        return cls(identity.hostname, identity.fingerprint)

    def __str__(self):
        return f"{HEAD_PREFIX}{self.hostname}:{self.fingerprint}"

    def __eq__(self, other):
        return isinstance(other, HeadTag) and str(self) == str(other)

    def __hash__(self):
        return hash(str(self))


def parent_tag(parent: Optional[str]) -> str:
    return f"{PARENT_PREFIX}{parent or ''}"


def parent_of(snapshot: Snapshot) -> Optional[str]:
    """Parent identifier recorded on a snapshot ('' for a lineage root, None if untracked)."""
    for tag in snapshot.tags:
        if tag.startswith(PARENT_PREFIX):
            return tag[len(PARENT_PREFIX):]
    return None


class LineageTracker:
    """
    Runs the head/parent protocol for one machine on one repository.

    Usage:
        tracker.detach_head()                 # before the backup
        args += tracker.lineage_tags()        # tags for the new snapshot
        error = tracker.settle(backup_error)  # after the backup
    """

    def __init__(self, repository: ResticRepository, head: HeadTag):
        self.repository = repository
        self.head = head
        self.parent = ''
        self.detached = False

    def find_heads(self) -> List[Snapshot]:
        """Snapshots on the repository carrying this machine's head tag."""
        head = str(self.head)
        return [snap for snap in self.repository.snapshots() if snap.has_tag(head)]

    def detach_head(self, dry_run: bool = False) -> str:
        """
        Remove the head tag from the current lineage endpoint.

        Args:
            dry_run: Determine the parent without editing any tag

        Returns:
            Parent identifier for the next snapshot ('' if there is no head)

        Raises:
            DuplicateHeadError: If more than one snapshot carries the head tag
            BackupError: If listing or tag editing fails
        """
        heads = self.find_heads()

        if len(heads) > 1:
            ids = ', '.join(snap.short_id or snap.id for snap in heads)
            raise DuplicateHeadError(
                f"{len(heads)} snapshots tagged {self.head} on {self.repository.repo}: {ids}"
            )

        if not heads:
            logger.info(f"No head for {self.head} on {self.repository.name}, starting new lineage")
            self.parent = ''
            return self.parent

        current = heads[0]
        if dry_run:
            logger.info(f"Dry run: would remove {self.head} from snapshot {current.id}")
            self.parent = current.id
            return self.parent

        self.parent = self.repository.remove_tag(current.id, str(self.head))
        self.detached = True
        logger.info(f"Found parent {self.parent}")
        return self.parent

    def lineage_tags(self) -> List[str]:
        """Tags to apply to the new snapshot."""
        return [str(self.head), parent_tag(self.parent)]

    def settle(self, error: Optional[BackupError]) -> Optional[BackupError]:
        """
        Classify the backup outcome with respect to lineage.

        An incomplete snapshot still carries the new head tag. Any other
        failure after the head was detached leaves the machine without a head.
        """
        if error is None or isinstance(error, IncompleteError):
            return error

        if self.detached:
            logger.error(
                f"Head {self.head} was removed from {self.parent} but no new snapshot was created "
                f"on {self.repository.name}"
            )
            return OrphanedLineageError(self.parent, error)

        return error


def chain(snapshots: List[Snapshot], head: HeadTag) -> List[Snapshot]:
    """
    Reconstruct a machine's lineage, newest first.

    Starts at the snapshot carrying the head tag and follows `parent:` tags
    until a lineage root or an identifier no longer present.
    """
    by_id: Dict[str, Snapshot] = {snap.id: snap for snap in snapshots}
    heads = [snap for snap in snapshots if snap.has_tag(str(head))]
    if len(heads) != 1:
        return []

    lineage = []
    seen = set()
    current = heads[0]
    while current is not None and current.id not in seen:
        lineage.append(current)
        seen.add(current.id)
        parent = parent_of(current)
        current = by_id.get(parent) if parent else None

    return lineage
