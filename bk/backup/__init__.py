"""
Backup module for bk.

This module handles the core backup functionality including:
- Source path resolution (CephFS snapshots, bind mounts)
- Credential and transport resolution
- restic repository access
- Per-machine lineage tracking
- Archive, retention and rsync job execution
"""

from .executor import ArchiveJobRunner
from .sources import LocalPathRef
from .credentials import CredentialResolver
from .restic import ResticRepository
from .lineage import HeadTag, LineageTracker
from .retention import RetentionPruner
from .rsync import RsyncRunner

__all__ = [
    'ArchiveJobRunner',
    'LocalPathRef',
    'CredentialResolver',
    'ResticRepository',
    'HeadTag',
    'LineageTracker',
    'RetentionPruner',
    'RsyncRunner'
]
