"""
Retention policy enforcement for restic repositories.

Runs `restic forget` (optionally with --prune) on every target of a
retention job. Only the policy fields that are configured end up on the
command line; restic's own defaults apply to everything else.
"""

import logging
from typing import Dict, List, Tuple

from bk.config import Config
from bk.errors import BackupError, TargetResult, UnknownReferenceError
from bk.models import BackupConfig, ResticForget, ResticTarget
from .restic import ResticRepository


logger = logging.getLogger(__name__)

# (field, flag) pairs; counts, durations and strings take one value each
VALUE_FLAGS = (
    ('keep_last', '--keep-last'),
    ('keep_hourly', '--keep-hourly'),
    ('keep_daily', '--keep-daily'),
    ('keep_weekly', '--keep-weekly'),
    ('keep_monthly', '--keep-monthly'),
    ('keep_yearly', '--keep-yearly'),
    ('keep_within', '--keep-within'),
    ('keep_within_hourly', '--keep-within-hourly'),
    ('keep_within_daily', '--keep-within-daily'),
    ('keep_within_weekly', '--keep-within-weekly'),
    ('keep_within_monthly', '--keep-within-monthly'),
    ('keep_within_yearly', '--keep-within-yearly'),
    ('group_by', '--group-by'),
    ('max_unused', '--max-unused'),
    ('max_repack_size', '--max-repack-size'),
)

# Repeatable filters
LIST_FLAGS = (
    ('keep_tag', '--keep-tag'),
    ('host', '--host'),
    ('tag', '--tag'),
    ('path', '--path'),
)

SWITCH_FLAGS = (
    ('prune', '--prune'),
    ('repack_cacheable_only', '--repack-cacheable-only'),
    ('repack_small', '--repack-small'),
    ('repack_uncompressed', '--repack-uncompressed'),
)


def build_forget_args(job: ResticForget, dry_run: bool = False) -> List[str]:
    """
    Build `restic forget` flags from a retention job.

    Args:
        job: ResticForget configuration
        dry_run: Add --dry-run

    Returns:
        Flag list without repository and transport options
    """
    args = []

    for field_name, flag in VALUE_FLAGS:
        value = getattr(job, field_name)
        if value is not None:
            args += [flag, str(value)]

    for field_name, flag in LIST_FLAGS:
        for value in getattr(job, field_name):
            args += [flag, value]

    for field_name, flag in SWITCH_FLAGS:
        if getattr(job, field_name):
            args.append(flag)

    if dry_run:
        args.append('--dry-run')

    return args


class RetentionPruner:
    """
    Enforces restic retention jobs from a BackupConfig.
    """

    def __init__(self, config: BackupConfig, settings=None):
        self.config = config
        self.settings = settings or Config

    def lookup_targets(self, job: ResticForget) -> List[Tuple[str, ResticTarget]]:
        """
        Raises:
            UnknownReferenceError: If a target name is not declared
        """
        targets = []
        for name in job.targets:
            if name not in self.config.restic_target:
                raise UnknownReferenceError(f"Unknown restic provider {name}")
            targets.append((name, self.config.restic_target[name]))
        return targets

    def execute(self, job: ResticForget, dry_run: bool = False) -> Dict[str, TargetResult]:
        """
        Run forget on every target of a retention job.

        Returns:
            Mapping of target name to TargetResult

        Raises:
            UnknownReferenceError: If the job references an undeclared target
        """
        targets = self.lookup_targets(job)
        args = build_forget_args(job, dry_run)
        results = {}

        for name, target in targets:
            logger.info(f"Running backup forget for {target.repo}")
            repository = ResticRepository(name, target, self.settings)
            try:
                error = repository.forget(args)
            except BackupError as e:
                error = e
            results[name] = TargetResult(name, error)

        return results
