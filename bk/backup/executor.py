"""
Archive job runner - executes one restic backup job across its targets.

Workflow per job:
1. Look up the job's paths and targets (unknown names abort the run)
2. Resolve every source path (snapshot/bind mount as configured)
3. For each target, independently:
   a. Resolve credentials and transport
   b. Detach this machine's head (lineage pre-step)
   c. Run `restic backup` tagged with the new head and parent
   d. Classify the exit code, forward the summary to telemetry
4. Clean up every resolved source path, whatever happened
"""

import logging
from contextlib import ExitStack
from typing import Dict, List, Optional, Tuple

from bk.config import Config
from bk.errors import BackupError, SourceError, TargetResult, UnknownReferenceError
from bk.models import BackupConfig, LocalPath, ResticJob, ResticTarget
from bk.telemetry import TelemetryEmitter
from bk.utils.hostkey import HostIdentity
from .lineage import HeadTag, LineageTracker
from .restic import ResticRepository
from .sources import LocalPathRef


logger = logging.getLogger(__name__)


def build_backup_args(job: ResticJob, lineage_tags: List[str], dry_run: bool = False, settings=None) -> List[str]:
    """
    Build `restic backup` flags from a job.

    Args:
        job: ResticJob configuration
        lineage_tags: Head and parent tags for the new snapshot
        dry_run: Add --dry-run
        settings: Config class (default: Config)

    Returns:
        Flag list (repository, options and source paths are added by the repository)
    """
    settings = settings or Config
    args = []

    for pattern in job.exclude:
        args += ['--exclude', pattern]

    for marker in job.exclude_if_present:
        args += ['--exclude-if-present', marker]

    if job.one_file_system:
        args.append('--one-file-system')

    concurrency = job.concurrency or settings.DEFAULT_READ_CONCURRENCY
    args += ['--read-concurrency', str(concurrency)]

    for tag in list(job.tags) + list(lineage_tags):
        args += ['--tag', tag]

    if job.reread:
        args.append('--force')

    if job.exclude_caches:
        args.append('--exclude-caches')

    if dry_run:
        args.append('--dry-run')

    args += ['--compression', job.compression or settings.DEFAULT_COMPRESSION]

    if job.quiet:
        args += ['--quiet', '--json']

    if job.host:
        args += ['--host', job.host]

    return args


class ArchiveJobRunner:
    """
    Runs restic backup jobs from a BackupConfig.
    """

    def __init__(self, config: BackupConfig, identity: HostIdentity = None,
                 telemetry: Optional[TelemetryEmitter] = None, settings=None):
        """
        Args:
            config: Parsed configuration document
            identity: Machine identity for the head tag (default: from settings)
            telemetry: Summary receiver (default: none)
            settings: Config class (default: Config)
        """
        self.config = config
        self.settings = settings or Config
        self.identity = identity or HostIdentity.from_settings(self.settings)
        self.telemetry = telemetry

    def lookup_paths(self, job: ResticJob) -> List[Tuple[str, LocalPath]]:
        """
        Raises:
            UnknownReferenceError: If a path name is not declared
        """
        paths = []
        for name in job.src:
            if name not in self.config.path:
                raise UnknownReferenceError(f"Unknown path provider {name}")
            paths.append((name, self.config.path[name]))
        return paths

    def lookup_targets(self, job: ResticJob) -> List[Tuple[str, ResticTarget]]:
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

    def execute(self, job: ResticJob, dry_run: bool = False) -> Dict[str, TargetResult]:
        """
        Execute a backup job on every target.

        Args:
            job: ResticJob to execute
            dry_run: Pass --dry-run to restic and leave tags untouched

        Returns:
            Mapping of target name to TargetResult

        Raises:
            UnknownReferenceError: If the job references an undeclared path or target
        """
        paths = self.lookup_paths(job)
        targets = self.lookup_targets(job)
        results = {}

        with ExitStack() as stack:
            try:
                directories = []
                for name, spec in paths:
                    ref = stack.enter_context(LocalPathRef(name, spec, self.settings))
                    directories.append(ref.resolve())
            except SourceError as e:
                logger.error(f"Cannot resolve sources {', '.join(job.src)}: {e}")
                return {name: TargetResult(name, e) for name, _ in targets}

            for name, target in targets:
                logger.info(f"Running backup for {','.join(job.src)} on {target.repo}")
                results[name] = self._backup_target(job, name, target, directories, paths, dry_run)

        return results

    def _backup_target(self, job: ResticJob, name: str, target: ResticTarget,
                       directories: List[str], paths: List[Tuple[str, LocalPath]],
                       dry_run: bool) -> TargetResult:
        """Run one backup on one target; every BackupError ends up in the result."""
        repository = ResticRepository(name, target, self.settings)
        result = TargetResult(name)

        try:
            repository.prepare()

            tracker = LineageTracker(repository, HeadTag.own(self.identity))
            tracker.detach_head(dry_run=dry_run)

            args = build_backup_args(job, tracker.lineage_tags(), dry_run, self.settings)
            try:
                outcome = repository.backup(args, directories, structured=job.quiet)
            except BackupError as e:
                result.error = tracker.settle(e)
            else:
                result.error = tracker.settle(outcome.error)
                if outcome.summary is not None:
                    result.summary = outcome.summary.model_dump(exclude_none=True)

        except BackupError as e:
            result.error = e

        if result.summary is not None and self.telemetry is not None:
            status = 'ok' if result.ok else result.error.kind
            self.telemetry.backup_summary(
                [spec.path for _, spec in paths], name, status, result.summary
            )

        return result
