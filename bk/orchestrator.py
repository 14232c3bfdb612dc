"""
Top-level run sequencing.

A run:
1. Sleeps a random delay below the configured bound (desynchronizes
   machines started by identical schedules)
2. Runs the start script (failure aborts the run)
3. Runs the enabled modes in order: rsync, restic, restic_forget
4. Runs the end script (failure aborts the run)
5. Returns 0 if every attempted target succeeded, 1 otherwise

Every per-target outcome is sent to the job's notification channels.
"""

import random
import logging
import subprocess
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from bk.config import Config
from bk.errors import BackupError, ScriptError, TargetResult
from bk.models import BackupConfig, Snapshot
from bk.notify import NotificationDispatcher
from bk.telemetry import TelemetryEmitter
from bk.utils.hostkey import HostIdentity
from bk.backup import ArchiveJobRunner, ResticRepository, RetentionPruner, RsyncRunner


logger = logging.getLogger(__name__)

MODES = ('rsync', 'restic', 'restic_forget')


@dataclass
class RunOptions:
    """Caller-supplied options for one run."""
    dry_run: bool = False
    exclude: List[str] = field(default_factory=list)
    modes: List[str] = field(default_factory=list)

    def enabled_modes(self) -> Set[str]:
        """
        Modes to run; all of them when none is given.

        Raises:
            ValueError: On an unknown mode name
        """
        if not self.modes:
            return set(MODES)

        selected = set()
        for mode in self.modes:
            mode = mode.lower()
            if mode not in MODES:
                raise ValueError(f"Unknown mode {mode} (expected one of {', '.join(MODES)})")
            selected.add(mode)

        logger.info(f"Running with modes {sorted(selected)}")
        return selected


@dataclass
class JobReport:
    """Results of one job."""
    mode: str
    label: str
    results: Dict[str, TargetResult]

    @property
    def failed(self) -> List[TargetResult]:
        return [result for result in self.results.values() if not result.ok]


class Orchestrator:
    """
    Runs every configured job of a BackupConfig.
    """

    def __init__(self, config: BackupConfig, settings=None, identity: HostIdentity = None,
                 dispatcher: NotificationDispatcher = None):
        """
        Args:
            config: Parsed configuration document
            settings: Config class (default: Config)
            identity: Machine identity (default: from settings)
            dispatcher: Notification dispatcher (default: from config channels)
        """
        self.config = config
        self.settings = settings or Config
        self.identity = identity or HostIdentity.from_settings(self.settings)
        self.dispatcher = dispatcher or NotificationDispatcher(config.ntfy, self.settings)

        telemetry = None
        if config.telemetry_url:
            telemetry = TelemetryEmitter(config.telemetry_url, self.identity, self.settings)

        self.archive_runner = ArchiveJobRunner(config, self.identity, telemetry, self.settings)
        self.retention_pruner = RetentionPruner(config, self.settings)
        self.rsync_runner = RsyncRunner(self.settings)
        self.reports: List[JobReport] = []

    def run(self, options: Optional[RunOptions] = None) -> int:
        """
        Execute the configured work.

        Returns:
            Process exit status: 0 if every attempted target succeeded, else 1

        Raises:
            ScriptError: If the start or end script fails
            UnknownReferenceError: If a job references an undeclared name
            ValueError: On an unknown mode
        """
        options = options or RunOptions()
        modes = options.enabled_modes()
        self.reports = []

        if options.dry_run:
            logger.warning("Running in dry run mode. No backup jobs will happen.")

        self._delay()
        self._run_script(self.config.start_script)

        if 'rsync' in modes:
            self._run_rsync(options)

        if 'restic' in modes:
            self._run_restic(options)

        if 'restic_forget' in modes:
            self._run_restic_forget(options)

        self._run_script(self.config.end_script)

        return self.exit_status()

    def exit_status(self) -> int:
        return 1 if any(report.failed for report in self.reports) else 0

    def _delay(self):
        if not self.config.delay:
            return
        wait = random.random() * self.config.delay
        logger.info(f"Delaying backup for {wait:.0f} seconds...")
        time.sleep(wait)

    def _run_script(self, script: Optional[str]):
        if not script:
            return

        logger.info(f"--> sh {script}")
        try:
            proc = subprocess.run(['sh', script])
        except OSError as e:
            raise ScriptError(f"Failed to run {script}: {e}")

        if proc.returncode != 0:
            raise ScriptError(f"Script {script} returned with exit code {proc.returncode}")

    def _run_rsync(self, options: RunOptions):
        for job in self.config.rsync:
            results = self.rsync_runner.execute(job, options.dry_run)
            self._record('rsync', 'Mirror', f"{job.src} -> {job.dest}", job.ntfy, results)

    def _run_restic(self, options: RunOptions):
        for job in self.config.restic:
            excluded = set(options.exclude) & set(job.src)
            if excluded:
                logger.info(
                    f"Skipping restic operation due to exclude filter: "
                    f"exclude {options.exclude}, got {job.src}"
                )
                continue

            results = self.archive_runner.execute(job, options.dry_run)
            self._record('restic', 'Backup', ', '.join(job.src), job.ntfy, results)

    def _run_restic_forget(self, options: RunOptions):
        for job in self.config.restic_forget:
            results = self.retention_pruner.execute(job, options.dry_run)
            self._record('restic_forget', 'Forget', ', '.join(job.targets), job.ntfy, results)

    def _record(self, mode: str, action: str, label: str, channels: List[str],
                results: Dict[str, TargetResult]):
        self.reports.append(JobReport(mode, label, results))

        for target, result in results.items():
            if result.ok:
                logger.info(f"[{mode}] {action} successful for {label} to {target}")
                message = f"✅ {action} successful for {label} to {target}"
            else:
                logger.error(f"[{mode}] {action} to target {target} failed: {result.error}")
                message = f"🚨 {action} failed for {label} to {target}: {result.error}"

            self.dispatcher.send(channels, message)


def init_targets(config: BackupConfig, settings=None) -> Dict[str, TargetResult]:
    """
    Initialize every repository target.

    An already initialized repository counts as success.
    """
    results = {}
    for name, target in config.restic_target.items():
        repository = ResticRepository(name, target, settings)
        try:
            if repository.init():
                logger.info(f"Initialized new restic repository {name}")
            else:
                logger.info(f"Repository {name} already initialized")
            results[name] = TargetResult(name)
        except BackupError as e:
            logger.error(f"Initializing repository {name} failed: {e}")
            results[name] = TargetResult(name, e)
    return results


def list_snapshots(config: BackupConfig, settings=None) -> Dict[str, object]:
    """
    List snapshots per target.

    Returns:
        Mapping of target name to a list of Snapshot, or the BackupError
        that prevented listing it
    """
    listing: Dict[str, object] = {}
    for name, target in config.restic_target.items():
        try:
            snapshots: List[Snapshot] = ResticRepository(name, target, settings).snapshots()
            listing[name] = snapshots
        except BackupError as e:
            logger.error(f"Listing snapshots on {name} failed: {e}")
            listing[name] = e
    return listing
