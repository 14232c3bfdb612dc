"""
rsync mirror jobs.

Mirrors a source directory to a destination with `rsync -avzhruP`, optionally
from a CephFS snapshot of the source that is removed afterwards.
"""

import logging
import shlex
import subprocess
from typing import Dict, List

from bk.config import Config
from bk.errors import BackupError, FatalError, RsyncError, TargetResult
from bk.models import LocalPath, RsyncJob
from .sources import LocalPathRef, ensure_exists


logger = logging.getLogger(__name__)


def build_rsync_command(job: RsyncJob, src: str, dry_run: bool = False, settings=None) -> List[str]:
    settings = settings or Config
    cmd = [settings.RSYNC_BINARY, '-avzhruP']

    if job.delete:
        cmd.append('--delete')

    if dry_run:
        cmd.append('--dry-run')

    for pattern in job.exclude:
        cmd += ['--exclude', pattern]

    cmd += [src, job.dest]
    return cmd


class RsyncRunner:
    """Runs rsync mirror jobs."""

    def __init__(self, settings=None):
        self.settings = settings or Config

    def execute(self, job: RsyncJob, dry_run: bool = False) -> Dict[str, TargetResult]:
        """
        Mirror job.src to job.dest.

        Returns:
            Single-entry mapping of destination to TargetResult
        """
        logger.info(f"Running backup for {job.src} -> {job.dest}")
        result = TargetResult(job.dest)

        try:
            if job.ensure_exists:
                ensure_exists(job.ensure_exists)

            spec = LocalPath(path=job.src, ensure_exists=False, cephfs_snap=job.cephfs_snap)
            with LocalPathRef(job.src, spec, self.settings) as ref:
                src = ref.resolve()
                if job.cephfs_snap:
                    # copy the snapshot's contents, not the snapshot directory
                    src = src.rstrip('/') + '/'
                self._run(build_rsync_command(job, src, dry_run, self.settings))

        except BackupError as e:
            logger.error(f"rsync {job.src} -> {job.dest} failed: {e}")
            result.error = e

        return {job.dest: result}

    def _run(self, cmd: List[str]):
        logger.info(f"--> {shlex.join(cmd)}")
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise FatalError(f"Failed to run {cmd[0]}: {e}")

        for line in (proc.stdout or '').splitlines():
            if line.strip():
                logger.info(line)

        if proc.returncode != 0:
            detail = (proc.stderr or '').strip().splitlines()
            raise RsyncError(proc.returncode, detail[-1] if detail else '')
