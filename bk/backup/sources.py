"""
Source path resolution for backup operations.

A LocalPathRef binds one configured LocalPath to the concrete directory handed
to restic for the duration of a job:
- plain: the configured path itself
- cephfs_snap: a CephFS snapshot directory `<path>/.snap/SNAP_<date>`
- cephfs_snap + same_path: the snapshot bind-mounted onto `<MOUNT_ROOT>/<name>`,
  so restic sees the same path on every run

Whatever resolve() creates, cleanup() removes: unmount first, then the
snapshot. Use the ref as a context manager so cleanup runs on every exit path.
"""

import os
import fcntl
import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple

from bk.config import Config
from bk.errors import SourceError
from bk.models import LocalPath


logger = logging.getLogger(__name__)


def sanitize(path: str) -> str:
    """Flatten a path into a single name component (`/srv/data` -> `_srv_data`)."""
    return path.replace('/', '_')


def ensure_exists(directory: str):
    """
    Check that a directory exists and has at least one entry.

    Raises:
        SourceError: If the directory is missing, unreadable or empty
    """
    path = Path(directory)

    try:
        has_entries = path.is_dir() and any(path.iterdir())
    except PermissionError as e:
        raise SourceError(f"Permission denied accessing {directory}: {e}")

    if not has_entries:
        raise SourceError(f"Directory {directory} does not exist or is empty")


def snapshot_name() -> str:
    return f"SNAP_{datetime.now(timezone.utc).strftime('%Y_%m_%d')}"


def cephfs_snap_create(directory: str) -> Tuple[str, str]:
    """
    Create a CephFS snapshot of a directory.

    An existing snapshot of the same name is reused.

    Args:
        directory: Directory on a CephFS mount

    Returns:
        (snapshot directory, snapshot name)

    Raises:
        SourceError: If the snapshot cannot be created
    """
    name = snapshot_name()
    snap_dir = Path(directory) / '.snap' / name

    logger.info(f"Creating snapshot {name} on {directory}")
    try:
        snap_dir.mkdir()
    except FileExistsError:
        logger.warning(f"Snapshot {snap_dir} already exists, reusing it")
    except OSError as e:
        raise SourceError(f"Could not create snapshot {snap_dir}: {e}")

    return str(snap_dir), name


def cephfs_snap_remove(directory: str, name: str):
    """
    Remove a CephFS snapshot.

    Raises:
        OSError: If the snapshot directory cannot be removed
    """
    snap_dir = Path(directory) / '.snap' / name
    logger.info(f"Removing snapshot {name} on {directory}")
    os.rmdir(snap_dir)


def bind_mount(src: str, dst: str):
    """
    Raises:
        SourceError: If mount fails
    """
    _run_mount_command(['mount', '--bind', src, dst])


def umount(mount_path: str):
    """
    Raises:
        SourceError: If umount fails
    """
    _run_mount_command(['umount', mount_path])


def _run_mount_command(cmd):
    logger.info(f"--> {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except OSError as e:
        raise SourceError(f"Failed to run {cmd[0]}: {e}")

    if result.returncode != 0:
        raise SourceError(
            f"{' '.join(cmd)} returned {result.returncode}: {result.stderr.strip()}"
        )


class SourceLock:
    """
    Advisory lock on one source path.

    Keeps two overlapping runs on the same host from sharing a snapshot name
    and mount point. Non-blocking: a held lock is an error, not a wait.
    """

    def __init__(self, lock_dir: str, name: str):
        self.path = Path(lock_dir) / f"{name}.lock"
        self._fd = None

    def acquire(self):
        """
        Raises:
            SourceError: If the lock is held by another process or cannot be created
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._fd = open(self.path, 'w')
        except OSError as e:
            raise SourceError(f"Cannot create lock file {self.path}: {e}")

        try:
            fcntl.flock(self._fd.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            self._fd.close()
            self._fd = None
            raise SourceError(f"Source is locked by another run ({self.path})")
        except OSError as e:
            self._fd.close()
            self._fd = None
            raise SourceError(f"Cannot lock {self.path}: {e}")

        self._fd.write(f"{os.getpid()}\n")
        self._fd.flush()

    def release(self):
        if self._fd is None:
            return
        fcntl.flock(self._fd.fileno(), fcntl.LOCK_UN)
        self._fd.close()
        self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None


class LocalPathRef:
    """
    Runtime handle for one LocalPath during one job execution.

    Records the snapshot and bind mount it created so cleanup() can undo
    exactly those side effects.
    """

    def __init__(self, name: str, spec: LocalPath, settings=None):
        """
        Args:
            name: Path name from the config `path` map
            spec: LocalPath configuration
            settings: Config class (default: Config)
        """
        self.name = name
        self.spec = spec
        self.settings = settings or Config

        self.snapshot_name: Optional[str] = None
        self.bind_mount_path: Optional[str] = None
        self._lock: Optional[SourceLock] = None

    @property
    def stable_path(self) -> str:
        """Mount point used when same_path is set; identical across runs."""
        return os.path.join(self.settings.MOUNT_ROOT, sanitize(self.spec.path))

    def resolve(self) -> str:
        """
        Resolve the directory restic should read.

        Returns:
            Mount target, snapshot directory, or the configured path, in that priority

        Raises:
            SourceError: If the path is missing/empty (before any side effect),
                locked, or the snapshot/mount cannot be created
        """
        if self.spec.ensure_exists:
            ensure_exists(self.spec.path)

        if not self.spec.cephfs_snap:
            return self.spec.path

        self._lock = SourceLock(self.settings.LOCK_DIR, sanitize(self.spec.path))
        self._lock.acquire()

        snap_dir, self.snapshot_name = cephfs_snap_create(self.spec.path)

        if not self.spec.same_path:
            return snap_dir

        mount_path = self.stable_path
        logger.info(f"Creating consistent path {mount_path}")
        try:
            os.makedirs(mount_path, exist_ok=True)
        except OSError as e:
            raise SourceError(f"Cannot create mount point {mount_path}: {e}")

        bind_mount(snap_dir, mount_path)
        self.bind_mount_path = mount_path
        return mount_path

    def cleanup(self):
        """
        Undo resolve(): unmount, then remove the snapshot, then drop the lock.

        Unmounting first avoids a busy snapshot directory. Failures are logged
        so the remaining steps still run. Safe to call more than once.
        """
        if self.bind_mount_path:
            logger.info(f"Cleaning up mount {self.bind_mount_path}")
            try:
                umount(self.bind_mount_path)
            except SourceError as e:
                logger.error(f"Failed to unmount {self.bind_mount_path}: {e}")
            self.bind_mount_path = None

        if self.snapshot_name:
            logger.info(f"Cleaning up snapshot {self.spec.path}@{self.snapshot_name}")
            try:
                cephfs_snap_remove(self.spec.path, self.snapshot_name)
            except OSError as e:
                logger.error(f"Failed to remove snapshot {self.snapshot_name} on {self.spec.path}: {e}")
            self.snapshot_name = None

        if self._lock is not None:
            self._lock.release()
            self._lock = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.cleanup()
        return False
