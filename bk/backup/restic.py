"""
restic repository handler.

Wraps the restic CLI for one configured target. Credentials are resolved
per target and injected only into the child process environment; the exit
code of every invocation is mapped onto the error taxonomy.
"""

import os
import json
import shlex
import logging
import subprocess
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from pydantic import ValidationError

from bk.config import Config
from bk.errors import BackupError, FatalError, error_from_exit_code
from bk.models import ChangedMessage, ResticTarget, Snapshot, SummaryMessage, parse_message
from .credentials import CredentialResolver


logger = logging.getLogger(__name__)

ALREADY_INITIALIZED_MARKERS = ('already exists', 'already initialized')


@dataclass
class CommandResult:
    """Captured output of one restic invocation."""
    returncode: int
    stdout: str = ''
    stderr: str = ''

    @property
    def error(self) -> Optional[BackupError]:
        return error_from_exit_code(self.returncode, self.stderr)


@dataclass
class BackupOutcome:
    """Result of `restic backup` on one target."""
    error: Optional[BackupError] = None
    summary: Optional[SummaryMessage] = None


class ResticRepository:
    """
    Handler for one restic repository target.

    Every call resolves credentials first; a target with unusable
    credentials fails with MissingCredentialError before restic runs.
    """

    def __init__(self, name: str, target: ResticTarget, settings=None):
        """
        Args:
            name: Target name from the config `restic_target` map
            target: ResticTarget configuration
            settings: Config class (default: Config)
        """
        self.name = name
        self.target = target
        self.settings = settings or Config
        self._env: Optional[Dict[str, str]] = None
        self._options: List[str] = []

    @property
    def repo(self) -> str:
        return self.target.repo

    def prepare(self):
        """
        Resolve credentials and transport options for this target.

        Raises:
            MissingCredentialError: If a mandatory credential is unresolved
        """
        if self._env is None:
            self._env, self._options = CredentialResolver(self.target).resolve()

    def command(self, subcommand: str, args: Sequence[str] = (), positional: Sequence[str] = ()) -> List[str]:
        """Build the full argument list for a restic invocation."""
        cmd = [self.settings.RESTIC_BINARY, subcommand, *args]
        for option in self._options:
            cmd += ['-o', option]
        cmd += ['-r', self.repo]
        cmd += list(positional)
        return cmd

    def run(self, subcommand: str, args: Sequence[str] = (), positional: Sequence[str] = ()) -> CommandResult:
        """
        Run restic synchronously against this repository.

        Returns:
            CommandResult with captured output

        Raises:
            MissingCredentialError: If credentials cannot be resolved
            FatalError: If restic cannot be started
        """
        self.prepare()
        cmd = self.command(subcommand, args, positional)

        env = os.environ.copy()
        env.update(self._env)

        logger.info(f"--> {shlex.join(cmd)}")
        try:
            proc = subprocess.run(cmd, env=env, capture_output=True, text=True)
        except OSError as e:
            raise FatalError(f"Failed to run {cmd[0]}: {e}")

        result = CommandResult(proc.returncode, proc.stdout or '', proc.stderr or '')
        if result.returncode != 0:
            logger.warning(
                f"restic {subcommand} on {self.name} returned with non zero exit code {result.returncode}"
            )
            for line in result.stderr.splitlines():
                if line.strip():
                    logger.warning(f"[{self.name}] {line}")
        return result

    def init(self) -> bool:
        """
        Initialize the repository.

        Returns:
            True if a new repository was created, False if it already existed

        Raises:
            BackupError: If initialization fails for any other reason
        """
        logger.info(f"Initializing restic repository on {self.repo}")
        result = self.run('init')

        if result.returncode == 0:
            return True

        stderr = result.stderr.lower()
        if any(marker in stderr for marker in ALREADY_INITIALIZED_MARKERS):
            logger.info(f"Repository {self.repo} is already initialized")
            return False

        raise result.error

    def snapshots(self) -> List[Snapshot]:
        """
        List all snapshots in the repository.

        Raises:
            BackupError: If listing fails or the output cannot be parsed
        """
        result = self.run('snapshots', ['--json'])
        if result.error is not None:
            raise result.error

        try:
            raw = json.loads(result.stdout or '[]')
            return [Snapshot.model_validate(item) for item in raw or []]
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            raise FatalError(f"Cannot parse snapshot listing of {self.repo}: {e}")

    def remove_tag(self, snapshot_id: str, tag: str) -> str:
        """
        Remove a tag from a snapshot.

        Editing tags rewrites the snapshot, so its identifier changes.

        Args:
            snapshot_id: Snapshot to edit
            tag: Tag to remove

        Returns:
            The identifier of the snapshot after the edit

        Raises:
            BackupError: If restic fails or reports no changed snapshot
        """
        logger.info(f"Removing tag '{tag}' from snapshot '{snapshot_id}' on repository '{self.repo}'")
        result = self.run('tag', ['--remove', tag, '--json'], [snapshot_id])
        if result.error is not None:
            raise result.error

        for message in self.parse_output(result.stdout):
            if isinstance(message, ChangedMessage):
                logger.info(f"Tagged '{message.old_snapshot_id}' -> '{message.new_snapshot_id}'")
                return message.new_snapshot_id

        raise FatalError(
            f"restic tag reported no changed snapshot for {snapshot_id} on {self.repo}"
        )

    def backup(self, args: Sequence[str], paths: Sequence[str], structured: bool = False) -> BackupOutcome:
        """
        Run `restic backup`.

        Args:
            args: Backup flags (excludes, tags, ...)
            paths: Source directories
            structured: Whether --json was requested and stdout holds status records

        Returns:
            BackupOutcome; the error field holds the classified exit code

        Raises:
            MissingCredentialError: If credentials cannot be resolved
            FatalError: If restic cannot be started
        """
        result = self.run('backup', args, paths)
        outcome = BackupOutcome(error=result.error)

        if structured:
            for message in self.parse_output(result.stdout):
                if isinstance(message, SummaryMessage):
                    outcome.summary = message
        else:
            for line in result.stdout.splitlines():
                if line.strip():
                    logger.info(f"[{self.name}] {line}")

        return outcome

    def forget(self, args: Sequence[str]) -> Optional[BackupError]:
        """
        Run `restic forget` with the given policy flags.

        Returns:
            None on success, else the classified error
        """
        result = self.run('forget', args)
        for line in result.stdout.splitlines():
            if line.strip():
                logger.info(f"[{self.name}] {line}")
        return result.error

    @staticmethod
    def parse_output(stdout: str) -> list:
        """Parse newline-delimited JSON records, skipping anything else."""
        messages = []
        for line in (stdout or '').splitlines():
            try:
                message = parse_message(line)
            except ValidationError as e:
                logger.debug(f"Ignoring malformed restic record: {e}")
                continue
            if message is not None:
                messages.append(message)
        return messages
