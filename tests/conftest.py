"""
Shared pytest fixtures for bk tests.

This module provides fixtures for:
- Settings pointing mounts, locks and host keys into a temp directory
- Generated ed25519 host keys and a HostIdentity
- Source directories (with a CephFS-style .snap namespace)
- A parsed sample BackupConfig
- A subprocess.run replacement backed by a stateful fake restic binary
"""

import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from bk.config import Config
from bk.models import BackupConfig
from bk.utils.hostkey import HostIdentity


@pytest.fixture
def settings(tmp_path):
    """Config subclass with every filesystem location under tmp_path."""

    class TestConfig(Config):
        RESTIC_BINARY = 'restic'
        RSYNC_BINARY = 'rsync'
        MOUNT_ROOT = str(tmp_path / 'mnt')
        LOCK_DIR = str(tmp_path / 'locks')
        HOST_KEY_PATH = str(tmp_path / 'ssh_host_ed25519_key.pub')
        HOST_PRIVATE_KEY_PATH = str(tmp_path / 'ssh_host_ed25519_key')
        HTTP_TIMEOUT = 5

    return TestConfig


@pytest.fixture
def host_keys(settings):
    """
    Write an ed25519 host key pair where settings expect it.

    Returns the private key object.
    """
    key = Ed25519PrivateKey.generate()

    private_bytes = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.OpenSSH,
        serialization.NoEncryption()
    )
    public_bytes = key.public_key().public_bytes(
        serialization.Encoding.OpenSSH,
        serialization.PublicFormat.OpenSSH
    )

    with open(settings.HOST_PRIVATE_KEY_PATH, 'wb') as f:
        f.write(private_bytes)
    with open(settings.HOST_KEY_PATH, 'wb') as f:
        f.write(public_bytes + b' root@node1\n')

    return key


@pytest.fixture
def identity(settings, host_keys):
    """HostIdentity for a machine called node1."""
    return HostIdentity(settings.HOST_KEY_PATH, settings.HOST_PRIVATE_KEY_PATH, hostname='node1')


@pytest.fixture
def source_dir(tmp_path):
    """
    Non-empty source directory with a .snap namespace.

    Creates:
    - data/file1.txt
    - data/nested/file2.txt
    - data/.snap/
    """
    data = tmp_path / 'data'
    data.mkdir()
    (data / 'file1.txt').write_text('content 1')
    (data / 'nested').mkdir()
    (data / 'nested' / 'file2.txt').write_text('content 2')
    (data / '.snap').mkdir()
    return data


@pytest.fixture
def sample_config(source_dir, tmp_path):
    """
    Config with one path (data), two targets (a, b), one archive job,
    one retention job and one notification channel.
    """
    pass_file = tmp_path / 'b.pass'
    pass_file.write_text('secret-b\n')

    return BackupConfig.from_dict({
        'path': {
            'data': {'path': str(source_dir)},
        },
        'restic_target': {
            'a': {'repo': '/srv/restic/a', 'passphrase': 'secret-a'},
            'b': {'repo': 'sftp:backup@nas:/srv/restic/b', 'passphrase_file': str(pass_file),
                  'ssh': {'identity': '/root/.ssh/id_ed25519', 'port': 2222}},
        },
        'restic': [
            {'src': ['data'], 'targets': ['a', 'b'], 'quiet': True, 'ntfy': ['ops']},
        ],
        'restic_forget': [
            {'targets': ['a', 'b'], 'keep_daily': 7, 'prune': True, 'ntfy': ['ops']},
        ],
        'ntfy': {
            'ops': {'ntfy': {'host': 'https://ntfy.example.com', 'topic': 'backups'}},
        },
    })


class FakeRestic:
    """
    Stand-in for the restic binary, installed as subprocess.run.

    Keeps snapshots per repository and honours the parts of the CLI the
    engine uses: snapshots --json, tag --remove --json, backup, forget, init.
    Exit codes or start failures can be forced per repository and subcommand.
    """

    def __init__(self):
        self.calls = []
        self.repos = {}
        self.exit_codes = {}
        self.start_errors = {}
        self.initialized = set()
        self._counter = 0

    # helpers for tests

    def add_snapshot(self, repo, tags=(), paths=('/data',), hostname='node1'):
        snap = self._new_snapshot(list(tags), list(paths), hostname)
        self.repos.setdefault(repo, []).append(snap)
        return snap

    def fail(self, repo, subcommand, code, stderr='error'):
        self.exit_codes[(repo, subcommand)] = (code, stderr)

    def fail_to_start(self, repo, subcommand, error):
        self.start_errors[(repo, subcommand)] = error

    def calls_for(self, subcommand, repo=None):
        return [
            (cmd, env) for cmd, env in self.calls
            if cmd[1] == subcommand and (repo is None or _arg(cmd, '-r') == repo)
        ]

    def snapshots(self, repo):
        return self.repos.get(repo, [])

    # subprocess.run replacement

    def __call__(self, cmd, env=None, capture_output=False, text=False, **kwargs):
        self.calls.append((list(cmd), dict(env or {})))
        subcommand = cmd[1]
        repo = _arg(cmd, '-r')
        if (repo, subcommand) in self.start_errors:
            raise self.start_errors[(repo, subcommand)]

        forced = self.exit_codes.get((repo, subcommand))
        if forced is not None:
            code, stderr = forced
            if not (subcommand == 'backup' and code == 3):
                return subprocess.CompletedProcess(cmd, code, '', stderr)

        handler = getattr(self, f"_{subcommand}")
        stdout = handler(cmd, repo)
        code = forced[0] if forced else 0
        stderr = forced[1] if forced else ''
        return subprocess.CompletedProcess(cmd, code, stdout, stderr)

    def _snapshots(self, cmd, repo):
        return json.dumps(self.repos.get(repo, []))

    def _tag(self, cmd, repo):
        tag = _arg(cmd, '--remove')
        snapshot_id = cmd[-1]
        lines = []
        for i, snap in enumerate(self.repos.get(repo, [])):
            if snap['id'] == snapshot_id and tag in snap['tags']:
                edited = self._new_snapshot(
                    [t for t in snap['tags'] if t != tag], snap['paths'], snap['hostname']
                )
                edited['original'] = snap['id']
                self.repos[repo][i] = edited
                lines.append(json.dumps({
                    'message_type': 'changed',
                    'old_snapshot_id': snap['id'],
                    'new_snapshot_id': edited['id'],
                }))
        lines.append(json.dumps({'message_type': 'summary', 'changed_snapshots': len(lines)}))
        return '\n'.join(lines) + '\n'

    def _backup(self, cmd, repo):
        tags = _all_args(cmd, '--tag')
        paths = cmd[cmd.index('-r') + 2:]
        if '--dry-run' in cmd:
            snapshot_id = None
        else:
            snap = self.add_snapshot(repo, tags, paths)
            snapshot_id = snap['id']

        if '--json' not in cmd:
            return 'Files: 2 new, 0 changed, 0 unmodified\n'

        status = {'message_type': 'status', 'percent_done': 0.5, 'total_files': 2}
        summary = {
            'message_type': 'summary',
            'files_new': 2,
            'files_changed': 0,
            'files_unmodified': 0,
            'total_files_processed': 2,
            'total_bytes_processed': 18,
            'total_duration': 0.25,
            'dry_run': '--dry-run' in cmd,
        }
        if snapshot_id:
            summary['snapshot_id'] = snapshot_id
        return json.dumps(status) + '\n' + json.dumps(summary) + '\n'

    def _forget(self, cmd, repo):
        return '[]\n' if '--json' in cmd else 'Applying Policy\n'

    def _init(self, cmd, repo):
        self.initialized.add(repo)
        return f"created restic repository at {repo}\n"

    def _new_snapshot(self, tags, paths, hostname):
        self._counter += 1
        snapshot_id = f"{self._counter:064x}"
        return {
            'time': '2024-01-15T12:00:00.123456789Z',
            'tree': 'f' * 64,
            'paths': paths,
            'hostname': hostname,
            'username': 'root',
            'uid': 0,
            'gid': 0,
            'tags': tags,
            'program_version': 'restic 0.17.3',
            'id': snapshot_id,
            'short_id': snapshot_id[:8],
        }


def _arg(cmd, flag):
    if flag in cmd:
        return cmd[cmd.index(flag) + 1]
    return None


def _all_args(cmd, flag):
    return [cmd[i + 1] for i, part in enumerate(cmd) if part == flag]


class CommandDispatcher:
    """
    Replacement for subprocess.run routing by program name.

    mount/umount, sh and rsync go to MagicMocks returning success; everything else
    goes to the FakeRestic.
    """

    def __init__(self):
        self.restic = FakeRestic()
        self.mounts = MagicMock(return_value=subprocess.CompletedProcess([], 0, '', ''))
        self.scripts = MagicMock(return_value=subprocess.CompletedProcess([], 0, '', ''))
        self.rsync = MagicMock(return_value=subprocess.CompletedProcess([], 0, '', ''))
        self.history = []

    def __call__(self, cmd, *args, **kwargs):
        self.history.append(list(cmd))
        if cmd[0] in ('mount', 'umount'):
            return self.mounts(cmd, *args, **kwargs)
        if cmd[0] == 'rsync':
            return self.rsync(cmd, *args, **kwargs)
        if cmd[0] == 'sh':
            return self.scripts(cmd, *args, **kwargs)
        return self.restic(cmd, *args, **kwargs)


@pytest.fixture
def commands():
    """Patch subprocess.run with a CommandDispatcher."""
    dispatcher = CommandDispatcher()
    with patch('subprocess.run', side_effect=dispatcher):
        yield dispatcher


@pytest.fixture
def fake_restic(commands):
    """The FakeRestic behind subprocess.run."""
    return commands.restic


@pytest.fixture
def no_mounts(commands):
    """Mock receiving mount/umount calls made while resolving sources."""
    return commands.mounts
