"""
Unit tests for the restic repository handler (bk/backup/restic.py).
"""

import os
import subprocess
from unittest.mock import patch

import pytest

from bk.backup.restic import CommandResult, ResticRepository
from bk.errors import (
    FatalError,
    IncorrectPasswordError,
    MissingCredentialError,
    RepositoryLockedError,
    RepositoryUnavailableError
)
from bk.models import ChangedMessage, ResticTarget, StatusMessage, SummaryMessage


def make_repository(settings, **kwargs):
    kwargs.setdefault('repo', '/srv/restic/a')
    kwargs.setdefault('passphrase', 'secret-a')
    return ResticRepository('a', ResticTarget.model_validate(kwargs), settings)


class TestCommand:
    """Test argument list construction."""

    def test_plain_repository(self, settings):
        repository = make_repository(settings)
        repository.prepare()

        assert repository.command('snapshots', ['--json']) == [
            'restic', 'snapshots', '--json', '-r', '/srv/restic/a'
        ]

    def test_transport_option_before_repository(self, settings):
        repository = make_repository(
            settings, repo='sftp:backup@nas:/srv/restic', ssh={'identity': '/k', 'port': 22}
        )
        repository.prepare()

        cmd = repository.command('backup', ['--tag', 'x'], ['/srv/data'])

        assert cmd == [
            'restic', 'backup', '--tag', 'x',
            '-o', 'sftp.command=ssh -i /k -p 22 -o StrictHostKeyChecking=no backup@nas -s sftp',
            '-r', 'sftp:backup@nas:/srv/restic',
            '/srv/data',
        ]


class TestRun:
    """Test process invocation."""

    def test_secrets_only_in_child_environment(self, settings, fake_restic):
        repository = make_repository(settings)

        repository.run('snapshots', ['--json'])

        _, env = fake_restic.calls[0]
        assert env['RESTIC_PASSWORD'] == 'secret-a'
        assert env.get('HOME') == os.environ.get('HOME')

    def test_missing_credential_before_process(self, settings, fake_restic):
        repository = make_repository(settings, passphrase=None)

        with pytest.raises(MissingCredentialError):
            repository.run('snapshots', ['--json'])

        assert fake_restic.calls == []

    def test_binary_not_found(self, settings):
        repository = make_repository(settings)

        with patch('bk.backup.restic.subprocess.run', side_effect=FileNotFoundError('restic')):
            with pytest.raises(FatalError, match='Failed to run restic'):
                repository.run('snapshots')

    def test_command_result_error(self):
        assert CommandResult(0).error is None
        assert isinstance(CommandResult(10, '', 'Fatal: repository does not exist').error,
                          RepositoryUnavailableError)


class TestInit:
    """Test repository initialization."""

    def test_new_repository(self, settings, fake_restic):
        assert make_repository(settings).init() is True
        assert '/srv/restic/a' in fake_restic.initialized

    def test_already_initialized(self, settings, fake_restic):
        fake_restic.fail('/srv/restic/a', 'init', 1,
                         'Fatal: create key in repository at /srv/restic/a failed: '
                         'repository master key and config already initialized\n')

        assert make_repository(settings).init() is False

    def test_other_failure(self, settings, fake_restic):
        fake_restic.fail('/srv/restic/a', 'init', 12, 'Fatal: wrong password\n')

        with pytest.raises(IncorrectPasswordError):
            make_repository(settings).init()


class TestSnapshots:
    """Test snapshot listing."""

    def test_list(self, settings, fake_restic):
        fake_restic.add_snapshot('/srv/restic/a', tags=['daily'])
        fake_restic.add_snapshot('/srv/restic/a', tags=[])

        snapshots = make_repository(settings).snapshots()

        assert len(snapshots) == 2
        assert snapshots[0].tags == ['daily']
        assert snapshots[0].short_id == snapshots[0].id[:8]

    def test_unavailable(self, settings, fake_restic):
        fake_restic.fail('/srv/restic/a', 'snapshots', 10, 'Fatal: repository does not exist\n')

        with pytest.raises(RepositoryUnavailableError):
            make_repository(settings).snapshots()

    def test_unparseable_listing(self, settings):
        repository = make_repository(settings)

        with patch('bk.backup.restic.subprocess.run') as mock_run:
            mock_run.return_value = subprocess.CompletedProcess([], 0, 'not json', '')
            with pytest.raises(FatalError, match='Cannot parse snapshot listing'):
                repository.snapshots()


class TestRemoveTag:
    """Test tag removal."""

    def test_returns_new_identifier(self, settings, fake_restic):
        snap = fake_restic.add_snapshot('/srv/restic/a', tags=['head:node1:abc', 'parent:'])

        new_id = make_repository(settings).remove_tag(snap['id'], 'head:node1:abc')

        assert new_id != snap['id']
        edited = fake_restic.snapshots('/srv/restic/a')[0]
        assert edited['id'] == new_id
        assert edited['tags'] == ['parent:']

        cmd, _ = fake_restic.calls_for('tag')[0]
        assert cmd[:5] == ['restic', 'tag', '--remove', 'head:node1:abc', '--json']
        assert cmd[-1] == snap['id']

    def test_nothing_changed(self, settings, fake_restic):
        snap = fake_restic.add_snapshot('/srv/restic/a', tags=['daily'])

        with pytest.raises(FatalError, match='no changed snapshot'):
            make_repository(settings).remove_tag(snap['id'], 'head:node1:abc')

    def test_locked(self, settings, fake_restic):
        fake_restic.fail('/srv/restic/a', 'tag', 11, 'Fatal: unable to create lock\n')

        with pytest.raises(RepositoryLockedError) as exc_info:
            make_repository(settings).remove_tag('abc', 'head:node1:abc')

        assert exc_info.value.kind == 'repository_locked'


class TestBackup:
    """Test restic backup invocation."""

    def test_structured_output(self, settings, fake_restic):
        outcome = make_repository(settings).backup(['--quiet', '--json'], ['/srv/data'], structured=True)

        assert outcome.error is None
        assert isinstance(outcome.summary, SummaryMessage)
        assert outcome.summary.files_new == 2
        assert outcome.summary.snapshot_id == fake_restic.snapshots('/srv/restic/a')[0]['id']

    def test_plain_output(self, settings, fake_restic):
        outcome = make_repository(settings).backup([], ['/srv/data'])

        assert outcome.error is None
        assert outcome.summary is None

    def test_exit_code_classified(self, settings, fake_restic):
        fake_restic.fail('/srv/restic/a', 'backup', 12, 'Fatal: wrong password or no key found\n')

        outcome = make_repository(settings).backup([], ['/srv/data'])

        assert isinstance(outcome.error, IncorrectPasswordError)


class TestParseOutput:
    """Test parsing of mixed restic output."""

    def test_skips_non_records(self):
        stdout = (
            'using parent snapshot 1234\n'
            '{"message_type":"changed","old_snapshot_id":"a","new_snapshot_id":"b"}\n'
            '{"message_type":"summary","changed_snapshots":1}\n'
            '{"message_type":"changed","old_snapshot_id":1}\n'
        )

        messages = ResticRepository.parse_output(stdout)

        assert len(messages) == 2
        assert isinstance(messages[0], ChangedMessage)
        assert isinstance(messages[1], SummaryMessage)

    def test_status_records(self):
        stdout = (
            '{"message_type":"status","percent_done":0.5,"total_files":4,"files_done":2}\n'
            '{"message_type":"summary","files_new":4,"snapshot_id":"abc"}\n'
        )

        messages = ResticRepository.parse_output(stdout)

        assert isinstance(messages[0], StatusMessage)
        assert messages[1].snapshot_id == 'abc'
