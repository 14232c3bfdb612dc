"""
Credential and transport resolution for restic targets.

Secrets are resolved per use and only ever end up in the environment of the
restic child process, never in the environment of this process.
"""

from typing import Dict, List, Optional, Tuple

from pydantic import SecretStr

from bk.errors import MissingCredentialError
from bk.models import ResticTarget


KNOWN_TRANSPORT_PREFIXES = ('sftp://', 'sftp:')


def read_secret(inline: Optional[SecretStr], secret_file: Optional[str], what: str) -> Optional[str]:
    """
    Resolve a secret from an inline value or a file reference.

    The inline value wins. A trailing newline in the file is stripped.

    Args:
        inline: Inline secret (may be None)
        secret_file: Path to a file holding the secret (may be None)
        what: Human readable name used in error messages

    Returns:
        The secret, or None if neither source is configured

    Raises:
        MissingCredentialError: If the referenced file cannot be read
    """
    if inline is not None:
        return inline.get_secret_value()

    if secret_file:
        try:
            with open(secret_file, 'r') as f:
                return f.read().rstrip('\r\n')
        except OSError as e:
            raise MissingCredentialError(f"Cannot read {what} file {secret_file}: {e}")

    return None


class CredentialResolver:
    """
    Builds the child-process environment and backend options for a target.
    """

    def __init__(self, target: ResticTarget):
        """
        Args:
            target: Repository target to resolve credentials for
        """
        self.target = target

    def passphrase(self) -> str:
        """
        Raises:
            MissingCredentialError: If neither passphrase nor passphrase_file resolves
        """
        passphrase = read_secret(self.target.passphrase, self.target.passphrase_file, 'passphrase')
        if passphrase is None:
            raise MissingCredentialError(
                f"Neither passphrase nor passphrase file provided for {self.target.repo}"
            )
        return passphrase

    def s3_keys(self) -> Optional[Tuple[str, str]]:
        """
        Resolve the S3 key pair.

        Returns:
            (access_key, secret_key), or None if the target has no S3 section

        Raises:
            MissingCredentialError: If either key of a configured pair is missing
        """
        s3 = self.target.s3
        if s3 is None:
            return None

        access_key = read_secret(s3.access_key, s3.access_key_file, 'S3 access key')
        secret_key = read_secret(s3.secret_key, s3.secret_key_file, 'S3 secret key')

        if access_key is None or secret_key is None:
            missing = 'access key' if access_key is None else 'secret key'
            raise MissingCredentialError(f"S3 {missing} not provided for {self.target.repo}")

        return access_key, secret_key

    def ssh_transport(self) -> Optional[str]:
        """
        Build the sftp transport option for targets with an SSH identity.

        The repository locator `sftp:user@host:/path` yields
        `sftp.command=ssh -i <identity> [-p <port>] -o StrictHostKeyChecking=no user@host -s sftp`.
        It is passed to restic with `-o`, never through the environment.

        Returns:
            The backend option string, or None if no SSH identity is configured

        Raises:
            MissingCredentialError: If user@host cannot be derived from the locator
        """
        ssh = self.target.ssh
        if ssh is None:
            return None

        remote = self.target.repo
        for prefix in KNOWN_TRANSPORT_PREFIXES:
            if remote.startswith(prefix):
                remote = remote[len(prefix):]
                break

        host_part = remote.split(':', 1)[0].split('/', 1)[0]
        user, sep, host = host_part.partition('@')
        if not sep or not user or not host:
            raise MissingCredentialError(
                f"Cannot derive user@host from repository {self.target.repo}"
            )

        ssh_cmd = ['ssh', '-i', ssh.identity]
        if ssh.port is not None:
            ssh_cmd += ['-p', str(ssh.port)]
        ssh_cmd += ['-o', 'StrictHostKeyChecking=no', f"{user}@{host}", '-s', 'sftp']

        return f"sftp.command={' '.join(ssh_cmd)}"

    def resolve(self) -> Tuple[Dict[str, str], List[str]]:
        """
        Resolve everything restic needs for this target.

        Returns:
            (environment additions, backend options)

        Raises:
            MissingCredentialError: If a mandatory credential is unresolved
        """
        env = {'RESTIC_PASSWORD': self.passphrase()}

        keys = self.s3_keys()
        if keys is not None:
            env['AWS_ACCESS_KEY_ID'], env['AWS_SECRET_ACCESS_KEY'] = keys

        options = []
        transport = self.ssh_transport()
        if transport is not None:
            options.append(transport)

        return env, options
