"""
Configuration document and read models.

The configuration document is YAML (JSON is accepted as well) and is
validated with pydantic. Restic's JSON output (snapshot listings and
newline-delimited status records) is parsed into the read models below.
"""

import json
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from bk.errors import UnknownReferenceError


class ConfigError(Exception):
    """Raised when the configuration document cannot be read or parsed."""
    pass


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra='forbid', populate_by_name=True)


# Inputs

class LocalPath(_ConfigModel):
    """Local path input"""

    path: str = Field(..., min_length=1, description="The local path")
    ensure_exists: bool = Field(
        True, description="Fail if the directory is missing or empty before running the backup"
    )
    cephfs_snap: bool = Field(False, description="Create a CephFS snapshot before the backup")
    same_path: bool = Field(
        False, description="Bind mount the snapshot to a consistent path"
    )


# Targets

class S3Credentials(_ConfigModel):
    """S3 key pair, each given inline or as a file reference."""

    access_key: Optional[SecretStr] = None
    access_key_file: Optional[str] = None
    secret_key: Optional[SecretStr] = None
    secret_key_file: Optional[str] = None


class SSHTransport(_ConfigModel):
    """SSH identity used for sftp repositories."""

    identity: str = Field(..., min_length=1, description="Path to the private key")
    port: Optional[int] = Field(None, ge=1, le=65535)


class ResticTarget(_ConfigModel):
    """A restic repository."""

    repo: str = Field(..., min_length=1, description="Repository locator (path, sftp:, s3:, ...)")
    passphrase: Optional[SecretStr] = None
    passphrase_file: Optional[str] = None
    s3: Optional[S3Credentials] = None
    ssh: Optional[SSHTransport] = None


# Jobs

class ResticJob(_ConfigModel):
    """An archive job: back up `src` paths to every target in `targets`."""

    src: List[str] = Field(..., min_length=1, description="Path names from `path`")
    targets: List[str] = Field(..., min_length=1, description="Target names from `restic_target`")
    exclude: List[str] = Field(default_factory=list)
    exclude_if_present: List[str] = Field(default_factory=list)
    one_file_system: bool = False
    concurrency: Optional[int] = Field(None, ge=1, description="restic --read-concurrency")
    tags: List[str] = Field(default_factory=list)
    reread: bool = Field(False, description="Re-read all files (restic --force)")
    exclude_caches: bool = False
    compression: Optional[str] = None
    quiet: bool = Field(False, description="Quiet output with JSON status records")
    host: Optional[str] = None
    ntfy: List[str] = Field(default_factory=list, description="Notification channel names")


class ResticForget(_ConfigModel):
    """A retention job: run `restic forget` with this policy on every target."""

    targets: List[str] = Field(..., min_length=1)
    ntfy: List[str] = Field(default_factory=list)

    keep_last: Optional[int] = Field(None, ge=0)
    keep_hourly: Optional[int] = Field(None, ge=0)
    keep_daily: Optional[int] = Field(None, ge=0)
    keep_weekly: Optional[int] = Field(None, ge=0)
    keep_monthly: Optional[int] = Field(None, ge=0)
    keep_yearly: Optional[int] = Field(None, ge=0)
    keep_within: Optional[str] = None
    keep_within_hourly: Optional[str] = None
    keep_within_daily: Optional[str] = None
    keep_within_weekly: Optional[str] = None
    keep_within_monthly: Optional[str] = None
    keep_within_yearly: Optional[str] = None
    keep_tag: List[str] = Field(default_factory=list)

    host: List[str] = Field(default_factory=list)
    tag: List[str] = Field(default_factory=list)
    path: List[str] = Field(default_factory=list)
    group_by: Optional[str] = None

    prune: bool = False
    max_unused: Optional[str] = None
    max_repack_size: Optional[str] = None
    repack_cacheable_only: bool = False
    repack_small: bool = False
    repack_uncompressed: bool = False


class RsyncJob(_ConfigModel):
    """Configuration for an individual rsync job."""

    src: str = Field(..., min_length=1)
    dest: str = Field(..., min_length=1)
    exclude: List[str] = Field(default_factory=list)
    delete: bool = Field(False, description="Delete files at the destination that are not in the source")
    ensure_exists: Optional[str] = Field(None, description="Directory that must exist and be non-empty")
    cephfs_snap: bool = False
    ntfy: List[str] = Field(default_factory=list)


# Notification

class NtfyAuth(_ConfigModel):
    user: str
    password: Optional[SecretStr] = Field(None, alias='pass')
    pass_file: Optional[str] = None


class NtfyConfiguration(_ConfigModel):
    host: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)
    auth: Optional[NtfyAuth] = None


class NotificationChannel(_ConfigModel):
    ntfy: Optional[NtfyConfiguration] = None


class BackupConfig(_ConfigModel):
    """Top-level configuration document."""

    start_script: Optional[str] = Field(None, description="Script run before any job")
    end_script: Optional[str] = Field(None, description="Script run after all jobs")
    delay: Optional[int] = Field(None, ge=1, description="Upper bound (seconds) of the random start delay")

    path: Dict[str, LocalPath] = Field(default_factory=dict)
    restic_target: Dict[str, ResticTarget] = Field(default_factory=dict)

    rsync: List[RsyncJob] = Field(default_factory=list)
    restic: List[ResticJob] = Field(default_factory=list)
    restic_forget: List[ResticForget] = Field(default_factory=list)

    ntfy: Dict[str, NotificationChannel] = Field(default_factory=dict)
    telemetry_url: Optional[str] = None

    @classmethod
    def load(cls, config_path: str) -> 'BackupConfig':
        """
        Read, validate and reference-check a configuration file.

        Args:
            config_path: Path to a YAML or JSON document

        Returns:
            BackupConfig instance

        Raises:
            ConfigError: If the file cannot be read or does not validate
            UnknownReferenceError: If a job references an undeclared name
        """
        try:
            with open(config_path, 'r') as f:
                data = yaml.safe_load(f)
        except OSError as e:
            raise ConfigError(f"Cannot read config {config_path}: {e}")
        except yaml.YAMLError as e:
            raise ConfigError(f"Cannot parse config {config_path}: {e}")

        return cls.from_dict(data or {})

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupConfig':
        try:
            conf = cls.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config: {e}")

        conf.check_references()
        return conf

    @classmethod
    def json_schema(cls) -> Dict[str, Any]:
        """JSON schema of the document, for validation tooling."""
        return cls.model_json_schema(by_alias=True)

    def check_references(self):
        """
        Verify every name a job references is declared.

        Raises:
            UnknownReferenceError: Listing every unknown reference found
        """
        problems = []

        for i, job in enumerate(self.restic):
            problems += _missing(f"restic[{i}].src", job.src, self.path, 'path')
            problems += _missing(f"restic[{i}].targets", job.targets, self.restic_target, 'restic_target')
            problems += _missing(f"restic[{i}].ntfy", job.ntfy, self.ntfy, 'ntfy')

        for i, job in enumerate(self.restic_forget):
            problems += _missing(f"restic_forget[{i}].targets", job.targets, self.restic_target, 'restic_target')
            problems += _missing(f"restic_forget[{i}].ntfy", job.ntfy, self.ntfy, 'ntfy')

        for i, job in enumerate(self.rsync):
            problems += _missing(f"rsync[{i}].ntfy", job.ntfy, self.ntfy, 'ntfy')

        if problems:
            raise UnknownReferenceError('; '.join(problems))

    def masked(self) -> Dict[str, Any]:
        """Plain representation with secrets replaced by asterisks."""
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)


def _missing(where: str, names: List[str], declared: Dict[str, Any], section: str) -> List[str]:
    return [f"{where}: '{name}' not declared in {section}" for name in names if name not in declared]


# restic read models

class Snapshot(BaseModel):
    """A snapshot as listed by `restic snapshots --json`."""
    model_config = ConfigDict(extra='ignore')

    id: str
    short_id: str = ''
    time: str = ''
    tree: Optional[str] = None
    parent: Optional[str] = None
    paths: List[str] = Field(default_factory=list)
    hostname: str = ''
    username: str = ''
    tags: List[str] = Field(default_factory=list)
    original: Optional[str] = None
    program_version: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None

    @field_validator('tags', 'paths', mode='before')
    @classmethod
    def none_as_empty(cls, v):
        return v if v is not None else []

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags


class StatusMessage(BaseModel):
    """Progress record emitted while a backup runs."""
    model_config = ConfigDict(extra='allow')

    percent_done: float = 0.0
    total_files: Optional[int] = None
    files_done: Optional[int] = None
    total_bytes: Optional[int] = None
    bytes_done: Optional[int] = None
    seconds_remaining: Optional[int] = None


class ChangedMessage(BaseModel):
    """Record emitted by `restic tag` for every modified snapshot."""
    model_config = ConfigDict(extra='allow')

    old_snapshot_id: str
    new_snapshot_id: str


class SummaryMessage(BaseModel):
    """Final record of a backup (or a tag edit)."""
    model_config = ConfigDict(extra='allow')

    # Snapshot edit summary
    changed_snapshots: Optional[int] = None

    # Backup summary
    files_new: Optional[int] = None
    files_changed: Optional[int] = None
    files_unmodified: Optional[int] = None
    dirs_new: Optional[int] = None
    dirs_changed: Optional[int] = None
    dirs_unmodified: Optional[int] = None
    data_blobs: Optional[int] = None
    tree_blobs: Optional[int] = None
    data_added: Optional[int] = None
    data_added_packed: Optional[int] = None
    total_files_processed: Optional[int] = None
    total_bytes_processed: Optional[int] = None
    total_duration: Optional[float] = None
    backup_start: Optional[str] = None
    backup_end: Optional[str] = None
    snapshot_id: Optional[str] = None


def parse_message(line: str):
    """
    Parse one line of restic JSON output.

    Records carry a `message_type` field; older restic versions omit it, in
    which case the record shape decides.

    Returns:
        StatusMessage, ChangedMessage, SummaryMessage, or None for lines that
        are not status records (errors, verbose output, blank lines)
    """
    line = line.strip()
    if not line.startswith('{'):
        return None

    try:
        data = json.loads(line)
    except json.JSONDecodeError:
        return None

    if not isinstance(data, dict):
        return None

    message_type = data.pop('message_type', None)

    if message_type == 'status':
        return StatusMessage.model_validate(data)
    if message_type == 'changed':
        return ChangedMessage.model_validate(data)
    if message_type == 'summary':
        return SummaryMessage.model_validate(data)
    if message_type is not None:
        # verbose_status, error, exit_error, ...
        return None

    if 'old_snapshot_id' in data and 'new_snapshot_id' in data:
        return ChangedMessage.model_validate(data)
    if 'percent_done' in data:
        return StatusMessage.model_validate(data)
    if 'snapshot_id' in data or 'changed_snapshots' in data or 'files_new' in data:
        return SummaryMessage.model_validate(data)
    return None
