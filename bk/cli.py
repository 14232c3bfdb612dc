"""Command line interface for bk."""

import os
import json
from typing import List, Optional

import typer

from bk import __version__, configure_logging
from bk.config import config as settings_by_env
from bk.errors import BackupError, ScriptError, UnknownReferenceError
from bk.models import BackupConfig, ConfigError
from bk.orchestrator import Orchestrator, RunOptions, init_targets, list_snapshots
from bk.backup.lineage import HeadTag, chain
from bk.utils.hostkey import HostIdentity


app = typer.Typer(add_completion=False, help="Configuration-driven restic backups.")


def _version_callback(value: bool):
    if value:
        typer.echo(f"bk {__version__}")
        raise typer.Exit()


@app.callback()
def cli(
    ctx: typer.Context,
    env: str = typer.Option(os.environ.get('BK_ENV') or 'default', '--env',
                            help="Settings profile (development, production)."),
    log_level: Optional[str] = typer.Option(None, '--log-level', help="Log level (DEBUG, INFO, ...)."),
    log_dir: Optional[str] = typer.Option(None, '--log-dir', help="Also log to a rotating file here."),
    version: bool = typer.Option(False, '--version', callback=_version_callback, is_eager=True,
                                 help="Show the version and exit."),
):
    """Configuration-driven restic backups."""
    if env not in settings_by_env:
        typer.echo(f"Error: unknown settings profile {env} (expected one of {', '.join(settings_by_env)})", err=True)
        raise typer.Exit(2)

    settings = settings_by_env[env]
    try:
        configure_logging(log_level or settings.LOG_LEVEL, log_dir or settings.LOG_DIR)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)

    ctx.obj = {'settings': settings}


def _load(config_path: str) -> BackupConfig:
    try:
        return BackupConfig.load(config_path)
    except (ConfigError, UnknownReferenceError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def run(
    ctx: typer.Context,
    config: str = typer.Argument(..., help="Config file."),
    dry_run: bool = typer.Option(False, '--dry-run', '-n', help="Dry run."),
    exclude: Optional[List[str]] = typer.Option(None, '--exclude', '-e', help="Skip jobs using this path name."),
    mode: Optional[List[str]] = typer.Option(None, '--mode', '-m', help="rsync, restic or restic_forget."),
):
    """Run every configured job."""
    conf = _load(config)
    options = RunOptions(dry_run=dry_run, exclude=exclude or [], modes=mode or [])

    try:
        status = Orchestrator(conf, ctx.obj['settings']).run(options)
    except (ScriptError, UnknownReferenceError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)

    raise typer.Exit(status)


@app.command()
def show(config: str = typer.Argument(..., help="Config file.")):
    """Show the parsed config (secrets masked)."""
    conf = _load(config)
    typer.echo(json.dumps(conf.masked(), indent=2))


@app.command()
def init(ctx: typer.Context, config: str = typer.Argument(..., help="Config file.")):
    """Initialize repository targets."""
    conf = _load(config)
    failed = False

    for name, result in init_targets(conf, ctx.obj['settings']).items():
        if result.ok:
            typer.echo(f"{name}: repository ready")
        else:
            typer.echo(f"{name}: initializing repository failed: {result.error}", err=True)
            failed = True

    raise typer.Exit(1 if failed else 0)


@app.command('list')
def list_command(
    ctx: typer.Context,
    config: str = typer.Argument(..., help="Config file."),
    lineage: bool = typer.Option(False, '--lineage', help="Only show this machine's lineage, newest first."),
):
    """List snapshots per target."""
    settings = ctx.obj['settings']
    conf = _load(config)
    head = None
    if lineage:
        try:
            head = HeadTag.own(HostIdentity.from_settings(settings))
        except BackupError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)

    failed = False
    for name, snapshots in list_snapshots(conf, settings).items():
        if isinstance(snapshots, BackupError):
            typer.echo(f"{name}: {snapshots}", err=True)
            failed = True
            continue

        if head is not None:
            snapshots = chain(snapshots, head)

        typer.echo(f"{name}: {len(snapshots)} snapshots")
        for snap in snapshots:
            typer.echo(f"  {snap.short_id or snap.id}  {snap.time}  {snap.hostname}  {','.join(snap.tags)}")

    raise typer.Exit(1 if failed else 0)


@app.command('config-schema')
def config_schema():
    """Print the config JSON schema."""
    typer.echo(json.dumps(BackupConfig.json_schema(), indent=2))


def main():
    app()
