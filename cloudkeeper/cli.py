"""Command line interface for cloudkeeper."""

import sys
import logging
from typing import Optional

import click

from cloudkeeper import configure_logging
from cloudkeeper.config import get_config, load_settings, SettingsError
from cloudkeeper.backup.compression import ArchiveAlreadyExists
from cloudkeeper.backup.executor import run_backup
from cloudkeeper.backup.session import RemoteDuplicateExists, wait_for_pending_teardowns
from cloudkeeper.scheduler import create_scheduler, run_scheduler
from cloudkeeper.utils.crypto import encode_credential


logger = logging.getLogger(__name__)

# Exit codes
EXIT_EXPECTED_ERROR = 2
EXIT_RETENTION_FAILED = 3

# Errors a user can fix by renaming or retrying; anything else is a bug
EXPECTED_ERRORS = (ArchiveAlreadyExists, RemoteDuplicateExists)


@click.group()
@click.option('--env', 'config_name', type=click.Choice(['development', 'production', 'default']),
              default=None, help='Configuration to use (default: $CLOUDKEEPER_ENV)')
@click.option('--log-dir', type=click.Path(file_okay=False), default=None, help='Directory for output.log')
@click.pass_context
def cli(ctx, config_name: Optional[str], log_dir: Optional[str]):
    """cloudkeeper - archive directories and keep the newest backups in S3."""
    config = get_config(config_name)
    configure_logging(config, log_dir)

    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command('run')
@click.option('--settings', 'settings_file', type=click.Path(dir_okay=False), default=None,
              help='Settings file (default: $CLOUDKEEPER_SETTINGS or ./settings.json)')
@click.option('--work-dir', type=click.Path(file_okay=False, exists=True), default=None,
              help='Directory the archive is written to')
@click.option('--mfa', default=None, help='One-time MFA code')
@click.pass_context
def run_command(ctx, settings_file: Optional[str], work_dir: Optional[str], mfa: Optional[str]):
    """Create, upload and prune backups once."""
    config = ctx.obj['config']
    settings = _load_settings_or_exit(settings_file or config.SETTINGS_FILE)

    try:
        result = run_backup(settings, work_dir=work_dir or config.WORK_DIR, mfa=mfa)
    except EXPECTED_ERRORS as e:
        logger.error(str(e))
        sys.exit(EXIT_EXPECTED_ERROR)
    finally:
        wait_for_pending_teardowns(timeout=10)

    if result.eviction_error:
        logger.error(f"Backup uploaded, but old backups could not be pruned: {result.eviction_error}")
        sys.exit(EXIT_RETENTION_FAILED)

    click.echo(f"Backup {result.archive_name} uploaded, {len(result.evicted)} old backup(s) removed.")


@cli.command('schedule')
@click.option('--cron', required=True, help="Crontab expression, e.g. '0 2 * * *'")
@click.option('--settings', 'settings_file', type=click.Path(dir_okay=False), default=None,
              help='Settings file (default: $CLOUDKEEPER_SETTINGS or ./settings.json)')
@click.option('--work-dir', type=click.Path(file_okay=False, exists=True), default=None,
              help='Directory the archive is written to')
@click.pass_context
def schedule_command(ctx, cron: str, settings_file: Optional[str], work_dir: Optional[str]):
    """Run backups on a cron schedule until interrupted."""
    config = ctx.obj['config']
    settings_file = settings_file or config.SETTINGS_FILE

    # Fail fast on a broken settings file instead of at the first run
    _load_settings_or_exit(settings_file)

    try:
        scheduler = create_scheduler(cron, settings_file, work_dir=work_dir or config.WORK_DIR)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--cron')

    run_scheduler(scheduler)


@cli.command('encode-credential')
@click.option('--encrypt', is_flag=True, help='Encrypt with $CLOUDKEEPER_MASTER_KEY instead of base64')
@click.password_option('--value', prompt='Credential', help='Credential to encode')
@click.pass_context
def encode_credential_command(ctx, encrypt: bool, value: str):
    """Print a credential encoded for the settings file."""
    master_key = None

    if encrypt:
        master_key = ctx.obj['config'].MASTER_KEY
        if not master_key:
            raise click.UsageError('CLOUDKEEPER_MASTER_KEY is not set')

    click.echo(encode_credential(value, master_key))


def _load_settings_or_exit(settings_file: str):
    try:
        return load_settings(settings_file)
    except SettingsError as e:
        logger.error(str(e))
        sys.exit(1)


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
