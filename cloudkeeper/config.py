import os
import json
from dataclasses import dataclass, field
from typing import List, Optional


class Config:
    """Base configuration"""

    DEBUG = False

    # Settings file with credentials and directories to back up
    SETTINGS_FILE = os.environ.get('CLOUDKEEPER_SETTINGS') or './settings.json'

    # Logging
    LOG_DIR = os.environ.get('CLOUDKEEPER_LOG_DIR') or '.'
    LOG_FILE = 'output.log'

    # Archives are written here and removed once uploaded
    WORK_DIR = os.environ.get('CLOUDKEEPER_WORK_DIR') or '.'

    # Key for `fernet:` credentials in the settings file
    MASTER_KEY = os.environ.get('CLOUDKEEPER_MASTER_KEY')

    # Remote defaults, overridable from the settings file
    BACKUP_FOLDER = 'Backups'
    MAX_KEEP = 10
    REGION = 'us-east-1'

    # Archive naming convention. Retention only considers remote objects whose
    # name contains both tokens, so changing them orphans existing backups.
    ARCHIVE_MARKER = 'backup'
    ARCHIVE_EXTENSION = '.tar.gz'

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name: Optional[str] = None):
    """Return the config class for a name, falling back to CLOUDKEEPER_ENV."""
    if config_name is None:
        config_name = os.environ.get('CLOUDKEEPER_ENV', 'default')

    if config_name not in config:
        raise SettingsError(
            f"Unknown configuration: {config_name}. Valid options: {list(config.keys())}"
        )

    return config[config_name]


class SettingsError(Exception):
    """Raised when the settings file is missing or invalid."""
    pass


@dataclass
class Settings:
    """Per-run settings read from the settings file, credentials already decoded."""

    email: str
    password: str
    dirs_to_backup: List[str]
    bucket: str
    dirs_to_ignore: List[str] = field(default_factory=list)
    region: str = Config.REGION
    endpoint_url: Optional[str] = None
    mfa_serial: Optional[str] = None
    backup_folder: str = Config.BACKUP_FOLDER
    max_keep: int = Config.MAX_KEEP


REQUIRED_KEYS = ('email', 'password', 'dirs_to_backup', 'bucket')


def load_settings(file_path: str, master_key: Optional[str] = None) -> Settings:
    """
    Read the JSON settings file and decode its credentials.

    Example settings.json:

        {
            "email": "QUtJQUlPU0ZPRE5ON0VYQU1QTEU=",
            "password": "d0phbHJYVXRuRkVNSS9LN01ERU5H",
            "dirs_to_backup": ["/data/notes", "/data/finance"],
            "dirs_to_ignore": ["node_modules"],
            "bucket": "my-backups"
        }

    Args:
        file_path: Path to the settings file
        master_key: Fernet key for `fernet:` credentials (default: Config.MASTER_KEY)

    Returns:
        Settings with plaintext credentials

    Raises:
        SettingsError: If the file is missing, malformed or incomplete
    """
    from cloudkeeper.utils.crypto import decode_credential, CredentialError

    try:
        with open(file_path, 'r') as f:
            raw = json.load(f)
    except FileNotFoundError:
        raise SettingsError(f"Settings file not found: {file_path}")
    except json.JSONDecodeError as e:
        raise SettingsError(f"Settings file is not valid JSON: {e}")

    if not isinstance(raw, dict):
        raise SettingsError("Settings file must contain a JSON object")

    missing = [key for key in REQUIRED_KEYS if not raw.get(key)]
    if missing:
        raise SettingsError(f"Missing required settings: {', '.join(missing)}")

    dirs_to_backup = raw['dirs_to_backup']
    dirs_to_ignore = raw.get('dirs_to_ignore') or []
    if not _is_string_list(dirs_to_backup) or not _is_string_list(dirs_to_ignore):
        raise SettingsError("dirs_to_backup and dirs_to_ignore must be lists of strings")

    max_keep = raw.get('max_keep', Config.MAX_KEEP)
    if not isinstance(max_keep, int) or isinstance(max_keep, bool) or max_keep < 0:
        raise SettingsError(f"max_keep must be a non-negative integer, got {max_keep!r}")

    if master_key is None:
        master_key = Config.MASTER_KEY

    try:
        email = decode_credential(raw['email'], master_key)
        password = decode_credential(raw['password'], master_key)
    except CredentialError as e:
        raise SettingsError(f"Failed to decode credentials: {e}")

    return Settings(
        email=email,
        password=password,
        dirs_to_backup=dirs_to_backup,
        dirs_to_ignore=dirs_to_ignore,
        bucket=raw['bucket'],
        region=raw.get('region') or Config.REGION,
        endpoint_url=raw.get('endpoint_url'),
        mfa_serial=raw.get('mfa_serial'),
        backup_folder=raw.get('backup_folder') or Config.BACKUP_FOLDER,
        max_keep=max_keep
    )


def _is_string_list(value) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)
