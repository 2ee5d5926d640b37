"""
Backup module for cloudkeeper.

This module handles the core backup functionality including:
- Archive creation
- Remote object storage (S3)
- Authenticated remote sessions
- Retention policy enforcement
- Execution orchestration
"""

from .executor import BackupExecutor, BackupResult, Stage, run_backup
from .compression import build_archive, generate_archive_filename, ArchiveError, ArchiveAlreadyExists
from .storage import (
    ObjectRepository,
    S3ObjectRepository,
    RemoteObject,
    NodeKind,
    StorageError,
    AuthenticationFailed,
    TransportIOError,
    NoDestinationFolder,
    MultipleDestinationFolders,
)
from .session import (
    BackupSession,
    RemoteDuplicateExists,
    RetentionListingFailed,
    SessionNotAuthenticated,
    UploadError,
)
from .retention import select_obsolete, enforce_retention

__all__ = [
    'BackupExecutor',
    'BackupResult',
    'Stage',
    'run_backup',
    'build_archive',
    'generate_archive_filename',
    'ArchiveError',
    'ArchiveAlreadyExists',
    'ObjectRepository',
    'S3ObjectRepository',
    'RemoteObject',
    'NodeKind',
    'StorageError',
    'AuthenticationFailed',
    'TransportIOError',
    'NoDestinationFolder',
    'MultipleDestinationFolders',
    'BackupSession',
    'RemoteDuplicateExists',
    'RetentionListingFailed',
    'SessionNotAuthenticated',
    'UploadError',
    'select_obsolete',
    'enforce_retention'
]
