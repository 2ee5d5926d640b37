"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Create the .tar.gz archive from the configured directories
2. Log in to the remote store
3. Check the backup folder for an archive with the same name
4. Upload the archive
5. Delete archives beyond the retention limit
6. Log out
7. Remove the local archive

Failure handling:
- Archive failure: nothing remote has happened, the error is raised
- Login failure: the archive is kept for inspection, the error is raised
- Duplicate/upload failure: log out, remove the archive, raise
- Retention failure: recorded on the result; the upload stands
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from cloudkeeper.config import Settings
from .compression import build_archive, generate_archive_filename, get_archive_size, ArchiveAlreadyExists
from .retention import enforce_retention
from .session import BackupSession
from .storage import ObjectRepository, RemoteObject, StorageError


logger = logging.getLogger(__name__)


class Stage(Enum):
    ARCHIVING = 'archiving'
    LOGGING_IN = 'logging_in'
    CHECKING_DUPLICATE = 'checking_duplicate'
    UPLOADING = 'uploading'
    EVICTING = 'evicting'
    LOGGING_OUT = 'logging_out'
    CLEANING_UP_LOCAL = 'cleaning_up_local'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class BackupResult:
    """Outcome of one backup run."""

    archive_name: str
    stage: Stage = Stage.ARCHIVING
    stages: List[Stage] = field(default_factory=list)
    failed_stage: Optional[Stage] = None
    archive_size: Optional[int] = None
    uploaded: Optional[RemoteObject] = None
    evicted: List[RemoteObject] = field(default_factory=list)
    eviction_error: Optional[StorageError] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.stage is Stage.DONE

    @property
    def fully_succeeded(self) -> bool:
        return self.succeeded and self.eviction_error is None


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one settings file.
    """

    def __init__(
        self,
        settings: Settings,
        repository: ObjectRepository,
        work_dir: str = '.',
        archive_name: Optional[str] = None,
        mfa: Optional[str] = None
    ):
        """
        Initialize backup executor.

        Args:
            settings: Decoded settings for this run
            repository: Object repository to upload to
            work_dir: Directory the archive is written to
            archive_name: Archive file name (default: backup{YYYY-MM-DD}.tar.gz)
            mfa: One-time MFA code for login
        """
        self.settings = settings
        self.repository = repository
        self.mfa = mfa
        self.archive_name = archive_name or generate_archive_filename()
        self.archive_path = os.path.join(work_dir, self.archive_name)
        self.session: Optional[BackupSession] = None
        self.result = BackupResult(archive_name=self.archive_name)

    def execute(self) -> BackupResult:
        """
        Execute the backup.

        Returns:
            BackupResult with stage DONE. eviction_error is set if old
            archives could not be pruned.

        Raises:
            ArchiveAlreadyExists: If the archive file is already on disk
            RemoteDuplicateExists: If the archive name is already uploaded
            StorageError: On login, destination or transfer failures
            OSError: If a source directory cannot be read
        """
        try:
            self._create_archive()
            self._login()
            self._upload()
            self._evict_and_finish()
        except BaseException:
            self.result.failed_stage = self.result.stage
            self._enter(Stage.FAILED)
            raise

        self._enter(Stage.DONE)
        self._log("Backup completed successfully")
        return self.result

    def _create_archive(self):
        self._enter(Stage.ARCHIVING)
        self._log(f"Creating tarball {self.archive_name} from dirs:")
        for directory in self.settings.dirs_to_backup:
            self._log(f"\t{directory}")

        try:
            build_archive(
                self.settings.dirs_to_backup,
                self.archive_path,
                self.settings.dirs_to_ignore
            )
        except ArchiveAlreadyExists:
            # Not ours, leave it alone
            raise
        except BaseException:
            self._remove_archive()
            raise

        self.result.archive_size = get_archive_size(self.archive_path)
        self._log(f"Created tarball successfully ({self.result.archive_size / 1024 / 1024:.2f} MB)")

    def _login(self):
        self._enter(Stage.LOGGING_IN)
        self.session = BackupSession(self.repository, self.settings.backup_folder)
        self.session.login(self.settings.email, self.settings.password, self.mfa)

    def _upload(self):
        try:
            self._enter(Stage.CHECKING_DUPLICATE)
            self.session.check_duplicate(self.archive_path)

            self._enter(Stage.UPLOADING)
            self.result.uploaded = self.session.upload(self.archive_path, check_duplicate=False)
        except BaseException:
            logger.error("Error encountered while uploading, starting cleanup...")
            self.session.try_logout()
            self._remove_archive()
            raise

        self._log(f"Uploaded file successfully: {self.result.uploaded.handle}")

    def _evict_and_finish(self):
        try:
            self._enter(Stage.EVICTING)
            self.result.evicted = enforce_retention(self.session, self.settings.max_keep)
            for obj in self.result.evicted:
                self._log(f"Deleted obsolete backup: {obj.name}")
        except StorageError as e:
            # The new backup is stored; pruning can happen on a later run
            self.result.eviction_error = e
            self._log(f"Retention failed, old backups kept: {e}", level=logging.ERROR)
        finally:
            self._enter(Stage.LOGGING_OUT)
            self.session.try_logout()

            self._enter(Stage.CLEANING_UP_LOCAL)
            self._remove_archive()

    def _remove_archive(self):
        if not os.path.exists(self.archive_path):
            return

        self._log("Removing archive file...")
        os.remove(self.archive_path)
        self._log("Successfully removed archive file.")

    def _enter(self, stage: Stage):
        self.result.stage = stage
        self.result.stages.append(stage)
        logger.debug(f"Stage: {stage.value}")

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp and pass it to the module logger.

        Args:
            message: Log message
            level: Logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def run_backup(
    settings: Settings,
    repository: Optional[ObjectRepository] = None,
    work_dir: str = '.',
    mfa: Optional[str] = None
) -> BackupResult:
    """
    Run one backup with the S3 repository described by the settings.

    Args:
        settings: Decoded settings
        repository: Repository override (default: S3ObjectRepository from settings)
        work_dir: Directory for the temporary archive
        mfa: One-time MFA code

    Returns:
        BackupResult of the run
    """
    if repository is None:
        from .storage import S3ObjectRepository
        repository = S3ObjectRepository(
            bucket_name=settings.bucket,
            region=settings.region,
            endpoint_url=settings.endpoint_url,
            mfa_serial=settings.mfa_serial
        )

    executor = BackupExecutor(settings, repository, work_dir=work_dir, mfa=mfa)
    return executor.execute()
