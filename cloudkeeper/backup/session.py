"""
Authenticated session against the remote object store.

A session goes NEW -> AUTHENTICATED -> CLOSED and never comes back from
CLOSED. Callers must log out explicitly on every path. If a session is
garbage collected while still authenticated, its connection is handed to a
background thread that logs it out. That teardown is best effort: it races
interpreter shutdown and nobody waits for it.
"""

import os
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional, Set

from .storage import (
    MultipleDestinationFolders,
    NoDestinationFolder,
    NodeKind,
    ObjectRepository,
    RemoteObject,
    StorageError,
)
from .retention import select_obsolete


logger = logging.getLogger(__name__)


class UploadError(StorageError):
    """Raised when an archive cannot be uploaded."""
    pass


class RemoteDuplicateExists(UploadError):
    """Raised when the backup folder already holds a file with the same name."""

    def __init__(self, file_name: str):
        self.file_name = file_name
        super().__init__(
            f"Tried to upload a file with filename `{file_name}`, but it already exists "
            f"in the cloud drive. Try to specify a different filename or consider "
            f"using randomly generated designations."
        )


class RetentionListingFailed(StorageError):
    """Raised when the remote listing needed for retention fails."""
    pass


class SessionNotAuthenticated(StorageError):
    """Raised when a remote operation is attempted outside an authenticated session."""
    pass


class SessionState(Enum):
    NEW = 'new'
    AUTHENTICATED = 'authenticated'
    CLOSED = 'closed'


# Background teardown queue for sessions dropped while still logged in
_teardown_lock = threading.Lock()
_teardown_executor = None
_pending_teardowns: Set[Future] = set()


def _submit_teardown(repository: ObjectRepository) -> Optional[Future]:
    global _teardown_executor

    with _teardown_lock:
        if _teardown_executor is None:
            _teardown_executor = ThreadPoolExecutor(
                max_workers=1,
                thread_name_prefix='session-teardown'
            )

        try:
            future = _teardown_executor.submit(_best_effort_logout, repository)
        except RuntimeError as e:
            # Interpreter is shutting down
            logger.error(f"Could not schedule logout for dropped session: {e}")
            return None

        _pending_teardowns.add(future)

    future.add_done_callback(_forget_teardown)
    return future


def _forget_teardown(future: Future):
    with _teardown_lock:
        _pending_teardowns.discard(future)


def _best_effort_logout(repository: ObjectRepository):
    logger.debug("Logging out dropped session in background...")
    try:
        repository.logout()
        logger.info("Dropped session logged out.")
    except Exception as e:
        logger.error(f"Background logout error: {e!r}")


def wait_for_pending_teardowns(timeout: Optional[float] = None) -> bool:
    """
    Wait for background logouts of dropped sessions.

    Returns:
        True if every pending logout finished within the timeout
    """
    with _teardown_lock:
        pending = set(_pending_teardowns)

    if not pending:
        return True

    _, not_done = wait(pending, timeout=timeout)
    return not not_done


class BackupSession:
    """
    One authenticated connection to the remote store, scoped to a backup folder.

    The repository sits in an optional slot: logout and the dropped-session
    teardown both take it out of the slot before using it, so it is logged
    out once no matter which path gets there first.
    """

    def __init__(self, repository: ObjectRepository, backup_folder_path: str):
        """
        Args:
            repository: Object repository to authenticate against
            backup_folder_path: Folder holding the backups ('/' for the root,
                '/A/B' for a path, or a bare folder name)
        """
        self.backup_folder_path = backup_folder_path
        self.backup_folder_handle: Optional[str] = None
        self._repository: Optional[ObjectRepository] = repository
        self._state = SessionState.NEW
        self._state_lock = threading.RLock()
        self._folder_error: Optional[NoDestinationFolder] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    def login(self, email: str, password: str, mfa: Optional[str] = None):
        """
        Authenticate and resolve the backup folder.

        A folder that cannot be resolved is logged and leaves
        backup_folder_handle unset; upload and retention then fail with
        NoDestinationFolder.

        Any other error from folder resolution logs the session out and
        propagates.

        Raises:
            AuthenticationFailed: If the credentials are rejected
            SessionNotAuthenticated: If the session was already used
        """
        with self._state_lock:
            if self._state is not SessionState.NEW:
                raise SessionNotAuthenticated(f"Cannot log in a session in state: {self._state.value}")

            logger.info(f"Logging in with email: {email}...")
            self._repository.login(email, password, mfa)
            self._state = SessionState.AUTHENTICATED

        try:
            folder = self._repository.resolve_path(self.backup_folder_path)
            self.backup_folder_handle = folder.handle
            logger.debug(f"Backup folder {self.backup_folder_path} resolved to handle {folder.handle!r}")
        except NoDestinationFolder as e:
            self._folder_error = e
            logger.warning(f"Backup folder unavailable, uploads disabled: {e}")
        except StorageError as e:
            self._folder_error = NoDestinationFolder(f"Could not resolve {self.backup_folder_path}: {e}")
            logger.warning(f"Backup folder unavailable, uploads disabled: {e}")
        except BaseException:
            logger.error("Unexpected error while resolving the backup folder, logging out...")
            self.try_logout()
            raise

    def check_duplicate(self, local_file_path: str):
        """
        Fail if the backup folder already has a file named like local_file_path.

        Uses a fresh listing. The store has no create-if-absent, so a
        concurrent run can still upload the same name between this check
        and the upload.

        Raises:
            NoDestinationFolder: If the backup folder was not resolved
            RemoteDuplicateExists: If the name is taken
        """
        repository = self._active_repository()
        destination = self._destination()
        file_name = os.path.basename(local_file_path)

        for node in repository.list_objects():
            if (node.name == file_name
                    and node.kind is NodeKind.FILE
                    and node.parent == destination):
                raise RemoteDuplicateExists(file_name)

    def upload(self, local_file_path: str, check_duplicate: bool = True) -> RemoteObject:
        """
        Upload a local file into the backup folder.

        Args:
            local_file_path: Path of the file to upload
            check_duplicate: Set to False if check_duplicate() was just called

        Returns:
            The uploaded RemoteObject

        Raises:
            NoDestinationFolder: If the backup folder was not resolved
            RemoteDuplicateExists: If the name is taken
            OSError: If the local file cannot be read
            TransportIOError: If the transfer fails
        """
        repository = self._active_repository()
        destination = self._destination()

        if check_duplicate:
            self.check_duplicate(local_file_path)

        file_name = os.path.basename(local_file_path)

        with open(local_file_path, 'rb') as f:
            size = os.fstat(f.fileno()).st_size
            logger.info(f"Uploading {file_name} ({size} bytes) to {self.backup_folder_path}...")

            return repository.upload(
                destination,
                file_name,
                size,
                f,
                datetime.now(timezone.utc)
            )

    def find_obsolete(self, max_keep: int) -> List[RemoteObject]:
        """
        List the backup folder and select archives beyond the newest max_keep.

        Raises:
            NoDestinationFolder: If the backup folder was not resolved
            RetentionListingFailed: If the listing fails
        """
        repository = self._active_repository()
        destination = self._destination()

        try:
            objects = repository.list_objects()
        except StorageError as e:
            raise RetentionListingFailed(f"Failed to list remote objects: {e}")

        return select_obsolete(objects, destination, max_keep)

    def delete_all(self, objects: Iterable[RemoteObject]):
        """
        Delete objects in order. The first failure stops and propagates.
        """
        repository = self._active_repository()

        for obj in objects:
            logger.info(f"Deleting remote object: {obj.handle}")
            repository.delete(obj.handle)

    def logout(self):
        """
        Log out. Only the first call reaches the remote store; later calls do nothing.

        The session is CLOSED even if the remote logout raises.
        """
        with self._state_lock:
            repository = self._take_repository()

        if repository is None:
            return

        logger.info("Logging out...")
        repository.logout()

    def try_logout(self):
        """Log out, logging instead of raising any storage error."""
        logger.debug("Trying to log out...")
        try:
            self.logout()
            logger.info("Successfully logged out.")
        except StorageError as e:
            logger.error(f"Logout error: {e!r}")

    def _take_repository(self) -> Optional[ObjectRepository]:
        """Close the session; return the repository only if it still needs a logout."""
        repository, self._repository = self._repository, None
        was_authenticated = self._state is SessionState.AUTHENTICATED
        self._state = SessionState.CLOSED

        return repository if was_authenticated else None

    def _active_repository(self) -> ObjectRepository:
        if self._state is not SessionState.AUTHENTICATED:
            raise SessionNotAuthenticated(f"Session is not authenticated (state: {self._state.value})")
        return self._repository

    def _destination(self) -> str:
        if self.backup_folder_handle is None:
            if isinstance(self._folder_error, MultipleDestinationFolders):
                raise MultipleDestinationFolders(str(self._folder_error))
            raise NoDestinationFolder(
                f"No backup folder resolved for {self.backup_folder_path}"
                + (f": {self._folder_error}" if self._folder_error else "")
            )
        return self.backup_folder_handle

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.try_logout()
        return False

    def __del__(self):
        # Last resort only; normal paths have already logged out
        lock = getattr(self, '_state_lock', None)
        if lock is None:
            return

        with lock:
            repository = self._take_repository()

        if repository is not None:
            logger.debug("Found BackupSession out of scope while logged in, scheduling logout...")
            _submit_teardown(repository)
