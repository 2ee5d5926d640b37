"""
Retention policy enforcement for backups.

Keeps the newest ``max_keep`` backup archives in the remote backup folder and
selects the rest, oldest first, for deletion. Selection works on a listing
snapshot only, so it can be tested without any network access.
"""

import logging
from typing import Iterable, List, Optional

from cloudkeeper.config import Config
from .storage import NodeKind, RemoteObject


logger = logging.getLogger(__name__)


def is_backup_archive_name(name: str) -> bool:
    """
    Check whether a remote object name follows the archive naming convention.

    A plain substring test on both tokens, kept as is so archives uploaded by
    earlier versions are still recognized.
    """
    return Config.ARCHIVE_MARKER in name and Config.ARCHIVE_EXTENSION in name


def select_obsolete(
    objects: Iterable[RemoteObject],
    backup_folder_handle: Optional[str],
    max_keep: int
) -> List[RemoteObject]:
    """
    Select the backup archives that fall outside the newest max_keep.

    Args:
        objects: Listing snapshot of the remote store
        backup_folder_handle: Handle of the backup folder
        max_keep: Number of archives to keep; 0 selects every archive

    Returns:
        Obsolete archives sorted by creation time, oldest first

    Raises:
        ValueError: If max_keep is negative
    """
    if max_keep < 0:
        raise ValueError(f"max_keep must not be negative: {max_keep}")

    archives = [
        obj for obj in objects
        if obj.kind is NodeKind.FILE
        and obj.parent == backup_folder_handle
        and is_backup_archive_name(obj.name)
    ]

    # Name breaks ties between archives created at the same instant
    archives.sort(key=lambda obj: (obj.created_at, obj.name))

    excess = len(archives) - max_keep
    if excess <= 0:
        return []

    return archives[:excess]


def enforce_retention(session, max_keep: int) -> List[RemoteObject]:
    """
    Delete obsolete archives from the session's backup folder.

    Args:
        session: Authenticated BackupSession
        max_keep: Number of archives to keep

    Returns:
        The deleted archives, oldest first

    Raises:
        StorageError: If listing or any deletion fails. Archives before the
            failing one stay deleted; a later run recomputes the rest.
    """
    obsolete = session.find_obsolete(max_keep)

    if not obsolete:
        logger.info(f"Retention: nothing to delete (keeping {max_keep})")
        return []

    logger.info(f"Retention: deleting {len(obsolete)} archive(s), keeping {max_keep}")
    session.delete_all(obsolete)

    return obsolete
