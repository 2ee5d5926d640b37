"""
Unit tests for retention policy (cloudkeeper/backup/retention.py).

Tests obsolete-archive selection and enforcement through a session.
"""

import random
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from cloudkeeper.backup.retention import is_backup_archive_name, select_obsolete, enforce_retention
from cloudkeeper.backup.storage import RemoteObject, NodeKind, TransportIOError


def node(name, created_at, parent='Backups/', kind=NodeKind.FILE):
    return RemoteObject(
        name=name,
        kind=kind,
        parent=parent,
        created_at=created_at,
        handle=f"{parent}{name}"
    )


class TestIsBackupArchiveName:
    """Test the archive naming convention."""

    @pytest.mark.parametrize("name,expected", [
        ("backup2024-01-15.tar.gz", True),
        ("old-backup.tar.gz.1", True),
        ("nightly_backup_v2.tar.gz", True),
        ("backup2024-01-15.zip", False),
        ("notes.tar.gz", False),
        ("Backup2024-01-15.tar.gz", False),
        ("backup", False),
    ])
    def test_naming_convention(self, name, expected):
        assert is_backup_archive_name(name) is expected


class TestSelectObsolete:
    """Test select_obsolete function."""

    def test_returns_oldest_beyond_max_keep(self, archive_factory):
        """12 archives, keep 10 -> the 2 oldest."""
        archives = archive_factory(12)

        obsolete = select_obsolete(archives, 'Backups/', 10)

        assert obsolete == archives[:2]

    def test_sorts_by_creation_time(self, archive_factory):
        """Input order does not matter."""
        archives = archive_factory(6)
        shuffled = archives[:]
        random.Random(42).shuffle(shuffled)

        obsolete = select_obsolete(shuffled, 'Backups/', 2)

        assert obsolete == archives[:4]

    @pytest.mark.parametrize("count,max_keep", [(0, 0), (3, 3), (3, 5), (0, 10)])
    def test_nothing_obsolete_when_within_limit(self, archive_factory, count, max_keep):
        archives = archive_factory(count)

        assert select_obsolete(archives, 'Backups/', max_keep) == []

    def test_max_keep_zero_selects_everything(self, archive_factory):
        archives = archive_factory(4)

        assert select_obsolete(archives, 'Backups/', 0) == archives

    def test_negative_max_keep_rejected(self, archive_factory):
        with pytest.raises(ValueError):
            select_obsolete(archive_factory(3), 'Backups/', -1)

    def test_ignores_other_folders(self, archive_factory):
        """Archives outside the backup folder are never selected or counted."""
        archives = archive_factory(3)
        elsewhere = archive_factory(5, parent='Other/')

        obsolete = select_obsolete(elsewhere + archives, 'Backups/', 2)

        assert obsolete == archives[:1]

    def test_ignores_non_archive_names(self, archive_factory):
        """Files that don't follow the naming convention are left alone."""
        archives = archive_factory(2)
        old = datetime(2000, 1, 1, tzinfo=timezone.utc)
        unrelated = [node('notes.txt', old), node('photos.tar.gz', old), node('backup.zip', old)]

        obsolete = select_obsolete(unrelated + archives, 'Backups/', 1)

        assert obsolete == archives[:1]

    def test_ignores_folders(self):
        """A folder that happens to look like an archive is not a candidate."""
        created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        folder = RemoteObject(
            name='backup2024.tar.gz',
            kind=NodeKind.FOLDER,
            parent='Backups/',
            created_at=created,
            handle='Backups/backup2024.tar.gz/'
        )

        assert select_obsolete([folder], 'Backups/', 0) == []

    def test_ties_broken_by_name(self):
        """Archives created at the same instant are ordered by name."""
        created = datetime(2024, 1, 1, tzinfo=timezone.utc)
        b = node('backup-b.tar.gz', created)
        a = node('backup-a.tar.gz', created)
        c = node('backup-c.tar.gz', created)

        assert select_obsolete([c, b, a], 'Backups/', 1) == [a, b]

    def test_root_folder_handle(self, archive_factory):
        """Archives at the drive root are matched with the root handle."""
        archives = archive_factory(3, parent='')

        assert select_obsolete(archives, '', 1) == archives[:2]


class TestEnforceRetention:
    """Test enforce_retention with a session."""

    def test_deletes_obsolete(self, archive_factory):
        obsolete = archive_factory(2)
        session = MagicMock()
        session.find_obsolete.return_value = obsolete

        deleted = enforce_retention(session, 10)

        assert deleted == obsolete
        session.find_obsolete.assert_called_once_with(10)
        session.delete_all.assert_called_once_with(obsolete)

    def test_nothing_to_delete(self):
        session = MagicMock()
        session.find_obsolete.return_value = []

        assert enforce_retention(session, 10) == []
        session.delete_all.assert_not_called()

    def test_delete_failure_propagates(self, archive_factory):
        session = MagicMock()
        session.find_obsolete.return_value = archive_factory(2)
        session.delete_all.side_effect = TransportIOError("S3 delete failed")

        with pytest.raises(TransportIOError):
            enforce_retention(session, 10)
