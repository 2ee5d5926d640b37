"""
Shared pytest fixtures for cloudkeeper tests.

This module provides fixtures for:
- Source directory trees to back up
- Decoded settings and settings files
- Mock S3 (moto) with a backup folder
- Object repositories and sessions
"""

import json
import base64
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import boto3
from moto import mock_aws

from cloudkeeper.config import Settings
from cloudkeeper.backup.storage import ObjectRepository, S3ObjectRepository, RemoteObject, NodeKind


BUCKET = 'test-bucket'
ACCESS_KEY = 'test_access_key_123'
SECRET_KEY = 'test_secret_key_456'


@pytest.fixture
def source_tree(tmp_path):
    """
    Create two source directories to back up.

    Creates:
    - data/notes/todo.txt
    - data/notes/2024/jan.md
    - data/notes/node_modules/pkg/index.js (ignored)
    - data/finance/taxes.csv
    - data/finance/reports/q1/summary.txt
    - data/finance/reports/node_modules/deep.js (ignored, nested)
    """
    data = tmp_path / 'data'

    notes = data / 'notes'
    (notes / '2024').mkdir(parents=True)
    (notes / 'node_modules' / 'pkg').mkdir(parents=True)
    (notes / 'todo.txt').write_text('buy milk')
    (notes / '2024' / 'jan.md').write_text('# January')
    (notes / 'node_modules' / 'pkg' / 'index.js').write_text('module.exports = 1')

    finance = data / 'finance'
    (finance / 'reports' / 'q1').mkdir(parents=True)
    (finance / 'reports' / 'node_modules').mkdir(parents=True)
    (finance / 'taxes.csv').write_text('year,amount\n2024,100\n')
    (finance / 'reports' / 'q1' / 'summary.txt').write_text('fine')
    (finance / 'reports' / 'node_modules' / 'deep.js').write_text('nope')

    return data


@pytest.fixture
def work_dir(tmp_path):
    """Directory where archives are written."""
    path = tmp_path / 'work'
    path.mkdir()
    return path


@pytest.fixture
def settings(source_tree):
    """Decoded settings pointing at the source tree."""
    return Settings(
        email=ACCESS_KEY,
        password=SECRET_KEY,
        dirs_to_backup=[str(source_tree / 'notes'), str(source_tree / 'finance')],
        dirs_to_ignore=['node_modules'],
        bucket=BUCKET,
        backup_folder='Backups',
        max_keep=10
    )


@pytest.fixture
def settings_file(tmp_path, source_tree):
    """Write a settings.json with base64 encoded credentials."""
    path = tmp_path / 'settings.json'
    path.write_text(json.dumps({
        'email': base64.b64encode(ACCESS_KEY.encode()).decode(),
        'password': base64.b64encode(SECRET_KEY.encode()).decode(),
        'dirs_to_backup': [str(source_tree / 'notes'), str(source_tree / 'finance')],
        'dirs_to_ignore': ['node_modules'],
        'bucket': BUCKET
    }))
    return path


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates 'test-bucket' in us-east-1 with a 'Backups/' folder marker.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        bucket = s3.create_bucket(Bucket=BUCKET)
        bucket.put_object(Key='Backups/', Body=b'')
        yield s3


@pytest.fixture
def s3_repository(mock_s3):
    """S3ObjectRepository for the mocked bucket, not logged in."""
    return S3ObjectRepository(bucket_name=BUCKET, region='us-east-1')


@pytest.fixture
def mock_repository():
    """
    MagicMock object repository with a resolvable 'Backups' folder.

    list_objects() returns an empty listing unless a test sets it.
    """
    repository = MagicMock(spec=ObjectRepository)
    repository.resolve_path.return_value = RemoteObject(
        name='Backups',
        kind=NodeKind.FOLDER,
        parent='',
        created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        handle='Backups/'
    )
    repository.list_objects.return_value = []
    return repository


@pytest.fixture
def archive_factory():
    """Return a builder for `count` backup archive nodes a day apart, oldest first."""
    return make_archives


def make_archives(count, parent='Backups/', start=None):
    start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
    archives = []

    for i in range(count):
        created = start + timedelta(days=i)
        name = f"backup{created.strftime('%Y-%m-%d')}.tar.gz"
        archives.append(RemoteObject(
            name=name,
            kind=NodeKind.FILE,
            parent=parent,
            created_at=created,
            handle=f"{parent}{name}",
            size=1024
        ))

    return archives
