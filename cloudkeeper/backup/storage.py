"""
Remote object storage for backup archives.

Defines the object repository contract the backup session relies on and its
S3 implementation:
- ObjectRepository: login, listing, path resolution, upload, delete, logout
- S3ObjectRepository: the contract on top of an S3 bucket

S3 has no real folders. A key ending in ``/`` is a folder marker (what the
AWS console creates), and every key prefix is treated as a folder as well.
Handles are object keys; the drive root has the empty handle.
"""

import os
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import BinaryIO, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError


logger = logging.getLogger(__name__)

ROOT_HANDLE = ''

# Error codes meaning the credentials themselves were rejected
AUTH_ERROR_CODES = {
    '403',
    'AccessDenied',
    'InvalidAccessKeyId',
    'SignatureDoesNotMatch',
    'InvalidClientTokenId',
    'ExpiredToken',
}


class StorageError(Exception):
    """Raised when a remote storage operation fails."""
    pass


class AuthenticationFailed(StorageError):
    """Raised when the remote store rejects the credentials."""
    pass


class TransportIOError(StorageError):
    """Raised on network or protocol failures talking to the remote store."""
    pass


class NoDestinationFolder(StorageError):
    """Raised when the backup folder cannot be found in the remote store."""
    pass


class MultipleDestinationFolders(NoDestinationFolder):
    """Raised when the backup folder name matches more than one folder."""
    pass


class NodeKind(Enum):
    FOLDER = 'folder'
    FILE = 'file'


@dataclass(frozen=True)
class RemoteObject:
    """A node of the remote store. The store owns it; we only keep the handle."""

    name: str
    kind: NodeKind
    parent: Optional[str]
    created_at: Optional[datetime]
    handle: str
    size: int = 0

    @property
    def is_folder(self) -> bool:
        return self.kind is NodeKind.FOLDER


class ObjectRepository:
    """
    Operations a backup session performs against a remote store.

    Subclasses implement login, logout, list_objects, upload and delete.
    Path resolution is shared and works on top of list_objects.
    """

    def login(self, user: str, secret: str, mfa: Optional[str] = None):
        raise NotImplementedError

    def logout(self):
        raise NotImplementedError

    def list_objects(self) -> List[RemoteObject]:
        raise NotImplementedError

    def upload(
        self,
        destination_handle: str,
        name: str,
        size: int,
        stream: BinaryIO,
        mtime: datetime
    ) -> RemoteObject:
        raise NotImplementedError

    def delete(self, handle: str):
        raise NotImplementedError

    def resolve_path(self, path: str) -> RemoteObject:
        """
        Resolve a folder path to its remote object.

        ``/`` is the drive root, ``/A/B`` is an absolute folder path and a bare
        name such as ``Backups`` matches a folder with that name anywhere.

        Raises:
            NoDestinationFolder: If nothing matches
            MultipleDestinationFolders: If a bare name matches several folders
        """
        nodes = self.list_objects()
        folders = [node for node in nodes if node.is_folder]

        if path == '/':
            return _root_node()

        if path.startswith('/'):
            handle = path.strip('/') + '/'
            for folder in folders:
                if folder.handle == handle:
                    return folder
            raise NoDestinationFolder(f"No folder is found in drive at path: {path}")

        matches = [folder for folder in folders if folder.name == path]

        if len(matches) > 1:
            raise MultipleDestinationFolders(
                f"Multiple folders found in drive with name: {path} "
                f"({', '.join(sorted(folder.handle for folder in matches))})"
            )
        if not matches:
            raise NoDestinationFolder(f"No folder is found in drive with name: {path}")

        return matches[0]


class S3ObjectRepository(ObjectRepository):
    """
    Object repository backed by an S3 bucket.

    Login takes the AWS access key id and secret access key. With an MFA code
    and a configured device serial, temporary session credentials are fetched
    from STS first.
    """

    # Files larger than this go through a multipart upload
    MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
    CHUNK_SIZE = 10 * 1024 * 1024  # 10MB

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        mfa_serial: Optional[str] = None
    ):
        """
        Initialize S3 repository.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            endpoint_url: Custom endpoint for S3 compatible stores
            mfa_serial: ARN or serial of the MFA device used at login
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url
        self.mfa_serial = mfa_serial
        self.s3_client = None

    @property
    def is_logged_in(self) -> bool:
        return self.s3_client is not None

    def login(self, user: str, secret: str, mfa: Optional[str] = None):
        """
        Create an S3 client and check it can reach the bucket.

        Raises:
            AuthenticationFailed: If the credentials are rejected
            TransportIOError: If the bucket cannot be reached
        """
        credentials = {
            'aws_access_key_id': user,
            'aws_secret_access_key': secret,
        }

        try:
            session = boto3.Session(region_name=self.region, **credentials)

            if mfa:
                if not self.mfa_serial:
                    raise AuthenticationFailed("MFA code given but no MFA device serial is configured")

                sts = session.client('sts', endpoint_url=self.endpoint_url)
                token = sts.get_session_token(SerialNumber=self.mfa_serial, TokenCode=mfa)
                temp = token['Credentials']
                session = boto3.Session(
                    region_name=self.region,
                    aws_access_key_id=temp['AccessKeyId'],
                    aws_secret_access_key=temp['SecretAccessKey'],
                    aws_session_token=temp['SessionToken']
                )

            client = session.client('s3', endpoint_url=self.endpoint_url)
            client.head_bucket(Bucket=self.bucket_name)

        except ClientError as e:
            error_code = _error_code(e)
            if error_code in AUTH_ERROR_CODES:
                raise AuthenticationFailed(f"S3 login rejected ({error_code}): {e}")
            if error_code in ('404', 'NoSuchBucket'):
                raise TransportIOError(f"Bucket does not exist: {self.bucket_name}")
            raise TransportIOError(f"S3 login failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise TransportIOError(f"S3 login failed: {e}")

        self.s3_client = client

    def logout(self):
        """Close the S3 client's connections. Does nothing when logged out."""
        client, self.s3_client = self.s3_client, None

        if client is None:
            return

        try:
            client.close()
        except BotoCoreError as e:
            raise TransportIOError(f"Failed to close S3 client: {e}")

    def list_objects(self) -> List[RemoteObject]:
        """
        List every object in the bucket as files and folders.

        Raises:
            TransportIOError: If listing fails
        """
        client = self._client()
        raw = []

        try:
            paginator = client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name):
                for obj in page.get('Contents', []):
                    raw.append(obj)

        except ClientError as e:
            raise TransportIOError(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise TransportIOError(f"S3 list failed: {e}")

        return _build_nodes(raw)

    def upload(
        self,
        destination_handle: str,
        name: str,
        size: int,
        stream: BinaryIO,
        mtime: datetime
    ) -> RemoteObject:
        """
        Upload a stream under a folder.

        Args:
            destination_handle: Handle of the destination folder
            name: Object name within the folder
            size: Number of bytes the stream will produce
            stream: Readable binary file object
            mtime: Modification time recorded in the object metadata

        Returns:
            The uploaded RemoteObject

        Raises:
            TransportIOError: If upload fails
        """
        client = self._client()
        key = f"{destination_handle}{name}"
        metadata = {'mtime': mtime.isoformat()}

        try:
            if size > self.MULTIPART_THRESHOLD:
                self._multipart_upload(client, key, stream, metadata)
            else:
                client.put_object(
                    Bucket=self.bucket_name,
                    Key=key,
                    Body=stream,
                    ContentLength=size,
                    Metadata=metadata
                )
        except ClientError as e:
            raise TransportIOError(f"S3 upload failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise TransportIOError(f"S3 upload failed: {e}")

        return RemoteObject(
            name=name,
            kind=NodeKind.FILE,
            parent=destination_handle,
            created_at=mtime,
            handle=key,
            size=size
        )

    def _multipart_upload(self, client, key: str, stream: BinaryIO, metadata: Dict[str, str]):
        """
        Upload a large stream in CHUNK_SIZE parts.

        The multipart upload is aborted if any part fails.
        """
        response = client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=key,
            Metadata=metadata
        )
        upload_id = response['UploadId']

        parts = []

        try:
            part_number = 1

            while True:
                data = stream.read(self.CHUNK_SIZE)
                if not data:
                    break

                response = client.upload_part(
                    Bucket=self.bucket_name,
                    Key=key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )

                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })

                part_number += 1

            client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {key}: {abort_error}")
            raise

    def delete(self, handle: str):
        """
        Delete an object by handle.

        Raises:
            TransportIOError: If deletion fails
        """
        client = self._client()

        try:
            client.delete_object(Bucket=self.bucket_name, Key=handle)
        except ClientError as e:
            raise TransportIOError(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise TransportIOError(f"S3 delete failed: {e}")

    def _client(self):
        if self.s3_client is None:
            raise StorageError("Not logged in to S3")
        return self.s3_client


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


def _root_node() -> RemoteObject:
    return RemoteObject(
        name='',
        kind=NodeKind.FOLDER,
        parent=None,
        created_at=None,
        handle=ROOT_HANDLE
    )


def _parent_handle(key: str) -> str:
    """Parent folder handle of a key: 'a/b/c.txt' -> 'a/b/', 'a/' -> ''."""
    parent = os.path.dirname(key.rstrip('/'))
    return f"{parent}/" if parent else ROOT_HANDLE


def _build_nodes(raw_objects: List[Dict]) -> List[RemoteObject]:
    """
    Turn a flat S3 listing into file and folder nodes.

    Folders implied by key prefixes get the creation time of their oldest
    descendant.
    """
    nodes = {}
    folder_times = {}

    for obj in raw_objects:
        key = obj['Key']
        modified = obj['LastModified']

        if key.endswith('/'):
            nodes[key] = RemoteObject(
                name=os.path.basename(key.rstrip('/')),
                kind=NodeKind.FOLDER,
                parent=_parent_handle(key),
                created_at=modified,
                handle=key
            )
        else:
            nodes[key] = RemoteObject(
                name=os.path.basename(key),
                kind=NodeKind.FILE,
                parent=_parent_handle(key),
                created_at=modified,
                handle=key,
                size=obj.get('Size', 0)
            )

        parent = _parent_handle(key)
        while parent != ROOT_HANDLE:
            if parent not in folder_times or modified < folder_times[parent]:
                folder_times[parent] = modified
            parent = _parent_handle(parent)

    for handle, created_at in folder_times.items():
        if handle not in nodes:
            nodes[handle] = RemoteObject(
                name=os.path.basename(handle.rstrip('/')),
                kind=NodeKind.FOLDER,
                parent=_parent_handle(handle),
                created_at=created_at,
                handle=handle
            )

    return sorted(nodes.values(), key=lambda node: node.handle)
