"""
Storage gateways for backup archives.

Supports:
- S3Storage: any S3-compatible object store (AWS S3, or Google Cloud Storage
  through its interoperability endpoint)
- LocalStorage: a directory tree with the same key layout

Keys are ``{location}/{filename}``, or just ``{filename}`` for the root
location. Listing a location returns only the objects directly inside it,
never those of nested locations such as ``weekly/``.
"""

import os
import shutil
import posixpath
from fnmatch import fnmatch
from pathlib import Path
from typing import Optional, List

import boto3
from botocore.exceptions import ClientError, BotoCoreError


# Files above this size are uploaded in parts
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class TransferError(StorageError):
    """Raised when an upload fails."""
    pass


class ListError(StorageError):
    """Raised when a location cannot be enumerated."""
    pass


class DeleteError(StorageError):
    """Raised when a single object cannot be deleted."""
    pass


def build_key(location: str, filename: str) -> str:
    """
    Join a location and a filename into an object key.

    Args:
        location: Location prefix ('' for the root)
        filename: Object filename

    Returns:
        Object key without leading or doubled slashes
    """
    location = location.strip('/')
    if not location:
        return filename
    return f"{location}/{filename}"


def _matches(key: str, pattern: Optional[str]) -> bool:
    return pattern is None or fnmatch(posixpath.basename(key), pattern)


def _client_error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Gateway to an S3-compatible bucket.

    Credentials fall back to boto3's default chain when not given. Set
    ``endpoint_url`` to ``https://storage.googleapis.com`` together with GCS
    HMAC keys to target a Google Cloud Storage bucket.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize S3 storage gateway.

        Args:
            bucket_name: Bucket name
            region: Bucket region (default: us-east-1)
            access_key: Access key ID (optional)
            secret_key: Secret access key (optional)
            endpoint_url: Custom endpoint for non-AWS providers (optional)
        """
        self.bucket_name = bucket_name
        self.region = region
        self.endpoint_url = endpoint_url

        client_kwargs = {'region_name': region}
        if access_key and secret_key:
            client_kwargs['aws_access_key_id'] = access_key
            client_kwargs['aws_secret_access_key'] = secret_key
        if endpoint_url:
            client_kwargs['endpoint_url'] = endpoint_url

        try:
            self.s3_client = boto3.client('s3', **client_kwargs)
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def __repr__(self):
        return f'<S3Storage bucket={self.bucket_name}>'

    def upload(self, local_path: str, location: str) -> str:
        """
        Upload a local archive into a location.

        Args:
            local_path: Path to local archive file
            location: Destination location prefix

        Returns:
            Key of the uploaded object

        Raises:
            TransferError: If upload fails
        """
        if not os.path.exists(local_path):
            raise TransferError(f"Local file not found: {local_path}")

        key = build_key(location, os.path.basename(local_path))

        try:
            file_size = os.path.getsize(local_path)
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, key)
            else:
                self._simple_upload(local_path, key)
            return key

        except ClientError as e:
            raise TransferError(f"S3 upload failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise TransferError(f"S3 upload failed: {e}")
        except OSError as e:
            raise TransferError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, local_path: str, key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=f)

    def _multipart_upload(self, local_path: str, key: str):
        """
        Upload a large file in fixed-size parts.

        The upload is aborted on any failure so no orphaned parts remain.
        """
        response = self.s3_client.create_multipart_upload(Bucket=self.bucket_name, Key=key)
        upload_id = response['UploadId']
        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1
                for chunk in iter(lambda: f.read(MULTIPART_CHUNK_SIZE), b''):
                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=chunk
                    )
                    parts.append({'PartNumber': part_number, 'ETag': response['ETag']})
                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def list(self, location: str, pattern: Optional[str] = None) -> List[str]:
        """
        List object keys directly inside a location.

        Args:
            location: Location prefix ('' for the bucket root)
            pattern: Optional glob matched against each key's basename

        Returns:
            Sorted list of keys; empty when the location holds nothing

        Raises:
            ListError: If listing fails
        """
        prefix = location.strip('/')
        prefix = f"{prefix}/" if prefix else ''

        try:
            keys = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix, Delimiter='/'):
                for obj in page.get('Contents', []):
                    if _matches(obj['Key'], pattern):
                        keys.append(obj['Key'])

            return sorted(keys)

        except ClientError as e:
            raise ListError(f"S3 list failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise ListError(f"Failed to list S3 objects: {e}")

    def delete(self, key: str):
        """
        Delete an object.

        Raises:
            DeleteError: If deletion fails
        """
        try:
            self.s3_client.delete_object(Bucket=self.bucket_name, Key=key)
        except ClientError as e:
            raise DeleteError(f"S3 delete failed ({_client_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise DeleteError(f"Failed to delete from S3: {e}")

    def test_connection(self) -> bool:
        """
        Test bucket access.

        Returns:
            True if the bucket is reachable

        Raises:
            StorageError: If the bucket is missing or access is denied
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _client_error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


class LocalStorage:
    """
    Gateway to a local directory tree.

    Stores archives as ``{base_path}/{location}/{filename}``.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage gateway.

        Args:
            base_path: Base directory for stored backups
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    def __repr__(self):
        return f'<LocalStorage path={self.base_path}>'

    def upload(self, local_path: str, location: str) -> str:
        """
        Copy an archive into a location.

        Returns:
            Key of the stored file (relative to base_path)

        Raises:
            TransferError: If the copy fails
        """
        if not os.path.exists(local_path):
            raise TransferError(f"Local file not found: {local_path}")

        key = build_key(location, os.path.basename(local_path))
        dest_path = self.base_path / key

        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, dest_path)
            return key
        except PermissionError as e:
            raise TransferError(f"Permission denied writing to {dest_path}: {e}")
        except OSError as e:
            raise TransferError(f"Failed to store {local_path}: {e}")

    def list(self, location: str, pattern: Optional[str] = None) -> List[str]:
        """
        List keys of the files directly inside a location.

        A location that does not exist yet is empty, not an error.

        Raises:
            ListError: If the directory cannot be read
        """
        location = location.strip('/')
        directory = self.base_path / location if location else self.base_path

        if not directory.exists():
            return []

        try:
            return sorted(
                build_key(location, entry.name)
                for entry in directory.iterdir()
                if entry.is_file() and _matches(entry.name, pattern)
            )
        except OSError as e:
            raise ListError(f"Failed to list {directory}: {e}")

    def delete(self, key: str):
        """
        Delete a stored file. Missing files are ignored.

        Raises:
            DeleteError: If deletion fails
        """
        full_path = self.base_path / key

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise DeleteError(f"Permission denied deleting {full_path}: {e}")
        except OSError as e:
            raise DeleteError(f"Failed to delete local file: {e}")

    def test_connection(self) -> bool:
        """Check the base directory is writable."""
        if not os.access(self.base_path, os.W_OK):
            raise StorageError(f"Local storage is not writable: {self.base_path}")
        return True


def create_storage(settings):
    """
    Factory function to create the configured storage gateway.

    Args:
        settings: Settings instance

    Returns:
        S3Storage or LocalStorage instance

    Raises:
        ValueError: If the backend is unknown
    """
    if settings.storage_backend == 's3':
        return S3Storage(
            bucket_name=settings.s3_bucket,
            region=settings.s3_region,
            access_key=settings.aws_access_key_id,
            secret_key=settings.aws_secret_access_key,
            endpoint_url=settings.s3_endpoint_url
        )
    elif settings.storage_backend == 'local':
        return LocalStorage(settings.local_storage_dir)
    else:
        raise ValueError(f"Invalid storage backend: {settings.storage_backend}")
