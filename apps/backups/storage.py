"""
Storage backends for the backup system.

This module provides two interchangeable storage backends:
1. LocalStorage - Local filesystem storage (development, single-host deployments)
2. S3Storage - S3-compatible object storage (AWS S3, Cloudflare R2, Backblaze B2, MinIO)

Both backends implement the same interface (put, get, get_metadata, list,
delete, exists) and raise the same exceptions:
- ArtifactNotFound when a key does not exist
- StorageFailure for any other backend error

The active backend is chosen once, by get_storage_backend(), from
settings.BACKUP_STORAGE_BACKEND. Nothing outside this module should
branch on which backend is in use.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from django.conf import settings

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .exceptions import ArtifactNotFound, StorageFailure

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".meta.json"


@dataclass
class StorageEntry:
    """A stored object as returned by StorageBackend.list()."""

    key: str
    size: int
    last_modified: datetime


class StorageBackend:
    """Base class for storage backends."""

    name = "base"

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> str:
        """
        Store bytes under a key.

        Args:
            key: Relative key of the object
            data: Object content
            metadata: String key/value pairs stored alongside the object

        Returns:
            Backend-specific location of the stored object

        Raises:
            StorageFailure: If the object could not be written
        """
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        """
        Read the bytes stored under a key.

        Raises:
            ArtifactNotFound: If the key does not exist
            StorageFailure: If the backend could not be read
        """
        raise NotImplementedError

    def get_metadata(self, key: str) -> Dict[str, str]:
        """
        Read the metadata stored with a key.

        Raises:
            ArtifactNotFound: If the key does not exist
            StorageFailure: If the backend could not be read
        """
        raise NotImplementedError

    def list(self, prefix: str = "") -> List[StorageEntry]:
        """
        List objects whose key starts with a prefix, newest first.

        Raises:
            StorageFailure: If the backend could not be listed
        """
        raise NotImplementedError

    def delete(self, key: str) -> None:
        """
        Delete an object. Deleting a missing key is not an error.

        Raises:
            StorageFailure: If the backend refused the deletion
        """
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        """
        Check whether a key exists.

        Raises:
            StorageFailure: If the backend could not be queried
        """
        raise NotImplementedError


class LocalStorage(StorageBackend):
    """
    Local filesystem storage backend.

    Objects are files under ``base_path``; metadata is kept in a JSON
    sidecar file next to each object.
    """

    name = "local"

    def __init__(self, base_path: Optional[str] = None):
        """
        Initialize local storage backend.

        Args:
            base_path: Base directory for storing backups.
                      Defaults to settings.BACKUP_LOCAL_PATH
        """
        self.base_path = Path(
            base_path or getattr(settings, "BACKUP_LOCAL_PATH", "/var/backups/safekeep")
        ).resolve()
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageFailure(f"Cannot create local backup directory {self.base_path}: {e}") from e
        logger.info(f"LocalStorage initialized with base_path: {self.base_path}")

    def _get_full_path(self, key: str) -> Path:
        """Get the full local path for a key, refusing keys that escape base_path."""
        full_path = (self.base_path / key).resolve()
        if full_path != self.base_path and self.base_path not in full_path.parents:
            raise StorageFailure(f"Key escapes the backup directory: {key}")
        return full_path

    def _get_metadata_path(self, key: str) -> Path:
        full_path = self._get_full_path(key)
        return full_path.with_name(full_path.name + METADATA_SUFFIX)

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> str:
        destination = self._get_full_path(key)
        temp_destination = destination.with_name(destination.name + ".part")
        metadata_path = self._get_metadata_path(key)
        metadata_written = False

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)

            # Write to a temp name first so readers never see a half-written file.
            # The sidecar goes down before the rename: a visible object always has one.
            temp_destination.write_bytes(data)
            metadata_path.write_text(json.dumps(metadata or {}, sort_keys=True))
            metadata_written = True
            temp_destination.replace(destination)
        except OSError as e:
            temp_destination.unlink(missing_ok=True)
            if metadata_written:
                metadata_path.unlink(missing_ok=True)
            logger.error(f"LocalStorage: Failed to store {key}: {e}")
            raise StorageFailure(f"Failed to store {key} in local storage: {e}") from e

        logger.info(f"LocalStorage: Stored {key} ({len(data)} bytes)")
        return key

    def get(self, key: str) -> bytes:
        source = self._get_full_path(key)

        if not source.is_file():
            raise ArtifactNotFound(f"Object not found in local storage: {key}")

        try:
            return source.read_bytes()
        except OSError as e:
            logger.error(f"LocalStorage: Failed to read {key}: {e}")
            raise StorageFailure(f"Failed to read {key} from local storage: {e}") from e

    def get_metadata(self, key: str) -> Dict[str, str]:
        if not self._get_full_path(key).is_file():
            raise ArtifactNotFound(f"Object not found in local storage: {key}")

        metadata_path = self._get_metadata_path(key)
        if not metadata_path.exists():
            return {}

        try:
            return json.loads(metadata_path.read_text())
        except (OSError, ValueError) as e:
            raise StorageFailure(f"Failed to read metadata for {key}: {e}") from e

    def list(self, prefix: str = "") -> List[StorageEntry]:
        entries = []

        try:
            for path in self.base_path.rglob("*"):
                if not path.is_file():
                    continue
                if path.name.endswith(METADATA_SUFFIX) or path.name.endswith(".part"):
                    continue

                key = path.relative_to(self.base_path).as_posix()
                if not key.startswith(prefix):
                    continue

                stat = path.stat()
                entries.append(
                    StorageEntry(
                        key=key,
                        size=stat.st_size,
                        last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
                    )
                )
        except OSError as e:
            raise StorageFailure(f"Failed to list local storage: {e}") from e

        return sorted(entries, key=lambda entry: entry.last_modified, reverse=True)

    def delete(self, key: str) -> None:
        full_path = self._get_full_path(key)

        try:
            if not full_path.exists():
                logger.warning(f"LocalStorage: Object not found for deletion: {key}")
            else:
                full_path.unlink()
                logger.info(f"LocalStorage: Deleted {key}")
            self._get_metadata_path(key).unlink(missing_ok=True)
        except OSError as e:
            logger.error(f"LocalStorage: Failed to delete {key}: {e}")
            raise StorageFailure(f"Failed to delete {key} from local storage: {e}") from e

    def exists(self, key: str) -> bool:
        exists = self._get_full_path(key).is_file()
        logger.debug(f"LocalStorage: Object {key} exists: {exists}")
        return exists


class S3Storage(StorageBackend):
    """
    S3-compatible object storage backend.

    Works against AWS S3 and any S3-compatible provider (Cloudflare R2,
    Backblaze B2, MinIO) through ``endpoint_url``. Keys are stored under
    ``prefix`` inside the bucket; callers always pass keys relative to it.
    """

    name = "s3"

    def __init__(
        self,
        bucket_name: Optional[str] = None,
        prefix: Optional[str] = None,
        region: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        """
        Initialize S3 storage backend.

        Args:
            bucket_name: Bucket name (defaults to settings.BACKUP_S3_BUCKET)
            prefix: Key prefix inside the bucket (defaults to settings.BACKUP_S3_PREFIX)
            region: Bucket region (defaults to settings.BACKUP_S3_REGION)
            endpoint_url: Custom endpoint for S3-compatible providers
            access_key_id: Access key ID (defaults to settings.AWS_ACCESS_KEY_ID)
            secret_access_key: Secret access key (defaults to settings.AWS_SECRET_ACCESS_KEY)
            client: Pre-built boto3 client (mainly for tests)
        """
        self.bucket_name = bucket_name or getattr(settings, "BACKUP_S3_BUCKET", "")
        self.prefix = prefix if prefix is not None else getattr(settings, "BACKUP_S3_PREFIX", "")
        self.region = region or getattr(settings, "BACKUP_S3_REGION", "us-east-1")
        self.endpoint_url = endpoint_url or getattr(settings, "BACKUP_S3_ENDPOINT_URL", None) or None

        if not self.bucket_name:
            raise StorageFailure("S3 storage selected but no bucket is configured")

        self.client = client or boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=access_key_id or getattr(settings, "AWS_ACCESS_KEY_ID", None) or None,
            aws_secret_access_key=(
                secret_access_key or getattr(settings, "AWS_SECRET_ACCESS_KEY", None) or None
            ),
            region_name=self.region,
        )

        logger.info(f"S3Storage initialized with bucket: {self.bucket_name}, prefix: {self.prefix}")

    def _full_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def _relative_key(self, full_key: str) -> str:
        if self.prefix and full_key.startswith(self.prefix):
            return full_key[len(self.prefix) :]
        return full_key

    @staticmethod
    def _is_not_found(error: ClientError) -> bool:
        return error.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound")

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> str:
        full_key = self._full_key(key)

        try:
            self.client.put_object(
                Bucket=self.bucket_name,
                Key=full_key,
                Body=data,
                Metadata={k: str(v) for k, v in (metadata or {}).items()},
                ServerSideEncryption="AES256",
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3Storage: Failed to upload {full_key}: {e}")
            raise StorageFailure(f"S3 upload failed for {full_key}: {e}") from e

        logger.info(f"S3Storage: Uploaded {full_key} ({len(data)} bytes)")
        return key

    def get(self, key: str) -> bytes:
        full_key = self._full_key(key)

        try:
            response = self.client.get_object(Bucket=self.bucket_name, Key=full_key)
            return response["Body"].read()
        except ClientError as e:
            if self._is_not_found(e):
                raise ArtifactNotFound(f"Object not found in S3: {full_key}") from e
            logger.error(f"S3Storage: Failed to download {full_key}: {e}")
            raise StorageFailure(f"S3 download failed for {full_key}: {e}") from e
        except BotoCoreError as e:
            logger.error(f"S3Storage: Failed to download {full_key}: {e}")
            raise StorageFailure(f"S3 download failed for {full_key}: {e}") from e

    def get_metadata(self, key: str) -> Dict[str, str]:
        full_key = self._full_key(key)

        try:
            response = self.client.head_object(Bucket=self.bucket_name, Key=full_key)
            return dict(response.get("Metadata", {}))
        except ClientError as e:
            if self._is_not_found(e):
                raise ArtifactNotFound(f"Object not found in S3: {full_key}") from e
            raise StorageFailure(f"S3 head_object failed for {full_key}: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"S3 head_object failed for {full_key}: {e}") from e

    def list(self, prefix: str = "") -> List[StorageEntry]:
        entries = []

        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=self._full_key(prefix)):
                for obj in page.get("Contents", []):
                    entries.append(
                        StorageEntry(
                            key=self._relative_key(obj["Key"]),
                            size=obj["Size"],
                            last_modified=obj["LastModified"],
                        )
                    )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3Storage: Failed to list {prefix}: {e}")
            raise StorageFailure(f"S3 list failed: {e}") from e

        return sorted(entries, key=lambda entry: entry.last_modified, reverse=True)

    def delete(self, key: str) -> None:
        full_key = self._full_key(key)

        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=full_key)
        except ClientError as e:
            if self._is_not_found(e):
                logger.warning(f"S3Storage: Object not found for deletion: {full_key}")
                return
            logger.error(f"S3Storage: Failed to delete {full_key}: {e}")
            raise StorageFailure(f"S3 delete failed for {full_key}: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"S3 delete failed for {full_key}: {e}") from e

        logger.info(f"S3Storage: Deleted {full_key}")

    def exists(self, key: str) -> bool:
        full_key = self._full_key(key)

        try:
            self.client.head_object(Bucket=self.bucket_name, Key=full_key)
            return True
        except ClientError as e:
            if self._is_not_found(e):
                return False
            logger.error(f"S3Storage: Error checking existence of {full_key}: {e}")
            raise StorageFailure(f"S3 head_object failed for {full_key}: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"S3 head_object failed for {full_key}: {e}") from e


STORAGE_BACKENDS = {
    "local": LocalStorage,
    "s3": S3Storage,
}


def get_storage_backend(backend_type: Optional[str] = None) -> StorageBackend:
    """
    Factory function to get the configured storage backend.

    Args:
        backend_type: 'local' or 's3' (defaults to settings.BACKUP_STORAGE_BACKEND)

    Returns:
        Instance of the requested storage backend

    Raises:
        ValueError: If backend_type is not recognized
    """
    backend_type = (backend_type or getattr(settings, "BACKUP_STORAGE_BACKEND", "local")).lower()

    try:
        backend_class = STORAGE_BACKENDS[backend_type]
    except KeyError:
        raise ValueError(f"Unknown storage backend type: {backend_type}")

    return backend_class()
