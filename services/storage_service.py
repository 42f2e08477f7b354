"""
Storage Service — S3-compatible object storage via boto3.
Provides the upload/download/head/list/delete contract the model services use.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

logger = logging.getLogger(__name__)

DEFAULT_DOWNLOAD_TIMEOUT = 30
DELETE_BATCH_SIZE = 1000
NOT_FOUND_CODES = {'404', 'NoSuchKey', 'NotFound'}


class StorageError(Exception):
    """Raised when a storage request fails."""


class StorageDisabledError(StorageError):
    """Raised when storage is used while switched off."""


@dataclass
class StorageObjectHead:
    """Metadata lookup of a single object."""
    exists: bool = False
    last_modified: Optional[datetime] = None
    accessible: bool = False


@dataclass
class StorageObject:
    key: str
    size: int = 0
    last_modified: Optional[datetime] = None

    @property
    def name(self) -> str:
        return self.key.rsplit('/', 1)[-1]

    def to_dict(self) -> dict:
        return {
            'key': self.key,
            'name': self.name,
            'size': self.size,
            'last_modified': self.last_modified.isoformat() if self.last_modified else None,
        }


def _error_code(error: ClientError) -> str:
    return str(error.response.get('Error', {}).get('Code', ''))


class StorageService:
    """
    Object storage client.

    Responsibilities:
        - Upload and download object bytes
        - Look up object metadata without failing on missing or forbidden keys
        - List and delete objects, expanding ``prefix/`` paths to every key below

    When ``enabled`` is False every call raises StorageDisabledError.
    """

    def __init__(self, enabled: bool = True, endpoint_url: Optional[str] = None,
                 aws_access_key: Optional[str] = None, aws_secret_key: Optional[str] = None,
                 aws_region: Optional[str] = None,
                 download_timeout: int = DEFAULT_DOWNLOAD_TIMEOUT):
        self.enabled = enabled
        self.endpoint_url = endpoint_url or None
        self.aws_access_key = aws_access_key or None
        self.aws_secret_key = aws_secret_key or None
        self.aws_region = aws_region or None
        self.download_timeout = download_timeout
        self._clients: Dict[int, object] = {}
        self._clients_lock = threading.Lock()

        if self.enabled:
            logger.info(f"Storage service initialized (endpoint: {self.endpoint_url or 'aws'})")
        else:
            logger.info("Storage service DISABLED - model artifacts stay local")

    def is_enabled(self) -> bool:
        return self.enabled

    def _client(self, timeout: Optional[int] = None):
        if not self.enabled:
            raise StorageDisabledError("Object storage is disabled")
        timeout = int(timeout or self.download_timeout)
        with self._clients_lock:
            client = self._clients.get(timeout)
            if client is None:
                client = boto3.client(
                    's3',
                    endpoint_url=self.endpoint_url,
                    aws_access_key_id=self.aws_access_key,
                    aws_secret_access_key=self.aws_secret_key,
                    region_name=self.aws_region,
                    config=BotoConfig(connect_timeout=timeout, read_timeout=timeout),
                )
                self._clients[timeout] = client
            return client

    # ==================== OBJECT OPERATIONS ====================

    def upload(self, bucket: str, path: str, content_type: str, data: bytes,
               upsert: bool = True) -> str:
        """
        Upload bytes to ``bucket/path``.

        Args:
            upsert: when False an existing object makes the upload fail

        Returns:
            The object key written.
        """
        client = self._client()
        if not upsert and self.head(bucket, path).exists:
            raise StorageError(f"Object {bucket}/{path} already exists")
        try:
            client.put_object(Bucket=bucket, Key=path, Body=data, ContentType=content_type)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Upload of {bucket}/{path} failed: {e}") from e
        logger.info(f"Uploaded {len(data)} bytes to {bucket}/{path}")
        return path

    def download_bytes(self, bucket: str, path: str,
                       timeout: Optional[int] = None) -> Optional[bytes]:
        """Download an object; returns None when it does not exist."""
        client = self._client(timeout)
        try:
            response = client.get_object(Bucket=bucket, Key=path)
            return response['Body'].read()
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                logger.warning(f"Object {bucket}/{path} not found")
                return None
            raise StorageError(f"Download of {bucket}/{path} failed: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Download of {bucket}/{path} failed: {e}") from e

    def head(self, bucket: str, path: str) -> StorageObjectHead:
        """Look up metadata; never raises for missing or forbidden objects."""
        client = self._client()
        try:
            response = client.head_object(Bucket=bucket, Key=path)
        except ClientError as e:
            if _error_code(e) in NOT_FOUND_CODES:
                return StorageObjectHead(exists=False, accessible=True)
            logger.debug(f"Head of {bucket}/{path} not accessible: {e}")
            return StorageObjectHead(exists=False, accessible=False)
        except BotoCoreError as e:
            logger.debug(f"Head of {bucket}/{path} failed: {e}")
            return StorageObjectHead(exists=False, accessible=False)
        return StorageObjectHead(
            exists=True,
            last_modified=response.get('LastModified'),
            accessible=True,
        )

    def list(self, bucket: str, prefix: str = '', limit: int = 100,
             offset: int = 0) -> List[StorageObject]:
        """List objects under ``prefix`` ordered by key."""
        client = self._client()
        objects: List[StorageObject] = []
        try:
            paginator = client.get_paginator('list_objects_v2')
            for page in paginator.paginate(Bucket=bucket, Prefix=prefix or ''):
                for item in page.get('Contents', []):
                    objects.append(StorageObject(
                        key=item['Key'],
                        size=item.get('Size', 0),
                        last_modified=item.get('LastModified'),
                    ))
                if limit and len(objects) >= offset + limit:
                    break
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Listing {bucket}/{prefix} failed: {e}") from e

        objects.sort(key=lambda o: o.key)
        if limit:
            return objects[offset:offset + limit]
        return objects[offset:]

    def delete(self, bucket: str, paths: Iterable[str]) -> int:
        """
        Delete objects. A path ending in ``/`` removes everything under it.

        Returns:
            Number of keys submitted for deletion.
        """
        keys: List[str] = []
        for path in paths:
            if not path:
                continue
            if path.endswith('/'):
                keys.extend(o.key for o in self.list(bucket, path, limit=0))
            else:
                keys.append(path)
        if not keys:
            return 0

        client = self._client()
        try:
            for start in range(0, len(keys), DELETE_BATCH_SIZE):
                batch = keys[start:start + DELETE_BATCH_SIZE]
                client.delete_objects(
                    Bucket=bucket,
                    Delete={'Objects': [{'Key': key} for key in batch], 'Quiet': True},
                )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Delete in {bucket} failed: {e}") from e
        logger.info(f"Deleted {len(keys)} objects from {bucket}")
        return len(keys)
