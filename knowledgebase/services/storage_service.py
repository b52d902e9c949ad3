"""
Blob storage for uploaded files.

S3 is the primary store. When the bucket is not configured, or S3 refuses
access (denied, missing credentials, endpoint unreachable), the service
switches to local mode for the rest of the process and writes under
LOCAL_STORAGE_DIR instead.
"""
from __future__ import annotations

import logging
import os
import re
import threading
from typing import Callable, List, Optional, Tuple, TypeVar

from flask import current_app

try:
    import boto3
    from botocore.exceptions import (
        ClientError,
        EndpointConnectionError,
        NoCredentialsError,
        PartialCredentialsError,
    )
except Exception:
    boto3 = None
    ClientError = EndpointConnectionError = NoCredentialsError = PartialCredentialsError = None

logger = logging.getLogger(__name__)

T = TypeVar("T")

BACKEND_S3 = "s3"
BACKEND_LOCAL = "local"

FALLBACK_ERROR_CODES = {"AccessDenied", "AllAccessDisabled", "Forbidden", "403", "InvalidAccessKeyId",
                        "SignatureDoesNotMatch", "ServiceUnavailable", "503"}


def _safe_name(name: str) -> str:
    name = re.sub(r"[\\/]+", "_", (name or "").strip()).replace("..", "_")
    name = name.lstrip(".") or "file"
    return name


def is_fallback_error(error: Exception) -> bool:
    if boto3 is None:
        return False
    if isinstance(error, (NoCredentialsError, PartialCredentialsError, EndpointConnectionError)):
        return True
    if isinstance(error, ClientError):
        code = str((error.response.get("Error") or {}).get("Code") or "")
        return code in FALLBACK_ERROR_CODES
    return False


class StorageService:
    """S3 blob store with a local disk fallback"""

    def __init__(self, bucket: str = "", region: str = "", prefix: str = "files/", local_dir: str = "/tmp/knowledgebase_files"):
        self.bucket = (bucket or "").strip()
        self.region = (region or "").strip() or None
        self.prefix = prefix if prefix.endswith("/") else prefix + "/"
        self.local_dir = local_dir
        self._lock = threading.Lock()
        self._local_mode = boto3 is None or not self.bucket
        self._s3 = None
        if self._local_mode:
            logger.warning("S3 not configured, using local storage at %s", self.local_dir)

    @classmethod
    def from_config(cls, cfg) -> "StorageService":
        return cls(
            bucket=cfg.get("AWS_S3_BUCKET", ""),
            region=cfg.get("AWS_REGION", ""),
            prefix=cfg.get("S3_PREFIX", "files/"),
            local_dir=cfg.get("LOCAL_STORAGE_DIR", "/tmp/knowledgebase_files"),
        )

    @property
    def is_local_mode(self) -> bool:
        return self._local_mode

    def switch_to_local(self, reason: str = "") -> None:
        with self._lock:
            if not self._local_mode:
                logger.warning("S3 access failed (%s). Switching to local storage for this process.", reason)
            self._local_mode = True

    @property
    def s3(self):
        if self._s3 is None:
            self._s3 = boto3.client("s3", region_name=self.region)
        return self._s3

    def with_fallback(self, cloud_task: Callable[[], T], local_task: Callable[[], T]) -> T:
        if self._local_mode:
            return local_task()
        try:
            return cloud_task()
        except Exception as e:
            if is_fallback_error(e):
                self.switch_to_local(str(e))
                return local_task()
            raise

    def object_key(self, file_id: str, name: str) -> str:
        return f"{self.prefix}{_safe_name(file_id)}/{_safe_name(name)}"

    def _local_path(self, key: str) -> str:
        root = os.path.abspath(self.local_dir)
        path = os.path.abspath(os.path.join(root, key))
        if not path.startswith(root + os.sep):
            raise ValueError(f"Invalid storage path: {key}")
        return path

    def save(self, file_id: str, name: str, data: bytes, content_type: str = "application/octet-stream") -> Tuple[str, str]:
        """Store a blob. Returns (storage_path, backend)."""
        key = self.object_key(file_id, name)

        def cloud():
            self.s3.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
            return key, BACKEND_S3

        def local():
            path = self._local_path(key)
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)
            return key, BACKEND_LOCAL

        return self.with_fallback(cloud, local)

    def load(self, storage_path: str, backend: Optional[str] = None) -> bytes:
        if backend == BACKEND_LOCAL or (backend is None and self._local_mode):
            with open(self._local_path(storage_path), "rb") as f:
                return f.read()
        obj = self.s3.get_object(Bucket=self.bucket, Key=storage_path)
        return obj["Body"].read()

    def delete(self, storage_path: str, backend: Optional[str] = None) -> bool:
        """Best effort delete; failures are logged, not raised."""
        if not storage_path:
            return False
        try:
            if backend == BACKEND_LOCAL or (backend is None and self._local_mode):
                path = self._local_path(storage_path)
                if os.path.exists(path):
                    os.remove(path)
                    parent = os.path.dirname(path)
                    if os.path.isdir(parent) and not os.listdir(parent):
                        os.rmdir(parent)
                return True
            self.s3.delete_object(Bucket=self.bucket, Key=storage_path)
            return True
        except Exception as e:
            logger.warning("Could not delete blob %s (%s): %s", storage_path, backend, e)
            return False

    def list_unmanaged_keys(self) -> List[str]:
        """Keys in the bucket that were not written by this service (outside the files/ prefix)."""
        def cloud():
            keys: List[str] = []
            paginator = self.s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket):
                for item in page.get("Contents") or []:
                    key = item.get("Key") or ""
                    if key and not key.endswith("/") and not key.startswith(self.prefix):
                        keys.append(key)
            return keys

        return self.with_fallback(cloud, lambda: [])


def get_storage() -> StorageService:
    """Per-application storage service."""
    app = current_app._get_current_object()
    storage = app.extensions.get("kb_storage")
    if storage is None:
        storage = StorageService.from_config(app.config)
        app.extensions["kb_storage"] = storage
    return storage
