"""
Evidence object storage.

`ObjectStorage` is the port the evidence service talks to.  Production
deployments can plug a cloud bucket adapter in; the bundled
`LocalObjectStorage` keeps objects on the local filesystem under
``STORAGE_ROOT/<bucket>/<path>`` and hands out time-limited download URLs
signed with itsdangerous.

The active adapter lives in ``app.extensions["object_storage"]`` so tests
can swap in an in-memory fake.

Usage:
    from testhub.integrations.storage import get_storage
    get_storage().upload(path, data, "image/png")
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

from flask import current_app
from itsdangerous import BadSignature, URLSafeTimedSerializer

from testhub.core.exceptions import NotFoundError, StorageError

logger = logging.getLogger(__name__)

DOWNLOAD_URL_PREFIX = "/api/v1/attachments/download"


class ObjectStorage(ABC):
    """Bucket-style object store: flat keys, whole-object reads and writes."""

    bucket: str

    @abstractmethod
    def upload(self, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` under ``path``; fail if the key already exists."""

    @abstractmethod
    def remove(self, paths: list[str]) -> None:
        """Delete the given keys; missing keys are ignored."""

    @abstractmethod
    def read(self, path: str) -> bytes:
        """Return the object bytes or raise StorageError."""

    @abstractmethod
    def create_signed_url(self, path: str, expires_in: int) -> str:
        """Return a URL that grants read access to ``path`` for ``expires_in`` seconds."""


class LocalObjectStorage(ObjectStorage):
    """Filesystem-backed bucket with itsdangerous-signed download links."""

    def __init__(self, root: str, bucket: str, secret_key: str,
                 url_prefix: str = DOWNLOAD_URL_PREFIX) -> None:
        self.root = os.path.abspath(root)
        self.bucket = bucket
        self.url_prefix = url_prefix.rstrip("/")
        self._serializer = URLSafeTimedSerializer(secret_key, salt=f"storage:{bucket}")

    # ── Paths ────────────────────────────────────────────────────────────

    def _full_path(self, path: str) -> str:
        bucket_dir = os.path.join(self.root, self.bucket)
        full = os.path.abspath(os.path.join(bucket_dir, path))
        if not full.startswith(bucket_dir + os.sep):
            raise StorageError(f"Invalid object path: {path}")
        return full

    # ── ObjectStorage ────────────────────────────────────────────────────

    def upload(self, path: str, data: bytes, content_type: str) -> str:
        full = self._full_path(path)
        if os.path.exists(full):
            raise StorageError(f"Object already exists: {path}")
        try:
            os.makedirs(os.path.dirname(full), exist_ok=True)
            with open(full, "wb") as fh:
                fh.write(data)
        except OSError as exc:
            raise StorageError(f"Upload failed for {path}: {exc}") from exc
        logger.debug("Stored object %s/%s (%d bytes, %s)", self.bucket, path, len(data), content_type)
        return path

    def remove(self, paths: list[str]) -> None:
        for path in paths:
            full = self._full_path(path)
            try:
                os.remove(full)
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StorageError(f"Remove failed for {path}: {exc}") from exc

    def read(self, path: str) -> bytes:
        full = self._full_path(path)
        try:
            with open(full, "rb") as fh:
                return fh.read()
        except FileNotFoundError as exc:
            raise StorageError(f"Object not found: {path}") from exc
        except OSError as exc:
            raise StorageError(f"Read failed for {path}: {exc}") from exc

    def create_signed_url(self, path: str, expires_in: int) -> str:
        token = self._serializer.dumps({"p": path, "ttl": int(expires_in)})
        return f"{self.url_prefix}/{token}"

    # ── Download tokens ──────────────────────────────────────────────────

    def resolve_token(self, token: str) -> str:
        """Return the object path a signed token grants, or raise NotFoundError.

        Expired and tampered tokens are both reported as not found.
        """
        try:
            payload, signed_at = self._serializer.loads(token, return_timestamp=True)
        except BadSignature:
            raise NotFoundError(resource="Download link")
        if datetime.now(timezone.utc) - signed_at > timedelta(seconds=payload.get("ttl", 0)):
            raise NotFoundError(resource="Download link")
        return payload["p"]


def init_storage(app):
    """Install the filesystem adapter unless an adapter is already configured."""
    if "object_storage" in app.extensions:
        return
    app.extensions["object_storage"] = LocalObjectStorage(
        root=app.config["STORAGE_ROOT"],
        bucket=app.config["ATTACHMENTS_BUCKET"],
        secret_key=app.config["SECRET_KEY"],
    )


def get_storage() -> ObjectStorage:
    return current_app.extensions["object_storage"]
