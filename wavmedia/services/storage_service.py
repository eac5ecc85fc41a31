from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Protocol
from urllib.parse import unquote, urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from wavmedia.core.errors import StorageError

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


@dataclass(frozen=True)
class StoredFile:
    """
    key: object key under the permanent store (e.g. "tracks/2026/02/02/<hex>-song.mp3")
    url: public URL the rest of the system stores in its records
    size_bytes: stored size
    mime: Content-Type used for the object
    """
    key: str
    url: str
    size_bytes: int
    mime: str


class ObjectStore(Protocol):
    def put(self, key: str, data: bytes, mime: str) -> None: ...
    def open(self, key: str) -> BinaryIO: ...
    def delete(self, key: str) -> None: ...


class LocalObjectStore:
    """
    Local filesystem object store.

    Writes atomically (tmp file + replace); deleting a missing key is a no-op.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def abs_path(self, key: str) -> Path:
        key_norm = key.replace("\\", "/").lstrip("/")
        path = (self.root / key_norm).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    def put(self, key: str, data: bytes, mime: str) -> None:
        path = self.abs_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)

    def open(self, key: str) -> BinaryIO:
        path = self.abs_path(key)
        if not path.exists():
            raise StorageError(f"Object not found: {key}")
        return path.open("rb")

    def delete(self, key: str) -> None:
        self.abs_path(key).unlink(missing_ok=True)


class S3ObjectStore:
    """S3-compatible object store (AWS, R2, MinIO) through boto3."""

    def __init__(
        self,
        *,
        bucket: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        region: str | None = None,
        client=None,
    ):
        self.bucket = bucket
        self.client = client or boto3.client(
            service_name="s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name=region,
            config=Config(signature_version="s3v4"),
        )

    def put(self, key: str, data: bytes, mime: str) -> None:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=mime)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e

    def open(self, key: str) -> BinaryIO:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Download of {key} failed: {e}") from e
        return obj["Body"]

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Delete of {key} failed: {e}") from e


class BlobStorageGateway:
    """
    Permanent object storage plus the local staging area.

    Staged files are fresh uploads waiting for a worker. A worker promotes a
    staged file into permanent storage and then removes the staged copy.
    """

    def __init__(self, store: ObjectStore, *, base_url: str, staging_dir: str | Path):
        self.store = store
        self.base_url = base_url.rstrip("/")
        self.staging_dir = Path(staging_dir)
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    @classmethod
    def from_settings(cls, settings) -> "BlobStorageGateway":
        if settings.STORAGE_BACKEND == "s3":
            store: ObjectStore = S3ObjectStore(
                bucket=settings.S3_BUCKET,
                endpoint_url=settings.S3_ENDPOINT_URL,
                access_key_id=settings.S3_ACCESS_KEY_ID,
                secret_access_key=settings.S3_SECRET_ACCESS_KEY,
                region=settings.S3_REGION,
            )
        elif settings.STORAGE_BACKEND == "local":
            store = LocalObjectStore(settings.STORAGE_DIR)
        else:
            raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND!r}")
        return cls(store, base_url=settings.STORAGE_BASE_URL, staging_dir=settings.STAGING_DIR)

    # ---------- permanent storage ----------

    async def upload(self, data: bytes, *, prefix: str, filename: str, mime: str | None = None) -> StoredFile:
        mime = mime or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        key = self._make_key(prefix, filename)
        await asyncio.to_thread(self.store.put, key, data, mime)
        self.logger.debug("Uploaded %s (%d bytes)", key, len(data))
        return StoredFile(key=key, url=self.public_url(key), size_bytes=len(data), mime=mime)

    async def delete(self, url: str) -> None:
        """Single delete attempt; see services.deletion for retries and batches."""
        key = self.key_for_url(url)
        try:
            await asyncio.to_thread(self.store.delete, key)
        except StorageError:
            raise
        except OSError as e:
            raise StorageError(f"Delete of {key} failed: {e}") from e

    def get_object_stream(self, url: str) -> BinaryIO:
        try:
            return self.store.open(self.key_for_url(url))
        except OSError as e:
            raise StorageError(f"Cannot open {url}: {e}") from e

    async def read(self, url: str) -> bytes:
        def _read() -> bytes:
            with self.get_object_stream(url) as stream:
                return stream.read()

        return await asyncio.to_thread(_read)

    def public_url(self, key: str) -> str:
        key_norm = key.replace("\\", "/").lstrip("/")
        return f"{self.base_url}/{key_norm}"

    def key_for_url(self, url: str) -> str:
        if url.startswith(self.base_url + "/"):
            return url[len(self.base_url) + 1:]
        parsed = urlparse(url)
        path = unquote(parsed.path)
        base_path = urlparse(self.base_url).path.rstrip("/")
        if base_path and path.startswith(base_path + "/"):
            return path[len(base_path) + 1:]
        raise StorageError(f"URL is not managed by this store: {url}")

    # ---------- staging area ----------

    def staged_path(self, url_or_path: str) -> Path:
        """Resolve a staged reference (plain path, ``file://`` URL, or a name relative to the staging dir)."""
        raw = url_or_path
        if raw.startswith("file://"):
            raw = unquote(urlparse(raw).path)
        path = Path(raw)
        if not path.is_absolute():
            path = self.staging_dir / path
        path = path.resolve()
        root = self.staging_dir.resolve()
        if path != root and root not in path.parents:
            raise StorageError(f"Staged file outside staging area: {url_or_path}")
        return path

    async def get_local_staged_file(self, url_or_path: str) -> bytes:
        path = self.staged_path(url_or_path)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(f"Staged file not found: {url_or_path}") from e

    async def delete_local_staged_file(self, url_or_path: str) -> None:
        path = self.staged_path(url_or_path)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            self.logger.debug("Staged file already gone: %s", path)

    async def stage(self, data: bytes, filename: str) -> Path:
        """Drop bytes into the staging area (what the upload endpoint does)."""
        path = self.staging_dir / f"{uuid.uuid4().hex}-{sanitize_filename(filename)}"
        await asyncio.to_thread(path.write_bytes, data)
        return path

    # ---------- internals ----------

    def _make_key(self, prefix: str, filename: str) -> str:
        # shard by date to avoid huge directories
        now = datetime.now(timezone.utc)
        date_prefix = now.strftime("%Y/%m/%d")
        prefix = prefix.strip("/")
        return f"{prefix}/{date_prefix}/{uuid.uuid4().hex}-{sanitize_filename(filename)}"


def sanitize_filename(name: str) -> str:
    base = Path(name.replace("\\", "/")).name or "file"
    return _UNSAFE_NAME_CHARS.sub("_", base)
