"""
Snapshot payload blob storage.

A payload is the serialized SnapshotPayload document of one snapshot. It is
written once at capture time and read many times (preview, export, restore).

Layouts:
    local: <data_dir>/payloads/tenant=<id>/<snapshot_id>.json.gz
    s3:    s3://<bucket>/<prefix>/tenant=<id>/<snapshot_id>.json.gz

Invariants:
    - Blobs are immutable; a key is never overwritten with different content
    - Every put returns a sha256 checksum that every get verifies
    - Local writes go to a temp file first and are renamed into place

How to change safely:
    - Keep reading uncompressed (.json) blobs even if the default changes
    - Never change the key layout of existing snapshots
"""

from __future__ import annotations

import asyncio
import gzip
import hashlib
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from aiobotocore.session import get_session

from ..config import PayloadBackend, PayloadStoreConfig
from ..errors import PayloadCorrupted, SnapshotNotFound, ValidationFailure, check_workspace_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredPayload:
    """Location and integrity data for a written payload.

    Attributes:
        storage_key: Backend-specific key of the blob
        size_bytes: Size of the stored (possibly compressed) blob
        checksum: "sha256:<hex>" of the stored bytes
    """

    storage_key: str
    size_bytes: int
    checksum: str


def encode_payload(payload: dict[str, Any], compression: str) -> bytes:
    """Serialize a payload document to stored bytes."""
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    if compression == "gzip":
        # mtime=0 keeps identical payloads byte-identical
        return gzip.compress(raw, mtime=0)
    return raw


def decode_payload(storage_key: str, data: bytes) -> dict[str, Any]:
    """Deserialize stored bytes, detecting gzip by its magic number."""
    try:
        if data[:2] == b"\x1f\x8b":
            data = gzip.decompress(data)
        return json.loads(data.decode("utf-8"))
    except (OSError, ValueError) as e:
        raise PayloadCorrupted(storage_key, str(e)) from e


def compute_checksum(data: bytes) -> str:
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


class PayloadStore(ABC):
    """Abstract payload blob store."""

    compression: str = "gzip"

    def _key(self, workspace_id: str, snapshot_id: str) -> str:
        check_workspace_id(workspace_id)
        extension = ".json.gz" if self.compression == "gzip" else ".json"
        return f"tenant={workspace_id}/{snapshot_id}{extension}"

    async def start(self) -> None:
        """Open backend resources (no-op by default)."""

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""

    @abstractmethod
    async def put(
        self, workspace_id: str, snapshot_id: str, payload: dict[str, Any]
    ) -> StoredPayload:
        """Write a payload blob."""

    @abstractmethod
    async def read_bytes(self, storage_key: str) -> bytes:
        """Read raw blob bytes.

        Raises:
            SnapshotNotFound: Blob does not exist
        """

    @abstractmethod
    async def delete(self, storage_key: str) -> None:
        """Delete a blob if present."""

    async def get(self, storage_key: str, checksum: str | None = None) -> dict[str, Any]:
        """Read and decode a payload, verifying its checksum when given.

        Raises:
            SnapshotNotFound: Blob does not exist
            PayloadCorrupted: Checksum mismatch or undecodable content
        """
        data = await self.read_bytes(storage_key)
        if checksum is not None:
            actual = compute_checksum(data)
            if actual != checksum:
                raise PayloadCorrupted(
                    storage_key, f"checksum mismatch (expected {checksum}, got {actual})"
                )
        return decode_payload(storage_key, data)

    async def export_url(self, storage_key: str) -> str | None:
        """Signed download URL for a blob, or None if the backend has none."""
        return None


class LocalPayloadStore(PayloadStore):
    """Payload blobs as files under a local directory.

    Example:
        >>> store = LocalPayloadStore("/var/lib/safeback/payloads")
        >>> stored = await store.put("ws_1", "snap_1", payload)
        >>> payload = await store.get(stored.storage_key, stored.checksum)
    """

    def __init__(self, root_dir: str, compression: str = "gzip") -> None:
        self.root_dir = Path(root_dir)
        self.compression = compression

    def _path(self, storage_key: str) -> Path:
        path = (self.root_dir / storage_key).resolve()
        if self.root_dir.resolve() not in path.parents:
            raise ValidationFailure(
                f"Storage key escapes payload directory: {storage_key}", "storage_key"
            )
        return path

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    async def put(
        self, workspace_id: str, snapshot_id: str, payload: dict[str, Any]
    ) -> StoredPayload:
        key = self._key(workspace_id, snapshot_id)
        data = encode_payload(payload, self.compression)
        await asyncio.get_running_loop().run_in_executor(None, self._write, self._path(key), data)
        logger.debug(f"Wrote payload {key} ({len(data)} bytes)")
        return StoredPayload(storage_key=key, size_bytes=len(data), checksum=compute_checksum(data))

    async def read_bytes(self, storage_key: str) -> bytes:
        path = self._path(storage_key)
        if not path.exists():
            raise SnapshotNotFound(storage_key)
        return await asyncio.get_running_loop().run_in_executor(None, path.read_bytes)

    async def delete(self, storage_key: str) -> None:
        path = self._path(storage_key)
        if path.exists():
            path.unlink()


class S3PayloadStore(PayloadStore):
    """Payload blobs as objects in an S3 (or MinIO) bucket.

    Attributes:
        config: PayloadStoreConfig
    """

    def __init__(self, config: PayloadStoreConfig) -> None:
        self.config = config
        self.compression = config.compression
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    def _key(self, workspace_id: str, snapshot_id: str) -> str:
        return f"{self.config.snapshot_prefix}/{super()._key(workspace_id, snapshot_id)}"

    async def start(self) -> None:
        """Initialize S3 client."""
        if self._s3_client is not None:
            return
        self._session = get_session()

        client_kwargs: dict[str, Any] = {"region_name": self.config.region}
        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url
        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        logger.info("S3 payload store ready", extra={"bucket": self.config.bucket})

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client is not None:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    async def put(
        self, workspace_id: str, snapshot_id: str, payload: dict[str, Any]
    ) -> StoredPayload:
        await self.start()
        key = self._key(workspace_id, snapshot_id)
        data = encode_payload(payload, self.compression)
        checksum = compute_checksum(data)
        await self._s3_client.put_object(
            Bucket=self.config.bucket,
            Key=key,
            Body=data,
            ContentType="application/json",
            ContentEncoding="gzip" if self.compression == "gzip" else "identity",
            Metadata={"checksum": checksum},
        )
        logger.info(
            "Uploaded snapshot payload",
            extra={"workspace_id": workspace_id, "s3_key": key, "size_bytes": len(data)},
        )
        return StoredPayload(storage_key=key, size_bytes=len(data), checksum=checksum)

    async def read_bytes(self, storage_key: str) -> bytes:
        await self.start()
        try:
            response = await self._s3_client.get_object(Bucket=self.config.bucket, Key=storage_key)
        except self._s3_client.exceptions.NoSuchKey as e:
            raise SnapshotNotFound(storage_key) from e
        async with response["Body"] as stream:
            return await stream.read()

    async def delete(self, storage_key: str) -> None:
        await self.start()
        await self._s3_client.delete_object(Bucket=self.config.bucket, Key=storage_key)

    async def export_url(self, storage_key: str) -> str | None:
        await self.start()
        return await self._s3_client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.config.bucket, "Key": storage_key},
            ExpiresIn=self.config.export_url_expiry_seconds,
        )


def create_payload_store(config: PayloadStoreConfig, data_dir: str) -> PayloadStore:
    """Build the payload store selected by PayloadStoreConfig.backend."""
    if config.backend == PayloadBackend.S3:
        return S3PayloadStore(config)
    return LocalPayloadStore(str(Path(data_dir) / "payloads"), compression=config.compression)
