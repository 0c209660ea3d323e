"""Object stores holding Parquet fragments.

Two implementations share the :class:`ObjectStore` protocol: an
S3-compatible store (AWS S3, Cloudflare R2, MinIO) built on boto3, and a
local directory used for development and tests. Both are synchronous;
async callers offload them with ``loop.run_in_executor``.
"""

from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterator, Sequence
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from nolatransit._constants import DELETE_BATCH_SIZE
from nolatransit.config import OBJECT_STORE_LOCAL, TransitConfig
from nolatransit.exceptions import TransitStorageError

_logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    """Structural object-store interface used by the sink, compactor and aggregator."""

    def list_keys(self, prefix: str = "") -> list[str]:
        ...

    def get(self, key: str) -> bytes:
        ...

    def put(self, key: str, data: bytes) -> None:
        ...

    def delete(self, keys: Sequence[str]) -> None:
        ...


def _batched(keys: Sequence[str], size: int) -> Iterator[Sequence[str]]:
    for start in range(0, len(keys), size):
        yield keys[start : start + size]


# ---------------------------------------------------------------------------
# Local directory
# ---------------------------------------------------------------------------


class LocalObjectStore:
    """Object store backed by a directory; keys map to relative paths."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if not path.is_relative_to(self._root.resolve()):
            raise TransitStorageError(f"Key escapes the store root: {key}", key=key)
        return path

    def list_keys(self, prefix: str = "") -> list[str]:
        if not self._root.exists():
            return []
        keys = []
        for path in self._root.rglob("*"):
            if not path.is_file() or path.name.startswith("."):
                continue
            key = path.relative_to(self._root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def get(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as exc:
            raise TransitStorageError(f"Cannot read {key}: {exc}", key=key) from exc

    def put(self, key: str, data: bytes) -> None:
        """Write *data* atomically: a hidden temp file is renamed over the key."""
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".", suffix=".tmp", dir=path.parent)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise TransitStorageError(f"Cannot write {key}: {exc}", key=key) from exc

    def delete(self, keys: Sequence[str]) -> None:
        for key in keys:
            try:
                self._path(key).unlink(missing_ok=True)
            except OSError as exc:
                raise TransitStorageError(f"Cannot delete {key}: {exc}", key=key) from exc


# ---------------------------------------------------------------------------
# S3 compatible
# ---------------------------------------------------------------------------


class S3ObjectStore:
    """Object store on an S3-compatible bucket."""

    def __init__(self, bucket: str, client: Any) -> None:
        self._bucket = bucket
        self._client = client

    @classmethod
    def from_config(cls, config: TransitConfig) -> S3ObjectStore:
        client = boto3.client(
            "s3",
            endpoint_url=config.s3_endpoint,
            region_name=config.s3_region,
            aws_access_key_id=config.s3_access_key_id,
            aws_secret_access_key=config.s3_secret_access_key,
        )
        return cls(config.bucket, client)

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                keys.extend(item["Key"] for item in page.get("Contents", []))
        except (BotoCoreError, ClientError) as exc:
            raise TransitStorageError(f"Cannot list s3://{self._bucket}/{prefix}: {exc}") from exc
        return keys

    def get(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            raise TransitStorageError(f"Cannot read s3://{self._bucket}/{key}: {exc}", key=key) from exc

    def put(self, key: str, data: bytes) -> None:
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType="application/vnd.apache.parquet",
            )
        except (BotoCoreError, ClientError) as exc:
            raise TransitStorageError(f"Cannot write s3://{self._bucket}/{key}: {exc}", key=key) from exc

    def delete(self, keys: Sequence[str]) -> None:
        """Delete *keys*, at most ``DELETE_BATCH_SIZE`` per request."""
        for batch in _batched(list(keys), DELETE_BATCH_SIZE):
            try:
                response = self._client.delete_objects(
                    Bucket=self._bucket,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )
            except (BotoCoreError, ClientError) as exc:
                raise TransitStorageError(f"Delete request on s3://{self._bucket} failed: {exc}") from exc
            errors = response.get("Errors") or []
            if errors:
                first = errors[0]
                raise TransitStorageError(
                    f"{len(errors)} objects could not be deleted, first {first.get('Key')}: {first.get('Message')}",
                    key=str(first.get("Key", "")),
                )
            _logger.debug("Deleted %d objects from s3://%s", len(batch), self._bucket)


def build_object_store(config: TransitConfig) -> ObjectStore:
    """Create the object store named by ``config.object_store``."""
    if config.object_store == OBJECT_STORE_LOCAL:
        return LocalObjectStore(config.local_store_dir)
    return S3ObjectStore.from_config(config)
