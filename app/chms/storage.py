"""
Blob storage for member photos: a local directory in development/tests, an S3-compatible
bucket (DigitalOcean Spaces) in production. Backends raise StorageError for every failure,
including a missing key.
"""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import BinaryIO

from werkzeug.utils import secure_filename


class StorageError(RuntimeError):
    pass


def photo_key(kind: str, organization_id: int, row_id: int, filename: str, now: datetime | None = None) -> str:
    """New key per upload, e.g. members/3/17/photo-20240101120000.jpg."""
    ext = os.path.splitext(secure_filename(filename) or "")[1].lower() or ".jpg"
    stamp = (now or datetime.utcnow()).strftime("%Y%m%d%H%M%S")
    return f"{kind}/{organization_id}/{row_id}/photo-{stamp}{ext}"


class Storage(ABC):
    @abstractmethod
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None: ...

    @abstractmethod
    def open(self, key: str) -> BinaryIO: ...

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Deleting a missing key is not an error."""


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        parts = key.replace("\\", "/").strip("/").split("/")
        if not key or ".." in parts:
            raise StorageError(f"Invalid storage key: {key!r}")
        return self.root.joinpath(*parts)

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except OSError as e:
            raise StorageError(f"Could not write {key}: {e}") from e

    def open(self, key: str) -> BinaryIO:
        try:
            return self._path(key).open("rb")
        except OSError as e:
            raise StorageError(f"Could not read {key}: {e}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    def _client(self):
        import boto3

        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def _call(self, op: str, **kwargs):
        from botocore.exceptions import BotoCoreError, ClientError

        try:
            return getattr(self._client(), op)(Bucket=self.bucket, **kwargs)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"S3 {op} failed for {kwargs.get('Key')}: {e}") from e

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        self._call("put_object", Key=key, Body=data, **extra)

    def open(self, key: str) -> BinaryIO:
        return self._call("get_object", Key=key)["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        try:
            self._call("head_object", Key=key)
        except StorageError:
            return False
        return True

    def delete(self, key: str) -> None:
        self._call("delete_object", Key=key)


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    return LocalStorage(root=Path(config.get("STORAGE_ROOT") or Path.cwd() / "storage"))
