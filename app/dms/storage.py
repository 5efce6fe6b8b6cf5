from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import BinaryIO

from werkzeug.utils import secure_filename


class StorageError(RuntimeError):
    pass


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        p = (self.root / safe_key).resolve()
        if self.root.resolve() not in p.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return p

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        return self._path(key).open("rb")

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def delete(self, key: str) -> None:
        p = self._path(key)
        if p.exists():
            p.unlink()


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

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)

    def open(self, key: str) -> BinaryIO:
        obj = self._client().get_object(Bucket=self.bucket, Key=key)
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    def delete(self, key: str) -> None:
        self._client().delete_object(Bucket=self.bucket, Key=key)


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
    # default local
    root = (config.get("STORAGE_ROOT") or "").strip()
    return LocalStorage(root=Path(root) if root else Path(os.getcwd()) / "storage")


def build_photo_key(folder: str, owner_id: int, filename: str, upload_date: date | None = None) -> str:
    """Deterministic key: <folder>/<owner>/<YYYY-MM-DD>/<secure filename>."""
    if upload_date is None:
        upload_date = date.today()
    safe_filename = secure_filename(filename) or "photo.bin"
    return f"{folder}/{owner_id}/{upload_date.isoformat()}/{safe_filename}"


def file_digest_and_size(file_bytes: bytes) -> tuple[str, int]:
    h = hashlib.sha256()
    h.update(file_bytes)
    return (h.hexdigest(), len(file_bytes))


def check_photo_upload(filename: str | None, content_type: str | None, size: int, *, allowed: tuple[str, ...], max_bytes: int) -> str | None:
    """Return an error message, or None when the upload is an acceptable image."""
    if not filename:
        return "Choose a photo to upload."
    if (content_type or "").lower() not in allowed:
        return f"{filename}: only JPEG, PNG or WebP images are allowed."
    if size <= 0:
        return f"{filename}: file is empty."
    if size > max_bytes:
        return f"{filename}: photo exceeds the {max_bytes // (1024 * 1024)} MB limit."
    return None


def store_photo(storage: Storage, folder: str, owner_id: int, filename: str, data: bytes, content_type: str | None) -> str:
    """Write the bytes under build_photo_key; same-day name clashes get a digest prefix."""
    key = build_photo_key(folder, owner_id, filename)
    if storage.exists(key):
        digest, _ = file_digest_and_size(data)
        key = build_photo_key(folder, owner_id, f"{digest[:8]}_{filename}")
    storage.put_bytes(key, data, content_type=content_type)
    return key
