from __future__ import annotations

import logging
import os
import tempfile
from datetime import timedelta
from io import BytesIO
from typing import Any, Mapping

from minio import Minio
from minio.error import S3Error

from .errors import StorageKeyNotFound, StorageUnavailable

logger = logging.getLogger("eventdesk.storage")


def ensure_dir(path: str) -> None:
    """Create directory if missing (mkdir -p equivalent)."""
    os.makedirs(path, exist_ok=True)


def write_atomic(path: str, data, mode: str = "wb") -> None:
    """Write data to a temporary file then atomically rename to target path."""
    dir_path = os.path.dirname(path)
    ensure_dir(dir_path)
    fd, tmp_path = tempfile.mkstemp(dir=dir_path)
    try:
        with os.fdopen(fd, mode) as f:
            f.write(data)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


class Storage:
    """Blob storage capability used for certificate artifacts and templates."""

    def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError


class LocalStorage(Storage):
    def __init__(self, root: str, url_prefix: str = "/files"):
        self.root = os.path.realpath(root)
        self.url_prefix = url_prefix.rstrip("/")

    def _path(self, key: str) -> str:
        cleaned = (key or "").strip().lstrip("/")
        if not cleaned:
            raise StorageUnavailable("Empty storage key")
        resolved = os.path.realpath(os.path.join(self.root, cleaned))
        if not resolved.startswith(f"{self.root}{os.sep}"):
            raise StorageUnavailable(f"Storage key escapes root: {key!r}")
        return resolved

    def url_for(self, key: str) -> str:
        return f"{self.url_prefix}/{key.lstrip('/')}"

    def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        path = self._path(key)
        try:
            write_atomic(path, data)
            os.chmod(path, 0o644)
        except OSError as exc:
            raise StorageUnavailable(f"Failed to write {key}: {exc}") from exc
        logger.info("[STORAGE] wrote %s (%d bytes)", path, len(data))
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        path = self._path(key)
        try:
            with open(path, "rb") as handle:
                return handle.read()
        except FileNotFoundError as exc:
            raise StorageKeyNotFound(f"Missing object {key}") from exc
        except OSError as exc:
            raise StorageUnavailable(f"Failed to read {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise StorageUnavailable(f"Failed to delete {key}: {exc}") from exc

    def exists(self, key: str) -> bool:
        return os.path.isfile(self._path(key))

    def list_keys(self, prefix: str = "") -> list[str]:
        base = os.path.join(self.root, prefix.strip("/")) if prefix else self.root
        if not os.path.isdir(base):
            return []
        keys: list[str] = []
        for root, dirs, files in os.walk(base):
            dirs[:] = [d for d in dirs if not d.startswith("_")]
            for name in files:
                full_path = os.path.join(root, name)
                keys.append(os.path.relpath(full_path, self.root).replace(os.sep, "/"))
        return sorted(keys)


class MinioStorage(Storage):
    def __init__(
        self,
        client: Minio,
        bucket: str,
        public_url: str | None = None,
        expiry_seconds: int = 3600,
    ):
        self.client = client
        self.bucket = bucket
        self.public_url = public_url.rstrip("/") if public_url else None
        # presigned URLs are capped at seven days by S3-compatible stores
        self.expiry_seconds = max(60, min(int(expiry_seconds), 7 * 24 * 3600))
        self._bucket_ready = False

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return
        try:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)
        except S3Error as exc:
            raise StorageUnavailable(f"MinIO bucket ensure failed: {exc}") from exc
        self._bucket_ready = True

    def url_for(self, key: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{self.bucket}/{key}"
        try:
            return self.client.presigned_get_object(
                bucket_name=self.bucket,
                object_name=key,
                expires=timedelta(seconds=self.expiry_seconds),
            )
        except S3Error as exc:
            raise StorageUnavailable(f"MinIO presign failed: {exc}") from exc

    def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        self._ensure_bucket()
        try:
            self.client.put_object(
                bucket_name=self.bucket,
                object_name=key,
                data=BytesIO(data),
                length=len(data),
                content_type=content_type or "application/octet-stream",
            )
        except S3Error as exc:
            raise StorageUnavailable(f"MinIO put_object failed: {exc}") from exc
        logger.info("[STORAGE] uploaded %s/%s (%d bytes)", self.bucket, key, len(data))
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        self._ensure_bucket()
        response = None
        try:
            response = self.client.get_object(self.bucket, key)
            return response.read()
        except S3Error as exc:
            if exc.code in ("NoSuchKey", "NoSuchObject"):
                raise StorageKeyNotFound(f"Missing object {key}") from exc
            raise StorageUnavailable(f"MinIO get_object failed: {exc}") from exc
        finally:
            if response is not None:
                response.close()
                response.release_conn()

    def delete(self, key: str) -> None:
        self._ensure_bucket()
        try:
            self.client.remove_object(self.bucket, key)
        except S3Error as exc:
            raise StorageUnavailable(f"MinIO remove_object failed: {exc}") from exc

    def exists(self, key: str) -> bool:
        self._ensure_bucket()
        try:
            self.client.stat_object(self.bucket, key)
            return True
        except S3Error as exc:
            if exc.code in ("NoSuchKey", "NoSuchObject"):
                return False
            raise StorageUnavailable(f"MinIO stat_object failed: {exc}") from exc

    def list_keys(self, prefix: str = "") -> list[str]:
        self._ensure_bucket()
        try:
            return sorted(
                obj.object_name
                for obj in self.client.list_objects(
                    self.bucket, prefix=prefix or None, recursive=True
                )
            )
        except S3Error as exc:
            raise StorageUnavailable(f"MinIO list_objects failed: {exc}") from exc


def build_storage(config: Mapping[str, Any]) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "local":
        return LocalStorage(os.path.join(config.get("SITE_ROOT", "/srv"), "files"))
    if backend == "minio":
        client = Minio(
            config["MINIO_ENDPOINT"],
            access_key=config.get("MINIO_ACCESS_KEY", ""),
            secret_key=config.get("MINIO_SECRET_KEY", ""),
            secure=bool(config.get("MINIO_SECURE", False)),
        )
        return MinioStorage(
            client,
            config.get("MINIO_BUCKET", "certificates"),
            public_url=config.get("MINIO_PUBLIC_URL"),
            expiry_seconds=config.get("CERT_URL_EXPIRY_SECONDS", 3600),
        )
    raise ValueError(f"Unsupported storage backend: {backend!r}")
