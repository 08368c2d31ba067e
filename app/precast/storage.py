from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

# Key layout; each document version has its own prefix:
#   documents/<document_id>/v<version>/<file_name>
#   templates/<template_id>/<file_name>
DOCUMENTS_PREFIX = "documents"
TEMPLATES_PREFIX = "templates"


class StorageError(RuntimeError):
    pass


def normalize_key(key: str) -> str:
    """Forward slashes, no leading slash, no empty or parent segments."""
    parts = [p for p in (key or "").replace("\\", "/").split("/") if p not in ("", ".")]
    if not parts or ".." in parts:
        raise StorageError(f"Invalid storage key: {key!r}")
    return "/".join(parts)


def document_key(document_id: int, version: str, file_name: str) -> str:
    if "/" in version or "/" in file_name:
        raise StorageError(f"Version and file name may not contain '/': {version!r}, {file_name!r}")
    return normalize_key(f"{DOCUMENTS_PREFIX}/{int(document_id)}/v{version}/{file_name}")


def template_key(template_id: int, file_name: str) -> str:
    if "/" in file_name:
        raise StorageError(f"File name may not contain '/': {file_name!r}")
    return normalize_key(f"{TEMPLATES_PREFIX}/{int(template_id)}/{file_name}")


class Storage:
    """Blob store for document and template files. URLs it hands out are opaque to callers."""

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def url(self, key: str) -> str:
        raise NotImplementedError

    def check(self) -> None:
        """Raise StorageError when the backend is unusable."""
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path
    url_prefix: str = "/uploads"

    def _path(self, key: str) -> Path:
        p = (self.root / normalize_key(key)).resolve()
        if self.root.resolve() not in p.parents:
            raise StorageError(f"Storage key escapes root: {key!r}")
        return p

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a reader never sees half a file.
        tmp = p.with_name(f".{p.name}.part")
        tmp.write_bytes(data)
        tmp.replace(p)

    def open(self, key: str) -> BinaryIO:
        try:
            return self._path(key).open("rb")
        except FileNotFoundError as e:
            raise StorageError(f"No such blob: {key!r}") from e

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def url(self, key: str) -> str:
        return f"{self.url_prefix.rstrip('/')}/{normalize_key(key)}"

    def check(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Storage root {self.root} is not usable: {e}") from e
        if not os.access(self.root, os.W_OK):
            raise StorageError(f"Storage root {self.root} is not writable")


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
        self._client().put_object(Bucket=self.bucket, Key=normalize_key(key), Body=data, **extra)

    def open(self, key: str) -> BinaryIO:
        from botocore.exceptions import ClientError

        try:
            obj = self._client().get_object(Bucket=self.bucket, Key=normalize_key(key))
        except ClientError as e:
            raise StorageError(f"Cannot read {key!r} from bucket {self.bucket}: {e}") from e
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=normalize_key(key))
            return True
        except ClientError:
            return False

    def url(self, key: str) -> str:
        return f"s3://{self.bucket}/{normalize_key(key)}"

    def check(self) -> None:
        from botocore.exceptions import BotoCoreError, ClientError

        if not self.bucket:
            raise StorageError("S3_BUCKET is not set")
        try:
            self._client().head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Cannot access S3 bucket {self.bucket}: {e}") from e


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
    if backend != "local":
        raise StorageError(f"Unknown STORAGE_BACKEND: {backend!r} (expected 'local' or 's3')")
    root = Path(config.get("STORAGE_ROOT") or Path(os.getcwd()) / "storage")
    return LocalStorage(root=root)
