"""Object storage for payloads too large to travel inline in an event.

Objects are addressed as ``object://<backend>/<bucket>/<key>`` with keys laid
out as ``[prefix/]jobs/<job_id>/<kind>/<name>``. Without an explicit name an
object is named after the sha256 of its content, so storing the same payload
twice yields the same URI. In WORM mode an existing object is never
overwritten.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from hashlib import sha256
from pathlib import Path
from typing import Any, NamedTuple

from inference_pipeline.settings import env_bool, resolve_env

logger = logging.getLogger(__name__)

URI_SCHEME = "object://"
DEFAULT_LOCAL_ROOT = "/tmp/inference-object-storage"

_UNSAFE_SEGMENT_RE = re.compile(r"[^A-Za-z0-9._-]+")


class StorageLocation(NamedTuple):
    backend: str
    bucket: str
    key: str

    @property
    def uri(self) -> str:
        return f"{URI_SCHEME}{self.backend}/{self.bucket}/{self.key}"


def parse_storage_uri(uri: str) -> StorageLocation:
    if not uri.startswith(URI_SCHEME):
        raise ValueError(f"not an object storage uri: {uri}")
    backend, _, rest = uri[len(URI_SCHEME) :].partition("/")
    bucket, _, key = rest.partition("/")
    if not (backend and bucket and key):
        raise ValueError(f"incomplete object storage uri: {uri}")
    return StorageLocation(backend, bucket, key)


def content_name(content: bytes, *, suffix: str = ".json") -> str:
    return f"payload-{sha256(content).hexdigest()[:16]}{suffix}"


def _safe_segment(value: str) -> str:
    cleaned = _UNSAFE_SEGMENT_RE.sub("_", value.strip())
    if cleaned in {"", ".", ".."}:
        return "_"
    return cleaned


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str = "local"
    bucket: str = "inference"
    root: str = DEFAULT_LOCAL_ROOT
    prefix: str = ""
    worm_mode: bool = True
    endpoint: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    force_path_style: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ObjectStorageConfig:
        env = resolve_env(environ)

        def text(name: str, default: str = "") -> str:
            return str(env.get(name, "")).strip() or default

        return cls(
            backend=text("INFER_OBJECT_STORAGE_BACKEND", "local").lower(),
            bucket=text("OBJECT_STORAGE_BUCKET", "inference"),
            root=text("OBJECT_STORAGE_ROOT", DEFAULT_LOCAL_ROOT),
            prefix=text("OBJECT_STORAGE_PREFIX"),
            worm_mode=env_bool(env, "OBJECT_STORAGE_WORM_MODE", default=True),
            endpoint=text("OBJECT_STORAGE_ENDPOINT"),
            region=text("OBJECT_STORAGE_REGION"),
            access_key=text("OBJECT_STORAGE_ACCESS_KEY"),
            secret_key=text("OBJECT_STORAGE_SECRET_KEY"),
            force_path_style=env_bool(env, "OBJECT_STORAGE_FORCE_PATH_STYLE", default=True),
        )


class ObjectStorageBackend:
    backend_name = "base"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self.bucket = config.bucket
        self.prefix = config.prefix.strip("/")
        self.worm_mode = bool(config.worm_mode)

    def locate(self, *, job_id: str, kind: str, name: str) -> StorageLocation:
        segments = [self.prefix] if self.prefix else []
        segments += ["jobs", _safe_segment(job_id), _safe_segment(kind), _safe_segment(name)]
        return StorageLocation(self.backend_name, self.bucket, "/".join(segments))

    def put(
        self,
        content: bytes,
        *,
        job_id: str,
        kind: str = "payloads",
        name: str | None = None,
        content_type: str = "application/json",
    ) -> str:
        location = self.locate(job_id=job_id, kind=kind, name=name or content_name(content))
        if self.worm_mode and self._exists(location):
            logger.debug("object_kept_worm job_id=%s uri=%s", job_id, location.uri)
            return location.uri
        self._write(location, content, content_type=content_type)
        logger.debug("object_written job_id=%s uri=%s size=%s", job_id, location.uri, len(content))
        return location.uri

    def get(self, storage_uri: str) -> bytes:
        return self._read(self._owned(storage_uri))

    def delete(self, storage_uri: str) -> bool:
        return self._remove(self._owned(storage_uri))

    def _owned(self, storage_uri: str) -> StorageLocation:
        location = parse_storage_uri(storage_uri)
        if location.backend != self.backend_name:
            raise ValueError(f"storage backend mismatch: {location.backend} is not {self.backend_name}")
        return location

    def _exists(self, location: StorageLocation) -> bool:
        raise NotImplementedError

    def _write(self, location: StorageLocation, content: bytes, *, content_type: str) -> None:
        raise NotImplementedError

    def _read(self, location: StorageLocation) -> bytes:
        raise NotImplementedError

    def _remove(self, location: StorageLocation) -> bool:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorageBackend):
    """Filesystem backend; each object gets a ``<name>.meta.json`` sidecar."""

    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        super().__init__(config=config)
        self.root = Path(config.root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, location: StorageLocation) -> Path:
        return self.root / location.bucket / location.key

    @staticmethod
    def _sidecar(path: Path) -> Path:
        return path.with_name(f"{path.name}.meta.json")

    def _exists(self, location: StorageLocation) -> bool:
        return self._path(location).exists()

    def _write(self, location: StorageLocation, content: bytes, *, content_type: str) -> None:
        path = self._path(location)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        meta = {
            "content_type": content_type,
            "size": len(content),
            "sha256": sha256(content).hexdigest(),
            "created_at": datetime.now(UTC).isoformat(),
        }
        self._sidecar(path).write_text(json.dumps(meta, ensure_ascii=True, sort_keys=True), encoding="utf-8")

    def _read(self, location: StorageLocation) -> bytes:
        path = self._path(location)
        if not path.is_file():
            raise FileNotFoundError(location.uri)
        return path.read_bytes()

    def _remove(self, location: StorageLocation) -> bool:
        path = self._path(location)
        if not path.is_file():
            return False
        path.unlink()
        self._sidecar(path).unlink(missing_ok=True)
        return True


def _connect_s3(config: ObjectStorageConfig) -> Any:
    try:
        import boto3
        from botocore.config import Config
    except ImportError as exc:
        raise RuntimeError("boto3 is required for INFER_OBJECT_STORAGE_BACKEND=s3; install boto3>=1.34") from exc
    session = boto3.session.Session(
        aws_access_key_id=config.access_key or None,
        aws_secret_access_key=config.secret_key or None,
        region_name=config.region or None,
    )
    addressing_style = "path" if config.force_path_style else "auto"
    return session.client(
        "s3",
        endpoint_url=config.endpoint or None,
        config=Config(s3={"addressing_style": addressing_style}),
    )


class S3ObjectStorage(ObjectStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig, client: Any | None = None) -> None:
        super().__init__(config=config)
        self._client = client if client is not None else _connect_s3(config)

    def _exists(self, location: StorageLocation) -> bool:
        try:
            self._client.head_object(Bucket=location.bucket, Key=location.key)
        except Exception:
            return False
        return True

    def _write(self, location: StorageLocation, content: bytes, *, content_type: str) -> None:
        self._client.put_object(
            Bucket=location.bucket,
            Key=location.key,
            Body=content,
            ContentType=content_type,
            Metadata={"sha256": sha256(content).hexdigest()},
        )

    def _read(self, location: StorageLocation) -> bytes:
        response = self._client.get_object(Bucket=location.bucket, Key=location.key)
        return response["Body"].read()

    def _remove(self, location: StorageLocation) -> bool:
        self._client.delete_object(Bucket=location.bucket, Key=location.key)
        return True


_BACKENDS: dict[str, type[ObjectStorageBackend]] = {
    LocalObjectStorage.backend_name: LocalObjectStorage,
    S3ObjectStorage.backend_name: S3ObjectStorage,
}


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    config = ObjectStorageConfig.from_env(environ)
    backend_cls = _BACKENDS.get(config.backend)
    if backend_cls is None:
        raise RuntimeError(f"unsupported object storage backend: {config.backend}")
    return backend_cls(config=config)
