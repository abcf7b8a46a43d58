from __future__ import annotations

import io
import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from conftest import local_storage_config
from inference_pipeline.object_storage import (
    LocalObjectStorage,
    ObjectStorageConfig,
    S3ObjectStorage,
    StorageLocation,
    content_name,
    create_object_storage_from_env,
    parse_storage_uri,
)


def _s3_storage(client, *, worm_mode: bool = True) -> S3ObjectStorage:
    config = ObjectStorageConfig(backend="s3", bucket="test-bucket", worm_mode=worm_mode)
    return S3ObjectStorage(config=config, client=client)


def test_local_storage_round_trips_content_addressed_payload(tmp_path: Path):
    storage = LocalObjectStorage(config=local_storage_config(tmp_path))
    uri = storage.put(b'{"a":1}', job_id="job_1")

    expected_name = content_name(b'{"a":1}')
    assert uri == f"object://local/inference/jobs/job_1/payloads/{expected_name}"
    assert storage.put(b'{"a":1}', job_id="job_1") == uri
    assert storage.get(uri) == b'{"a":1}'

    location = parse_storage_uri(uri)
    sidecar = tmp_path / "inference" / f"{location.key}.meta.json"
    meta = json.loads(sidecar.read_text(encoding="utf-8"))
    assert meta["size"] == 7
    assert meta["content_type"] == "application/json"

    assert storage.delete(uri) is True
    assert storage.delete(uri) is False
    assert not sidecar.exists()
    with pytest.raises(FileNotFoundError):
        storage.get(uri)


def test_local_storage_worm_mode_keeps_first_write(tmp_path: Path):
    storage = LocalObjectStorage(config=local_storage_config(tmp_path, worm_mode=True))
    uri_1 = storage.put(b"first", job_id="job_w", name="p.json")
    uri_2 = storage.put(b"second", job_id="job_w", name="p.json")
    assert uri_1 == uri_2
    assert storage.get(uri_1) == b"first"


def test_local_storage_overwrites_without_worm_mode(tmp_path: Path):
    storage = LocalObjectStorage(config=local_storage_config(tmp_path, worm_mode=False))
    uri = storage.put(b"first", job_id="job_w", name="p.json")
    storage.put(b"second", job_id="job_w", name="p.json")
    assert storage.get(uri) == b"second"


def test_local_storage_rejects_uri_of_another_backend(tmp_path: Path):
    storage = LocalObjectStorage(config=local_storage_config(tmp_path))
    with pytest.raises(ValueError, match="backend mismatch"):
        storage.get("object://s3/inference/jobs/job_1/payloads/p.json")


def test_key_segments_cannot_escape_the_job_directory(tmp_path: Path):
    storage = LocalObjectStorage(config=local_storage_config(tmp_path))
    assert parse_storage_uri(storage.put(b"x", job_id="job 1/../x", name="p.json")).key == "jobs/job_1_.._x/payloads/p.json"
    assert parse_storage_uri(storage.put(b"x", job_id="..", name="p.json")).key == "jobs/_/payloads/p.json"


def test_prefix_is_prepended_to_keys(tmp_path: Path):
    config = ObjectStorageConfig(root=str(tmp_path), prefix="/tenant-a/")
    location = LocalObjectStorage(config=config).locate(job_id="job_1", kind="results", name="r.json")
    assert location == StorageLocation("local", "inference", "tenant-a/jobs/job_1/results/r.json")


def test_parse_storage_uri_rejects_invalid_values():
    assert parse_storage_uri("object://s3/bucket/a/b/c") == StorageLocation("s3", "bucket", "a/b/c")
    assert parse_storage_uri("object://s3/bucket/a/b/c").uri == "object://s3/bucket/a/b/c"
    with pytest.raises(ValueError):
        parse_storage_uri("s3://bucket/key")
    with pytest.raises(ValueError):
        parse_storage_uri("object://s3/bucket")


def test_content_name_depends_only_on_content():
    assert content_name(b"a") == content_name(b"a")
    assert content_name(b"a") != content_name(b"b")
    assert content_name(b"a").startswith("payload-")


def test_s3_storage_put_skips_existing_object_in_worm_mode():
    client = MagicMock()
    storage = _s3_storage(client, worm_mode=True)

    client.head_object.side_effect = Exception("Not found")
    uri = storage.put(b"x", job_id="job_1", name="p.json")
    assert uri == "object://s3/test-bucket/jobs/job_1/payloads/p.json"
    client.put_object.assert_called_once()
    assert client.put_object.call_args.kwargs["Body"] == b"x"

    client.head_object.side_effect = None
    client.head_object.return_value = {"ContentLength": 1}
    storage.put(b"y", job_id="job_1", name="p.json")
    client.put_object.assert_called_once()


def test_s3_storage_get_and_delete_use_uri_bucket_and_key():
    client = MagicMock()
    client.get_object.return_value = {"Body": io.BytesIO(b"stored")}
    storage = _s3_storage(client)
    uri = "object://s3/test-bucket/jobs/job_1/payloads/p.json"

    assert storage.get(uri) == b"stored"
    client.get_object.assert_called_once_with(Bucket="test-bucket", Key="jobs/job_1/payloads/p.json")
    assert storage.delete(uri) is True
    client.delete_object.assert_called_once_with(Bucket="test-bucket", Key="jobs/job_1/payloads/p.json")


def test_object_storage_factory_builds_s3_client_from_env():
    mock_boto3 = MagicMock()
    mock_boto3.session.Session.return_value.client.return_value = MagicMock()
    mock_botocore_config = MagicMock()
    with patch.dict(
        sys.modules,
        {"boto3": mock_boto3, "botocore": MagicMock(config=mock_botocore_config), "botocore.config": mock_botocore_config},
    ):
        storage = create_object_storage_from_env(
            {
                "INFER_OBJECT_STORAGE_BACKEND": "S3",
                "OBJECT_STORAGE_BUCKET": "models",
                "OBJECT_STORAGE_ENDPOINT": "http://minio:9000",
                "OBJECT_STORAGE_ACCESS_KEY": "ak",
                "OBJECT_STORAGE_SECRET_KEY": "sk",
            }
        )
    assert isinstance(storage, S3ObjectStorage)
    assert storage.bucket == "models"
    mock_boto3.session.Session.assert_called_once_with(
        aws_access_key_id="ak",
        aws_secret_access_key="sk",
        region_name=None,
    )
    _, kwargs = mock_boto3.session.Session.return_value.client.call_args
    assert kwargs["endpoint_url"] == "http://minio:9000"


def test_object_storage_factory_defaults_to_local(tmp_path: Path):
    storage = create_object_storage_from_env({"OBJECT_STORAGE_ROOT": str(tmp_path / "root")})
    assert isinstance(storage, LocalObjectStorage)
    assert storage.worm_mode is True
    assert (tmp_path / "root").exists()


def test_object_storage_factory_rejects_unknown_backend():
    with pytest.raises(RuntimeError, match="unsupported object storage backend"):
        create_object_storage_from_env({"INFER_OBJECT_STORAGE_BACKEND": "ftp"})
