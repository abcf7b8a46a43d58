import pathlib
import sys

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from inference_pipeline.api import create_app
from inference_pipeline.object_storage import LocalObjectStorage, ObjectStorageConfig
from inference_pipeline.retry_policy import RetryPolicy
from inference_pipeline.runtime import build_runtime


def local_storage_config(root: pathlib.Path, *, worm_mode: bool = True) -> ObjectStorageConfig:
    return ObjectStorageConfig(backend="local", bucket="inference", root=str(root), worm_mode=worm_mode)


def fast_retry_policy(max_attempts: int = 3) -> RetryPolicy:
    return RetryPolicy(max_attempts=max_attempts, backoff_base_ms=0, backoff_max_ms=0, jitter_max_ms=0)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch):
    for name in (
        "INFER_QUEUE_BACKEND",
        "INFER_JOB_STORE_BACKEND",
        "INFER_REQUIRE_TRUESTACK",
        "REDIS_DSN",
        "WORKER_MAX_ATTEMPTS",
        "RERANK_TOP_K",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("INFER_OBJECT_STORAGE_BACKEND", "local")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_store"))
    yield


@pytest.fixture
def storage(tmp_path: pathlib.Path) -> LocalObjectStorage:
    return LocalObjectStorage(config=local_storage_config(tmp_path / "objects"))


@pytest.fixture
def runtime(storage: LocalObjectStorage):
    rt = build_runtime(storage=storage, retry_policy=fast_retry_policy(), capacity=4, poll_interval_ms=5)
    yield rt
    rt.close()


@pytest.fixture
def client(runtime) -> TestClient:
    return TestClient(create_app(runtime=runtime))
