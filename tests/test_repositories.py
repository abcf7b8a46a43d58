from __future__ import annotations

from pathlib import Path

import pytest

from inference_pipeline.repositories import (
    InMemoryDlqItemsRepository,
    InMemoryJobsRepository,
    SqliteDlqItemsRepository,
    SqliteJobsRepository,
)


@pytest.fixture(params=["memory", "sqlite"])
def jobs_repo(request, tmp_path: Path):
    if request.param == "memory":
        return InMemoryJobsRepository()
    return SqliteJobsRepository(tmp_path / "jobs.sqlite3")


@pytest.fixture(params=["memory", "sqlite"])
def dlq_repo(request, tmp_path: Path):
    if request.param == "memory":
        return InMemoryDlqItemsRepository()
    return SqliteDlqItemsRepository(tmp_path / "dlq.sqlite3")


def test_jobs_repository_returns_copies_and_filters_by_status(jobs_repo):
    job = {"job_id": "job_b", "status": "running", "created_at": "2026-01-02", "stages": ["retrieve"]}
    jobs_repo.upsert(job=job)
    jobs_repo.upsert(job={"job_id": "job_a", "status": "pending", "created_at": "2026-01-01"})

    fetched = jobs_repo.get(job_id="job_b")
    fetched["stages"].append("rerank")
    assert jobs_repo.get(job_id="job_b")["stages"] == ["retrieve"]
    assert jobs_repo.get(job_id="missing") is None

    assert [row["job_id"] for row in jobs_repo.list()] == ["job_a", "job_b"]
    assert [row["job_id"] for row in jobs_repo.list(status="running")] == ["job_b"]

    jobs_repo.upsert(job={**job, "status": "completed"})
    assert jobs_repo.list(status="running") == []
    jobs_repo.reset()
    assert jobs_repo.list() == []


def test_dlq_repository_filters_on_job_and_status(dlq_repo):
    dlq_repo.upsert(item={"dlq_id": "dlq_1", "job_id": "job_a", "status": "open", "created_at": "1"})
    dlq_repo.upsert(item={"dlq_id": "dlq_2", "job_id": "job_b", "status": "open", "created_at": "2"})
    dlq_repo.upsert(item={"dlq_id": "dlq_3", "job_id": "job_a", "status": "requeued", "created_at": "3"})

    assert [row["dlq_id"] for row in dlq_repo.list(job_id="job_a")] == ["dlq_1", "dlq_3"]
    assert [row["dlq_id"] for row in dlq_repo.list(job_id="job_a", status="open")] == ["dlq_1"]
    assert dlq_repo.get(dlq_id="dlq_2")["job_id"] == "job_b"


def test_sqlite_repository_rejects_unsafe_table_name(tmp_path: Path):
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        SqliteJobsRepository(tmp_path / "jobs.sqlite3", table_name="jobs; DROP TABLE x")
