from __future__ import annotations

from pathlib import Path
from typing import Any

from inference_pipeline.repositories._documents import InMemoryDocumentRepository, SqliteDocumentRepository


class _JobsAccess:
    key_field = "job_id"

    def upsert(self, *, job: dict[str, Any]) -> dict[str, Any]:
        return self._put(job)

    def get(self, *, job_id: str) -> dict[str, Any] | None:
        return self._get(job_id)

    def list(self, *, status: str | None = None) -> list[dict[str, Any]]:
        return self._select(status=status)


class InMemoryJobsRepository(_JobsAccess, InMemoryDocumentRepository):
    pass


class SqliteJobsRepository(_JobsAccess, SqliteDocumentRepository):
    """Job records keyed by job_id, with status and current_stage as columns."""

    indexed_fields = ("status", "current_stage")

    def __init__(self, db_path: str | Path, *, table_name: str = "jobs") -> None:
        super().__init__(db_path, table_name=table_name)
