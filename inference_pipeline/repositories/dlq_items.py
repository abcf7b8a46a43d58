from __future__ import annotations

from pathlib import Path
from typing import Any

from inference_pipeline.repositories._documents import InMemoryDocumentRepository, SqliteDocumentRepository


class _DlqItemsAccess:
    key_field = "dlq_id"

    def upsert(self, *, item: dict[str, Any]) -> dict[str, Any]:
        return self._put(item)

    def get(self, *, dlq_id: str) -> dict[str, Any] | None:
        return self._get(dlq_id)

    def list(self, *, job_id: str | None = None, status: str | None = None) -> list[dict[str, Any]]:
        return self._select(job_id=job_id, status=status)


class InMemoryDlqItemsRepository(_DlqItemsAccess, InMemoryDocumentRepository):
    pass


class SqliteDlqItemsRepository(_DlqItemsAccess, SqliteDocumentRepository):
    indexed_fields = ("job_id", "status")

    def __init__(self, db_path: str | Path, *, table_name: str = "dlq_items") -> None:
        super().__init__(db_path, table_name=table_name)
