"""JSON document tables shared by the job and dead-letter repositories.

A document is a plain dict keyed by ``key_field``. Besides the serialized
document, the sqlite table keeps ``indexed_fields`` as real columns so list
filters run in SQL. Reads always return fresh copies.
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any

_IDENTIFIER_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")


def _identifier(name: str) -> str:
    if not _IDENTIFIER_RE.fullmatch(name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _snapshot(document: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(document))


class InMemoryDocumentRepository:
    key_field = ""

    def __init__(self, documents: dict[str, dict[str, Any]] | None = None) -> None:
        self._documents = documents if documents is not None else {}
        self._lock = threading.Lock()

    def _put(self, document: dict[str, Any]) -> dict[str, Any]:
        stored = _snapshot(document)
        with self._lock:
            self._documents[str(stored[self.key_field])] = stored
        return _snapshot(stored)

    def _get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            document = self._documents.get(key)
            return None if document is None else _snapshot(document)

    def _select(self, **filters: str | None) -> list[dict[str, Any]]:
        wanted = {field: value for field, value in filters.items() if value}
        with self._lock:
            matches = [
                _snapshot(document)
                for document in self._documents.values()
                if all(document.get(field) == value for field, value in wanted.items())
            ]
        matches.sort(key=lambda doc: (str(doc.get("created_at", "")), str(doc.get(self.key_field, ""))))
        return matches

    def reset(self) -> None:
        with self._lock:
            self._documents.clear()


class SqliteDocumentRepository:
    key_field = ""
    indexed_fields: tuple[str, ...] = ()

    def __init__(self, db_path: str | Path, *, table_name: str) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._table = _identifier(table_name)
        self._key = _identifier(self.key_field)
        self._columns = tuple(_identifier(field) for field in self.indexed_fields)
        column_defs = "".join(f", {column} TEXT" for column in self._columns)
        self._execute(
            f"CREATE TABLE IF NOT EXISTS {self._table} "
            f"({self._key} TEXT PRIMARY KEY{column_defs}, document TEXT NOT NULL, created_at TEXT NOT NULL)"
        )

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[sqlite3.Row]:
        with self._lock:
            conn = sqlite3.connect(self._db_path)
            conn.row_factory = sqlite3.Row
            try:
                with conn:
                    return conn.execute(sql, params).fetchall()
            finally:
                conn.close()

    def _put(self, document: dict[str, Any]) -> dict[str, Any]:
        columns = (self._key, *self._columns, "document", "created_at")
        updates = ", ".join(f"{column} = excluded.{column}" for column in (*self._columns, "document"))
        self._execute(
            f"INSERT INTO {self._table} ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT({self._key}) DO UPDATE SET {updates}",
            (
                str(document[self.key_field]),
                *(document.get(field) for field in self._columns),
                json.dumps(document, ensure_ascii=True, sort_keys=True),
                str(document.get("created_at", "")),
            ),
        )
        return _snapshot(document)

    def _get(self, key: str) -> dict[str, Any] | None:
        rows = self._execute(f"SELECT document FROM {self._table} WHERE {self._key} = ?", (key,))
        return json.loads(rows[0]["document"]) if rows else None

    def _select(self, **filters: str | None) -> list[dict[str, Any]]:
        wanted = [(_identifier(field), value) for field, value in filters.items() if value]
        where = " AND ".join(f"{field} = ?" for field, _ in wanted)
        sql = f"SELECT document FROM {self._table}"
        if where:
            sql += f" WHERE {where}"
        sql += f" ORDER BY created_at, {self._key}"
        return [json.loads(row["document"]) for row in self._execute(sql, tuple(value for _, value in wanted))]

    def reset(self) -> None:
        self._execute(f"DELETE FROM {self._table}")
