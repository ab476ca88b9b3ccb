"""Document store for harvested product records."""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterable
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from catalog_fetch.pipeline import FetchResult

logger = logging.getLogger(__name__)

DEFAULT_STORE_PATH = ".cache/catalog_store.sqlite"
PRODUCTS_COLLECTION = "products"


class PersistenceError(RuntimeError):
    """Raised when a document cannot be written to the store."""

    def __init__(self, message: str, *, collection: str, document_id: str) -> None:
        super().__init__(message)
        self.collection = collection
        self.document_id = document_id


class DocumentStore(Protocol):
    def upsert(self, collection: str, document_id: str, document: dict[str, Any]) -> None: ...


class SQLiteDocumentStore:
    """SQLite-backed document store keyed by collection and document id."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path)
        self._ensure_schema()

    def _open_connection(self) -> sqlite3.Connection:
        """Open a SQLite connection."""
        return sqlite3.connect(self._db_path)

    def _ensure_schema(self) -> None:
        """Create documents table if missing."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._open_connection() as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    document_id TEXT NOT NULL,
                    body TEXT NOT NULL,
                    updated_at REAL NOT NULL,
                    PRIMARY KEY (collection, document_id)
                )
                """
            )

    def upsert(self, collection: str, document_id: str, document: dict[str, Any]) -> None:
        """Insert or replace one document."""
        try:
            body = json.dumps(document, sort_keys=True)
            with self._open_connection() as connection:
                connection.execute(
                    """
                    INSERT INTO documents (collection, document_id, body, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(collection, document_id) DO UPDATE SET
                        body=excluded.body,
                        updated_at=excluded.updated_at
                    """,
                    (collection, document_id, body, time.time()),
                )
        except (sqlite3.Error, TypeError, ValueError) as error:
            raise PersistenceError(
                f"Failed to persist {collection}/{document_id}: {error}",
                collection=collection,
                document_id=document_id,
            ) from error

    def get(self, collection: str, document_id: str) -> dict[str, Any] | None:
        """Read one document by id."""
        with self._open_connection() as connection:
            row = connection.execute(
                """
                SELECT body
                FROM documents
                WHERE collection = ? AND document_id = ?
                """,
                (collection, document_id),
            ).fetchone()

        if row is None:
            return None
        return json.loads(row[0])

    def count(self, collection: str) -> int:
        with self._open_connection() as connection:
            row = connection.execute(
                "SELECT COUNT(*) FROM documents WHERE collection = ?",
                (collection,),
            ).fetchone()
        return int(row[0])


def persist_results(
    store: DocumentStore,
    results: Iterable[FetchResult],
    *,
    task_id: str,
    collection: str = PRODUCTS_COLLECTION,
) -> tuple[int, tuple[str, ...]]:
    """Upsert every successful result; return the count written and per-item warnings."""
    written = 0
    warnings: list[str] = []
    for result in results:
        if not result.ok or result.payload is None:
            continue
        document = {"taskId": task_id, **result.payload.to_document()}
        try:
            store.upsert(collection, result.item_key, document)
        except PersistenceError as error:
            logger.error("[Task %s] %s", task_id, error)
            warnings.append(f"persistence failed for {result.item_key}: {error}")
            continue
        written += 1
    logger.info("[Task %s] Persisted %d documents to '%s'", task_id, written, collection)
    return written, tuple(warnings)
