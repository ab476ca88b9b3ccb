"""Unit tests for the SQLite document store."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from catalog_fetch.pipeline import FetchResult, ResultSource
from catalog_fetch.retry import ProtocolError
from catalog_fetch.schema import ProductDetails, SimplifiedProduct
from catalog_fetch.store import (
    PRODUCTS_COLLECTION,
    PersistenceError,
    SQLiteDocumentStore,
    persist_results,
)


class FlakyStore:
    """Document store double that rejects selected ids."""

    def __init__(self, failing: set[str]) -> None:
        self.failing = failing
        self.documents: dict[tuple[str, str], dict[str, Any]] = {}

    def upsert(self, collection: str, document_id: str, document: dict[str, Any]) -> None:
        if document_id in self.failing:
            raise PersistenceError(
                "disk full", collection=collection, document_id=document_id
            )
        self.documents[(collection, document_id)] = document


def make_success(asin: str) -> FetchResult:
    details = ProductDetails(
        products=[SimplifiedProduct(asin=asin, title="Kettle", buy_box_price=2599)]
    )
    return FetchResult.success(asin, details, source=ResultSource.UPSTREAM)


@pytest.mark.unit
def test_upsert_then_get_roundtrips_document(tmp_path: Path) -> None:
    store = SQLiteDocumentStore(tmp_path / "nested" / "store.sqlite")

    store.upsert(PRODUCTS_COLLECTION, "B00TEST001", {"taskId": "t1", "products": []})

    assert store.get(PRODUCTS_COLLECTION, "B00TEST001") == {"taskId": "t1", "products": []}
    assert store.get(PRODUCTS_COLLECTION, "B00MISSING") is None


@pytest.mark.unit
def test_upsert_replaces_existing_document(tmp_path: Path) -> None:
    store = SQLiteDocumentStore(tmp_path / "store.sqlite")

    store.upsert(PRODUCTS_COLLECTION, "B00TEST001", {"version": 1})
    store.upsert(PRODUCTS_COLLECTION, "B00TEST001", {"version": 2})

    assert store.get(PRODUCTS_COLLECTION, "B00TEST001") == {"version": 2}
    assert store.count(PRODUCTS_COLLECTION) == 1


@pytest.mark.unit
def test_collections_are_isolated(tmp_path: Path) -> None:
    store = SQLiteDocumentStore(tmp_path / "store.sqlite")

    store.upsert("products", "B00TEST001", {"a": 1})
    store.upsert("archive", "B00TEST001", {"a": 2})

    assert store.count("products") == 1
    assert store.get("archive", "B00TEST001") == {"a": 2}


@pytest.mark.unit
def test_upsert_rejects_unserializable_document(tmp_path: Path) -> None:
    store = SQLiteDocumentStore(tmp_path / "store.sqlite")

    with pytest.raises(PersistenceError) as error_info:
        store.upsert(PRODUCTS_COLLECTION, "B00TEST001", {"bad": object()})

    assert error_info.value.document_id == "B00TEST001"
    assert error_info.value.collection == PRODUCTS_COLLECTION


@pytest.mark.unit
def test_persist_results_writes_successes_with_task_id(tmp_path: Path) -> None:
    store = SQLiteDocumentStore(tmp_path / "store.sqlite")
    failure = FetchResult.failure(
        "B00TEST002", ProtocolError("boom", endpoint="/product", status_code=500)
    )

    written, warnings = persist_results(
        store, [make_success("B00TEST001"), failure], task_id="task-123"
    )

    assert written == 1
    assert warnings == ()
    assert store.get(PRODUCTS_COLLECTION, "B00TEST001") == {
        "taskId": "task-123",
        "products": [
            {
                "asin": "B00TEST001",
                "title": "Kettle",
                "categories": [],
                "brand": "",
                "buyBoxPrice": 2599,
            }
        ],
    }
    assert store.get(PRODUCTS_COLLECTION, "B00TEST002") is None


@pytest.mark.unit
def test_persist_results_collects_failures_as_warnings() -> None:
    store = FlakyStore({"B00TEST002"})

    written, warnings = persist_results(
        store,
        [make_success("B00TEST001"), make_success("B00TEST002"), make_success("B00TEST003")],
        task_id="task-123",
    )

    assert written == 2
    assert len(warnings) == 1
    assert "B00TEST002" in warnings[0]
    assert ("products", "B00TEST003") in store.documents
