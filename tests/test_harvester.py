"""Unit tests for harvest orchestration over a mocked Keepa API."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from catalog_fetch.budget import TokenBudget
from catalog_fetch.cache import CacheAside
from catalog_fetch.harvester import build_harvester, generate_task_id
from catalog_fetch.pipeline import ResultSource
from catalog_fetch.settings import HarvestSettings
from catalog_fetch.store import PRODUCTS_COLLECTION, SQLiteDocumentStore
from conftest import FakeClock

CATEGORY_ASINS = {
    "172282": ["B00ELEC001", "B00ELEC002", "B00ELEC003"],
    "281052": ["B00HOME001", "B00ELEC001"],
}


class InMemoryStore:
    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}

    def get(self, key: str) -> bytes | None:
        return self.values.get(key)

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        self.values[key] = value


def envelope(**payload: object) -> dict[str, object]:
    return {"timestamp": 1_700_000_000_000, "tokensLeft": 250, "refillIn": 1000, **payload}


def make_handler(
    *,
    failing_categories: set[str] | None = None,
    failing_asins: set[str] | None = None,
    calls: list[str] | None = None,
) -> Callable[[httpx.Request], httpx.Response]:
    failing_categories = failing_categories or set()
    failing_asins = failing_asins or set()

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(f"{request.method} {request.url.path}")
        if request.url.path == "/query":
            selection = json.loads(request.content)
            category = selection["rootCategory"]
            if category in failing_categories:
                return httpx.Response(400, json={"error": "invalid selection"})
            return httpx.Response(200, json=envelope(asinList=CATEGORY_ASINS[category]))
        if request.url.path == "/product":
            asin = request.url.params["asin"]
            if asin in failing_asins:
                return httpx.Response(404, json={"error": "not found"})
            product = {
                "asin": asin,
                "title": f"Product {asin}",
                "rootCategory": 172282,
                "salesRanks": {"172282": [0, 42]},
                "stats": {"buyBoxPrice": 1999},
            }
            return httpx.Response(200, json=envelope(products=[product]))
        return httpx.Response(404)

    return handler


def make_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.Client:
    transport = httpx.MockTransport(handler)
    return httpx.Client(
        base_url="https://api.keepa.com", params={"key": "test-key"}, transport=transport
    )


def make_settings(tmp_path: Path, **overrides: object) -> HarvestSettings:
    values: dict[str, object] = {
        "categories": ("172282", "281052"),
        "page_size": 50,
        "max_concurrency": 2,
        "retry_backoff_seconds": 0.0,
        "store_path": tmp_path / "store.sqlite",
        "cache_enabled": False,
    }
    values.update(overrides)
    return HarvestSettings(**values)  # type: ignore[arg-type]


@pytest.fixture(autouse=True)
def no_retry_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("catalog_fetch.retry._sleep_for_retry", lambda seconds: None)


@pytest.mark.unit
def test_generate_task_id_is_unique_hex() -> None:
    first, second = generate_task_id(), generate_task_id()

    assert first != second
    assert len(first) == 32
    int(first, 16)


@pytest.mark.unit
def test_run_harvests_each_category_and_persists(tmp_path: Path, fake_clock: FakeClock) -> None:
    settings = make_settings(tmp_path)
    store = SQLiteDocumentStore(settings.store_path)
    client = make_client(make_handler())

    with build_harvester(
        settings, client, budget=TokenBudget(clock=fake_clock, sleep=fake_clock.sleep), store=store
    ) as harvester:
        report = harvester.run({"current_SALES_lte": 5000}, task_id="task-1")

    assert [category.category for category in report.categories] == ["172282", "281052"]
    assert report.categories[0].discovered == tuple(CATEGORY_ASINS["172282"])
    assert [result.item_key for result in report.categories[0].results] == CATEGORY_ASINS["172282"]
    assert all(result.ok for result in report.results)
    assert report.persisted == 5
    assert store.count(PRODUCTS_COLLECTION) == 4
    document = store.get(PRODUCTS_COLLECTION, "B00ELEC002")
    assert document is not None
    assert document["taskId"] == "task-1"
    assert document["products"][0]["buyBoxPrice"] == 1999
    assert document["products"][0]["salesRanks"] == {"2011-01-01 00:00:00": 42}
    assert report.budget is not None
    assert report.budget.tokens_left == 250
    assert report.finished_at is not None


@pytest.mark.unit
def test_failed_discovery_is_recorded_and_other_categories_continue(
    tmp_path: Path, fake_clock: FakeClock
) -> None:
    settings = make_settings(tmp_path)
    client = make_client(make_handler(failing_categories={"172282"}))

    harvester = build_harvester(
        settings, client, budget=TokenBudget(clock=fake_clock, sleep=fake_clock.sleep)
    )
    report = harvester.run({})

    failed, succeeded = report.categories
    assert failed.error is not None
    assert failed.error_type == "ProtocolError"
    assert failed.results == ()
    assert succeeded.error is None
    assert [result.item_key for result in succeeded.results] == CATEGORY_ASINS["281052"]


@pytest.mark.unit
def test_item_failures_do_not_abort_the_category(tmp_path: Path, fake_clock: FakeClock) -> None:
    settings = make_settings(tmp_path, categories=("172282",))
    client = make_client(make_handler(failing_asins={"B00ELEC002"}))

    harvester = build_harvester(
        settings, client, budget=TokenBudget(clock=fake_clock, sleep=fake_clock.sleep)
    )
    report = harvester.run({})

    (category,) = report.categories
    assert category.succeeded == 2
    assert category.failed == 1
    failed = [result for result in category.results if not result.ok]
    assert failed[0].item_key == "B00ELEC002"
    assert failed[0].error_type == "ProtocolError"
    assert category.persisted == 2


@pytest.mark.unit
def test_cache_hits_skip_product_calls(tmp_path: Path, fake_clock: FakeClock) -> None:
    settings = make_settings(tmp_path, categories=("172282",))
    cache = CacheAside(InMemoryStore())
    calls: list[str] = []
    client = make_client(make_handler(calls=calls))
    budget = TokenBudget(clock=fake_clock, sleep=fake_clock.sleep)

    harvester = build_harvester(settings, client, budget=budget, cache=cache, persist=False)
    first = harvester.run({})
    calls.clear()
    second = harvester.run({})

    assert all(result.source is ResultSource.UPSTREAM for result in first.results)
    assert all(result.source is ResultSource.CACHE for result in second.results)
    assert calls == ["POST /query"]
    assert second.persisted == 0


@pytest.mark.unit
def test_low_budget_shrinks_discovery_page(tmp_path: Path, fake_clock: FakeClock) -> None:
    settings = make_settings(tmp_path, categories=("172282",))
    bodies: list[dict[str, object]] = []
    handler = make_handler()

    def recording_handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/query":
            bodies.append(json.loads(request.content))
        return handler(request)

    budget = TokenBudget(tokens_left=50, clock=fake_clock, sleep=fake_clock.sleep)
    harvester = build_harvester(settings, make_client(recording_handler), budget=budget)
    harvester.run({})

    assert bodies[0]["perPage"] == 20
    assert bodies[0]["salesRankReference"] == "172282"


@pytest.mark.unit
def test_submit_returns_future_with_report(tmp_path: Path, fake_clock: FakeClock) -> None:
    settings = make_settings(tmp_path, categories=("281052",))
    client = make_client(make_handler())

    with build_harvester(
        settings, client, budget=TokenBudget(clock=fake_clock, sleep=fake_clock.sleep)
    ) as harvester:
        future = harvester.submit({}, task_id="background-1")
        report = future.result(timeout=5)

    assert report.task_id == "background-1"
    assert len(report.results) == 2


@pytest.mark.unit
def test_undecodable_discovery_body_is_contained_to_its_category(
    tmp_path: Path, fake_clock: FakeClock
) -> None:
    settings = make_settings(tmp_path)
    handler = make_handler()

    def corrupting_handler(request: httpx.Request) -> httpx.Response:
        is_query = request.url.path == "/query"
        if is_query and json.loads(request.content)["rootCategory"] == "172282":
            return httpx.Response(200, headers={"content-encoding": "gzip"}, content=b"not-gzip")
        return handler(request)

    budget = TokenBudget(clock=fake_clock, sleep=fake_clock.sleep)
    harvester = build_harvester(
        settings, make_client(corrupting_handler), budget=budget, persist=False
    )
    report = harvester.run({})

    failed, succeeded = report.categories
    assert failed.error_type == "RetryExhaustedError"
    assert failed.error is not None
    assert "DecodingError" in failed.error
    assert [result.item_key for result in succeeded.results] == CATEGORY_ASINS["281052"]
    assert all(result.ok for result in succeeded.results)
