"""Harvest orchestration: per category discovery, detail fetch and persistence."""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from catalog_fetch.budget import BudgetSnapshot, TokenBudget
from catalog_fetch.cache import CacheAside, RedisKeyValueStore
from catalog_fetch.keepa_client import (
    DetailOptions,
    KeepaInputError,
    build_finder_selection,
    fetch_product,
    fetch_product_finder,
)
from catalog_fetch.pipeline import (
    ConcurrentFetchPipeline,
    FetchDetail,
    FetchResult,
    unique_in_order,
)
from catalog_fetch.planner import BatchPlanner
from catalog_fetch.retry import RetryController, UpstreamError
from catalog_fetch.schema import ProductDetails
from catalog_fetch.settings import DEFAULT_CATEGORIES, DEFAULT_PAGE_SIZE, HarvestSettings
from catalog_fetch.store import DocumentStore, SQLiteDocumentStore, persist_results

logger = logging.getLogger(__name__)


def generate_task_id() -> str:
    return uuid.uuid4().hex


def _utc_now() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class CategoryHarvest:
    """Outcome of one category: discovered items and their per-item results."""

    category: str | None
    discovered: tuple[str, ...] = ()
    results: tuple[FetchResult, ...] = ()
    persisted: int = 0
    error: str | None = None
    error_type: str | None = None
    warnings: tuple[str, ...] = ()

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.ok)

    @property
    def failed(self) -> int:
        return sum(1 for result in self.results if not result.ok)


@dataclass(slots=True)
class HarvestReport:
    """Everything one logical harvest operation produced."""

    task_id: str
    started_at: str
    finished_at: str | None = None
    categories: list[CategoryHarvest] = field(default_factory=list)
    budget: BudgetSnapshot | None = None

    @property
    def results(self) -> tuple[FetchResult, ...]:
        return tuple(result for category in self.categories for result in category.results)

    @property
    def persisted(self) -> int:
        return sum(category.persisted for category in self.categories)

    @property
    def warnings(self) -> tuple[str, ...]:
        collected: list[str] = []
        for category in self.categories:
            collected.extend(category.warnings)
            for result in category.results:
                collected.extend(f"{result.item_key}: {warning}" for warning in result.warnings)
        return tuple(collected)


class Harvester:
    """Runs a selection across root categories and persists the simplified products."""

    def __init__(
        self,
        *,
        client: httpx.Client,
        controller: RetryController,
        planner: BatchPlanner,
        pipeline: ConcurrentFetchPipeline,
        store: DocumentStore | None = None,
        domain: int = 1,
        categories: Sequence[str] = DEFAULT_CATEGORIES,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> None:
        self._client = client
        self._controller = controller
        self._planner = planner
        self._pipeline = pipeline
        self._store = store
        self.domain = domain
        self.categories = tuple(categories)
        self.page_size = page_size
        self._background: ThreadPoolExecutor | None = None
        self._background_lock = threading.Lock()

    @property
    def budget(self) -> TokenBudget:
        return self._controller.budget

    def discover(self, selection: Mapping[str, Any], *, category: str | None) -> tuple[str, ...]:
        """Run one product finder page sized from the current budget."""
        plan = self._planner.plan(self.page_size)
        query = build_finder_selection(
            selection, category=category, page_size=plan.discovery_page_size
        )
        return fetch_product_finder(
            client=self._client,
            controller=self._controller,
            selection=query,
            page_size=plan.discovery_page_size,
            domain=self.domain,
        )

    def fetch_details(self, item_keys: Sequence[str]) -> list[FetchResult]:
        """Fetch details in budget-sized waves through the pipeline."""
        results: list[FetchResult] = []
        for wave in self._planner.detail_waves(unique_in_order(item_keys)):
            results.extend(self._pipeline.run(wave))
        return results

    def harvest_category(
        self,
        selection: Mapping[str, Any],
        *,
        category: str | None,
        task_id: str,
    ) -> CategoryHarvest:
        try:
            discovered = self.discover(selection, category=category)
        except (UpstreamError, KeepaInputError) as error:
            logger.error(
                "[Task %s] Product finder failed for category %s: %s", task_id, category, error
            )
            return CategoryHarvest(
                category=category,
                error=str(error),
                error_type=type(error).__name__,
            )

        logger.info(
            "[Task %s] Retrieved %d ASINs from product finder for category %s",
            task_id,
            len(discovered),
            category,
        )
        results = self.fetch_details(discovered)

        persisted = 0
        warnings: tuple[str, ...] = ()
        if self._store is not None:
            persisted, warnings = persist_results(self._store, results, task_id=task_id)

        harvest = CategoryHarvest(
            category=category,
            discovered=discovered,
            results=tuple(results),
            persisted=persisted,
            warnings=warnings,
        )
        logger.info(
            "[Task %s] Category %s completed: %d ok, %d failed",
            task_id,
            category,
            harvest.succeeded,
            harvest.failed,
        )
        return harvest

    def run(self, selection: Mapping[str, Any], *, task_id: str | None = None) -> HarvestReport:
        """Run the selection once per configured category."""
        report = HarvestReport(task_id=task_id or generate_task_id(), started_at=_utc_now())
        categories: Sequence[str | None] = self.categories or (None,)
        logger.info(
            "[Task %s] Starting harvest over %d categories (page size %d)",
            report.task_id,
            len(categories),
            self.page_size,
        )
        for category in categories:
            report.categories.append(
                self.harvest_category(selection, category=category, task_id=report.task_id)
            )
        report.finished_at = _utc_now()
        report.budget = self.budget.snapshot()
        logger.info(
            "[Task %s] Harvest completed: %d items, %d persisted",
            report.task_id,
            len(report.results),
            report.persisted,
        )
        return report

    def submit(
        self, selection: Mapping[str, Any], *, task_id: str | None = None
    ) -> Future[HarvestReport]:
        """Run the harvest in the background and return a future for its report."""
        resolved_task_id = task_id or generate_task_id()
        with self._background_lock:
            if self._background is None:
                self._background = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="catalog-harvest"
                )
            logger.info("[Task %s] Submitted harvest", resolved_task_id)
            return self._background.submit(self.run, dict(selection), task_id=resolved_task_id)

    def shutdown(self, wait: bool = True) -> None:
        with self._background_lock:
            if self._background is not None:
                self._background.shutdown(wait=wait)
                self._background = None
        self._pipeline.shutdown(wait=wait)

    def __enter__(self) -> Harvester:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(wait=True)


def build_detail_fetcher(
    *,
    client: httpx.Client,
    controller: RetryController,
    domain: int,
    detail_options: DetailOptions,
) -> FetchDetail:
    """Bind the detail endpoint to one client and controller for the pipeline."""

    def fetch_detail(asin: str) -> ProductDetails:
        return fetch_product(
            client=client,
            controller=controller,
            asin=asin,
            domain=domain,
            detail_options=detail_options,
        )

    return fetch_detail


def build_cache(settings: HarvestSettings) -> CacheAside | None:
    if not settings.cache_enabled:
        return None
    return CacheAside(
        RedisKeyValueStore(settings.redis_url),
        ttl_seconds=settings.cache_ttl_seconds,
    )


def build_harvester(
    settings: HarvestSettings,
    client: httpx.Client,
    *,
    budget: TokenBudget | None = None,
    cache: CacheAside | None = None,
    store: DocumentStore | None = None,
    use_cache: bool = True,
    persist: bool = True,
) -> Harvester:
    """Wire one shared budget through every component of a harvester."""
    shared_budget = budget or TokenBudget()
    controller = RetryController(
        shared_budget,
        max_attempts=settings.max_attempts,
        retry_backoff_seconds=settings.retry_backoff_seconds,
    )
    resolved_cache = cache if cache is not None else (build_cache(settings) if use_cache else None)
    resolved_store = store if store is not None else (
        SQLiteDocumentStore(settings.store_path) if persist else None
    )
    pipeline = ConcurrentFetchPipeline(
        fetch_detail=build_detail_fetcher(
            client=client,
            controller=controller,
            domain=settings.domain,
            detail_options=settings.detail_options,
        ),
        cache=resolved_cache,
        max_concurrency=settings.max_concurrency,
    )
    return Harvester(
        client=client,
        controller=controller,
        planner=BatchPlanner(shared_budget),
        pipeline=pipeline,
        store=resolved_store,
        domain=settings.domain,
        categories=settings.categories,
        page_size=settings.page_size,
    )
