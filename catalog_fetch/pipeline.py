"""Bounded-concurrency detail fetching with cache-aside and per-item outcomes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import StrEnum

from catalog_fetch.cache import CacheAside, CacheWriteError
from catalog_fetch.retry import UpstreamError
from catalog_fetch.schema import ProductDetails

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 5

FetchDetail = Callable[[str], ProductDetails]


class ResultSource(StrEnum):
    CACHE = "cache"
    UPSTREAM = "upstream"


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Terminal outcome for one item in a pipeline run."""

    item_key: str
    ok: bool
    payload: ProductDetails | None = None
    source: ResultSource | None = None
    reason: str | None = None
    error_type: str | None = None
    warnings: tuple[str, ...] = ()

    @classmethod
    def success(
        cls,
        item_key: str,
        payload: ProductDetails,
        *,
        source: ResultSource,
        warnings: tuple[str, ...] = (),
    ) -> FetchResult:
        return cls(item_key=item_key, ok=True, payload=payload, source=source, warnings=warnings)

    @classmethod
    def failure(cls, item_key: str, error: Exception) -> FetchResult:
        return cls(
            item_key=item_key,
            ok=False,
            reason=str(error),
            error_type=type(error).__name__,
        )


class ResultAggregator:
    """Collects results from concurrent workers."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._results: dict[str, FetchResult] = {}

    def add(self, result: FetchResult) -> None:
        with self._lock:
            self._results[result.item_key] = result

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def ordered(self, item_keys: Sequence[str]) -> list[FetchResult]:
        """Return results re-sorted into ``item_keys`` order."""
        with self._lock:
            return [self._results[key] for key in item_keys]


def unique_in_order(item_keys: Iterable[str]) -> tuple[str, ...]:
    """Collapse duplicate keys, keeping the first occurrence."""
    return tuple(dict.fromkeys(item_keys))


class ConcurrentFetchPipeline:
    """Fetches item details concurrently, consulting the cache before going upstream."""

    def __init__(
        self,
        *,
        fetch_detail: FetchDetail,
        cache: CacheAside | None = None,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}.")
        self._fetch_detail = fetch_detail
        self._cache = cache
        self.max_concurrency = max_concurrency
        self._background: ThreadPoolExecutor | None = None
        self._background_lock = threading.Lock()

    def run(self, item_keys: Iterable[str]) -> list[FetchResult]:
        """Fetch every item and return one result per unique key, in input order."""
        keys = unique_in_order(item_keys)
        if not keys:
            return []

        aggregator = ResultAggregator()
        workers = min(self.max_concurrency, len(keys))
        logger.info("Fetching %d items with %d workers", len(keys), workers)
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="catalog-fetch"
        ) as executor:
            futures = [executor.submit(self._fetch_one, key) for key in keys]
            for future in as_completed(futures):
                result = future.result()
                aggregator.add(result)
                logger.debug(
                    "Item %s finished (%d/%d, ok=%s)",
                    result.item_key,
                    len(aggregator),
                    len(keys),
                    result.ok,
                )

        results = aggregator.ordered(keys)
        failures = sum(1 for result in results if not result.ok)
        logger.info(
            "Fetched %d items: %d ok, %d failed", len(results), len(results) - failures, failures
        )
        return results

    def submit(self, item_keys: Iterable[str]) -> Future[list[FetchResult]]:
        """Run the pipeline in the background and return a future for its results."""
        keys = tuple(item_keys)
        with self._background_lock:
            if self._background is None:
                self._background = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix="catalog-fetch-background"
                )
            return self._background.submit(self.run, keys)

    def shutdown(self, wait: bool = True) -> None:
        with self._background_lock:
            if self._background is not None:
                self._background.shutdown(wait=wait)
                self._background = None

    def __enter__(self) -> ConcurrentFetchPipeline:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(wait=True)

    def _fetch_one(self, item_key: str) -> FetchResult:
        if self._cache is not None:
            lookup = self._cache.lookup(item_key)
            if lookup.is_hit and lookup.payload is not None:
                return FetchResult.success(item_key, lookup.payload, source=ResultSource.CACHE)

        try:
            payload = self._fetch_detail(item_key)
        except (UpstreamError, ValueError) as error:
            logger.warning("Failed to retrieve details for %s: %s", item_key, error)
            return FetchResult.failure(item_key, error)
        except Exception as error:
            logger.exception("Unexpected error while fetching %s", item_key)
            return FetchResult.failure(item_key, error)

        warnings: tuple[str, ...] = ()
        if self._cache is not None:
            try:
                self._cache.store(item_key, payload)
            except CacheWriteError as error:
                logger.warning("Cache write failed for %s: %s", item_key, error)
                warnings = (f"cache write failed: {error}",)
        return FetchResult.success(
            item_key, payload, source=ResultSource.UPSTREAM, warnings=warnings
        )
