"""Harvest telemetry models and helpers."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

from catalog_fetch.pipeline import FetchResult, ResultSource


@dataclass(slots=True)
class HarvestTelemetry:
    """Counts summarizing one harvest run."""

    task_id: str
    items_total: int = 0
    items_ok: int = 0
    items_failed: int = 0
    cache_hits: int = 0
    upstream_fetches: int = 0
    failures_by_type: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def cache_hit_ratio(self) -> float:
        if self.items_ok == 0:
            return 0.0
        return self.cache_hits / self.items_ok


def summarize_results(task_id: str, results: Iterable[FetchResult]) -> HarvestTelemetry:
    """Build telemetry from per-item results."""
    telemetry = HarvestTelemetry(task_id=task_id)
    failure_types: Counter[str] = Counter()
    for result in results:
        telemetry.items_total += 1
        telemetry.warnings.extend(result.warnings)
        if not result.ok:
            telemetry.items_failed += 1
            failure_types[result.error_type or "unknown"] += 1
            continue
        telemetry.items_ok += 1
        if result.source is ResultSource.CACHE:
            telemetry.cache_hits += 1
        else:
            telemetry.upstream_fetches += 1
    telemetry.failures_by_type = dict(failure_types)
    return telemetry
