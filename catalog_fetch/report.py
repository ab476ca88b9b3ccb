"""Harvest report artifacts and summary rendering."""

from __future__ import annotations

import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

from catalog_fetch.harvester import CategoryHarvest, HarvestReport
from catalog_fetch.observability import summarize_results
from catalog_fetch.pipeline import FetchResult


def _result_entry(result: FetchResult) -> dict[str, Any]:
    entry: dict[str, Any] = {"item_key": result.item_key, "ok": result.ok}
    if result.ok:
        entry["source"] = str(result.source)
        entry["products"] = len(result.payload.products) if result.payload is not None else 0
    else:
        entry["error_type"] = result.error_type
        entry["reason"] = result.reason
    if result.warnings:
        entry["warnings"] = list(result.warnings)
    return entry


def _category_entry(category: CategoryHarvest) -> dict[str, Any]:
    return {
        "category": category.category,
        "discovered": len(category.discovered),
        "succeeded": category.succeeded,
        "failed": category.failed,
        "persisted": category.persisted,
        "error": category.error,
        "error_type": category.error_type,
        "warnings": list(category.warnings),
        "items": [_result_entry(result) for result in category.results],
    }


def build_harvest_artifact(report: HarvestReport) -> dict[str, Any]:
    """Build JSON-serializable artifact payload for a harvest run."""
    telemetry = summarize_results(report.task_id, report.results)
    return {
        "schema_version": "v1",
        "task_id": report.task_id,
        "started_at": report.started_at,
        "finished_at": report.finished_at,
        "totals": {
            "items": telemetry.items_total,
            "succeeded": telemetry.items_ok,
            "failed": telemetry.items_failed,
            "cache_hits": telemetry.cache_hits,
            "upstream_fetches": telemetry.upstream_fetches,
            "persisted": report.persisted,
            "failures_by_type": telemetry.failures_by_type,
        },
        "budget": asdict(report.budget) if report.budget is not None else None,
        "categories": [_category_entry(category) for category in report.categories],
        "warnings": list(report.warnings),
    }


def write_harvest_artifact(report: HarvestReport, output_dir: Path) -> Path:
    """Persist one harvest artifact to disk and return its path."""
    payload = build_harvest_artifact(report)
    output_dir.mkdir(parents=True, exist_ok=True)
    output_path = output_dir / f"harvest__{report.task_id}.json"
    output_path.write_text(json.dumps(payload, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return output_path


def render_markdown_summary(report: HarvestReport) -> str:
    """Render a short markdown summary of a harvest run."""
    telemetry = summarize_results(report.task_id, report.results)
    lines = [f"# Harvest {report.task_id}", ""]
    lines.append(
        f"Items: {telemetry.items_total} ({telemetry.items_ok} ok, "
        f"{telemetry.items_failed} failed, {telemetry.cache_hits} from cache), "
        f"persisted: {report.persisted}"
    )
    if report.budget is not None:
        lines.append(f"Tokens left: {report.budget.tokens_left}/{report.budget.capacity}")
    lines.append("")
    lines.append("## Categories")
    if not report.categories:
        lines.append("- No categories processed.")
    for category in report.categories:
        label = category.category or "(selection)"
        if category.error is not None:
            lines.append(
                f"- **{label}**: discovery failed ({category.error_type}): {category.error}"
            )
            continue
        lines.append(
            f"- **{label}**: {len(category.discovered)} discovered, "
            f"{category.succeeded} ok, {category.failed} failed"
        )

    failures = [result for result in report.results if not result.ok]
    if failures:
        lines.append("")
        lines.append("## Failed items")
        for result in failures:
            lines.append(f"- `{result.item_key}` ({result.error_type}): {result.reason}")

    if report.warnings:
        lines.append("")
        lines.append("## Warnings")
        lines.extend(f"- {warning}" for warning in report.warnings)
    return "\n".join(lines)
