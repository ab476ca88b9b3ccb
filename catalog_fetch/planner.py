"""Request sizing from the current token budget."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from catalog_fetch.budget import (
    DETAIL_COST_PER_ITEM,
    TokenBudget,
    detail_cost,
    discovery_cost,
)

logger = logging.getLogger(__name__)


def calculate_dynamic_batch_size(
    *,
    tokens_left: int,
    safety_threshold: int,
    cost_per_item: int = DETAIL_COST_PER_ITEM,
    requested_max: int,
) -> int:
    """Return how many items are affordable now, never fewer than one."""
    if cost_per_item <= 0:
        raise ValueError(f"cost_per_item must be positive, got {cost_per_item}.")
    available = tokens_left - safety_threshold
    if available <= 0:
        return 1
    return max(min(available // cost_per_item, requested_max), 1)


@dataclass(frozen=True, slots=True)
class BatchPlan:
    """Request shapes chosen for one logical operation."""

    tokens_left: int
    discovery_page_size: int
    discovery_cost: int
    detail_batch_size: int
    estimated_detail_cost: int


class BatchPlanner:
    """Sizes discovery pages and detail waves so low quota slows work down instead of failing it."""

    def __init__(self, budget: TokenBudget, *, cost_per_item: int = DETAIL_COST_PER_ITEM) -> None:
        self._budget = budget
        self._cost_per_item = cost_per_item

    def batch_size(self, requested_max: int) -> int:
        """Recompute the budget and return the affordable batch size."""
        self._budget.recompute()
        snapshot = self._budget.snapshot()
        size = calculate_dynamic_batch_size(
            tokens_left=snapshot.tokens_left,
            safety_threshold=snapshot.safety_threshold,
            cost_per_item=self._cost_per_item,
            requested_max=requested_max,
        )
        logger.debug(
            "Calculated dynamic batch size: %d (available tokens: %d)", size, snapshot.available
        )
        return size

    def plan(self, requested_page_size: int) -> BatchPlan:
        """Plan a discovery page whose detail follow-up fits the budget."""
        if requested_page_size <= 0:
            raise ValueError(f"requested_page_size must be positive, got {requested_page_size}.")
        page_size = self.batch_size(requested_page_size)
        plan = BatchPlan(
            tokens_left=self._budget.tokens_left,
            discovery_page_size=page_size,
            discovery_cost=discovery_cost(page_size),
            detail_batch_size=page_size,
            estimated_detail_cost=detail_cost(page_size),
        )
        if page_size < requested_page_size:
            logger.info(
                "Quota pressure: discovery page reduced from %d to %d (tokens left: %d)",
                requested_page_size,
                page_size,
                plan.tokens_left,
            )
        return plan

    def detail_waves(self, item_keys: Sequence[str]) -> Iterator[tuple[str, ...]]:
        """Yield consecutive slices of ``item_keys`` sized from the budget at yield time."""
        position = 0
        while position < len(item_keys):
            size = self.batch_size(len(item_keys) - position)
            yield tuple(item_keys[position : position + size])
            position += size
