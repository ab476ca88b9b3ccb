"""Unit tests for budget-driven request sizing."""

from __future__ import annotations

import pytest
from catalog_fetch.budget import TokenBudget
from catalog_fetch.planner import BatchPlanner, calculate_dynamic_batch_size
from conftest import FakeClock


@pytest.mark.unit
def test_dynamic_batch_size_uses_available_tokens() -> None:
    size = calculate_dynamic_batch_size(
        tokens_left=50, safety_threshold=10, cost_per_item=2, requested_max=100
    )

    assert size == 20


@pytest.mark.unit
def test_dynamic_batch_size_is_capped_by_requested_max() -> None:
    size = calculate_dynamic_batch_size(
        tokens_left=300, safety_threshold=10, cost_per_item=2, requested_max=50
    )

    assert size == 50


@pytest.mark.unit
@pytest.mark.parametrize("tokens_left", [0, 5, 10, 11])
def test_dynamic_batch_size_never_drops_below_one(tokens_left: int) -> None:
    size = calculate_dynamic_batch_size(
        tokens_left=tokens_left, safety_threshold=10, cost_per_item=2, requested_max=100
    )

    assert size == 1


@pytest.mark.unit
def test_dynamic_batch_size_rejects_non_positive_cost() -> None:
    with pytest.raises(ValueError, match="cost_per_item"):
        calculate_dynamic_batch_size(
            tokens_left=50, safety_threshold=10, cost_per_item=0, requested_max=10
        )


@pytest.mark.unit
def test_plan_with_full_budget_keeps_requested_page_size(fake_clock: FakeClock) -> None:
    planner = BatchPlanner(TokenBudget(clock=fake_clock))

    plan = planner.plan(50)

    assert plan.tokens_left == 300
    assert plan.discovery_page_size == 50
    assert plan.discovery_cost == 11
    assert plan.detail_batch_size == 50
    assert plan.estimated_detail_cost == 100


@pytest.mark.unit
def test_plan_shrinks_page_under_quota_pressure(fake_clock: FakeClock) -> None:
    planner = BatchPlanner(TokenBudget(tokens_left=50, clock=fake_clock))

    plan = planner.plan(100)

    assert plan.discovery_page_size == 20
    assert plan.discovery_cost == 11
    assert plan.estimated_detail_cost == 40


@pytest.mark.unit
def test_plan_recomputes_budget_before_sizing(fake_clock: FakeClock) -> None:
    budget = TokenBudget(tokens_left=10, clock=fake_clock)
    planner = BatchPlanner(budget)
    fake_clock.now_ms = 12 * 60_000

    plan = planner.plan(100)

    assert plan.tokens_left == 70
    assert plan.discovery_page_size == 30


@pytest.mark.unit
def test_plan_rejects_non_positive_page_size(fake_clock: FakeClock) -> None:
    planner = BatchPlanner(TokenBudget(clock=fake_clock))

    with pytest.raises(ValueError, match="requested_page_size"):
        planner.plan(0)


@pytest.mark.unit
def test_detail_waves_are_sized_from_current_budget(fake_clock: FakeClock) -> None:
    budget = TokenBudget(tokens_left=16, clock=fake_clock)
    planner = BatchPlanner(budget)
    keys = [f"B00000000{index}" for index in range(7)]

    waves = list(planner.detail_waves(keys))

    assert waves == [tuple(keys[0:3]), tuple(keys[3:6]), (keys[6],)]


@pytest.mark.unit
def test_detail_waves_grow_when_budget_recovers(fake_clock: FakeClock) -> None:
    budget = TokenBudget(tokens_left=12, clock=fake_clock)
    planner = BatchPlanner(budget)
    keys = [f"B00000000{index}" for index in range(6)]

    waves = planner.detail_waves(keys)
    first = next(waves)
    budget.reconcile(300, None)
    rest = list(waves)

    assert first == (keys[0],)
    assert rest == [tuple(keys[1:])]
