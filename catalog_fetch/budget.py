"""Token budget tracking and request cost accounting for the Keepa API."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 300
DEFAULT_REFILL_RATE_PER_MINUTE = 5.0
DEFAULT_SAFETY_THRESHOLD = 10
DISCOVERY_BASE_COST = 10
DISCOVERY_ITEMS_PER_EXTRA_TOKEN = 100
DETAIL_COST_PER_ITEM = 2


def discovery_cost(items_requested: int) -> int:
    """Return token cost of a product finder call for the requested page size."""
    if items_requested < 0:
        raise ValueError(f"items_requested must be non-negative, got {items_requested}.")
    per_token = DISCOVERY_ITEMS_PER_EXTRA_TOKEN
    extra = (items_requested + per_token - 1) // per_token
    return DISCOVERY_BASE_COST + extra


def detail_cost(items_in_call: int) -> int:
    """Return worst-case token cost of a product call (refresh assumed)."""
    if items_in_call < 0:
        raise ValueError(f"items_in_call must be non-negative, got {items_in_call}.")
    return items_in_call * DETAIL_COST_PER_ITEM


def _current_time_ms() -> int:
    return time.time_ns() // 1_000_000


def _sleep_for_refill(seconds: float) -> None:
    time.sleep(seconds)


@dataclass(frozen=True, slots=True)
class BudgetSnapshot:
    """Point-in-time view of the budget."""

    tokens_left: int
    capacity: int
    refill_rate_per_minute: float
    safety_threshold: int
    last_update_ms: int

    @property
    def available(self) -> int:
        """Tokens spendable without dipping into the safety threshold."""
        return self.tokens_left - self.safety_threshold


class TokenBudget:
    """Locally estimated token balance, corrected by server-reported state.

    One instance is shared by every worker in the process. Field access is
    guarded by ``_state_lock``; ``reserve`` additionally holds ``_gate`` for
    the whole check, wait and consume sequence so two callers never spend
    the same tokens.
    """

    def __init__(
        self,
        *,
        capacity: int = DEFAULT_CAPACITY,
        refill_rate_per_minute: float = DEFAULT_REFILL_RATE_PER_MINUTE,
        safety_threshold: int = DEFAULT_SAFETY_THRESHOLD,
        tokens_left: int | None = None,
        clock: Callable[[], int] = _current_time_ms,
        sleep: Callable[[float], None] = _sleep_for_refill,
    ) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}.")
        if refill_rate_per_minute <= 0:
            raise ValueError(
                f"refill_rate_per_minute must be positive, got {refill_rate_per_minute}."
            )
        if safety_threshold < 0:
            raise ValueError(f"safety_threshold must be non-negative, got {safety_threshold}.")
        self.capacity = capacity
        self.safety_threshold = safety_threshold
        self._refill_rate_per_minute = float(refill_rate_per_minute)
        self._clock = clock
        self._sleep = sleep
        self._state_lock = threading.Lock()
        self._gate = threading.Lock()
        initial = capacity if tokens_left is None else tokens_left
        self._tokens_left = min(max(initial, 0), capacity)
        self._last_update_ms = clock()

    @property
    def tokens_left(self) -> int:
        with self._state_lock:
            return self._tokens_left

    @property
    def refill_rate_per_minute(self) -> float:
        with self._state_lock:
            return self._refill_rate_per_minute

    def snapshot(self) -> BudgetSnapshot:
        """Return an immutable copy of the current state."""
        with self._state_lock:
            return BudgetSnapshot(
                tokens_left=self._tokens_left,
                capacity=self.capacity,
                refill_rate_per_minute=self._refill_rate_per_minute,
                safety_threshold=self.safety_threshold,
                last_update_ms=self._last_update_ms,
            )

    def recompute(self, now_ms: int | None = None) -> int:
        """Add tokens recovered since the last update and clamp to capacity."""
        current = self._clock() if now_ms is None else now_ms
        with self._state_lock:
            return self._recompute_locked(current)

    def _recompute_locked(self, now_ms: int) -> int:
        elapsed_ms = max(0, now_ms - self._last_update_ms)
        recovered = elapsed_ms * self._refill_rate_per_minute / 60_000.0
        # Fractional refill is dropped while last_update advances: recomputes less than
        # one token interval apart recover nothing until the next reconcile.
        self._tokens_left = min(max(self._tokens_left + int(recovered), 0), self.capacity)
        # Server timestamps can run ahead of the local clock; never move backwards.
        self._last_update_ms = max(self._last_update_ms, now_ms)
        if recovered >= 1:
            logger.debug(
                "Updated tokens: %d (recovered %.2f tokens)", self._tokens_left, recovered
            )
        return self._tokens_left

    def reconcile(
        self,
        server_tokens_left: int,
        server_timestamp_ms: int | None,
        *,
        refill_rate_per_minute: float | None = None,
    ) -> None:
        """Adopt authoritative token state reported by the upstream API."""
        with self._state_lock:
            self._tokens_left = server_tokens_left
            if server_timestamp_ms is not None:
                self._last_update_ms = server_timestamp_ms
            if refill_rate_per_minute is not None and refill_rate_per_minute > 0:
                self._refill_rate_per_minute = float(refill_rate_per_minute)
        logger.debug(
            "Reconciled budget from server: tokens_left=%d timestamp=%s",
            server_tokens_left,
            server_timestamp_ms,
        )

    def estimate_wait_seconds(self, required: int) -> float:
        """Seconds until ``required`` plus the safety threshold is affordable locally."""
        with self._state_lock:
            deficit = required + self.safety_threshold - self._tokens_left
            if deficit <= 0:
                return 0.0
            return deficit * 60.0 / self._refill_rate_per_minute

    def await_availability(self, required: int, refill_hint_ms: int = 0) -> float:
        """Block until ``required`` tokens should be available; return seconds waited."""
        with self._state_lock:
            tokens_left = self._recompute_locked(self._clock())
            rate = self._refill_rate_per_minute
        if tokens_left >= required:
            return 0.0

        if refill_hint_ms > 0:
            wait_seconds = refill_hint_ms / 1000.0
        else:
            wait_seconds = (required - tokens_left) * 60.0 / rate

        logger.info(
            "Tokens insufficient. Need %d, have %d. Waiting %.2f seconds...",
            required,
            tokens_left,
            wait_seconds,
        )
        self._sleep(wait_seconds)
        self.recompute()
        return wait_seconds

    def reserve(self, required: int) -> float:
        """Wait for ``required`` plus the safety threshold, then spend ``required``.

        Returns the number of seconds spent waiting.
        """
        with self._gate:
            waited = self.await_availability(required + self.safety_threshold)
            with self._state_lock:
                self._tokens_left = max(self._tokens_left - required, 0)
                remaining = self._tokens_left
        logger.debug("Reserved %d tokens, %d left locally", required, remaining)
        return waited
