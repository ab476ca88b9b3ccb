"""Budget-aware retry controller for single Keepa API calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

import httpx
from pydantic import ValidationError

from catalog_fetch.budget import TokenBudget
from catalog_fetch.schema import ApiEnvelope

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_BACKOFF_SECONDS = 5.0


class UpstreamError(RuntimeError):
    """Raised when a Keepa API call does not produce a usable response."""

    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        status_code: int | None = None,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code
        self.attempts = attempts


class ProtocolError(UpstreamError):
    """Raised for non-2xx, non-429 responses or malformed successful payloads."""


class QuotaExhaustedError(UpstreamError):
    """Raised when every attempt was rejected with 429."""

    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        attempts: int,
        refill_in_ms: int = 0,
    ) -> None:
        super().__init__(message, endpoint=endpoint, status_code=429, attempts=attempts)
        self.refill_in_ms = refill_in_ms


class RetryExhaustedError(UpstreamError):
    """Raised when request or parse failures outlast the retry budget."""


class AttemptState(StrEnum):
    """States of one logical call."""

    ATTEMPTING = "attempting"
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_ERROR = "transient_error"
    FAILED = "failed"
    EXHAUSTED = "exhausted"


@dataclass(slots=True)
class RetryAttempt:
    """Mutable bookkeeping for one logical call."""

    attempt_index: int
    max_attempts: int
    last_error: str | None = None
    server_refill_hint_ms: int = 0

    @property
    def has_remaining(self) -> bool:
        return self.attempt_index + 1 < self.max_attempts


@dataclass(frozen=True, slots=True)
class CallOutcome:
    """Terminal outcome of one logical call."""

    state: AttemptState
    attempts: int
    envelope: ApiEnvelope | None = None
    error: UpstreamError | None = None
    waited_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.state is AttemptState.SUCCESS


@dataclass(frozen=True, slots=True)
class _Transition:
    state: AttemptState
    envelope: ApiEnvelope | None = None
    error: UpstreamError | None = None


def _sleep_for_retry(seconds: float) -> None:
    """Sleep helper for retry delays (wrapped for deterministic tests)."""
    time.sleep(seconds)


def _parse_envelope(response: httpx.Response) -> ApiEnvelope:
    """Parse the token envelope; raises ValueError or ValidationError."""
    payload = response.json()
    if not isinstance(payload, dict):
        raise ValueError("Expected JSON object in Keepa response.")
    return ApiEnvelope.model_validate(payload)


class RetryController:
    """Runs one upstream call with bounded retries, pacing it through a shared budget."""

    def __init__(
        self,
        budget: TokenBudget,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}.")
        self.budget = budget
        self.max_attempts = max_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

    def execute(
        self,
        send: Callable[[], httpx.Response],
        *,
        required_tokens: int,
        endpoint: str,
    ) -> ApiEnvelope:
        """Run the call and return the envelope, raising the terminal error on failure."""
        outcome = self.run(send, required_tokens=required_tokens, endpoint=endpoint)
        if outcome.error is not None:
            raise outcome.error
        if outcome.envelope is None:
            raise RuntimeError("Successful call outcome without a response envelope.")
        return outcome.envelope

    def run(
        self,
        send: Callable[[], httpx.Response],
        *,
        required_tokens: int,
        endpoint: str,
    ) -> CallOutcome:
        """Run the call to exactly one terminal outcome."""
        waited_seconds = self.budget.reserve(required_tokens)
        attempt = RetryAttempt(attempt_index=0, max_attempts=self.max_attempts)

        while True:
            logger.debug(
                "Sending request to %s (attempt %d/%d)",
                endpoint,
                attempt.attempt_index + 1,
                attempt.max_attempts,
            )
            transition = self._attempt(send, attempt=attempt, endpoint=endpoint)
            attempts_made = attempt.attempt_index + 1

            if transition.state is AttemptState.SUCCESS or transition.state is AttemptState.FAILED:
                return CallOutcome(
                    state=transition.state,
                    attempts=attempts_made,
                    envelope=transition.envelope,
                    error=transition.error,
                    waited_seconds=waited_seconds,
                )

            if not attempt.has_remaining:
                return CallOutcome(
                    state=AttemptState.EXHAUSTED,
                    attempts=attempts_made,
                    error=self._exhausted_error(transition.state, attempt, endpoint),
                    waited_seconds=waited_seconds,
                )

            delay_seconds = self._backoff_seconds(
                transition.state, attempt=attempt, required_tokens=required_tokens
            )
            logger.warning(
                "%s for %s on attempt %d/%d, retrying in %.2f seconds",
                transition.state,
                endpoint,
                attempts_made,
                attempt.max_attempts,
                delay_seconds,
            )
            _sleep_for_retry(delay_seconds)
            waited_seconds += delay_seconds
            self.budget.recompute()
            attempt.attempt_index += 1

    def _attempt(
        self,
        send: Callable[[], httpx.Response],
        *,
        attempt: RetryAttempt,
        endpoint: str,
    ) -> _Transition:
        try:
            response = send()
        except httpx.RequestError as error:
            attempt.last_error = f"request error ({type(error).__name__}): {error}"
            logger.warning("HTTP request to %s failed: %s", endpoint, error)
            return _Transition(AttemptState.TRANSIENT_ERROR)

        if response.status_code == 429:
            return self._handle_rate_limited(response, attempt=attempt, endpoint=endpoint)

        if not response.is_success:
            message = (
                f"Keepa API request failed with status {response.status_code} for '{endpoint}'."
            )
            logger.error(message)
            return _Transition(
                AttemptState.FAILED,
                error=ProtocolError(
                    message,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    attempts=attempt.attempt_index + 1,
                ),
            )

        try:
            envelope = _parse_envelope(response)
        except (ValueError, ValidationError) as error:
            attempt.last_error = f"unparseable response body: {error}"
            logger.warning("Failed to parse response from %s: %s", endpoint, error)
            return _Transition(AttemptState.TRANSIENT_ERROR)

        self.budget.reconcile(
            envelope.tokens_left,
            envelope.timestamp,
            refill_rate_per_minute=envelope.refill_rate or None,
        )
        logger.info(
            "%s: consumed %d tokens, %d tokens left, refill in %d ms",
            endpoint,
            envelope.tokens_consumed,
            envelope.tokens_left,
            envelope.refill_in,
        )
        return _Transition(AttemptState.SUCCESS, envelope=envelope)

    def _handle_rate_limited(
        self,
        response: httpx.Response,
        *,
        attempt: RetryAttempt,
        endpoint: str,
    ) -> _Transition:
        attempt.last_error = "rate limited (429)"
        try:
            envelope = _parse_envelope(response)
        except (ValueError, ValidationError) as error:
            attempt.server_refill_hint_ms = 0
            logger.warning("429 from %s without a readable token envelope: %s", endpoint, error)
            return _Transition(AttemptState.RATE_LIMITED)

        attempt.server_refill_hint_ms = max(envelope.refill_in, 0)
        self.budget.reconcile(
            envelope.tokens_left,
            envelope.timestamp,
            refill_rate_per_minute=envelope.refill_rate or None,
        )
        logger.warning(
            "429 from %s: tokens left %d, refill in %d ms",
            endpoint,
            envelope.tokens_left,
            envelope.refill_in,
        )
        return _Transition(AttemptState.RATE_LIMITED, envelope=envelope)

    def _backoff_seconds(
        self,
        state: AttemptState,
        *,
        attempt: RetryAttempt,
        required_tokens: int,
    ) -> float:
        exponential = float(2**attempt.attempt_index)
        if state is AttemptState.RATE_LIMITED:
            hinted = attempt.server_refill_hint_ms / 1000.0
            estimated = self.budget.estimate_wait_seconds(required_tokens)
            return max(hinted, estimated) + exponential
        return self.retry_backoff_seconds * exponential

    def _exhausted_error(
        self,
        state: AttemptState,
        attempt: RetryAttempt,
        endpoint: str,
    ) -> UpstreamError:
        attempts = attempt.attempt_index + 1
        if state is AttemptState.RATE_LIMITED:
            logger.error("Max attempts reached after 429 responses for %s", endpoint)
            return QuotaExhaustedError(
                f"Keepa quota exhausted after {attempts} attempts for '{endpoint}'.",
                endpoint=endpoint,
                attempts=attempts,
                refill_in_ms=attempt.server_refill_hint_ms,
            )
        logger.error("Max attempts reached for %s: %s", endpoint, attempt.last_error)
        return RetryExhaustedError(
            f"Keepa request to '{endpoint}' failed after {attempts} attempts: {attempt.last_error}",
            endpoint=endpoint,
            attempts=attempts,
        )
