"""Shared pytest fixtures and test-run configuration."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

KEEPA_ENV_VARS = (
    "KEEPA_API_KEY",
    "KEEPA_DOMAIN",
    "KEEPA_CATEGORY",
    "KEEPA_PAGE_SIZE",
    "KEEPA_MAX_RETRIES",
    "KEEPA_RETRY_BACKOFF_SECONDS",
    "KEEPA_MAX_CONCURRENCY",
    "KEEPA_TIMEOUT_SECONDS",
    "KEEPA_STATS",
    "KEEPA_UPDATE",
    "KEEPA_HISTORY",
    "KEEPA_DAYS",
    "KEEPA_CODE_LIMIT",
    "KEEPA_OFFERS",
    "KEEPA_ONLY_LIVE_OFFERS",
    "KEEPA_RENTAL",
    "KEEPA_VIDEOS",
    "KEEPA_APLUS",
    "KEEPA_RATING",
    "KEEPA_BUYBOX",
    "KEEPA_STOCK",
    "REDIS_URL",
    "CATALOG_CACHE_DISABLED",
    "CATALOG_CACHE_TTL_SECONDS",
    "CATALOG_STORE_PATH",
)


def pytest_addoption(parser: pytest.Parser) -> None:
    """Add custom pytest options for integration test execution."""
    parser.addoption(
        "--run-integration",
        action="store_true",
        default=False,
        help="Run tests marked as integration (live Keepa API).",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip integration tests unless explicitly enabled."""
    run_integration = config.getoption("--run-integration")
    env_enabled = os.getenv("RUN_INTEGRATION_TESTS") == "1"
    if run_integration or env_enabled:
        return

    skip_marker = pytest.mark.skip(
        reason=(
            "Integration tests are disabled by default. "
            "Use --run-integration or set RUN_INTEGRATION_TESTS=1."
        )
    )
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> pytest.MonkeyPatch:
    """Run from an empty directory with no Keepa or cache settings in the environment."""
    for name in KEEPA_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class FakeClock:
    """Millisecond clock whose sleeps advance time instead of blocking."""

    def __init__(self, now_ms: int = 0) -> None:
        self.now_ms = now_ms
        self.sleeps: list[float] = []

    def __call__(self) -> int:
        return self.now_ms

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now_ms += round(seconds * 1000)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()
