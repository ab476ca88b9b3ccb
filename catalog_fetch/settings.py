"""Environment-driven settings for catalog harvesting."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from catalog_fetch.cache import DEFAULT_CACHE_TTL_SECONDS, DEFAULT_REDIS_URL
from catalog_fetch.keepa_client import (
    DEFAULT_TIMEOUT_SECONDS,
    DetailOptions,
    KeepaInputError,
    validate_domain,
)
from catalog_fetch.pipeline import DEFAULT_MAX_CONCURRENCY
from catalog_fetch.retry import DEFAULT_MAX_ATTEMPTS, DEFAULT_RETRY_BACKOFF_SECONDS
from catalog_fetch.store import DEFAULT_STORE_PATH

DEFAULT_CATEGORIES = (
    "1055398",
    "3760901",
    "3760911",
    "16310101",
    "165796011",
    "2619533011",
    "3375251",
    "228013",
    "1064954",
    "172282",
)
DEFAULT_PAGE_SIZE = 50
CATEGORY_SEPARATOR = ";"
CACHE_DISABLED_ENV_VAR = "CATALOG_CACHE_DISABLED"

_DETAIL_OPTION_ENV_VARS = {
    "stats": "KEEPA_STATS",
    "update": "KEEPA_UPDATE",
    "history": "KEEPA_HISTORY",
    "days": "KEEPA_DAYS",
    "code_limit": "KEEPA_CODE_LIMIT",
    "offers": "KEEPA_OFFERS",
    "only_live_offers": "KEEPA_ONLY_LIVE_OFFERS",
    "rental": "KEEPA_RENTAL",
    "videos": "KEEPA_VIDEOS",
    "aplus": "KEEPA_APLUS",
    "rating": "KEEPA_RATING",
    "buybox": "KEEPA_BUYBOX",
    "stock": "KEEPA_STOCK",
}


@dataclass(frozen=True, slots=True)
class HarvestSettings:
    """Resolved configuration for one process."""

    domain: int = 1
    categories: tuple[str, ...] = DEFAULT_CATEGORIES
    page_size: int = DEFAULT_PAGE_SIZE
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    detail_options: DetailOptions = field(default_factory=DetailOptions)
    redis_url: str = DEFAULT_REDIS_URL
    cache_enabled: bool = True
    cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS
    store_path: Path = Path(DEFAULT_STORE_PATH)


def parse_categories(value: str) -> tuple[str, ...]:
    """Split a ``;``-separated category list, dropping blanks."""
    categories = tuple(part.strip() for part in value.split(CATEGORY_SEPARATOR) if part.strip())
    for category in categories:
        if not category.isdigit():
            raise KeepaInputError(f"Invalid category id '{category}'. Expected digits only.")
    return categories


def _env_int(name: str, default: int, *, minimum: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be an integer, got '{raw}'.") from error
    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}.")
    return value


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as error:
        raise ValueError(f"{name} must be a number, got '{raw}'.") from error
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}.")
    return value


def load_detail_options() -> DetailOptions:
    defaults = DetailOptions()
    return DetailOptions(
        **{
            attribute: _env_int(env_var, getattr(defaults, attribute))
            for attribute, env_var in _DETAIL_OPTION_ENV_VARS.items()
        }
    )


def load_settings() -> HarvestSettings:
    """Read settings from the environment, loading ``./.env`` first when present."""
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

    category_value = os.getenv("KEEPA_CATEGORY")
    categories = parse_categories(category_value) if category_value else DEFAULT_CATEGORIES

    return HarvestSettings(
        domain=validate_domain(_env_int("KEEPA_DOMAIN", 1)),
        categories=categories,
        page_size=_env_int("KEEPA_PAGE_SIZE", DEFAULT_PAGE_SIZE, minimum=1),
        max_attempts=_env_int("KEEPA_MAX_RETRIES", DEFAULT_MAX_ATTEMPTS, minimum=1),
        retry_backoff_seconds=_env_float(
            "KEEPA_RETRY_BACKOFF_SECONDS", DEFAULT_RETRY_BACKOFF_SECONDS
        ),
        max_concurrency=_env_int("KEEPA_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY, minimum=1),
        timeout_seconds=_env_float(
            "KEEPA_TIMEOUT_SECONDS", float(DEFAULT_TIMEOUT_SECONDS), minimum=1.0
        ),
        detail_options=load_detail_options(),
        redis_url=os.getenv("REDIS_URL") or DEFAULT_REDIS_URL,
        cache_enabled=os.getenv(CACHE_DISABLED_ENV_VAR) != "1",
        cache_ttl_seconds=_env_int(
            "CATALOG_CACHE_TTL_SECONDS", DEFAULT_CACHE_TTL_SECONDS, minimum=1
        ),
        store_path=Path(os.getenv("CATALOG_STORE_PATH") or DEFAULT_STORE_PATH),
    )
