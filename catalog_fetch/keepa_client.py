"""Keepa API endpoints, product simplification and auth helpers."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import httpx
from dotenv import load_dotenv
from pydantic import ValidationError

from catalog_fetch.budget import detail_cost, discovery_cost
from catalog_fetch.retry import ProtocolError, RetryController
from catalog_fetch.schema import (
    ASIN_PATTERN,
    ApiEnvelope,
    ProductDetails,
    SimplifiedOffer,
    SimplifiedProduct,
)

logger = logging.getLogger(__name__)

KEEPA_API_BASE_URL = "https://api.keepa.com"
KEEPA_QUERY_ENDPOINT = "/query"
KEEPA_PRODUCT_ENDPOINT = "/product"
KEEPA_TOKEN_ENDPOINT = "/token"
KEEPA_API_KEY_ENV_VAR = "KEEPA_API_KEY"
KEEPA_TIME_OFFSET_MINUTES = 21564000
KEEPA_DOMAINS = frozenset({1, 2, 3, 4, 5, 6, 8, 9, 10, 11, 12})
KEEPA_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_TIMEOUT_SECONDS = 60
SENSITIVE_PARAM_KEYS = frozenset({"key", "apikey", "token", "password", "secret"})
REDACTED_VALUE = "***"


class KeepaAuthError(RuntimeError):
    """Raised when the Keepa API key is missing or rejected."""


class KeepaInputError(ValueError):
    """Raised when user-provided Keepa input is invalid."""


@dataclass(frozen=True, slots=True)
class DetailOptions:
    """Query flags sent with every product detail call."""

    stats: int = 90
    update: int = -1
    history: int = 1
    days: int = 90
    code_limit: int = 10
    offers: int = 20
    only_live_offers: int = 1
    rental: int = 0
    videos: int = 0
    aplus: int = 0
    rating: int = 0
    buybox: int = 1
    stock: int = 1

    def as_query_params(self) -> dict[str, int]:
        return {
            "stats": self.stats,
            "update": self.update,
            "history": self.history,
            "days": self.days,
            "code-limit": self.code_limit,
            "offers": self.offers,
            "only-live-offers": self.only_live_offers,
            "rental": self.rental,
            "videos": self.videos,
            "aplus": self.aplus,
            "rating": self.rating,
            "buybox": self.buybox,
            "stock": self.stock,
        }


def validate_asin(asin: str) -> str:
    """Validate and normalize an ASIN."""
    normalized = asin.strip().upper()
    if not ASIN_PATTERN.fullmatch(normalized):
        raise KeepaInputError(f"Invalid ASIN '{asin}'. Expected 10 letters or digits.")
    return normalized


def validate_domain(domain: int) -> int:
    """Validate a Keepa marketplace domain id."""
    if domain not in KEEPA_DOMAINS:
        allowed = ", ".join(str(value) for value in sorted(KEEPA_DOMAINS))
        raise KeepaInputError(f"Invalid Keepa domain '{domain}'. Expected one of: {allowed}.")
    return domain


def redact_params(params: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of request parameters with credentials masked."""
    return {
        name: REDACTED_VALUE if name.lower() in SENSITIVE_PARAM_KEYS else value
        for name, value in params.items()
    }


def keepa_minutes_to_timestamp(keepa_minutes: int) -> str:
    """Convert Keepa time (minutes since 2011-01-01) to a UTC timestamp string."""
    epoch_seconds = (keepa_minutes + KEEPA_TIME_OFFSET_MINUTES) * 60
    return datetime.fromtimestamp(epoch_seconds, tz=UTC).strftime(KEEPA_TIMESTAMP_FORMAT)


def history_pairs_to_map(values: list[int] | None) -> dict[str, int] | None:
    """Convert a flat ``[time, value, time, value, ...]`` history into a timestamp map.

    Empty or odd-length histories are treated as absent.
    """
    if not values or len(values) % 2 != 0:
        return None
    return {
        keepa_minutes_to_timestamp(values[index]): values[index + 1]
        for index in range(0, len(values), 2)
    }


def _as_mapping(value: object) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _simplify_offer(raw_offer: dict[str, Any]) -> SimplifiedOffer:
    return SimplifiedOffer(
        seller_id=str(raw_offer.get("sellerId") or ""),
        condition=int(raw_offer.get("condition") or 0),
        is_prime=bool(raw_offer.get("isPrime")),
        is_amazon=bool(raw_offer.get("isAmazon")),
        is_fba=bool(raw_offer.get("isFBA")),
        stock_csv=history_pairs_to_map(raw_offer.get("stockCSV")),
    )


def simplify_product(raw_product: Mapping[str, Any]) -> SimplifiedProduct:
    """Reduce a raw Keepa product object to the persisted record shape."""
    root_category = str(raw_product.get("rootCategory") or 0)
    sales_ranks = _as_mapping(raw_product.get("salesRanks")).get(root_category)
    buy_box_price = _as_mapping(raw_product.get("stats")).get("buyBoxPrice") or None
    raw_offers = raw_product.get("offers") or []
    offers = [_simplify_offer(offer) for offer in raw_offers if isinstance(offer, dict)]

    return SimplifiedProduct(
        asin=str(raw_product.get("asin") or ""),
        title=str(raw_product.get("title") or ""),
        categories=list(raw_product.get("categories") or []),
        brand=str(raw_product.get("brand") or ""),
        buy_box_price=buy_box_price,
        sales_ranks=history_pairs_to_map(sales_ranks),
        offers=offers or None,
    )


def build_finder_selection(
    selection: Mapping[str, Any],
    *,
    category: str | None,
    page_size: int,
) -> dict[str, Any]:
    """Copy the selection, scoped to one root category and page size."""
    query = dict(selection)
    if category is not None:
        query["rootCategory"] = category
        query["salesRankReference"] = category
    query.setdefault("perPage", page_size)
    return query


def fetch_product_finder(
    *,
    client: httpx.Client,
    controller: RetryController,
    selection: Mapping[str, Any],
    page_size: int,
    domain: int = 1,
) -> tuple[str, ...]:
    """Run a product finder query and return the matching ASINs."""
    if page_size <= 0:
        raise KeepaInputError(f"Invalid page size '{page_size}'. Expected a positive integer.")
    params = {"domain": validate_domain(domain)}
    logger.debug(
        "Product finder request params: %s selection: %s",
        redact_params(params),
        redact_params(selection),
    )

    envelope = controller.execute(
        lambda: client.post(KEEPA_QUERY_ENDPOINT, params=params, json=dict(selection)),
        required_tokens=discovery_cost(page_size),
        endpoint=KEEPA_QUERY_ENDPOINT,
    )
    logger.info(
        "Product Finder: consumed %d tokens, %d tokens left, refill in %d ms",
        envelope.tokens_consumed,
        envelope.tokens_left,
        envelope.refill_in,
    )
    return tuple(envelope.asin_list)


def fetch_product(
    *,
    client: httpx.Client,
    controller: RetryController,
    asin: str,
    domain: int = 1,
    detail_options: DetailOptions | None = None,
) -> ProductDetails:
    """Fetch one product and return its simplified details."""
    normalized_asin = validate_asin(asin)
    options = detail_options or DetailOptions()
    params: dict[str, Any] = {
        "domain": validate_domain(domain),
        "asin": normalized_asin,
        **options.as_query_params(),
    }
    logger.debug("Product request params: %s", redact_params(params))

    envelope = controller.execute(
        lambda: client.get(KEEPA_PRODUCT_ENDPOINT, params=params),
        required_tokens=detail_cost(1),
        endpoint=KEEPA_PRODUCT_ENDPOINT,
    )
    logger.info(
        "Product Request %s: consumed %d tokens, %d tokens left, refill in %d ms",
        normalized_asin,
        envelope.tokens_consumed,
        envelope.tokens_left,
        envelope.refill_in,
    )

    try:
        products = [simplify_product(raw) for raw in envelope.products]
    except (ValidationError, TypeError, ValueError) as error:
        raise ProtocolError(
            f"Unexpected product payload for ASIN '{normalized_asin}': {error}",
            endpoint=KEEPA_PRODUCT_ENDPOINT,
            status_code=200,
        ) from error
    return ProductDetails(products=products)


def fetch_token_status(*, client: httpx.Client) -> ApiEnvelope:
    """Fetch the account token status; this call does not consume tokens."""
    response = client.get(KEEPA_TOKEN_ENDPOINT)
    if response.status_code in {401, 403}:
        raise KeepaAuthError(f"Keepa rejected the API key (status {response.status_code}).")
    if not response.is_success:
        raise ProtocolError(
            f"Keepa API request failed with status {response.status_code} for "
            f"'{KEEPA_TOKEN_ENDPOINT}'.",
            endpoint=KEEPA_TOKEN_ENDPOINT,
            status_code=response.status_code,
        )
    try:
        return ApiEnvelope.model_validate(response.json())
    except (ValueError, ValidationError) as error:
        raise ProtocolError(
            f"Unexpected token status payload: {error}",
            endpoint=KEEPA_TOKEN_ENDPOINT,
            status_code=response.status_code,
        ) from error


def get_keepa_api_key() -> str:
    """Read the Keepa API key from environment and fail fast if missing."""
    api_key, _source = get_keepa_api_key_with_source()
    return api_key


def get_keepa_api_key_with_source() -> tuple[str, str]:
    """Read the Keepa API key and return it with its environment source key."""
    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)

    api_key = os.getenv(KEEPA_API_KEY_ENV_VAR)
    if api_key:
        return api_key, KEEPA_API_KEY_ENV_VAR

    raise KeepaAuthError(f"Missing Keepa API key. Set {KEEPA_API_KEY_ENV_VAR}.")


def build_keepa_client(
    api_key: str | None = None,
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    *,
    trust_env: bool = True,
) -> httpx.Client:
    """Build an HTTP client that sends the Keepa API key with every request."""
    key = api_key or get_keepa_api_key()
    return httpx.Client(
        base_url=KEEPA_API_BASE_URL,
        params={"key": key},
        headers={"Accept": "application/json"},
        timeout=timeout_seconds,
        trust_env=trust_env,
    )
