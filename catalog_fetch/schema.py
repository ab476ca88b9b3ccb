"""Schema contract for Keepa responses and simplified product records."""

from __future__ import annotations

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

ASIN_PATTERN = re.compile(r"^[A-Z0-9]{10}$")


class ApiEnvelope(BaseModel):
    """Token accounting envelope present on every Keepa response, 429 included."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    timestamp: int
    tokens_left: int = Field(alias="tokensLeft")
    refill_in: int = Field(default=0, alias="refillIn")
    refill_rate: int = Field(default=0, alias="refillRate")
    token_flow_reduction: float = Field(default=0.0, alias="tokenFlowReduction")
    tokens_consumed: int = Field(default=0, alias="tokensConsumed")
    processing_time_in_ms: int = Field(default=0, alias="processingTimeInMs")
    total_results: int = Field(default=0, alias="totalResults")
    asin_list: list[str] = Field(default_factory=list, alias="asinList")
    products: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("asin_list", "products", mode="before")
    @classmethod
    def null_to_empty(cls, value: Any) -> Any:
        """Keepa sends null instead of an empty list for absent payloads."""
        return [] if value is None else value


class SimplifiedOffer(BaseModel):
    """Marketplace offer reduced to the fields downstream consumers use."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    seller_id: str = Field(alias="sellerId")
    condition: int
    is_prime: bool = Field(alias="isPrime")
    is_amazon: bool = Field(alias="isAmazon")
    is_fba: bool = Field(alias="isFBA")
    stock_csv: dict[str, int] | None = Field(default=None, alias="stockCSV")


class SimplifiedProduct(BaseModel):
    """Product record kept in the cache and the document store."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    asin: str = Field(min_length=1)
    title: str = ""
    categories: list[int] = Field(default_factory=list)
    brand: str = ""
    buy_box_price: int | None = Field(default=None, alias="buyBoxPrice")
    sales_ranks: dict[str, int] | None = Field(default=None, alias="salesRanks")
    offers: list[SimplifiedOffer] | None = None


class ProductDetails(BaseModel):
    """Detail payload for one requested item."""

    model_config = ConfigDict(extra="forbid")

    products: list[SimplifiedProduct] = Field(default_factory=list)

    def to_document(self) -> dict[str, Any]:
        """Serialize with Keepa's camelCase field names, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")
