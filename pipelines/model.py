"""Canonical data model for property transactions and hexagonal grid aggregates."""

from __future__ import annotations

import math
from datetime import UTC, date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

NORMALIZED_BUCKETS: tuple[float, ...] = (0.1, 0.25, 0.5, 0.75, 0.9, 1.0)
DEFAULT_NORMALIZED_VALUE = 0.5
# Metric the cross-source aggregates and the tiles are built from.
DEFAULT_METRIC = "median_price"

Freshness = Literal["fresh", "recent", "stale"]
RunStatus = Literal["running", "success", "failed"]


def utcnow() -> datetime:
    """Current UTC time as a naive timestamp, the convention used in storage."""
    return datetime.now(UTC).replace(tzinfo=None)


class Transaction(BaseModel):
    """A single property sale, already parsed from its source file."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    transaction_id: str = Field(..., description="Upstream transaction identifier.")
    price: float = Field(
        ..., description="Sale price in the source currency (range policy is applied later)."
    )
    transacted_at: date = Field(..., description="Date the sale completed.")
    location_key: str = Field(
        ..., description="Key resolved to coordinates by the postcode lookup."
    )
    property_type: Optional[str] = Field(
        default=None, description="Property type code (e.g. 'D', 'S', 'T', 'F', 'O')."
    )
    tenure: Optional[str] = Field(default=None, description="Tenure code ('F' or 'L').")
    new_build: bool = Field(default=False, description="Whether the sale was a new build.")
    region: Optional[str] = Field(
        default=None, description="Best-effort region tag propagated from the source row."
    )

    @field_validator("price")
    @classmethod
    def _finite_price(cls, value: float) -> float:
        if math.isnan(value) or math.isinf(value):
            raise ValueError("price must be a finite number")
        return value


class GeoCell(BaseModel):
    """Per-cell summary for one (cell, source, metric) key produced by a run."""

    model_config = ConfigDict(frozen=True)

    cell_id: str
    resolution: int = Field(..., ge=0, le=15)
    country_code: Optional[str] = None
    region: Optional[str] = None
    source: str
    metric_type: str
    metric_value: float
    transaction_count: int = Field(..., ge=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    first_seen: datetime
    last_seen: datetime
    updated_at: datetime


class AggregatedCell(BaseModel):
    """Cross-source view of one cell, as served to tile clients."""

    model_config = ConfigDict(frozen=True)

    cell_id: str
    resolution: int
    country_code: Optional[str] = None
    region: Optional[str] = None
    weighted_metric: Optional[float] = None
    transaction_count: Optional[int] = None
    avg_confidence: Optional[float] = None
    normalized_value: Optional[float] = DEFAULT_NORMALIZED_VALUE
    last_seen: Optional[datetime] = None
    freshness: Optional[Freshness] = None


class ViewportRequest(BaseModel):
    """Slippy-map tile address."""

    model_config = ConfigDict(frozen=True)

    z: int = Field(..., ge=0, le=20)
    x: int = Field(..., ge=0)
    y: int = Field(..., ge=0)


class EtlRun(BaseModel):
    """Run-status record kept for operator visibility."""

    model_config = ConfigDict(frozen=True)

    run_id: int
    source: str
    metric_type: str
    status: RunStatus
    rows_processed: int = 0
    rows_geocoded: int = 0
    rows_skipped: int = 0
    rows_no_geocode: int = 0
    rows_malformed: int = 0
    rows_filtered: int = 0
    cells_written: int = 0
    error_message: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None


__all__ = [
    "AggregatedCell",
    "DEFAULT_METRIC",
    "DEFAULT_NORMALIZED_VALUE",
    "EtlRun",
    "Freshness",
    "GeoCell",
    "NORMALIZED_BUCKETS",
    "RunStatus",
    "Transaction",
    "ViewportRequest",
    "utcnow",
]
