"""Bin transactions onto the hexagonal grid and summarise each cell.

Every run is a full recompute for its (source, metric, resolution) key: the
cells it produces replace whatever an earlier run stored, nothing is blended
with history. Re-running on identical input therefore yields identical rows,
at the cost of needing the complete input set each time.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time
from typing import Iterable, Sequence

import duckdb

from pipelines.geocode import CoordinateResolver
from pipelines.model import DEFAULT_METRIC, GeoCell, Transaction, utcnow
from pipelines.spatial import cell_for
from pipelines.stats import (
    DEFAULT_RECENCY_FLOOR,
    DEFAULT_SATURATION,
    confidence_score,
    lower_median,
)
from storage.db import replace_cells, replace_run_cells

DEFAULT_PRICE_FLOOR = 10_000.0
DEFAULT_PRICE_CEILING = 10_000_000.0
UNKNOWN_REGION = "Unknown"
PROGRESS_EVERY = 100_000

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregationSettings:
    """Parameters fixed for the duration of one aggregation run."""

    resolution: int
    source: str
    metric_type: str
    country_code: str | None = None
    price_floor: float = DEFAULT_PRICE_FLOOR
    price_ceiling: float = DEFAULT_PRICE_CEILING
    saturation: float = DEFAULT_SATURATION
    recency_floor: float = DEFAULT_RECENCY_FLOOR

    def accepts_price(self, price: float) -> bool:
        return self.price_floor < price < self.price_ceiling


@dataclass
class RunStats:
    processed: int = 0
    geocoded: int = 0
    skipped: int = 0
    no_geocode: int = 0
    malformed: int = 0
    filtered: int = 0
    cells: int = 0

    def merge(self, other: "RunStats") -> None:
        for name, value in asdict(other).items():
            setattr(self, name, getattr(self, name) + value)

    def as_run_counts(self) -> dict[str, int]:
        return {
            "rows_processed": self.processed,
            "rows_geocoded": self.geocoded,
            "rows_skipped": self.skipped,
            "rows_no_geocode": self.no_geocode,
            "rows_malformed": self.malformed,
            "rows_filtered": self.filtered,
            "cells_written": self.cells,
        }


@dataclass
class _CellAccumulator:
    prices: list[float] = field(default_factory=list)
    dates: list[date] = field(default_factory=list)
    region: str | None = None

    def add(self, transaction: Transaction) -> None:
        self.prices.append(transaction.price)
        self.dates.append(transaction.transacted_at)
        if self.region is None and transaction.region:
            self.region = transaction.region


@dataclass
class AggregationResult:
    cells: list[GeoCell]
    stats: RunStats


def _as_datetime(day: date) -> datetime:
    if isinstance(day, datetime):
        return day
    return datetime.combine(day, time.min)


def _summarise(
    cell_id: str,
    acc: _CellAccumulator,
    settings: AggregationSettings,
    as_of: datetime,
) -> GeoCell:
    first_seen = _as_datetime(min(acc.dates))
    last_seen = _as_datetime(max(acc.dates))
    count = len(acc.prices)
    return GeoCell(
        cell_id=cell_id,
        resolution=settings.resolution,
        country_code=settings.country_code,
        region=acc.region or UNKNOWN_REGION,
        source=settings.source,
        metric_type=settings.metric_type,
        metric_value=lower_median(acc.prices),
        transaction_count=count,
        confidence=confidence_score(
            count,
            last_seen,
            as_of=as_of,
            saturation=settings.saturation,
            recency_floor=settings.recency_floor,
        ),
        first_seen=first_seen,
        last_seen=last_seen,
        updated_at=as_of,
    )


def aggregate_transactions(
    transactions: Iterable[Transaction],
    resolver: CoordinateResolver,
    settings: AggregationSettings,
    *,
    as_of: datetime | None = None,
) -> AggregationResult:
    """Group transactions by grid cell and compute one ``GeoCell`` per cell.

    Rows with an out-of-range price are counted as ``skipped`` and rows whose
    location key is not in the lookup as ``no_geocode``; neither aborts the run.
    Cells are returned sorted by id.
    """

    moment = as_of or utcnow()
    stats = RunStats()
    accumulators: dict[str, _CellAccumulator] = {}

    for transaction in transactions:
        stats.processed += 1
        if not settings.accepts_price(transaction.price):
            stats.skipped += 1
            continue
        coordinate = resolver.resolve(transaction.location_key)
        if coordinate is None:
            stats.no_geocode += 1
            continue
        stats.geocoded += 1
        cell_id = cell_for(coordinate.lat, coordinate.lon, settings.resolution)
        accumulators.setdefault(cell_id, _CellAccumulator()).add(transaction)

        if stats.processed % PROGRESS_EVERY == 0:
            logger.info(
                "Processed %s transactions into %s cells (resolution %s).",
                stats.processed,
                len(accumulators),
                settings.resolution,
            )

    cells = [
        _summarise(cell_id, accumulators[cell_id], settings, moment)
        for cell_id in sorted(accumulators)
    ]
    stats.cells = len(cells)
    logger.info(
        "Aggregated %s transactions into %s cells at resolution %s "
        "(skipped=%s, no_geocode=%s).",
        stats.processed,
        stats.cells,
        settings.resolution,
        stats.skipped,
        stats.no_geocode,
    )
    return AggregationResult(cells=cells, stats=stats)


def run_aggregation(
    conn: duckdb.DuckDBPyConnection,
    transactions: Iterable[Transaction],
    resolver: CoordinateResolver,
    settings: AggregationSettings,
    *,
    default_metric: str = DEFAULT_METRIC,
    as_of: datetime | None = None,
) -> AggregationResult:
    """Aggregate and atomically replace this run's cells in the store.

    A ``PersistenceError`` from the store leaves no partial writes behind. The
    aggregated view is rebuilt from ``default_metric`` rows only, so a run for
    another metric never replaces what the tiles serve.
    """

    result = aggregate_transactions(transactions, resolver, settings, as_of=as_of)
    replace_cells(
        conn,
        result.cells,
        source=settings.source,
        metric_type=settings.metric_type,
        resolution=settings.resolution,
        default_metric=default_metric,
    )
    return result


def run_aggregations(
    conn: duckdb.DuckDBPyConnection,
    transactions: Iterable[Transaction],
    resolver: CoordinateResolver,
    settings: Sequence[AggregationSettings],
    *,
    default_metric: str = DEFAULT_METRIC,
    as_of: datetime | None = None,
) -> dict[int, AggregationResult]:
    """Aggregate one run at several resolutions and commit them together.

    ``transactions`` is iterated once per resolution, so it must be re-iterable.
    """

    keys = {(item.source, item.metric_type) for item in settings}
    if len(keys) != 1:
        raise ValueError("All resolutions of a run must share one (source, metric) key.")
    source, metric_type = next(iter(keys))

    moment = as_of or utcnow()
    results = {
        item.resolution: aggregate_transactions(transactions, resolver, item, as_of=moment)
        for item in settings
    }
    replace_run_cells(
        conn,
        {resolution: result.cells for resolution, result in results.items()},
        source=source,
        metric_type=metric_type,
        default_metric=default_metric,
    )
    return results


__all__ = [
    "AggregationResult",
    "AggregationSettings",
    "DEFAULT_PRICE_CEILING",
    "DEFAULT_PRICE_FLOOR",
    "RunStats",
    "aggregate_transactions",
    "run_aggregation",
    "run_aggregations",
]
