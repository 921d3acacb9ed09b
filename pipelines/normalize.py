"""Six-bucket percentile normalization over aggregated cells.

Runs after aggregation. Each resolution in scope is normalized against its own
distribution, since a tile only ever shows one resolution at a time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import duckdb

from pipelines.stats import bucket_for, percentile_cut_points
from storage.db import (
    fetch_weighted_metrics,
    get_all_weighted_values,
    list_resolutions,
    set_normalized_values,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PercentileScope:
    """Comparison population for percentile cut points (global when both are unset)."""

    country_code: str | None = None
    region: str | None = None

    @classmethod
    def parse(cls, raw: str | None) -> "PercentileScope":
        """Accept ``global``, ``country:<code>`` or ``region:<name>``."""
        text = (raw or "").strip()
        if not text or text.lower() == "global":
            return cls()
        kind, _, value = text.partition(":")
        kind = kind.strip().lower()
        value = value.strip()
        if not value:
            raise ValueError(
                f"Percentile scope {raw!r} must be 'global', 'country:<code>' or 'region:<name>'."
            )
        if kind == "country":
            return cls(country_code=value.upper())
        if kind == "region":
            return cls(region=value)
        raise ValueError(f"Unknown percentile scope kind {kind!r}.")

    def describe(self) -> str:
        if self.country_code:
            return f"country:{self.country_code}"
        if self.region:
            return f"region:{self.region}"
        return "global"


@dataclass
class NormalizationResult:
    scope: PercentileScope
    cut_points: dict[int, tuple[float, ...]] = field(default_factory=dict)
    cells_updated: int = 0


def normalize_percentiles(
    conn: duckdb.DuckDBPyConnection, scope: PercentileScope | None = None
) -> NormalizationResult:
    """Assign ``normalized_value`` to every aggregated cell in ``scope``."""

    scope = scope or PercentileScope()
    result = NormalizationResult(scope=scope)
    filters = {"country_code": scope.country_code, "region": scope.region}

    assignments: list[tuple[str, float]] = []
    for resolution in list_resolutions(conn, **filters):
        values = get_all_weighted_values(conn, resolution=resolution, **filters)
        if not values:
            continue
        cut_points = percentile_cut_points(values)
        result.cut_points[resolution] = cut_points
        for cell_id, value in fetch_weighted_metrics(conn, resolution=resolution, **filters):
            assignments.append((cell_id, bucket_for(value, cut_points)))
        logger.info(
            "Resolution %s (%s): %s cells, cut points %s.",
            resolution,
            scope.describe(),
            len(values),
            ", ".join(f"{cut:,.0f}" for cut in cut_points),
        )

    if not assignments:
        logger.warning("No aggregated cells in scope %s; nothing normalized.", scope.describe())
        return result

    result.cells_updated = set_normalized_values(conn, assignments)
    return result


__all__ = ["NormalizationResult", "PercentileScope", "normalize_percentiles"]
