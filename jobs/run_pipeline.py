"""End-to-end batch job: aggregate price-paid transactions onto the grid and normalize."""

from __future__ import annotations

import logging
import os
from typing import Iterable

import duckdb

from jobs.config import PipelineConfig, load_config
from pipelines.aggregate import RunStats, run_aggregations
from pipelines.geocode import CoordinateResolver, load_postcode_lookup
from pipelines.model import EtlRun, Transaction
from pipelines.normalize import NormalizationResult, PercentileScope, normalize_percentiles
from pipelines.sources.land_registry import PricePaidReader
from storage.db import connect, fail_run, fetch_run, finish_run, run_lock, start_run

logger = logging.getLogger(__name__)


def run_pipeline(
    config: PipelineConfig | None = None,
    *,
    conn: duckdb.DuckDBPyConnection | None = None,
    resolver: CoordinateResolver | None = None,
    transactions: Iterable[Transaction] | None = None,
) -> EtlRun:
    """Aggregate every configured resolution, then normalize; returns the run record.

    ``transactions`` must be re-iterable; by default the configured Price Paid
    file is streamed once per resolution. All resolutions commit together or
    not at all. A failure marks the run ``failed`` and re-raises.
    """

    config = config or load_config()
    owns_conn = conn is None
    conn = conn or connect()
    try:
        with run_lock(conn, source=config.source, metric_type=config.metric_type):
            run_id = start_run(conn, source=config.source, metric_type=config.metric_type)
            logger.info(
                "Run %s started for %s/%s at resolutions %s.",
                run_id,
                config.source,
                config.metric_type,
                ",".join(str(r) for r in config.resolutions),
            )
            totals = RunStats()
            try:
                if resolver is None:
                    resolver = load_postcode_lookup(config.postcode_lookup_path)
                reader = None
                if transactions is None:
                    reader = PricePaidReader(config.price_paid_path, max_rows=config.max_rows)
                    transactions = reader

                results = run_aggregations(
                    conn,
                    transactions,
                    resolver,
                    [config.settings_for(resolution) for resolution in config.resolutions],
                    default_metric=config.default_metric,
                )
                # every resolution sees the same rows, so row counters come from one pass
                for result in results.values():
                    if not totals.processed:
                        totals.merge(result.stats)
                    else:
                        totals.cells += result.stats.cells
                if reader is not None:
                    totals.malformed = reader.malformed
                    totals.filtered = reader.filtered

                normalize_percentiles(conn, config.percentile_scope)
            except Exception as exc:
                logger.exception("Run %s failed.", run_id)
                fail_run(
                    conn,
                    run_id,
                    error_message=str(exc) or exc.__class__.__name__,
                    counts=totals.as_run_counts(),
                )
                raise

            finish_run(conn, run_id, counts=totals.as_run_counts())
            logger.info(
                "Run %s finished: processed=%s geocoded=%s skipped=%s no_geocode=%s cells=%s.",
                run_id,
                totals.processed,
                totals.geocoded,
                totals.skipped,
                totals.no_geocode,
                totals.cells,
            )
            return fetch_run(conn, run_id)
    finally:
        if owns_conn:
            conn.close()


def run_normalization(
    scope: PercentileScope | None = None,
    *,
    conn: duckdb.DuckDBPyConnection | None = None,
) -> NormalizationResult:
    """Run only the percentile pass over what is already stored."""

    owns_conn = conn is None
    conn = conn or connect()
    try:
        return normalize_percentiles(conn, scope or load_config().percentile_scope)
    finally:
        if owns_conn:
            conn.close()


def main(config: PipelineConfig | None = None) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    run = run_pipeline(config)
    logger.info("Pipeline job finished (run=%s, cells written=%s).", run.run_id, run.cells_written)
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
