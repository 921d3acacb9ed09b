"""Command-line entrypoint for batch jobs."""

from __future__ import annotations

import argparse
import logging
import os
from pathlib import Path

from jobs.config import KNOWN_METRICS, KNOWN_SOURCES, load_config, parse_resolutions
from jobs.run_pipeline import run_normalization, run_pipeline
from pipelines.model import EtlRun
from pipelines.normalize import PercentileScope
from pipelines.tiles import MAX_ZOOM, MIN_ZOOM, cache_max_age, zoom_to_resolution
from storage.db import PersistenceError, RunLockError, connect, fetch_runs, release_run_lock

logger = logging.getLogger(__name__)


def _format_run(run: EtlRun) -> str:
    finished = run.completed_at.isoformat(timespec="seconds") if run.completed_at else "-"
    line = (
        f"#{run.run_id} {run.source}/{run.metric_type} status={run.status} "
        f"processed={run.rows_processed} geocoded={run.rows_geocoded} "
        f"skipped={run.rows_skipped} no_geocode={run.rows_no_geocode} "
        f"malformed={run.rows_malformed} filtered={run.rows_filtered} "
        f"cells={run.cells_written} "
        f"started={run.started_at.isoformat(timespec='seconds')} finished={finished}"
    )
    if run.error_message:
        line += f" error='{run.error_message}'"
    return line


def _print_zoom_table() -> None:
    for zoom in range(MIN_ZOOM, MAX_ZOOM + 1):
        resolution = zoom_to_resolution(zoom)
        print(f"z={zoom:>2} resolution={resolution:>2} max_age={cache_max_age(zoom)}s")


def main(argv: list[str] | None = None) -> int:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--log-level",
        help="Override LOG_LEVEL for this invocation (e.g. DEBUG, INFO)",
    )
    parser = argparse.ArgumentParser(description="Property hex heatmap job runner")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Aggregate transactions onto the grid and normalize percentiles",
    )
    run_parser.add_argument("--transactions", type=Path, help="Price Paid CSV to aggregate")
    run_parser.add_argument("--postcodes", type=Path, help="Postcode lookup CSV")
    run_parser.add_argument(
        "--resolutions",
        help="Comma-separated grid resolutions (defaults to every resolution tiles use)",
    )
    run_parser.add_argument("--source", help=f"Source label (known: {', '.join(KNOWN_SOURCES)})")
    run_parser.add_argument("--metric", help=f"Metric type (known: {', '.join(KNOWN_METRICS)})")
    run_parser.add_argument("--max-rows", type=int, help="Stop after this many input rows")

    normalize_parser = subparsers.add_parser(
        "normalize",
        parents=[common],
        help="Recompute percentile buckets over stored aggregates",
    )
    normalize_parser.add_argument(
        "--scope", help="'global', 'country:<code>' or 'region:<name>' (default PERCENTILE_SCOPE)"
    )

    runs_parser = subparsers.add_parser("runs", parents=[common], help="Show recent run records")
    runs_parser.add_argument("--limit", type=int, default=10)

    lock_parser = subparsers.add_parser(
        "release-lock",
        parents=[common],
        help="Clear the run lock left behind by a killed run",
    )
    lock_parser.add_argument("--source", required=True)
    lock_parser.add_argument("--metric", required=True)

    subparsers.add_parser(
        "zoom-table",
        parents=[common],
        help="Show the zoom to resolution table and cache TTLs",
    )

    args = parser.parse_args(argv)
    if args.log_level:
        os.environ["LOG_LEVEL"] = args.log_level
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    if args.command == "zoom-table":
        _print_zoom_table()
        return 0

    if args.command == "runs":
        conn = connect()
        try:
            for run in fetch_runs(conn, limit=args.limit):
                print(_format_run(run))
        finally:
            conn.close()
        return 0

    if args.command == "release-lock":
        conn = connect()
        try:
            released = release_run_lock(conn, source=args.source, metric_type=args.metric)
        finally:
            conn.close()
        print("released" if released else "no lock held")
        return 0

    if args.command == "normalize":
        try:
            scope = PercentileScope.parse(args.scope) if args.scope else None
        except ValueError as exc:
            parser.error(str(exc))
        result = run_normalization(scope)
        print(f"normalized {result.cells_updated} cells ({result.scope.describe()})")
        return 0

    if args.command == "run":
        try:
            resolutions = parse_resolutions(args.resolutions) if args.resolutions else None
        except ValueError as exc:
            parser.error(str(exc))
        if args.source and args.source not in KNOWN_SOURCES:
            logger.warning("Source %r is not one of the known sources.", args.source)
        config = load_config().with_overrides(
            price_paid_path=args.transactions,
            postcode_lookup_path=args.postcodes,
            resolutions=resolutions,
            source=args.source,
            metric_type=args.metric,
            max_rows=args.max_rows,
        )
        try:
            run = run_pipeline(config)
        except RunLockError as exc:
            logger.error("%s", exc)
            return 2
        except PersistenceError as exc:
            logger.error("Run aborted, no cells were written: %s", exc)
            return 1
        print(_format_run(run))
        return 0

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
