"""DuckDB persistence for grid cells, aggregated cells, run records and run locks."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Sequence

import duckdb

from pipelines.model import (
    DEFAULT_METRIC,
    DEFAULT_NORMALIZED_VALUE,
    AggregatedCell,
    EtlRun,
    GeoCell,
    utcnow,
)
from pipelines.spatial import BBox, GeometryError, cell_bounds
from pipelines.stats import classify_freshness

DB_ENV_VAR = "HEATMAP_DB_PATH"
DEFAULT_DB_PATH = Path("data/heatmap.duckdb")

GEO_CELLS_TABLE = "geo_cells"
AGGREGATED_TABLE = "aggregated_cells"
ETL_RUNS_TABLE = "etl_runs"
RUN_LOCKS_TABLE = "run_locks"
EPOCH_TABLE = "dataset_epoch"

logger = logging.getLogger(__name__)


class PersistenceError(RuntimeError):
    """The store was unreachable or rejected a read or write."""


class RunLockError(RuntimeError):
    """Another run already holds the lock for the same (source, metric) key."""


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def get_database_path(override: str | os.PathLike[str] | None = None) -> Path:
    """Resolve the DuckDB file path from an explicit override or environment variable."""

    if override is not None:
        return Path(override)
    env_value = os.getenv(DB_ENV_VAR)
    if env_value:
        return Path(env_value)
    return DEFAULT_DB_PATH


def connect(
    path: str | os.PathLike[str] | None = None,
    *,
    read_only: bool = False,
    ensure: bool = True,
) -> duckdb.DuckDBPyConnection:
    """Create a DuckDB connection, optionally ensuring schema availability."""

    db_path = get_database_path(path)
    if not read_only:
        _ensure_parent_dir(db_path)
    try:
        conn = duckdb.connect(str(db_path), read_only=read_only)
    except duckdb.Error as exc:
        raise PersistenceError(f"Could not open {db_path}: {exc}") from exc
    if ensure and not read_only:
        ensure_schema(conn)
    return conn


def ensure_schema(conn: duckdb.DuckDBPyConnection) -> None:
    """Create the storage tables if they do not already exist."""

    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {GEO_CELLS_TABLE} (
            cell_id TEXT NOT NULL,
            resolution INTEGER NOT NULL,
            country_code TEXT,
            region TEXT,
            source TEXT NOT NULL,
            metric_type TEXT NOT NULL,
            metric_value DOUBLE NOT NULL,
            transaction_count INTEGER NOT NULL,
            confidence DOUBLE NOT NULL,
            first_seen TIMESTAMP,
            last_seen TIMESTAMP,
            updated_at TIMESTAMP NOT NULL,
            west DOUBLE,
            south DOUBLE,
            east DOUBLE,
            north DOUBLE,
            PRIMARY KEY (cell_id, source, metric_type)
        )
        """
    )
    conn.execute(
        f"""
        CREATE INDEX IF NOT EXISTS idx_{GEO_CELLS_TABLE}_run
        ON {GEO_CELLS_TABLE} (source, metric_type, resolution)
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {AGGREGATED_TABLE} (
            cell_id TEXT PRIMARY KEY,
            resolution INTEGER NOT NULL,
            country_code TEXT,
            region TEXT,
            weighted_metric DOUBLE,
            transaction_count BIGINT,
            avg_confidence DOUBLE,
            normalized_value DOUBLE DEFAULT {DEFAULT_NORMALIZED_VALUE},
            last_seen TIMESTAMP,
            freshness TEXT,
            west DOUBLE,
            south DOUBLE,
            east DOUBLE,
            north DOUBLE
        )
        """
    )
    conn.execute(
        f"""
        CREATE INDEX IF NOT EXISTS idx_{AGGREGATED_TABLE}_resolution
        ON {AGGREGATED_TABLE} (resolution)
        """
    )
    conn.execute("CREATE SEQUENCE IF NOT EXISTS etl_runs_seq START 1")
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {ETL_RUNS_TABLE} (
            run_id BIGINT PRIMARY KEY DEFAULT nextval('etl_runs_seq'),
            source TEXT NOT NULL,
            metric_type TEXT NOT NULL,
            status TEXT NOT NULL,
            rows_processed BIGINT DEFAULT 0,
            rows_geocoded BIGINT DEFAULT 0,
            rows_skipped BIGINT DEFAULT 0,
            rows_no_geocode BIGINT DEFAULT 0,
            rows_malformed BIGINT DEFAULT 0,
            rows_filtered BIGINT DEFAULT 0,
            cells_written BIGINT DEFAULT 0,
            error_message TEXT,
            started_at TIMESTAMP NOT NULL,
            completed_at TIMESTAMP
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {RUN_LOCKS_TABLE} (
            source TEXT NOT NULL,
            metric_type TEXT NOT NULL,
            acquired_at TIMESTAMP NOT NULL,
            PRIMARY KEY (source, metric_type)
        )
        """
    )
    conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS {EPOCH_TABLE} (
            id INTEGER PRIMARY KEY,
            epoch BIGINT NOT NULL,
            updated_at TIMESTAMP
        )
        """
    )
    conn.execute(f"INSERT OR IGNORE INTO {EPOCH_TABLE} VALUES (1, 0, NULL)")


@contextmanager
def transaction(conn: duckdb.DuckDBPyConnection) -> Iterator[duckdb.DuckDBPyConnection]:
    """Run a block atomically; DuckDB errors roll back and surface as ``PersistenceError``."""

    try:
        conn.execute("BEGIN TRANSACTION")
    except duckdb.Error as exc:
        raise PersistenceError(f"Could not start transaction: {exc}") from exc
    try:
        yield conn
    except duckdb.Error as exc:
        conn.execute("ROLLBACK")
        raise PersistenceError(str(exc)) from exc
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    try:
        conn.execute("COMMIT")
    except duckdb.Error as exc:
        raise PersistenceError(f"Commit failed: {exc}") from exc


def _bounds_or_none(cell_id: str) -> tuple[float | None, ...]:
    try:
        return cell_bounds(cell_id)
    except GeometryError:
        logger.warning("Storing %s without a bounding box (invalid cell id).", cell_id)
        return (None, None, None, None)


def _serialize_cell(cell: GeoCell) -> tuple:
    return (
        cell.cell_id,
        cell.resolution,
        cell.country_code,
        cell.region,
        cell.source,
        cell.metric_type,
        cell.metric_value,
        cell.transaction_count,
        cell.confidence,
        cell.first_seen,
        cell.last_seen,
        cell.updated_at,
        *_bounds_or_none(cell.cell_id),
    )


_CELL_COLUMNS = (
    "cell_id, resolution, country_code, region, source, metric_type, metric_value, "
    "transaction_count, confidence, first_seen, last_seen, updated_at, west, south, east, north"
)

_CELL_UPDATES = ", ".join(
    f"{column} = EXCLUDED.{column}"
    for column in (
        "country_code",
        "region",
        "metric_value",
        "transaction_count",
        "confidence",
        "first_seen",
        "last_seen",
        "updated_at",
        "west",
        "south",
        "east",
        "north",
    )
)


def _stage_cells(conn: duckdb.DuckDBPyConnection, rows: Sequence[tuple]) -> None:
    conn.execute(
        f"CREATE OR REPLACE TEMP TABLE staged_cells AS SELECT * FROM {GEO_CELLS_TABLE} LIMIT 0"
    )
    if rows:
        conn.executemany(
            f"INSERT INTO staged_cells ({_CELL_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )


def _merge_staged_cells(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        f"""
        INSERT INTO {GEO_CELLS_TABLE} ({_CELL_COLUMNS})
        SELECT {_CELL_COLUMNS} FROM staged_cells
        ON CONFLICT (cell_id, source, metric_type) DO UPDATE SET {_CELL_UPDATES}
        """
    )


def upsert_cells(conn: duckdb.DuckDBPyConnection, cells: Iterable[GeoCell]) -> int:
    """Insert or overwrite a batch of ``GeoCell`` rows; all or nothing.

    Returns
    -------
    int
        Number of rows written.
    """

    serialized = [_serialize_cell(cell) for cell in cells]
    if not serialized:
        return 0
    with transaction(conn):
        _stage_cells(conn, serialized)
        _merge_staged_cells(conn)
    return len(serialized)


def replace_cells(
    conn: duckdb.DuckDBPyConnection,
    cells: Iterable[GeoCell],
    *,
    source: str,
    metric_type: str,
    resolution: int,
    default_metric: str = DEFAULT_METRIC,
) -> int:
    """Replace every row of one (source, metric, resolution) run with ``cells``.

    Rows from an earlier run that this run no longer produces are removed, the
    rest are overwritten, and the aggregated view is refreshed, all in one
    transaction. Other resolutions of the same key are left alone. The data
    epoch is bumped on success.
    """

    return replace_run_cells(
        conn,
        {resolution: list(cells)},
        source=source,
        metric_type=metric_type,
        default_metric=default_metric,
        prune_resolutions=False,
    )


def replace_run_cells(
    conn: duckdb.DuckDBPyConnection,
    batches: Mapping[int, Sequence[GeoCell]],
    *,
    source: str,
    metric_type: str,
    default_metric: str = DEFAULT_METRIC,
    prune_resolutions: bool = True,
) -> int:
    """Replace several resolutions of one run in a single transaction.

    With ``prune_resolutions`` the run owns its whole (source, metric) key:
    rows at resolutions absent from ``batches`` are deleted too. The aggregated
    view is always rebuilt from ``default_metric`` rows, whatever metric the
    run wrote.
    """

    written = 0
    with transaction(conn):
        if prune_resolutions:
            dropped = conn.execute(
                f"""
                DELETE FROM {GEO_CELLS_TABLE}
                WHERE source = ? AND metric_type = ?
                  AND resolution NOT IN (SELECT UNNEST(?::INTEGER[]))
                RETURNING resolution
                """,
                [source, metric_type, sorted(batches)],
            ).fetchall()
            if dropped:
                logger.info(
                    "Removed %s cells for %s/%s at resolutions outside this run.",
                    len(dropped),
                    source,
                    metric_type,
                )
        for resolution, cells in batches.items():
            serialized = [_serialize_cell(cell) for cell in cells]
            _stage_cells(conn, serialized)
            conn.execute(
                f"""
                DELETE FROM {GEO_CELLS_TABLE}
                WHERE source = ? AND metric_type = ? AND resolution = ?
                  AND cell_id NOT IN (SELECT cell_id FROM staged_cells)
                """,
                [source, metric_type, resolution],
            )
            _merge_staged_cells(conn)
            written += len(serialized)
            logger.info(
                "Staged %s cells for %s/%s at resolution %s.",
                len(serialized),
                source,
                metric_type,
                resolution,
            )
        _refresh_aggregates_in_tx(conn, metric_type=default_metric)
        _bump_epoch_in_tx(conn)
    return written


_AGGREGATE_COLUMNS = (
    "cell_id, resolution, country_code, region, weighted_metric, transaction_count, "
    "avg_confidence, last_seen, freshness, west, south, east, north"
)


def _refresh_aggregates_in_tx(
    conn: duckdb.DuckDBPyConnection,
    *,
    metric_type: str,
    as_of: datetime | None = None,
) -> int:
    moment = as_of or utcnow()
    grouped = conn.execute(
        f"""
        SELECT
            cell_id,
            MIN(resolution),
            arg_max(country_code, confidence),
            arg_max(region, confidence),
            SUM(metric_value * confidence) / SUM(confidence),
            SUM(transaction_count),
            AVG(confidence),
            MAX(last_seen),
            MIN(west),
            MIN(south),
            MAX(east),
            MAX(north)
        FROM {GEO_CELLS_TABLE}
        WHERE metric_type = ?
        GROUP BY cell_id
        HAVING SUM(confidence) > 0
        """,
        [metric_type],
    ).fetchall()

    staged = [
        (*row[:8], classify_freshness(row[7], moment), *row[8:])
        for row in grouped
    ]
    conn.execute(
        f"CREATE OR REPLACE TEMP TABLE staged_aggregates AS "
        f"SELECT {_AGGREGATE_COLUMNS} FROM {AGGREGATED_TABLE} LIMIT 0"
    )
    if staged:
        conn.executemany(
            f"INSERT INTO staged_aggregates ({_AGGREGATE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            staged,
        )
    conn.execute(
        f"DELETE FROM {AGGREGATED_TABLE} "
        "WHERE cell_id NOT IN (SELECT cell_id FROM staged_aggregates)"
    )
    # normalized_value is left untouched for surviving cells; indexed columns
    # (cell_id, resolution) never change for a given cell.
    updates = ", ".join(
        f"{column} = EXCLUDED.{column}"
        for column in _AGGREGATE_COLUMNS.split(", ")
        if column not in ("cell_id", "resolution")
    )
    conn.execute(
        f"""
        INSERT INTO {AGGREGATED_TABLE} ({_AGGREGATE_COLUMNS})
        SELECT {_AGGREGATE_COLUMNS} FROM staged_aggregates
        ON CONFLICT (cell_id) DO UPDATE SET {updates}
        """
    )
    return len(staged)


def refresh_aggregates(
    conn: duckdb.DuckDBPyConnection,
    *,
    metric_type: str,
    as_of: datetime | None = None,
) -> int:
    """Rebuild ``aggregated_cells`` from ``geo_cells`` for one metric type."""

    with transaction(conn):
        return _refresh_aggregates_in_tx(conn, metric_type=metric_type, as_of=as_of)


def _row_to_aggregate(row: Sequence[Any]) -> AggregatedCell:
    return AggregatedCell(
        cell_id=row[0],
        resolution=row[1],
        country_code=row[2],
        region=row[3],
        weighted_metric=row[4],
        transaction_count=row[5],
        avg_confidence=row[6],
        normalized_value=row[7],
        last_seen=row[8],
        freshness=row[9],
    )


def get_aggregates(
    conn: duckdb.DuckDBPyConnection,
    resolution: int,
    *,
    bbox: BBox | None = None,
    cell_ids: Sequence[str] | None = None,
    limit: int | None = None,
) -> list[AggregatedCell]:
    """Cells at ``resolution`` whose envelope overlaps ``bbox`` and/or listed in ``cell_ids``.

    The bbox test uses each cell's stored envelope, not its hexagon, so cells
    near a corner may be returned without touching the box. Results are ordered
    by cell id so a capped fetch is deterministic.
    """

    filters = ["resolution = ?"]
    params: list[Any] = [resolution]
    if bbox is not None:
        west, south, east, north = bbox
        filters.append("east >= ? AND west <= ? AND north >= ? AND south <= ?")
        params.extend([west, east, south, north])
    if cell_ids is not None:
        if not cell_ids:
            return []
        filters.append("cell_id IN (SELECT UNNEST(?::VARCHAR[]))")
        params.append(list(cell_ids))

    sql = (
        "SELECT cell_id, resolution, country_code, region, weighted_metric, "
        "transaction_count, avg_confidence, normalized_value, last_seen, freshness "
        f"FROM {AGGREGATED_TABLE} WHERE {' AND '.join(filters)} ORDER BY cell_id"
    )
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    try:
        rows = conn.execute(sql, params).fetchall()
    except duckdb.Error as exc:
        raise PersistenceError(f"Aggregate query failed: {exc}") from exc
    return [_row_to_aggregate(row) for row in rows]


def _scope_filters(
    *,
    resolution: int | None,
    country_code: str | None,
    region: str | None,
) -> tuple[str, list[Any]]:
    filters = ["weighted_metric IS NOT NULL"]
    params: list[Any] = []
    if resolution is not None:
        filters.append("resolution = ?")
        params.append(resolution)
    if country_code:
        filters.append("country_code = ?")
        params.append(country_code)
    if region:
        filters.append("region = ?")
        params.append(region)
    return " AND ".join(filters), params


def get_all_weighted_values(
    conn: duckdb.DuckDBPyConnection,
    *,
    resolution: int | None = None,
    country_code: str | None = None,
    region: str | None = None,
) -> list[float]:
    """All weighted metric values in scope, ascending."""

    where, params = _scope_filters(
        resolution=resolution, country_code=country_code, region=region
    )
    rows = conn.execute(
        f"SELECT weighted_metric FROM {AGGREGATED_TABLE} WHERE {where} ORDER BY weighted_metric",
        params,
    ).fetchall()
    return [row[0] for row in rows]


def fetch_weighted_metrics(
    conn: duckdb.DuckDBPyConnection,
    *,
    resolution: int | None = None,
    country_code: str | None = None,
    region: str | None = None,
) -> list[tuple[str, float]]:
    where, params = _scope_filters(
        resolution=resolution, country_code=country_code, region=region
    )
    rows = conn.execute(
        f"SELECT cell_id, weighted_metric FROM {AGGREGATED_TABLE} WHERE {where} ORDER BY cell_id",
        params,
    ).fetchall()
    return [(row[0], row[1]) for row in rows]


def list_resolutions(
    conn: duckdb.DuckDBPyConnection,
    *,
    country_code: str | None = None,
    region: str | None = None,
) -> list[int]:
    where, params = _scope_filters(resolution=None, country_code=country_code, region=region)
    rows = conn.execute(
        f"SELECT DISTINCT resolution FROM {AGGREGATED_TABLE} WHERE {where} ORDER BY resolution",
        params,
    ).fetchall()
    return [row[0] for row in rows]


def set_normalized_value(conn: duckdb.DuckDBPyConnection, cell_id: str, value: float) -> None:
    set_normalized_values(conn, [(cell_id, value)])


def set_normalized_values(
    conn: duckdb.DuckDBPyConnection,
    assignments: Iterable[tuple[str, float]],
    *,
    bump_epoch: bool = True,
) -> int:
    """Write normalized values for many cells atomically."""

    params = [(value, cell_id) for cell_id, value in assignments]
    if not params:
        return 0
    with transaction(conn):
        conn.executemany(
            f"UPDATE {AGGREGATED_TABLE} SET normalized_value = ? WHERE cell_id = ?",
            params,
        )
        if bump_epoch:
            _bump_epoch_in_tx(conn)
    return len(params)


def _bump_epoch_in_tx(conn: duckdb.DuckDBPyConnection) -> None:
    conn.execute(
        f"UPDATE {EPOCH_TABLE} SET epoch = epoch + 1, updated_at = ? WHERE id = 1",
        [utcnow()],
    )


def bump_data_epoch(conn: duckdb.DuckDBPyConnection) -> int:
    with transaction(conn):
        _bump_epoch_in_tx(conn)
    return get_data_epoch(conn)


def get_data_epoch(conn: duckdb.DuckDBPyConnection) -> int:
    """Version of the aggregate state; changes after every successful write pass."""

    try:
        row = conn.execute(f"SELECT epoch FROM {EPOCH_TABLE} WHERE id = 1").fetchone()
    except duckdb.Error as exc:
        raise PersistenceError(f"Epoch query failed: {exc}") from exc
    return int(row[0]) if row else 0


def start_run(conn: duckdb.DuckDBPyConnection, *, source: str, metric_type: str) -> int:
    row = conn.execute(
        f"""
        INSERT INTO {ETL_RUNS_TABLE} (source, metric_type, status, started_at)
        VALUES (?, ?, 'running', ?)
        RETURNING run_id
        """,
        [source, metric_type, utcnow()],
    ).fetchone()
    return int(row[0])


def finish_run(
    conn: duckdb.DuckDBPyConnection,
    run_id: int,
    *,
    counts: dict[str, int],
    status: str = "success",
    error_message: str | None = None,
) -> None:
    columns = (
        "rows_processed",
        "rows_geocoded",
        "rows_skipped",
        "rows_no_geocode",
        "rows_malformed",
        "rows_filtered",
        "cells_written",
    )
    assignments = ", ".join(f"{column} = ?" for column in columns)
    conn.execute(
        f"""
        UPDATE {ETL_RUNS_TABLE}
        SET status = ?, {assignments}, error_message = ?, completed_at = ?
        WHERE run_id = ?
        """,
        [status, *(counts.get(column, 0) for column in columns), error_message, utcnow(), run_id],
    )


def fail_run(
    conn: duckdb.DuckDBPyConnection,
    run_id: int,
    *,
    error_message: str,
    counts: dict[str, int] | None = None,
) -> None:
    finish_run(conn, run_id, counts=counts or {}, status="failed", error_message=error_message)


_RUN_COLUMNS = (
    "run_id, source, metric_type, status, rows_processed, rows_geocoded, rows_skipped, "
    "rows_no_geocode, rows_malformed, rows_filtered, cells_written, error_message, "
    "started_at, completed_at"
)


def _row_to_run(row: Sequence[Any]) -> EtlRun:
    return EtlRun(**dict(zip(_RUN_COLUMNS.split(", "), row, strict=True)))


def fetch_runs(conn: duckdb.DuckDBPyConnection, *, limit: int = 20) -> list[EtlRun]:
    rows = conn.execute(
        f"SELECT {_RUN_COLUMNS} FROM {ETL_RUNS_TABLE} ORDER BY run_id DESC LIMIT {int(limit)}"
    ).fetchall()
    return [_row_to_run(row) for row in rows]


def fetch_run(conn: duckdb.DuckDBPyConnection, run_id: int) -> EtlRun | None:
    row = conn.execute(
        f"SELECT {_RUN_COLUMNS} FROM {ETL_RUNS_TABLE} WHERE run_id = ?", [run_id]
    ).fetchone()
    return _row_to_run(row) if row else None


def acquire_run_lock(conn: duckdb.DuckDBPyConnection, *, source: str, metric_type: str) -> None:
    try:
        conn.execute(
            f"INSERT INTO {RUN_LOCKS_TABLE} VALUES (?, ?, ?)",
            [source, metric_type, utcnow()],
        )
    except duckdb.ConstraintException as exc:
        raise RunLockError(
            f"A run for {source}/{metric_type} is already in progress. "
            "If it was killed, clear it with `python -m jobs release-lock`."
        ) from exc


def release_run_lock(conn: duckdb.DuckDBPyConnection, *, source: str, metric_type: str) -> bool:
    row = conn.execute(
        f"DELETE FROM {RUN_LOCKS_TABLE} WHERE source = ? AND metric_type = ? RETURNING source",
        [source, metric_type],
    ).fetchone()
    return row is not None


@contextmanager
def run_lock(
    conn: duckdb.DuckDBPyConnection, *, source: str, metric_type: str
) -> Iterator[None]:
    """Hold the (source, metric) run lock for the duration of the block."""

    acquire_run_lock(conn, source=source, metric_type=metric_type)
    try:
        yield
    finally:
        release_run_lock(conn, source=source, metric_type=metric_type)


__all__ = [
    "AGGREGATED_TABLE",
    "GEO_CELLS_TABLE",
    "PersistenceError",
    "RunLockError",
    "acquire_run_lock",
    "bump_data_epoch",
    "connect",
    "ensure_schema",
    "fail_run",
    "fetch_run",
    "fetch_runs",
    "fetch_weighted_metrics",
    "finish_run",
    "get_aggregates",
    "get_all_weighted_values",
    "get_data_epoch",
    "get_database_path",
    "list_resolutions",
    "refresh_aggregates",
    "release_run_lock",
    "replace_cells",
    "replace_run_cells",
    "run_lock",
    "set_normalized_value",
    "set_normalized_values",
    "start_run",
    "transaction",
    "upsert_cells",
]
