from datetime import date, datetime

import pytest

from conftest import AS_OF, make_transaction
from pipelines.aggregate import (
    AggregationSettings,
    aggregate_transactions,
    run_aggregation,
    run_aggregations,
)
from pipelines.spatial import cell_for
from storage.db import get_aggregates


def test_three_transaction_scenario(resolver, settings, scenario_transactions):
    result = aggregate_transactions(scenario_transactions, resolver, settings, as_of=AS_OF)

    by_count = {cell.transaction_count: cell for cell in result.cells}
    assert len(result.cells) == 2
    assert by_count[2].metric_value == 850_000
    assert by_count[2].first_seen == datetime(2025, 4, 1)
    assert by_count[2].last_seen == datetime(2025, 5, 20)
    assert by_count[1].metric_value == 450_000
    assert by_count[2].confidence > by_count[1].confidence
    assert result.stats.processed == 3
    assert result.stats.geocoded == 3
    assert result.stats.cells == 2


def test_cells_use_resolver_coordinates(resolver, settings, scenario_transactions):
    result = aggregate_transactions(scenario_transactions, resolver, settings, as_of=AS_OF)

    lat, lon = resolver.resolve("L1 1AA")
    expected = cell_for(lat, lon, settings.resolution)
    assert expected in {cell.cell_id for cell in result.cells}
    assert [cell.cell_id for cell in result.cells] == sorted(cell.cell_id for cell in result.cells)


def test_price_range_rejection_counts_skips(resolver, settings):
    transactions = [
        make_transaction("floor", 10_000, "L1 1AA"),
        make_transaction("nominal", 1, "L1 1AA"),
        make_transaction("ceiling", 10_000_000, "L1 1AA"),
        make_transaction("ok", 10_001, "L1 1AA"),
    ]

    result = aggregate_transactions(transactions, resolver, settings, as_of=AS_OF)

    assert result.stats.skipped == 3
    assert result.stats.geocoded == 1
    assert [cell.metric_value for cell in result.cells] == [10_001]


def test_missing_geocode_is_counted_not_fatal(resolver, settings):
    transactions = [
        make_transaction("known", 300_000, "L1 1AA"),
        make_transaction("unknown", 300_000, "ZZ9 9ZZ"),
    ]

    result = aggregate_transactions(transactions, resolver, settings, as_of=AS_OF)

    assert result.stats.no_geocode == 1
    assert result.stats.processed == 2
    assert len(result.cells) == 1


def test_region_falls_back_to_unknown(resolver, settings):
    transactions = [make_transaction("t", 300_000, "L1 1AA", region=None)]

    result = aggregate_transactions(transactions, resolver, settings, as_of=AS_OF)

    assert result.cells[0].region == "Unknown"
    assert result.cells[0].country_code == "GB"


def test_empty_input_yields_no_cells(resolver, settings):
    result = aggregate_transactions([], resolver, settings, as_of=AS_OF)

    assert result.cells == []
    assert result.stats.processed == 0


def test_run_aggregation_persists_and_refreshes(conn, resolver, settings, scenario_transactions):
    run_aggregation(conn, scenario_transactions, resolver, settings, as_of=AS_OF)

    aggregates = get_aggregates(conn, settings.resolution)
    metrics = sorted(cell.weighted_metric for cell in aggregates)
    assert metrics == pytest.approx([450_000, 850_000])
    assert {cell.normalized_value for cell in aggregates} == {0.5}
    assert sum(cell.transaction_count for cell in aggregates) == 3


def test_rerun_replaces_rather_than_blends(conn, resolver, settings, scenario_transactions):
    run_aggregation(conn, scenario_transactions, resolver, settings, as_of=AS_OF)
    run_aggregation(
        conn,
        [make_transaction("t9", 600_000, "L2 2BB", transacted_at=date(2025, 5, 25))],
        resolver,
        settings,
        as_of=AS_OF,
    )

    aggregates = get_aggregates(conn, settings.resolution)
    assert [(cell.weighted_metric, cell.transaction_count) for cell in aggregates] == [
        (pytest.approx(600_000), 1)
    ]


def test_run_aggregations_rejects_mixed_keys(conn, resolver, settings):
    other = AggregationSettings(resolution=6, source="numbeo", metric_type="median_price")

    with pytest.raises(ValueError):
        run_aggregations(conn, [], resolver, [settings, other])


def test_run_aggregations_writes_every_resolution(conn, resolver, settings, scenario_transactions):
    coarse = AggregationSettings(
        resolution=6, source=settings.source, metric_type=settings.metric_type
    )

    results = run_aggregations(
        conn, scenario_transactions, resolver, [coarse, settings], as_of=AS_OF
    )

    assert set(results) == {6, 8}
    assert len(get_aggregates(conn, 6)) == len(results[6].cells)
    assert len(get_aggregates(conn, 8)) == 2


def test_other_metric_run_leaves_served_aggregates_alone(
    conn, resolver, settings, scenario_transactions
):
    run_aggregation(conn, scenario_transactions, resolver, settings, as_of=AS_OF)
    before = get_aggregates(conn, settings.resolution)
    rents = AggregationSettings(
        resolution=settings.resolution, source=settings.source, metric_type="rental_price"
    )

    run_aggregation(
        conn,
        [make_transaction("r1", 24_000, "L1 1AA")],
        resolver,
        rents,
        as_of=AS_OF,
    )

    assert get_aggregates(conn, settings.resolution) == before
    stored = conn.execute(
        "SELECT metric_type, COUNT(*) FROM geo_cells GROUP BY metric_type ORDER BY metric_type"
    ).fetchall()
    assert stored == [("median_price", 2), ("rental_price", 1)]


def test_run_drops_resolutions_it_no_longer_produces(
    conn, resolver, settings, scenario_transactions
):
    coarse = AggregationSettings(
        resolution=6, source=settings.source, metric_type=settings.metric_type
    )
    run_aggregations(conn, scenario_transactions, resolver, [coarse, settings], as_of=AS_OF)

    run_aggregations(conn, scenario_transactions, resolver, [settings], as_of=AS_OF)

    assert get_aggregates(conn, 6) == []
    assert len(get_aggregates(conn, 8)) == 2


def test_single_resolution_replace_keeps_other_resolutions(
    conn, resolver, settings, scenario_transactions
):
    coarse = AggregationSettings(
        resolution=6, source=settings.source, metric_type=settings.metric_type
    )
    run_aggregations(conn, scenario_transactions, resolver, [coarse, settings], as_of=AS_OF)

    run_aggregation(conn, scenario_transactions, resolver, settings, as_of=AS_OF)

    assert get_aggregates(conn, 6) != []
