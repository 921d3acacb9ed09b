import pytest

from conftest import AS_OF, make_transaction
from pipelines.aggregate import AggregationSettings, run_aggregation, run_aggregations
from pipelines.geocode import CoordinateResolver
from pipelines.normalize import PercentileScope, normalize_percentiles
from storage.db import get_aggregates, get_data_epoch

PRICES = [100_000 * step for step in range(1, 11)]


@pytest.fixture()
def spread_resolver():
    # one postcode per price, far enough apart to land in separate cells
    return CoordinateResolver(
        {f"P{index}": (51.0 + index * 0.1, -1.0 + index * 0.1) for index in range(len(PRICES))}
    )


def _transactions(region_for=lambda index: "London"):
    return [
        make_transaction(f"t{index}", price, f"P{index}", region=region_for(index))
        for index, price in enumerate(PRICES)
    ]


def test_scope_parse():
    assert PercentileScope.parse(None) == PercentileScope()
    assert PercentileScope.parse("global").describe() == "global"
    assert PercentileScope.parse("country:gb") == PercentileScope(country_code="GB")
    assert PercentileScope.parse("region:London") == PercentileScope(region="London")
    with pytest.raises(ValueError):
        PercentileScope.parse("planet:earth")
    with pytest.raises(ValueError):
        PercentileScope.parse("country:")


def test_normalization_assigns_monotonic_buckets(conn, spread_resolver, settings):
    run_aggregation(conn, _transactions(), spread_resolver, settings, as_of=AS_OF)

    result = normalize_percentiles(conn)

    cells = sorted(get_aggregates(conn, settings.resolution), key=lambda cell: cell.weighted_metric)
    values = [cell.normalized_value for cell in cells]
    assert result.cells_updated == len(PRICES)
    assert values == sorted(values)
    assert values[0] == 0.1
    assert values[-1] == 1.0
    assert set(values) <= {0.1, 0.25, 0.5, 0.75, 0.9, 1.0}
    assert result.cut_points[settings.resolution] == pytest.approx(
        (190_000, 325_000, 550_000, 775_000, 910_000)
    )


def test_normalization_bumps_epoch(conn, spread_resolver, settings):
    run_aggregation(conn, _transactions(), spread_resolver, settings, as_of=AS_OF)
    before = get_data_epoch(conn)

    normalize_percentiles(conn)

    assert get_data_epoch(conn) == before + 1


def test_resolutions_are_normalized_independently(conn, spread_resolver, settings):
    coarse = AggregationSettings(
        resolution=3, source=settings.source, metric_type=settings.metric_type
    )
    run_aggregations(conn, _transactions(), spread_resolver, [coarse, settings], as_of=AS_OF)

    result = normalize_percentiles(conn)

    assert set(result.cut_points) == {3, settings.resolution}
    fine = get_aggregates(conn, settings.resolution)
    assert max(cell.normalized_value for cell in fine) == 1.0
    assert min(cell.normalized_value for cell in fine) == 0.1


def test_region_scope_leaves_other_cells_untouched(conn, spread_resolver, settings):
    transactions = _transactions(lambda index: "London" if index % 2 == 0 else "Leeds")
    run_aggregation(conn, transactions, spread_resolver, settings, as_of=AS_OF)

    result = normalize_percentiles(conn, PercentileScope(region="London"))

    cells = get_aggregates(conn, settings.resolution)
    leeds = [cell for cell in cells if cell.region == "Leeds"]
    london = [cell for cell in cells if cell.region == "London"]
    assert result.cells_updated == len(london) == 5
    assert {cell.normalized_value for cell in leeds} == {0.5}
    assert max(cell.normalized_value for cell in london) == 1.0


def test_empty_scope_is_a_noop(conn):
    before = get_data_epoch(conn)

    result = normalize_percentiles(conn, PercentileScope(country_code="FR"))

    assert result.cells_updated == 0
    assert result.cut_points == {}
    assert get_data_epoch(conn) == before
