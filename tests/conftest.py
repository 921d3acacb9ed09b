from datetime import date, datetime

import pytest

from pipelines.aggregate import AggregationSettings
from pipelines.geocode import CoordinateResolver
from pipelines.model import Transaction
from pipelines.tiles import tile_to_bbox
from storage.db import connect

AS_OF = datetime(2025, 6, 1)

# Central London tile at zoom 10; every fixture location sits inside it.
LONDON_TILE = (10, 511, 340)


def _tile_centre(z: int, x: int, y: int) -> tuple[float, float]:
    west, south, east, north = tile_to_bbox(z, x, y)
    return (south + north) / 2, (west + east) / 2


@pytest.fixture()
def db_path(monkeypatch, tmp_path):
    path = tmp_path / "heatmap.duckdb"
    monkeypatch.setenv("HEATMAP_DB_PATH", str(path))
    return path


@pytest.fixture()
def conn(db_path):
    connection = connect()
    yield connection
    connection.close()


@pytest.fixture()
def resolver():
    lat, lon = _tile_centre(*LONDON_TILE)
    return CoordinateResolver(
        {
            "L1 1AA": (lat, lon),
            "L2 2BB": (lat + 0.03, lon + 0.05),
        }
    )


@pytest.fixture()
def settings():
    return AggregationSettings(
        resolution=8,
        source="uk_land_registry",
        metric_type="median_price",
        country_code="GB",
    )


def make_transaction(
    transaction_id: str,
    price: float,
    location_key: str,
    *,
    transacted_at: date = date(2025, 5, 1),
    region: str | None = "London",
) -> Transaction:
    return Transaction(
        transaction_id=transaction_id,
        price=price,
        transacted_at=transacted_at,
        location_key=location_key,
        region=region,
    )


@pytest.fixture()
def scenario_transactions():
    return [
        make_transaction("t1", 850_000, "L1 1AA", transacted_at=date(2025, 4, 1)),
        make_transaction("t2", 920_000, "l11aa", transacted_at=date(2025, 5, 20)),
        make_transaction("t3", 450_000, "L2 2BB"),
    ]
