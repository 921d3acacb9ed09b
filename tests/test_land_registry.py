from datetime import date

import pytest

from pipelines.sources.land_registry import PricePaidReader, parse_price_paid_row

ROWS = [
    '"{A1B2C3D4-0000-0000-0000-000000000001}","850000","2025-04-01 00:00","SW1A 1AA","D","N","F",'
    '"10","","DOWNING STREET","","LONDON","CITY OF WESTMINSTER","GREATER LONDON","A","A"',
    '"{A1B2C3D4-0000-0000-0000-000000000002}","450000","2025-05-20 00:00","M1 1AE","F","Y","L",'
    '"1","FLAT 2","PICCADILLY","","","MANCHESTER","GREATER MANCHESTER","A","A"',
    '"{A1B2C3D4-0000-0000-0000-000000000003}","not-a-price","2025-05-20 00:00","M1 1AE","F","N","L",'
    '"1","","PICCADILLY","","MANCHESTER","MANCHESTER","GREATER MANCHESTER","A","A"',
    '"{A1B2C3D4-0000-0000-0000-000000000004}","300000","2025-05-20 00:00","M1 1AE","F","N","L",'
    '"1","","PICCADILLY","","MANCHESTER","MANCHESTER","GREATER MANCHESTER","A","D"',
    '"truncated","1"',
]


@pytest.fixture()
def price_paid_file(tmp_path):
    path = tmp_path / "pp.csv"
    path.write_text("\n".join(ROWS) + "\n", encoding="utf-8")
    return path


def test_parse_row_maps_fields():
    fields = [
        "{ID-1}", "850000", "2025-04-01 00:00", "SW1A 1AA", "D", "Y", "F", "10", "",
        "DOWNING STREET", "", "", "CITY OF WESTMINSTER", "GREATER LONDON", "A", "A",
    ]

    transaction = parse_price_paid_row(fields)

    assert transaction is not None
    assert transaction.transaction_id == "ID-1"
    assert transaction.price == pytest.approx(850_000.0)
    assert transaction.transacted_at == date(2025, 4, 1)
    assert transaction.new_build is True
    assert transaction.region == "CITY OF WESTMINSTER"


def test_parse_row_rejects_wrong_width():
    assert parse_price_paid_row(["only", "two"]) is None


def test_reader_counts_malformed_and_filtered_rows(price_paid_file):
    reader = PricePaidReader(price_paid_file)

    transactions = list(reader)

    assert [t.location_key for t in transactions] == ["SW1A 1AA", "M1 1AE"]
    assert transactions[0].region == "LONDON"
    assert transactions[1].region == "MANCHESTER"
    assert reader.malformed == 2
    assert reader.filtered == 1


def test_reader_is_reiterable_and_honours_max_rows(price_paid_file):
    reader = PricePaidReader(price_paid_file, max_rows=1)

    assert len(list(reader)) == 1
    assert len(list(reader)) == 1
