"""HM Land Registry Price Paid reader.

Turns an already-downloaded Price Paid CSV (16 columns, no header) into
``Transaction`` records that the aggregation engine can consume.
"""

from __future__ import annotations

import csv
import logging
from datetime import date, datetime
from pathlib import Path
from typing import Iterator, Sequence

from pydantic import ValidationError

from pipelines.model import Transaction

PRICE_PAID_COLUMNS: tuple[str, ...] = (
    "transaction_id",
    "price",
    "date",
    "postcode",
    "property_type",
    "new_build",
    "tenure",
    "paon",
    "saon",
    "street",
    "locality",
    "town_city",
    "district",
    "county",
    "ppd_category",
    "record_status",
)

# 'A' rows are additions; 'C'/'D' rows in monthly update files amend earlier ones.
ACCEPTED_RECORD_STATUS = "A"

logger = logging.getLogger(__name__)


def _parse_date(raw: str) -> date | None:
    text = (raw or "").strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        try:
            return datetime.strptime(text[:10], "%Y-%m-%d").date()
        except ValueError:
            return None


def _region_for(row: dict[str, str]) -> str | None:
    for key in ("town_city", "district", "county"):
        value = (row.get(key) or "").strip()
        if value:
            return value
    return None


def parse_price_paid_row(fields: Sequence[str]) -> Transaction | None:
    """Map one CSV row to a ``Transaction``; ``None`` when the row is unusable."""

    if len(fields) != len(PRICE_PAID_COLUMNS):
        return None
    row = dict(zip(PRICE_PAID_COLUMNS, fields, strict=True))
    transacted_at = _parse_date(row["date"])
    if transacted_at is None:
        return None
    try:
        return Transaction(
            transaction_id=row["transaction_id"].strip("{} "),
            price=row["price"],
            transacted_at=transacted_at,
            location_key=row["postcode"],
            property_type=row["property_type"] or None,
            tenure=row["tenure"] or None,
            new_build=row["new_build"].strip().upper() == "Y",
            region=_region_for(row),
        )
    except ValidationError:
        return None


class PricePaidReader:
    """Iterate a Price Paid file, counting rows that could not be parsed.

    Each iteration re-reads the file from the start, so one reader can feed
    several aggregation passes.
    """

    def __init__(self, path: str | Path, *, max_rows: int | None = None) -> None:
        self.path = Path(path)
        self.max_rows = max_rows
        self.malformed = 0
        self.filtered = 0

    def __iter__(self) -> Iterator[Transaction]:
        self.malformed = 0
        self.filtered = 0
        with self.path.open(newline="", encoding="utf-8") as handle:
            for index, fields in enumerate(csv.reader(handle)):
                if self.max_rows is not None and index >= self.max_rows:
                    break
                status = fields[-1].strip() if len(fields) == len(PRICE_PAID_COLUMNS) else ""
                if status not in ("", ACCEPTED_RECORD_STATUS):
                    self.filtered += 1
                    continue
                transaction = parse_price_paid_row(fields)
                if transaction is None:
                    self.malformed += 1
                    continue
                yield transaction
        if self.malformed:
            logger.warning("Skipped %s malformed rows in %s.", self.malformed, self.path)
        if self.filtered:
            logger.info(
                "Filtered %s rows with a record status other than %s in %s.",
                self.filtered,
                ACCEPTED_RECORD_STATUS,
                self.path,
            )


__all__ = ["PRICE_PAID_COLUMNS", "PricePaidReader", "parse_price_paid_row"]
