"""
Feed validation.

Turns an untrusted batch (CSV text, or JSON items from the feed API) into
normalised ``StationRecord``s. A batch is atomic at this boundary: one bad row
rejects the whole batch, and every problem found is reported together.
"""

from __future__ import annotations

import csv
import io
import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable

from fuelwatch.core.errors import FieldCountError, NoRowsError, ValidationError
from fuelwatch.core.fuel import FuelType

REQUIRED_HEADERS = (
    "station_id",
    "name",
    "brand",
    "address",
    "postcode",
    "lat",
    "lng",
    "petrol_price",
    "diesel_price",
    "updated_at",
)

# feed API field -> csv header
_FEED_KEYS = {
    "stationId": "station_id",
    "name": "name",
    "brand": "brand",
    "address": "address",
    "postcode": "postcode",
    "lat": "lat",
    "lng": "lng",
    "petrolPrice": "petrol_price",
    "dieselPrice": "diesel_price",
    "updatedAt": "updated_at",
    "amenities": "amenities",
    "openingHours": "opening_hours",
}


@dataclass(frozen=True)
class StationRecord:
    station_id: str
    name: str
    brand: str
    address: str
    postcode: str
    lat: float
    lng: float
    updated_at: datetime
    prices: dict[FuelType, int | None] = field(default_factory=dict)
    amenities: dict | None = None
    opening_hours: dict | None = None


def parse_dt(val) -> datetime | None:
    """ISO-8601 → naive UTC. Returns None when unparseable."""
    if val is None:
        return None
    if isinstance(val, datetime):
        dt = val
    else:
        s = str(val).strip()
        if not s:
            return None
        try:
            dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            try:
                dt = datetime.fromisoformat(s.replace(" ", "T").replace("Z", "+00:00"))
            except ValueError:
                return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def to_pence(value: Any) -> int | None:
    """
    Price in pence per litre, rounded half-up to a whole penny.
    ``None``, "" and "null" mean the fuel is absent. Raises ValueError otherwise.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError("must be a number")
    s = str(value).strip()
    if s == "" or s.lower() == "null":
        return None
    try:
        d = Decimal(s)
    except InvalidOperation:
        raise ValueError("must be a number or null")
    if not d.is_finite():
        raise ValueError("must be a finite number")
    if d < 0:
        raise ValueError("must be non-negative")
    return int(d.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _parse_coordinate(value: Any, low: float, high: float) -> float:
    try:
        f = float(str(value).strip())
    except (TypeError, ValueError):
        raise ValueError("must be a number")
    if not math.isfinite(f):
        raise ValueError("must be a finite number")
    if f < low or f > high:
        raise ValueError(f"must be between {low:g} and {high:g}")
    return f


def parse_blob(value: Any) -> dict | None:
    """Best-effort JSON object. Anything unusable is treated as absent."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value
    s = str(value).strip()
    if not s or s.lower() == "null":
        return None
    if len(s) >= 2 and s[0] == '"' and s[-1] == '"':
        s = s[1:-1]
    try:
        parsed = json.loads(s)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _build_record(row: dict[str, Any]) -> tuple[StationRecord | None, list[str]]:
    """Validate one row. Returns (record, []) or (None, [field: message, ...])."""
    problems: list[str] = []

    station_id = _text(row.get("station_id"))
    if not station_id:
        problems.append("station_id: must not be empty")

    lat = lng = None
    try:
        lat = _parse_coordinate(row.get("lat"), -90, 90)
    except ValueError as e:
        problems.append(f"lat: {e}")
    try:
        lng = _parse_coordinate(row.get("lng"), -180, 180)
    except ValueError as e:
        problems.append(f"lng: {e}")

    prices: dict[FuelType, int | None] = {}
    for fuel in FuelType:
        key = f"{fuel.value}_price"
        try:
            prices[fuel] = to_pence(row.get(key))
        except ValueError as e:
            problems.append(f"{key}: {e}")

    updated_at = parse_dt(row.get("updated_at"))
    if updated_at is None:
        problems.append("updated_at: must be a valid date")

    if problems:
        return None, problems

    return (
        StationRecord(
            station_id=station_id,
            name=_text(row.get("name")),
            brand=_text(row.get("brand")),
            address=_text(row.get("address")),
            postcode=_text(row.get("postcode")),
            lat=lat,
            lng=lng,
            updated_at=updated_at,
            prices=prices,
            amenities=parse_blob(row.get("amenities")),
            opening_hours=parse_blob(row.get("opening_hours")),
        ),
        [],
    )


def _validate_rows(rows: Iterable[tuple[int, dict[str, Any]]]) -> list[StationRecord]:
    records: list[StationRecord] = []
    errors: list[str] = []
    for row_number, row in rows:
        record, problems = _build_record(row)
        if problems:
            errors.append(f"Row {row_number}: {', '.join(problems)}")
        else:
            records.append(record)

    if errors:
        raise ValidationError(f"Validation failed for {len(errors)} row(s)", details=errors)
    return records


def _is_blank(fields: list[str]) -> bool:
    return not fields or (len(fields) == 1 and fields[0].strip() == "")


def read_csv_rows(csv_data: str) -> list[tuple[int, dict[str, str]]]:
    """
    Split CSV text into (line number, {header: value}) pairs.

    Raises NoRowsError for empty/header-only input and FieldCountError on the
    first row whose width differs from the header. Broken quoting is a
    ValidationError too.
    """
    if csv_data is None or csv_data.strip() == "":
        raise NoRowsError("CSV data is empty")

    reader = csv.reader(io.StringIO(csv_data.strip()), skipinitialspace=True)
    try:
        return _split_rows(reader)
    except csv.Error as e:
        raise ValidationError("Malformed CSV", details=[f"Row {reader.line_num}: {e}"]) from e


def _split_rows(reader) -> list[tuple[int, dict[str, str]]]:
    headers: list[str] | None = None
    for fields in reader:
        if _is_blank(fields):
            continue
        headers = [h.strip().lower() for h in fields]
        break
    if not headers:
        raise NoRowsError("CSV data is empty")

    missing = [h for h in REQUIRED_HEADERS if h not in headers]
    if missing:
        raise ValidationError("CSV header is missing required columns", details=[f"missing: {', '.join(missing)}"])

    rows: list[tuple[int, dict[str, str]]] = []
    for fields in reader:
        if _is_blank(fields):
            continue
        if len(fields) != len(headers):
            raise FieldCountError(reader.line_num, len(fields), len(headers))
        rows.append((reader.line_num, {h: v.strip() for h, v in zip(headers, fields)}))

    if not rows:
        raise NoRowsError()
    return rows


def parse_and_validate_csv(csv_data: str) -> list[StationRecord]:
    return _validate_rows(read_csv_rows(csv_data))


def validate_feed_items(items: list[dict]) -> list[StationRecord]:
    """Same rules for JSON items pulled from the feed API. Item numbers are 1-based."""
    if not items:
        raise NoRowsError("Feed returned no stations")

    def _rows():
        for i, item in enumerate(items, start=1):
            if not isinstance(item, dict):
                yield i, {}
                continue
            yield i, {csv_key: item.get(api_key) for api_key, csv_key in _FEED_KEYS.items()}

    return _validate_rows(_rows())
