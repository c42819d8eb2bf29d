# tests/test_feed_validator.py
from datetime import datetime

import pytest

from fuelwatch.core.errors import FieldCountError, NoRowsError, ValidationError
from fuelwatch.core.fuel import FuelType
from fuelwatch.feeds.parsers import parse_and_validate_csv, parse_blob, to_pence, validate_feed_items

HEADER = "station_id,name,brand,address,postcode,lat,lng,petrol_price,diesel_price,updated_at"


def _csv(*rows: str, header: str = HEADER) -> str:
    return "\n".join([header, *rows]) + "\n"


def test_parses_valid_rows_in_order():
    text = _csv(
        'ST1,Victoria,Shell,"1 Road, London",SW1A 1AA,51.5,-0.14,149.9,155.4,2026-01-16T05:25:00Z',
        "ST2,Camden,BP,2 Street,NW1 0AA,51.54,-0.14,null,,2026-01-16 06:00:00",
    )
    records = parse_and_validate_csv(text)

    assert [r.station_id for r in records] == ["ST1", "ST2"]
    first, second = records
    assert first.address == "1 Road, London"
    assert first.prices == {FuelType.PETROL: 150, FuelType.DIESEL: 155}
    assert first.updated_at == datetime(2026, 1, 16, 5, 25)
    assert second.prices == {FuelType.PETROL: None, FuelType.DIESEL: None}
    assert second.updated_at == datetime(2026, 1, 16, 6, 0)


def test_headers_are_case_insensitive_and_blank_lines_skipped():
    header = HEADER.upper().replace(",", ", ")
    text = _csv("", "ST1,A,B,C,D,51.5,-0.14,140,150,2026-01-16T05:25:00", "", header=header)
    records = parse_and_validate_csv(text)
    assert len(records) == 1


def test_quoted_field_may_span_lines():
    text = _csv('ST1,A,B,"Unit 4\nHigh Street",D,51.5,-0.14,140,150,2026-01-16T05:25:00')
    (record,) = parse_and_validate_csv(text)
    assert record.address == "Unit 4\nHigh Street"


@pytest.mark.parametrize("text", ["", "   \n", HEADER, HEADER + "\n\n"])
def test_empty_or_header_only_raises_no_rows(text):
    with pytest.raises(NoRowsError):
        parse_and_validate_csv(text)


def test_missing_required_header_is_rejected():
    with pytest.raises(ValidationError) as exc:
        parse_and_validate_csv("station_id,name\nST1,A\n")
    assert "brand" in exc.value.details[0]


def test_field_count_mismatch_rejects_whole_batch():
    text = _csv(
        "ST1,A,B,C,D,51.5,-0.14,140,150,2026-01-16T05:25:00",
        "ST2,A,B,C,D,51.5,-0.14,140,150",
    )
    with pytest.raises(FieldCountError) as exc:
        parse_and_validate_csv(text)
    assert str(exc.value) == "Row 3 has 9 fields but expected 10 fields"


def test_unterminated_quote_rejects_batch():
    valid = ["ST%d,A,B,C,D,51.5,-0.14,140,150,2026-01-16T05:25:00" % i for i in range(1, 3000)]
    text = _csv('ST0,"bad name,B,C,D,51.5,-0.14,140,150,2026-01-16T05:25:00', *valid)

    with pytest.raises(ValidationError) as exc:
        parse_and_validate_csv(text)
    assert str(exc.value) == "Malformed CSV"
    assert exc.value.details[0].startswith("Row ")


def test_all_row_errors_are_aggregated():
    text = _csv(
        ",A,B,C,D,91,-0.14,140,150,2026-01-16T05:25:00",
        "ST2,A,B,C,D,51.5,-181,abc,-1,not-a-date",
        "ST3,A,B,C,D,51.5,-0.14,140,150,2026-01-16T05:25:00",
    )
    with pytest.raises(ValidationError) as exc:
        parse_and_validate_csv(text)

    err = exc.value
    assert str(err) == "Validation failed for 2 row(s)"
    assert err.details[0].startswith("Row 2: station_id: must not be empty")
    assert "lat: must be between -90 and 90" in err.details[0]
    assert err.details[1].startswith("Row 3: lng:")
    for field in ("petrol_price", "diesel_price", "updated_at"):
        assert field in err.details[1]


@pytest.mark.parametrize(
    "raw,expected",
    [("149.5", 150), ("149.49", 149), ("0", 0), (147, 147), ("NULL", None), ("", None), (None, None)],
)
def test_to_pence_rounds_half_up(raw, expected):
    assert to_pence(raw) == expected


@pytest.mark.parametrize("raw", ["NaN", "Infinity", "-0.5", "1,49", True])
def test_to_pence_rejects_bad_values(raw):
    with pytest.raises(ValueError):
        to_pence(raw)


def test_blobs_are_best_effort():
    assert parse_blob('{"shop": true}') == {"shop": True}
    assert parse_blob('"{"a": 1}"') == {"a": 1}
    assert parse_blob("[1, 2]") is None
    assert parse_blob("not json") is None
    assert parse_blob("") is None


def test_optional_columns_are_parsed():
    header = HEADER + ",amenities,opening_hours"
    text = _csv('ST1,A,B,C,D,51.5,-0.14,140,150,2026-01-16T05:25:00,"{""carWash"": true}",broken', header=header)
    (record,) = parse_and_validate_csv(text)
    assert record.amenities == {"carWash": True}
    assert record.opening_hours is None


def test_feed_items_use_same_rules():
    items = [
        {
            "stationId": "F1",
            "name": "Feed",
            "brand": "Esso",
            "address": "X",
            "postcode": "M1 1AE",
            "lat": 53.48,
            "lng": -2.24,
            "petrolPrice": 139.9,
            "dieselPrice": None,
            "updatedAt": "2026-01-16T05:25:00+01:00",
            "amenities": {"atm": True},
        }
    ]
    (record,) = validate_feed_items(items)
    assert record.prices == {FuelType.PETROL: 140, FuelType.DIESEL: None}
    assert record.updated_at == datetime(2026, 1, 16, 4, 25)
    assert record.amenities == {"atm": True}

    with pytest.raises(NoRowsError):
        validate_feed_items([])

    with pytest.raises(ValidationError) as exc:
        validate_feed_items([{"stationId": "F2", "lat": "x"}])
    assert exc.value.details[0].startswith("Row 1:")
