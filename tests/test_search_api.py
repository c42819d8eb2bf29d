# tests/test_search_api.py
import pytest

from fuelwatch.core.settings import settings

CSV = "\n".join(
    [
        "station_id,name,brand,address,postcode,lat,lng,petrol_price,diesel_price,updated_at,amenities",
        'ST1,Victoria,Shell,1 Road,SW1A 1AA,51.505,-0.14,149.9,155.9,2026-01-16T05:25:00Z,"{""shop"": true}"',
        "ST2,Pimlico,BP,2 Street,SW1V 1AA,51.49,-0.14,145.9,null,2026-01-16T05:25:00Z,",
        "ST3,Leeds,Esso,3 Lane,LS1 1AA,53.80,-1.55,120.9,130.9,2026-01-16T05:25:00Z,",
    ]
)


@pytest.fixture()
async def seeded(client):
    r = await client.post("/v1/admin/ingest-csv", content=CSV, headers={"X-Admin-Secret": settings.ADMIN_SECRET})
    assert r.status_code == 200, r.text


@pytest.mark.anyio
async def test_search_by_coordinates(client, seeded):
    r = await client.get(
        "/v1/search/cheapest", params={"lat": 51.5, "lng": -0.14, "radiusMiles": 5, "fuelType": "petrol"}
    )
    assert r.status_code == 200, r.text
    results = r.json()["results"]
    assert [x["stationId"] for x in results] == ["ST2", "ST1"]
    assert results[0]["pricePpl"] == 146
    assert results[0]["distanceMiles"] == 0.69


@pytest.mark.anyio
async def test_search_by_postcode_excludes_missing_fuel(client, seeded):
    r = await client.get(
        "/v1/search/cheapest", params={"postcode": "sw1a 1aa", "radiusMiles": 5, "fuelType": "diesel"}
    )
    assert r.status_code == 200, r.text
    assert [x["stationId"] for x in r.json()["results"]] == ["ST1"]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "params",
    [
        {"radiusMiles": 5, "fuelType": "petrol"},
        {"postcode": "SW1A 1AA", "lat": 51.5, "lng": -0.14, "radiusMiles": 5, "fuelType": "petrol"},
        {"lat": 51.5, "radiusMiles": 5, "fuelType": "petrol"},
        {"lat": 51.5, "lng": -0.14, "radiusMiles": 30, "fuelType": "petrol"},
        {"lat": 51.5, "lng": -0.14, "radiusMiles": 5, "fuelType": "hydrogen"},
    ],
)
async def test_bad_search_params_are_400(client, params):
    r = await client.get("/v1/search/cheapest", params=params)
    assert r.status_code == 400, r.text


@pytest.mark.anyio
async def test_unknown_postcode_is_422(client):
    r = await client.get("/v1/search/cheapest", params={"postcode": "ZZ9 9ZZ", "radiusMiles": 5, "fuelType": "petrol"})
    assert r.status_code == 422, r.text


@pytest.mark.anyio
async def test_geocoder_outage_is_503(client, fake_geocoder):
    fake_geocoder.outage = True
    r = await client.get("/v1/search/cheapest", params={"postcode": "M1 1AE", "radiusMiles": 5, "fuelType": "petrol"})
    assert r.status_code == 503, r.text


@pytest.mark.anyio
async def test_station_detail_and_history(client, seeded):
    r = await client.get("/v1/stations/ST1")
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["amenities"] == {"shop": True}
    assert data["prices"]["petrol"]["pricePpl"] == 150

    r = await client.get("/v1/stations/ST1/history", params={"fuelType": "petrol"})
    assert r.status_code == 200, r.text
    assert [h["pricePpl"] for h in r.json()["history"]] == [150]

    r = await client.get("/v1/stations/NOPE")
    assert r.status_code == 404
