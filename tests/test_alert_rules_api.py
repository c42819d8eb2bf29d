# tests/test_alert_rules_api.py
import pytest
from sqlalchemy import select

from fuelwatch.api.deps import get_geocoder
from fuelwatch.core.fuel import Coordinates
from fuelwatch.core.settings import settings
from fuelwatch.db.models.geocode import GeocodeCacheEntry
from fuelwatch.db.models_notifications import UserDevice
from fuelwatch.db.models_rules import AlertRule
from fuelwatch.main import app

CSV = "\n".join(
    [
        "station_id,name,brand,address,postcode,lat,lng,petrol_price,diesel_price,updated_at",
        "ST1,Victoria,Shell,1 Road,SW1A 1AA,51.505,-0.14,149.9,155.9,2026-01-16T05:25:00Z",
    ]
)


def _user(user_id: str = "user-1") -> dict:
    return {"X-User-Id": user_id}


async def _create(client, **overrides):
    payload = {"lat": 51.5, "lng": -0.14, "radiusMiles": 5, "fuelType": "petrol"}
    payload.update(overrides)
    return await client.post("/v1/me/alerts", json=payload, headers=_user())


@pytest.mark.anyio
async def test_create_list_and_delete(client):
    r = await _create(client)
    assert r.status_code == 200, r.text
    rule = r.json()
    assert rule["thresholdPpl"] == 2
    assert rule["enabled"] is True
    assert rule["baselinePrice"] is None

    r = await client.get("/v1/me/alerts", headers=_user())
    assert [x["id"] for x in r.json()] == [rule["id"]]

    # other users see nothing
    r = await client.get("/v1/me/alerts", headers=_user("user-2"))
    assert r.json() == []

    r = await client.delete(f"/v1/me/alerts/{rule['id']}", headers=_user("user-2"))
    assert r.status_code == 404

    r = await client.delete(f"/v1/me/alerts/{rule['id']}", headers=_user())
    assert r.status_code == 200
    assert r.json() == {"ok": True, "deletedRuleId": rule["id"]}


@pytest.mark.anyio
async def test_missing_identity_is_401(client):
    r = await client.get("/v1/me/alerts")
    assert r.status_code == 401


@pytest.mark.anyio
@pytest.mark.parametrize(
    "overrides",
    [
        {"lat": None, "lng": None},
        {"centerPostcode": "SW1A 1AA"},
        {"lng": None},
        {"radiusMiles": 0.5},
        {"radiusMiles": 26},
        {"thresholdPpl": 0},
        {"thresholdPpl": 101},
        {"fuelType": "lpg"},
        {"lat": 91},
    ],
)
async def test_invalid_rules_are_400(client, overrides):
    r = await _create(client, **overrides)
    assert r.status_code == 400, r.text


@pytest.mark.anyio
async def test_baseline_is_taken_at_creation(client):
    r = await client.post("/v1/admin/ingest-csv", content=CSV, headers={"X-Admin-Secret": settings.ADMIN_SECRET})
    assert r.status_code == 200, r.text

    r = await _create(client, lat=None, lng=None, centerPostcode="sw1a1aa")
    assert r.status_code == 200, r.text
    rule = r.json()
    assert rule["centerPostcode"] == "SW1A 1AA"
    assert rule["baselinePrice"] == 150


@pytest.mark.anyio
async def test_unknown_postcode_still_creates_rule(client):
    r = await _create(client, lat=None, lng=None, centerPostcode="ZZ9 9ZZ")
    assert r.status_code == 200, r.text
    assert r.json()["baselinePrice"] is None


@pytest.mark.anyio
async def test_changing_area_resets_trigger_state(client, session_factory):
    rule_id = (await _create(client)).json()["id"]
    async with session_factory() as db:
        rule = await db.get(AlertRule, rule_id)
        rule.last_notified_price = 140
        rule.recent_notifications = ["2026-01-16T05:00:00"]
        await db.commit()

    r = await client.patch(f"/v1/me/alerts/{rule_id}", json={"thresholdPpl": 5}, headers=_user())
    assert r.status_code == 200, r.text
    assert r.json()["lastNotifiedPrice"] == 140

    r = await client.patch(f"/v1/me/alerts/{rule_id}", json={"radiusMiles": 10}, headers=_user())
    assert r.status_code == 200, r.text
    assert r.json()["lastNotifiedPrice"] is None

    async with session_factory() as db:
        rule = await db.get(AlertRule, rule_id)
        assert rule.recent_notifications == []


@pytest.mark.anyio
async def test_patch_switches_location_form(client):
    rule_id = (await _create(client)).json()["id"]

    r = await client.patch(f"/v1/me/alerts/{rule_id}", json={"centerPostcode": "m11ae"}, headers=_user())
    assert r.status_code == 200, r.text
    data = r.json()
    assert data["centerPostcode"] == "M1 1AE"
    assert data["lat"] is None and data["lng"] is None

    r = await client.patch(
        f"/v1/me/alerts/{rule_id}", json={"centerPostcode": "M1 1AE", "lat": 1, "lng": 1}, headers=_user()
    )
    assert r.status_code == 400


@pytest.mark.anyio
async def test_register_push_token(client, db_session):
    body = {"expoPushToken": "ExponentPushToken[abc]", "platform": "ios"}
    r = await client.post("/v1/me/push-tokens", json=body, headers=_user())
    assert r.status_code == 200, r.text

    # re-registering moves the token to the new user
    r = await client.post("/v1/me/push-tokens", json=body, headers=_user("user-2"))
    assert r.status_code == 200, r.text

    devices = (await db_session.execute(select(UserDevice))).scalars().all()
    assert [(d.user_id, d.platform, d.is_enabled) for d in devices] == [("user-2", "ios", True)]

    r = await client.post("/v1/me/push-tokens", json={**body, "platform": "web"}, headers=_user())
    assert r.status_code == 400


class _RacingGeocoder:
    """Another request caches the postcode while this lookup is in flight."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def lookup(self, postcode: str) -> Coordinates:
        async with self.session_factory() as db:
            db.add(GeocodeCacheEntry(postcode_normalized=postcode, lat=53.4808, lng=-2.2426))
            await db.commit()
        return Coordinates(53.4808, -2.2426)


@pytest.mark.anyio
async def test_lost_geocode_race_keeps_patch_edits(client, session_factory):
    rule_id = (await _create(client)).json()["id"]
    app.dependency_overrides[get_geocoder] = lambda: _RacingGeocoder(session_factory)

    r = await client.patch(
        f"/v1/me/alerts/{rule_id}", json={"centerPostcode": "M1 1AE", "thresholdPpl": 7}, headers=_user()
    )
    assert r.status_code == 200, r.text
    assert r.json()["centerPostcode"] == "M1 1AE"
    assert r.json()["thresholdPpl"] == 7

    async with session_factory() as db:
        rule = await db.get(AlertRule, rule_id)
        assert rule.center_postcode == "M1 1AE"
        assert rule.threshold_ppl == 7
        assert rule.lat is None
