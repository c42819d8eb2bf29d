# tests/test_push_service.py
import json

import httpx
import pytest
from sqlalchemy import select

from fuelwatch.core.errors import DispatchError
from fuelwatch.db.models_notifications import UserDevice
from fuelwatch.notifications.evaluation import AlertNotification
from fuelwatch.services.push_service import ExpoPushDispatcher

NOTIFICATION = AlertNotification(
    title="Fuel Price Drop Alert!",
    body="Shell Victoria now at £1.47/L (down 3p)",
    data={"stationId": "S1", "newPrice": 147, "priceDrop": 3},
)


async def _add_devices(db, *tokens, user_id="user-1"):
    for t in tokens:
        db.add(UserDevice(user_id=user_id, expo_push_token=t, platform="ios", is_enabled=True))
    await db.commit()


def _dispatcher(handler) -> ExpoPushDispatcher:
    return ExpoPushDispatcher(url="https://push.test/send", timeout=1, transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_sends_one_message_per_token(db_session):
    await _add_devices(db_session, "ExponentPushToken[a]", "ExponentPushToken[b]")
    seen = []

    def handler(request):
        msgs = json.loads(request.content)
        seen.extend(msgs)
        return httpx.Response(200, json={"data": [{"status": "ok", "id": str(i)} for i in range(len(msgs))]})

    accepted = await _dispatcher(handler).dispatch(db_session, "user-1", NOTIFICATION)

    assert accepted == 2
    assert [m["to"] for m in seen] == ["ExponentPushToken[a]", "ExponentPushToken[b]"]
    assert seen[0]["title"] == NOTIFICATION.title
    assert seen[0]["data"] == NOTIFICATION.data


@pytest.mark.anyio
async def test_no_tokens_is_a_dispatch_error(db_session):
    with pytest.raises(DispatchError):
        await _dispatcher(lambda r: httpx.Response(200, json={"data": []})).dispatch(db_session, "nobody", NOTIFICATION)


@pytest.mark.anyio
async def test_unregistered_device_is_disabled(db_session):
    await _add_devices(db_session, "ExponentPushToken[gone]", "ExponentPushToken[ok]")

    def handler(request):
        return httpx.Response(
            200,
            json={
                "data": [
                    {"status": "error", "message": "gone", "details": {"error": "DeviceNotRegistered"}},
                    {"status": "ok", "id": "1"},
                ]
            },
        )

    assert await _dispatcher(handler).dispatch(db_session, "user-1", NOTIFICATION) == 1

    gone = (
        await db_session.execute(select(UserDevice).where(UserDevice.expo_push_token == "ExponentPushToken[gone]"))
    ).scalar_one()
    assert gone.is_enabled is False


@pytest.mark.anyio
async def test_all_tickets_failing_raises(db_session):
    await _add_devices(db_session, "ExponentPushToken[a]")

    def handler(request):
        return httpx.Response(200, json={"data": [{"status": "error", "message": "MessageRateExceeded"}]})

    with pytest.raises(DispatchError):
        await _dispatcher(handler).dispatch(db_session, "user-1", NOTIFICATION)


@pytest.mark.anyio
async def test_timeout_is_retryable(db_session):
    await _add_devices(db_session, "ExponentPushToken[a]")

    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    with pytest.raises(DispatchError) as exc:
        await _dispatcher(handler).dispatch(db_session, "user-1", NOTIFICATION)
    assert exc.value.retryable is True


@pytest.mark.anyio
async def test_failed_later_chunk_keeps_earlier_sends(db_session):
    await _add_devices(db_session, *(f"ExponentPushToken[{i}]" for i in range(101)))
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) > 1:
            return httpx.Response(503)
        msgs = json.loads(request.content)
        return httpx.Response(200, json={"data": [{"status": "ok", "id": str(i)} for i in range(len(msgs))]})

    assert await _dispatcher(handler).dispatch(db_session, "user-1", NOTIFICATION) == 100
    assert len(calls) == 2


@pytest.mark.anyio
async def test_failed_first_chunk_raises(db_session):
    await _add_devices(db_session, "ExponentPushToken[a]")

    with pytest.raises(DispatchError) as exc:
        await _dispatcher(lambda r: httpx.Response(503)).dispatch(db_session, "user-1", NOTIFICATION)
    assert exc.value.retryable is True
