# fuelwatch/services/push_service.py
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fuelwatch.core.errors import DispatchError
from fuelwatch.core.settings import settings
from fuelwatch.db.models_notifications import UserDevice

if TYPE_CHECKING:
    from fuelwatch.notifications.evaluation import AlertNotification

logger = logging.getLogger(__name__)

CHUNK_SIZE = 100  # Expo accepts at most 100 messages per request


def _is_expo_token(t: str) -> bool:
    return isinstance(t, str) and (t.startswith("ExponentPushToken[") or t.startswith("ExpoPushToken["))


def _build_expo_message(
    token: str,
    title: str,
    body: str,
    data: Dict[str, Any],
    *,
    channel_id: str = "alerts",  # must match the Android channel created by the app
    ttl_seconds: int = 60 * 30,
) -> Dict[str, Any]:
    return {
        "to": token,
        "title": title,
        "body": body,
        "data": data,
        "sound": "default",
        "priority": "high",
        "ttl": ttl_seconds,
        "channelId": channel_id,
    }


class ExpoPushDispatcher:
    """
    Delivers alert notifications to every enabled Expo token of a user.

    Raises DispatchError when nothing could be handed to Expo, so the caller
    leaves its trigger state alone and tries again next pass.
    """

    def __init__(
        self,
        url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url or settings.EXPO_PUSH_URL
        self.timeout = timeout if timeout is not None else settings.PUSH_TIMEOUT_SECONDS
        self.transport = transport

    async def _post_chunk(self, client: httpx.AsyncClient, chunk: List[Dict[str, Any]]) -> List[dict]:
        try:
            r = await client.post(self.url, json=chunk)
        except httpx.TimeoutException:
            raise DispatchError("Push service timed out")
        except httpx.TransportError as e:
            raise DispatchError(f"Push service unreachable: {e}")

        if r.status_code != 200:
            raise DispatchError(
                f"Push service error: {r.status_code}",
                retryable=r.status_code == 429 or r.status_code >= 500,
            )
        try:
            tickets = r.json().get("data") or []
        except (ValueError, AttributeError):
            raise DispatchError("Push service returned an invalid response")
        return tickets if isinstance(tickets, list) else []

    async def dispatch(self, db: AsyncSession, user_id: str, notification: AlertNotification) -> int:
        """Returns the number of accepted tickets."""
        res = await db.execute(
            select(UserDevice).where(UserDevice.user_id == user_id, UserDevice.is_enabled == True)  # noqa
        )
        devices = [d for d in res.scalars().all() if _is_expo_token(d.expo_push_token)]
        if not devices:
            raise DispatchError(f"No push tokens registered for user {user_id}", retryable=False)

        messages = [
            _build_expo_message(d.expo_push_token, notification.title, notification.body, notification.data)
            for d in devices
        ]

        accepted = 0
        failures: List[str] = []
        unregistered: List[UserDevice] = []

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for i in range(0, len(messages), CHUNK_SIZE):
                chunk = messages[i : i + CHUNK_SIZE]
                try:
                    tickets = await self._post_chunk(client, chunk)
                except DispatchError as e:
                    if not accepted:
                        raise
                    failures.append(str(e))
                    break
                for device, ticket in zip(devices[i : i + CHUNK_SIZE], tickets):
                    if ticket.get("status") == "ok":
                        accepted += 1
                        continue
                    detail = (ticket.get("details") or {}).get("error")
                    failures.append(detail or ticket.get("message") or "unknown error")
                    if detail == "DeviceNotRegistered":
                        unregistered.append(device)

        if unregistered:
            for device in unregistered:
                device.is_enabled = False
            await db.commit()
            logger.info("disabled %d unregistered push tokens", len(unregistered), extra={"user_id": user_id})

        if accepted == 0:
            raise DispatchError(f"All push tickets failed: {', '.join(failures) or 'no tickets returned'}")
        if failures:
            logger.warning("some push tickets failed: %s", failures, extra={"user_id": user_id})
        return accepted
