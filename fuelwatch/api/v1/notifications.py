from __future__ import annotations

from enum import Enum

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fuelwatch.auth.deps import get_current_user_id
from fuelwatch.core.errors import ValidationError
from fuelwatch.db.models_notifications import UserDevice
from fuelwatch.db.session import get_db

router = APIRouter(prefix="/me", tags=["notifications"])


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class PushTokenIn(BaseModel):
    expoPushToken: str = Field(min_length=1)
    platform: Platform


@router.post("/push-tokens")
async def register_push_token(
    payload: PushTokenIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    token = payload.expoPushToken.strip()
    if not token:
        raise ValidationError("expoPushToken required")

    res = await db.execute(select(UserDevice).where(UserDevice.expo_push_token == token))
    existing = res.scalar_one_or_none()

    # a token follows whoever registered it last
    if existing:
        existing.user_id = user_id
        existing.platform = payload.platform.value
        existing.is_enabled = True
    else:
        db.add(UserDevice(user_id=user_id, expo_push_token=token, platform=payload.platform.value, is_enabled=True))

    await db.commit()
    return {"ok": True}
