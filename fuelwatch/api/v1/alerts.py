# fuelwatch/api/v1/alerts.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fuelwatch.api.deps import get_radius_search
from fuelwatch.auth.deps import get_current_user_id
from fuelwatch.core.errors import ResolutionError, ValidationError
from fuelwatch.core.fuel import FuelType
from fuelwatch.db.models_rules import AlertRule
from fuelwatch.db.session import get_db, get_session_factory
from fuelwatch.geocoding.cache import normalize_postcode
from fuelwatch.notifications.alert_scheduler import cheapest_price
from fuelwatch.search.service import RadiusSearch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/me/alerts", tags=["alerts"])


# -------------------------
# Schemas
# -------------------------
class AlertRuleCreateIn(BaseModel):
    centerPostcode: str | None = None
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    radiusMiles: float = Field(ge=1, le=25)
    fuelType: FuelType
    thresholdPpl: int = Field(default=2, ge=1, le=100)
    enabled: bool = True


class AlertRuleUpdateIn(BaseModel):
    centerPostcode: str | None = None
    lat: float | None = Field(default=None, ge=-90, le=90)
    lng: float | None = Field(default=None, ge=-180, le=180)
    radiusMiles: float | None = Field(default=None, ge=1, le=25)
    fuelType: FuelType | None = None
    thresholdPpl: int | None = Field(default=None, ge=1, le=100)
    enabled: bool | None = None


# -------------------------
# Helpers
# -------------------------
def _location(centerPostcode: str | None, lat: float | None, lng: float | None) -> tuple[str | None, float | None, float | None]:
    """Exactly one of postcode or a full lat/lng pair."""
    postcode = normalize_postcode(centerPostcode) if centerPostcode is not None else None
    if centerPostcode is not None and not postcode:
        raise ValidationError("centerPostcode must not be empty")
    if (lat is None) != (lng is None):
        raise ValidationError("Both lat and lng are required")
    if postcode and lat is not None:
        raise ValidationError("Provide either centerPostcode or lat/lng, not both")
    if not postcode and lat is None:
        raise ValidationError("Either centerPostcode or lat/lng coordinates must be provided")
    return postcode, lat, lng


async def _set_baseline(session_factory: async_sessionmaker[AsyncSession], rule: AlertRule, search: RadiusSearch) -> None:
    """
    Best effort: a rule without a baseline picks one up on its first pass.

    The geocode cache commits and rolls back on its own session, away from the
    caller's pending rule edits.
    """
    try:
        async with session_factory() as cache_db:
            cheapest = await cheapest_price(cache_db, rule, search)
    except (ResolutionError, ValidationError) as e:
        logger.info("no baseline for new alert rule: %s", e, extra={"user_id": rule.user_id})
        return
    rule.baseline_price = cheapest.price_ppl if cheapest else None


async def _get_rule_or_404(db: AsyncSession, *, user_id: str, rule_id: str) -> AlertRule:
    q = await db.execute(select(AlertRule).where(AlertRule.id == rule_id, AlertRule.user_id == user_id))
    rule = q.scalar_one_or_none()
    if not rule:
        raise HTTPException(404, detail="Alert rule not found")
    return rule


def _rule_to_out(rule: AlertRule) -> dict:
    return {
        "id": rule.id,
        "centerPostcode": rule.center_postcode,
        "lat": rule.lat,
        "lng": rule.lng,
        "radiusMiles": rule.radius_miles,
        "fuelType": rule.fuel_type,
        "thresholdPpl": rule.threshold_ppl,
        "enabled": rule.enabled,
        "baselinePrice": rule.baseline_price,
        "lastNotifiedPrice": rule.last_notified_price,
        "lastTriggeredAt": rule.last_triggered_at.isoformat() if rule.last_triggered_at else None,
        "createdAt": rule.created_at.isoformat(),
        "updatedAt": rule.updated_at.isoformat(),
    }


# -------------------------
# Create
# -------------------------
@router.post("")
async def create_alert(
    payload: AlertRuleCreateIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    search: RadiusSearch = Depends(get_radius_search),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    postcode, lat, lng = _location(payload.centerPostcode, payload.lat, payload.lng)

    rule = AlertRule(
        user_id=user_id,
        center_postcode=postcode,
        lat=lat,
        lng=lng,
        radius_miles=payload.radiusMiles,
        fuel_type=payload.fuelType.value,
        threshold_ppl=payload.thresholdPpl,
        enabled=payload.enabled,
        recent_notifications=[],
    )
    await _set_baseline(session_factory, rule, search)

    db.add(rule)
    await db.commit()
    await db.refresh(rule)
    return _rule_to_out(rule)


# -------------------------
# List
# -------------------------
@router.get("")
async def list_alerts(
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    q = await db.execute(
        select(AlertRule).where(AlertRule.user_id == user_id).order_by(AlertRule.created_at.desc())
    )
    return [_rule_to_out(r) for r in q.scalars().all()]


# -------------------------
# Update
# -------------------------
@router.patch("/{rule_id}")
async def update_alert(
    rule_id: str,
    payload: AlertRuleUpdateIn,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
    search: RadiusSearch = Depends(get_radius_search),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    rule = await _get_rule_or_404(db, user_id=user_id, rule_id=rule_id)

    area_changed = False
    if payload.centerPostcode is not None or payload.lat is not None or payload.lng is not None:
        postcode, lat, lng = _location(payload.centerPostcode, payload.lat, payload.lng)
        if (postcode, lat, lng) != (rule.center_postcode, rule.lat, rule.lng):
            rule.center_postcode, rule.lat, rule.lng = postcode, lat, lng
            area_changed = True

    if payload.radiusMiles is not None and payload.radiusMiles != rule.radius_miles:
        rule.radius_miles = payload.radiusMiles
        area_changed = True

    if payload.fuelType is not None and payload.fuelType.value != rule.fuel_type:
        rule.fuel_type = payload.fuelType.value
        area_changed = True

    if payload.thresholdPpl is not None:
        rule.threshold_ppl = payload.thresholdPpl

    if payload.enabled is not None:
        rule.enabled = payload.enabled

    if area_changed:
        # prices from the old area say nothing about the new one
        rule.reset_trigger_state()
        await _set_baseline(session_factory, rule, search)

    await db.commit()
    await db.refresh(rule)
    return _rule_to_out(rule)


# -------------------------
# Delete
# -------------------------
@router.delete("/{rule_id}")
async def delete_alert(
    rule_id: str,
    db: AsyncSession = Depends(get_db),
    user_id: str = Depends(get_current_user_id),
):
    rule = await _get_rule_or_404(db, user_id=user_id, rule_id=rule_id)
    await db.delete(rule)
    await db.commit()
    return {"ok": True, "deletedRuleId": rule_id}
