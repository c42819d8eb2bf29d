"""
Write-through postcode → coordinates cache.

Hits refresh ``last_used_at`` so the table can be trimmed least-recently-used
first when ``GEOCODE_CACHE_MAX_ENTRIES`` is set. Failed lookups are never stored.
"""

import logging
import re
from typing import Protocol

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fuelwatch.core.errors import ResolutionError
from fuelwatch.core.fuel import Coordinates
from fuelwatch.core.settings import settings
from fuelwatch.db.base import now_utc
from fuelwatch.db.models.geocode import GeocodeCacheEntry
from fuelwatch.geocoding.client import PostcodeGeocoder

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


class Geocoder(Protocol):
    async def lookup(self, postcode: str) -> Coordinates: ...


def normalize_postcode(postcode: str) -> str:
    """
    Upper-case, drop all whitespace, then put one space before the inward code.

    >>> normalize_postcode(" sw1a  1aa ")
    'SW1A 1AA'
    """
    cleaned = _WHITESPACE.sub("", postcode or "").upper()
    if len(cleaned) < 5:
        return cleaned
    return f"{cleaned[:-3]} {cleaned[-3:]}"


class GeocodeCache:
    def __init__(self, geocoder: Geocoder | None = None, max_entries: int | None = None) -> None:
        self.geocoder = geocoder or PostcodeGeocoder()
        self.max_entries = settings.GEOCODE_CACHE_MAX_ENTRIES if max_entries is None else max_entries

    async def _get(self, db: AsyncSession, key: str) -> GeocodeCacheEntry | None:
        q = await db.execute(select(GeocodeCacheEntry).where(GeocodeCacheEntry.postcode_normalized == key))
        return q.scalar_one_or_none()

    async def resolve(self, db: AsyncSession, postcode: str) -> Coordinates:
        key = normalize_postcode(postcode)
        if not key:
            raise ResolutionError(postcode or "", "Postcode is empty")

        entry = await self._get(db, key)
        if entry:
            entry.last_used_at = now_utc()
            await db.commit()
            return Coordinates(lat=entry.lat, lng=entry.lng)

        coords = await self.geocoder.lookup(key)

        db.add(GeocodeCacheEntry(postcode_normalized=key, lat=coords.lat, lng=coords.lng))
        try:
            await db.commit()
        except IntegrityError:
            # another request cached it first
            await db.rollback()
            entry = await self._get(db, key)
            if entry:
                return Coordinates(lat=entry.lat, lng=entry.lng)
            raise

        logger.debug("geocode cached", extra={"postcode": key})
        if self.max_entries > 0:
            await self._evict(db)
        return coords

    async def _evict(self, db: AsyncSession) -> None:
        total = (await db.execute(select(func.count(GeocodeCacheEntry.id)))).scalar_one()
        excess = total - self.max_entries
        if excess <= 0:
            return

        oldest = (
            select(GeocodeCacheEntry.id)
            .order_by(GeocodeCacheEntry.last_used_at.asc(), GeocodeCacheEntry.id.asc())
            .limit(excess)
        )
        ids = list((await db.execute(oldest)).scalars().all())
        await db.execute(delete(GeocodeCacheEntry).where(GeocodeCacheEntry.id.in_(ids)))
        await db.commit()
        logger.info("geocode cache evicted %d entries", len(ids))
