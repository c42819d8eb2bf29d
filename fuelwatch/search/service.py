"""
Radius search over current price snapshots.

Distances are great-circle (haversine) miles. The SQL bounding box only narrows
candidates; the exact radius check happens in Python.
"""

import math
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fuelwatch.core.errors import ValidationError
from fuelwatch.core.fuel import Coordinates, FuelType
from fuelwatch.db.models.stations import PriceHistoryEntry, PriceSnapshot, Station
from fuelwatch.geocoding.cache import GeocodeCache

EARTH_RADIUS_MILES = 3959.0

# widens the prefilter box slightly so float error never drops an edge station
_BOX_SLACK = 1.01


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lng2 - lng1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(a)))


def bounding_box(lat: float, lng: float, radius_miles: float):
    """
    (min_lat, max_lat, min_lng, max_lng). The longitude bounds are None when the
    box touches a pole or crosses the antimeridian.
    """
    dlat = math.degrees(radius_miles / EARTH_RADIUS_MILES) * _BOX_SLACK
    min_lat, max_lat = lat - dlat, lat + dlat
    if min_lat <= -90 or max_lat >= 90:
        return max(min_lat, -90.0), min(max_lat, 90.0), None, None

    widest = math.cos(math.radians(max(abs(min_lat), abs(max_lat))))
    dlng = math.degrees(radius_miles / (EARTH_RADIUS_MILES * widest)) * _BOX_SLACK
    if lng - dlng < -180 or lng + dlng > 180:
        return min_lat, max_lat, None, None
    return min_lat, max_lat, lng - dlng, lng + dlng


@dataclass(frozen=True)
class StationResult:
    station_id: str
    name: str
    brand: str
    address: str
    postcode: str
    lat: float
    lng: float
    price_ppl: int
    distance_miles: float
    last_updated: datetime

    def to_dict(self) -> dict:
        return {
            "stationId": self.station_id,
            "name": self.name,
            "brand": self.brand,
            "address": self.address,
            "postcode": self.postcode,
            "lat": self.lat,
            "lng": self.lng,
            "pricePpl": self.price_ppl,
            "distanceMiles": round(self.distance_miles, 2),
            "lastUpdated": self.last_updated.isoformat(),
        }


def _check_origin(lat: float, lng: float, radius_miles: float) -> None:
    problems = []
    if not (math.isfinite(lat) and -90 <= lat <= 90):
        problems.append("lat: must be between -90 and 90")
    if not (math.isfinite(lng) and -180 <= lng <= 180):
        problems.append("lng: must be between -180 and 180")
    if not (math.isfinite(radius_miles) and radius_miles > 0):
        problems.append("radiusMiles: must be a positive number")
    if problems:
        raise ValidationError("Invalid search parameters", details=problems)


class RadiusSearch:
    def __init__(self, geocode_cache: GeocodeCache | None = None) -> None:
        self.geocode_cache = geocode_cache or GeocodeCache()

    async def search_by_coordinates(
        self,
        db: AsyncSession,
        origin: Coordinates,
        radius_miles: float,
        fuel_type: FuelType,
        limit: int | None = None,
    ) -> list[StationResult]:
        _check_origin(origin.lat, origin.lng, radius_miles)
        fuel_type = FuelType(fuel_type)

        min_lat, max_lat, min_lng, max_lng = bounding_box(origin.lat, origin.lng, radius_miles)
        stmt = (
            select(Station, PriceSnapshot)
            .join(PriceSnapshot, PriceSnapshot.station_pk == Station.id)
            .where(
                PriceSnapshot.fuel_type == fuel_type.value,
                PriceSnapshot.price_ppl.is_not(None),
                Station.lat.between(min_lat, max_lat),
            )
        )
        if min_lng is not None:
            stmt = stmt.where(Station.lng.between(min_lng, max_lng))

        rows = (await db.execute(stmt)).all()

        results = []
        for station, snap in rows:
            d = haversine_miles(origin.lat, origin.lng, station.lat, station.lng)
            if d > radius_miles:
                continue
            results.append(
                StationResult(
                    station_id=station.station_id,
                    name=station.name,
                    brand=station.brand,
                    address=station.address,
                    postcode=station.postcode,
                    lat=station.lat,
                    lng=station.lng,
                    price_ppl=snap.price_ppl,
                    distance_miles=d,
                    last_updated=snap.source_updated_at,
                )
            )

        results.sort(key=lambda r: (r.price_ppl, r.distance_miles, r.station_id))
        if limit is not None:
            results = results[: max(0, limit)]
        return results

    async def search_by_postcode(
        self,
        db: AsyncSession,
        postcode: str,
        radius_miles: float,
        fuel_type: FuelType,
        limit: int | None = None,
    ) -> list[StationResult]:
        origin = await self.geocode_cache.resolve(db, postcode)
        return await self.search_by_coordinates(db, origin, radius_miles, fuel_type, limit=limit)


async def get_station_detail(db: AsyncSession, station_id: str) -> dict | None:
    q = await db.execute(select(Station).where(Station.station_id == station_id))
    station = q.scalar_one_or_none()
    if station is None:
        return None

    q = await db.execute(select(PriceSnapshot).where(PriceSnapshot.station_pk == station.id))
    snaps = {s.fuel_type: s for s in q.scalars().all()}

    prices = {}
    for fuel in FuelType:
        snap = snaps.get(fuel.value)
        prices[fuel.value] = {
            "pricePpl": snap.price_ppl if snap else None,
            "lastUpdated": snap.source_updated_at.isoformat() if snap else None,
        }

    return {
        "stationId": station.station_id,
        "name": station.name,
        "brand": station.brand,
        "address": station.address,
        "postcode": station.postcode,
        "lat": station.lat,
        "lng": station.lng,
        "prices": prices,
        "amenities": station.amenities,
        "openingHours": station.opening_hours,
        "updatedAt": station.updated_at_source.isoformat(),
    }


async def get_price_history(
    db: AsyncSession, station_id: str, fuel_type: FuelType, limit: int = 100
) -> list[dict] | None:
    """Newest first. None when the station is unknown."""
    q = await db.execute(select(Station.id).where(Station.station_id == station_id))
    station_pk = q.scalar_one_or_none()
    if station_pk is None:
        return None

    q = await db.execute(
        select(PriceHistoryEntry)
        .where(PriceHistoryEntry.station_pk == station_pk, PriceHistoryEntry.fuel_type == FuelType(fuel_type).value)
        .order_by(PriceHistoryEntry.id.desc())
        .limit(limit)
    )
    return [
        {
            "pricePpl": h.price_ppl,
            "observedAt": h.observed_at.isoformat(),
            "ingestedAt": h.ingested_at.isoformat(),
        }
        for h in q.scalars().all()
    ]
