from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fuelwatch.api.deps import get_radius_search
from fuelwatch.core.errors import ValidationError
from fuelwatch.core.fuel import Coordinates, FuelType
from fuelwatch.db.session import get_db
from fuelwatch.search.service import RadiusSearch, get_price_history, get_station_detail

router = APIRouter(tags=["search"])


@router.get("/search/cheapest")
async def search_cheapest(
    radiusMiles: float = Query(..., ge=1, le=25),
    fuelType: FuelType = Query(...),
    postcode: str | None = None,
    lat: float | None = Query(None, ge=-90, le=90),
    lng: float | None = Query(None, ge=-180, le=180),
    limit: int = Query(10, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    search: RadiusSearch = Depends(get_radius_search),
):
    has_postcode = bool(postcode and postcode.strip())
    has_coords = lat is not None or lng is not None

    if has_postcode and has_coords:
        raise ValidationError("Provide either postcode or lat/lng, not both")
    if not has_postcode and not has_coords:
        raise ValidationError("Either postcode or lat/lng coordinates must be provided")

    if has_postcode:
        results = await search.search_by_postcode(db, postcode, radiusMiles, fuelType, limit=limit)
    else:
        if lat is None or lng is None:
            raise ValidationError("Both lat and lng are required")
        results = await search.search_by_coordinates(db, Coordinates(lat, lng), radiusMiles, fuelType, limit=limit)

    return {"results": [r.to_dict() for r in results]}


@router.get("/stations/{station_id}")
async def station_detail(station_id: str, db: AsyncSession = Depends(get_db)):
    out = await get_station_detail(db, station_id)
    if out is None:
        raise HTTPException(404, detail="Station not found")
    return out


@router.get("/stations/{station_id}/history")
async def station_history(
    station_id: str,
    fuelType: FuelType = Query(...),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    rows = await get_price_history(db, station_id, fuelType, limit=limit)
    if rows is None:
        raise HTTPException(404, detail="Station not found")
    return {"stationId": station_id, "fuelType": fuelType.value, "history": rows}
