from fastapi import APIRouter

from fuelwatch.api.v1.admin_ingest import router as admin_ingest
from fuelwatch.api.v1.alerts import router as alerts_router
from fuelwatch.api.v1.health import router as health
from fuelwatch.api.v1.notifications import router as notifications_router
from fuelwatch.api.v1.runs import router as runs_router
from fuelwatch.api.v1.search import router as search_router

api = APIRouter()

api.include_router(health, prefix="/v1")
api.include_router(admin_ingest, prefix="/v1")
api.include_router(runs_router, prefix="/v1")
api.include_router(search_router, prefix="/v1")
api.include_router(alerts_router, prefix="/v1")
api.include_router(notifications_router, prefix="/v1")
