from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from fuelwatch.api.deps import get_alert_evaluator, get_ingestion_service
from fuelwatch.auth.deps import require_admin_secret, require_cron_secret
from fuelwatch.core.locks import ALERT_LOCK, INGESTION_LOCK
from fuelwatch.ingestion.service import IngestionService
from fuelwatch.notifications.alert_scheduler import AlertEvaluator
from fuelwatch.runs.recorder import RunStatus

router = APIRouter(tags=["admin"])

_STATUS_CODES = {RunStatus.SUCCESS: 200, RunStatus.PARTIAL: 207, RunStatus.FAILED: 500}


def _respond(result) -> JSONResponse:
    code = 400 if getattr(result, "rejected", False) else _STATUS_CODES[result.status]
    return JSONResponse(status_code=code, content=result.to_dict())


# secrets are checked by the route dependencies, before the body is touched
@router.post("/admin/ingest-csv", dependencies=[Depends(require_admin_secret)])
async def ingest_csv(request: Request, svc: IngestionService = Depends(get_ingestion_service)):
    if INGESTION_LOCK.locked():
        raise HTTPException(409, detail="Ingestion already running")
    async with INGESTION_LOCK:
        body = (await request.body()).decode("utf-8-sig", errors="replace")
        result = await svc.run_csv(body)
    return _respond(result)


@router.post("/cron/fuel-sync", dependencies=[Depends(require_cron_secret)])
async def cron_fuel_sync(svc: IngestionService = Depends(get_ingestion_service)):
    if INGESTION_LOCK.locked():
        raise HTTPException(409, detail="Ingestion already running")
    async with INGESTION_LOCK:
        result = await svc.run_feed_sync()
    return _respond(result)


@router.post("/cron/alert-run", dependencies=[Depends(require_cron_secret)])
async def cron_alert_run(evaluator: AlertEvaluator = Depends(get_alert_evaluator)):
    if ALERT_LOCK.locked():
        raise HTTPException(409, detail="Alert pass already running")
    async with ALERT_LOCK:
        result = await evaluator.run_pass()
    return _respond(result)
