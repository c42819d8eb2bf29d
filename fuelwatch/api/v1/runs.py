from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from fuelwatch.auth.deps import require_admin_secret
from fuelwatch.db.session import get_db
from fuelwatch.runs.recorder import RunKind, list_runs, run_to_out

router = APIRouter(tags=["admin"])


@router.get("/admin/runs", dependencies=[Depends(require_admin_secret)])
async def get_runs(
    kind: RunKind = Query(RunKind.INGESTION),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    runs = await list_runs(db, kind, limit=limit)
    return {"kind": kind.value, "runs": [run_to_out(r) for r in runs]}
