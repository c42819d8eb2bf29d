"""
Run Recorder: one immutable audit row per ingestion or alert pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fuelwatch.db.models.runs import AlertRun, IngestionRun

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class RunKind(str, Enum):
    INGESTION = "ingestion"
    ALERT = "alert"


def pass_status(error_count: int, succeeded: int) -> RunStatus:
    if error_count == 0:
        return RunStatus.SUCCESS
    if succeeded > 0:
        return RunStatus.PARTIAL
    return RunStatus.FAILED


@dataclass
class IngestionResult:
    source: str
    started_at: datetime
    finished_at: datetime
    status: RunStatus
    stations_processed: int = 0
    prices_updated: int = 0
    errors: list[str] = field(default_factory=list)
    rejected: bool = False  # batch failed validation, nothing was written

    def counts(self) -> dict:
        return {
            "stationsProcessed": self.stations_processed,
            "pricesUpdated": self.prices_updated,
            "errors": len(self.errors),
        }

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            **self.counts(),
            "errorMessages": list(self.errors),
        }


@dataclass
class AlertRunResult:
    started_at: datetime
    finished_at: datetime
    status: RunStatus
    rules_total: int = 0
    evaluated: int = 0
    notified: int = 0
    suppressed: int = 0
    skipped: list[str] = field(default_factory=list)  # rule ids
    errors: list[str] = field(default_factory=list)

    def counts(self) -> dict:
        return {
            "rulesTotal": self.rules_total,
            "evaluated": self.evaluated,
            "notified": self.notified,
            "suppressed": self.suppressed,
            "skipped": len(self.skipped),
            "errors": len(self.errors),
        }

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            **self.counts(),
            "errorMessages": list(self.errors),
        }


async def record_ingestion_run(db: AsyncSession, result: IngestionResult) -> IngestionRun:
    run = IngestionRun(
        source=result.source,
        started_at=result.started_at,
        finished_at=result.finished_at,
        status=result.status.value,
        counts=result.counts(),
        error_summary={"errors": list(result.errors)} if result.errors else None,
    )
    db.add(run)
    await db.commit()
    logger.info(
        "ingestion run recorded",
        extra={"run_id": run.id, "status": run.status, "source": run.source, **run.counts},
    )
    return run


async def record_alert_run(db: AsyncSession, result: AlertRunResult) -> AlertRun:
    summary: dict = {}
    if result.errors:
        summary["errors"] = list(result.errors)
    if result.skipped:
        summary["skipped"] = list(result.skipped)

    run = AlertRun(
        started_at=result.started_at,
        finished_at=result.finished_at,
        status=result.status.value,
        counts=result.counts(),
        error_summary=summary or None,
    )
    db.add(run)
    await db.commit()
    logger.info("alert run recorded", extra={"run_id": run.id, "status": run.status, **run.counts})
    return run


async def list_runs(db: AsyncSession, kind: RunKind, limit: int = 20) -> list[IngestionRun] | list[AlertRun]:
    model = IngestionRun if kind == RunKind.INGESTION else AlertRun
    q = await db.execute(select(model).order_by(model.started_at.desc(), model.id.desc()).limit(limit))
    return list(q.scalars().all())


def run_to_out(run: IngestionRun | AlertRun) -> dict:
    out = {
        "id": run.id,
        "startedAt": run.started_at.isoformat(),
        "finishedAt": run.finished_at.isoformat(),
        "status": run.status,
        "counts": run.counts,
        "errorSummary": run.error_summary,
    }
    if isinstance(run, IngestionRun):
        out["source"] = run.source
    return out
