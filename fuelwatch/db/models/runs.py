from datetime import datetime

from sqlalchemy import DateTime, Integer, String, event
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from fuelwatch.db.base import Base


class IngestionRun(Base):
    __tablename__ = "ingestion_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(16), nullable=False)  # "csv" / "feed"
    started_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    counts: Mapped[dict] = mapped_column(JSON, nullable=False)
    error_summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)


class AlertRun(Base):
    __tablename__ = "alert_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    counts: Mapped[dict] = mapped_column(JSON, nullable=False)
    error_summary: Mapped[dict | None] = mapped_column(JSON, nullable=True)


@event.listens_for(IngestionRun, "before_update")
@event.listens_for(AlertRun, "before_update")
def _refuse_update(mapper, connection, target):
    raise RuntimeError(f"{type(target).__name__} rows are append-only")
