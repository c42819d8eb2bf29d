import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from fuelwatch.db.base import Base, now_utc


class AlertRule(Base):
    __tablename__ = "alert_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    # exactly one location form is set through the API
    center_postcode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)

    radius_miles: Mapped[float] = mapped_column(Float, nullable=False)
    fuel_type: Mapped[str] = mapped_column(String(16), nullable=False)
    threshold_ppl: Mapped[int] = mapped_column(Integer, default=2, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # trigger state, written only by the alert pass
    baseline_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_notified_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_suppressed_price: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recent_notifications: Mapped[list] = mapped_column(JSON, default=list, nullable=False)  # ISO timestamps

    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, onupdate=now_utc, nullable=False)

    __table_args__ = (Index("ix_alert_rules_user_enabled", "user_id", "enabled"),)

    def reset_trigger_state(self) -> None:
        self.baseline_price = None
        self.last_triggered_at = None
        self.last_notified_price = None
        self.last_suppressed_price = None
        self.recent_notifications = []
