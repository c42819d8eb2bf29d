from datetime import datetime

from sqlalchemy import DateTime, Float, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from fuelwatch.db.base import Base, now_utc


class GeocodeCacheEntry(Base):
    __tablename__ = "geocode_cache"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    postcode_normalized: Mapped[str] = mapped_column(String(16), unique=True, index=True, nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, index=True, nullable=False)
