from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from fuelwatch.db.base import Base, now_utc


class Station(Base):
    __tablename__ = "stations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    station_id: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)  # source id

    brand: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    address: Mapped[str] = mapped_column(String, nullable=False)
    postcode: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)

    amenities: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    opening_hours: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    updated_at_source: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, onupdate=now_utc, nullable=False)

    snapshots = relationship("PriceSnapshot", back_populates="station", cascade="all, delete-orphan")

    __table_args__ = (Index("ix_stations_lat_lng", "lat", "lng"),)


class PriceSnapshot(Base):
    """
    Latest price per (station, fuel type).
    price_ppl is NULL when the feed reports the fuel as absent.
    """
    __tablename__ = "price_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    station_pk: Mapped[int] = mapped_column(Integer, ForeignKey("stations.id"), nullable=False)
    fuel_type: Mapped[str] = mapped_column(String(16), nullable=False)

    price_ppl: Mapped[int | None] = mapped_column(Integer, nullable=True)
    source_updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, nullable=False)

    station = relationship("Station", back_populates="snapshots")

    __table_args__ = (UniqueConstraint("station_pk", "fuel_type", name="uq_snapshot_station_fuel"),)


class PriceHistoryEntry(Base):
    """Append-only. One row per observed change."""
    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    station_pk: Mapped[int] = mapped_column(Integer, ForeignKey("stations.id"), nullable=False)
    fuel_type: Mapped[str] = mapped_column(String(16), nullable=False)

    price_ppl: Mapped[int | None] = mapped_column(Integer, nullable=True)
    observed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    ingested_at: Mapped[datetime] = mapped_column(DateTime, default=now_utc, nullable=False)

    __table_args__ = (Index("ix_history_station_fuel", "station_pk", "fuel_type", "id"),)
