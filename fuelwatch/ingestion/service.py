import asyncio
import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fuelwatch.core.errors import FeedError, ReconciliationError, ValidationError
from fuelwatch.core.locks import KeyedLock
from fuelwatch.core.settings import settings
from fuelwatch.db.base import now_utc
from fuelwatch.db.models.stations import PriceHistoryEntry, PriceSnapshot, Station
from fuelwatch.db.session import SessionLocal
from fuelwatch.feeds.client import FeedClient
from fuelwatch.feeds.parsers import StationRecord, parse_and_validate_csv, validate_feed_items
from fuelwatch.runs.recorder import IngestionResult, RunStatus, pass_status, record_ingestion_run

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    stations_processed: int = 0
    prices_updated: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def status(self) -> RunStatus:
        return pass_status(len(self.errors), self.stations_processed)


class IngestionService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        feed_client: FeedClient | None = None,
        concurrency: int | None = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.feed_client = feed_client or FeedClient()
        self.concurrency = max(1, concurrency or settings.INGEST_CONCURRENCY)
        self._station_locks = KeyedLock()

    async def _upsert_station(self, db: AsyncSession, record: StationRecord) -> Station:
        q = await db.execute(select(Station).where(Station.station_id == record.station_id))
        station = q.scalar_one_or_none()

        if station is None:
            station = Station(
                station_id=record.station_id,
                brand=record.brand,
                name=record.name,
                address=record.address,
                postcode=record.postcode,
                lat=record.lat,
                lng=record.lng,
                amenities=record.amenities,
                opening_hours=record.opening_hours,
                updated_at_source=record.updated_at,
            )
            db.add(station)
            await db.flush()
            return station

        station.updated_at_source = record.updated_at
        if record.amenities is not None:
            station.amenities = record.amenities
        if record.opening_hours is not None:
            station.opening_hours = record.opening_hours
        return station

    async def _apply_record(self, db: AsyncSession, record: StationRecord) -> int:
        """Merge one record. Returns the number of snapshots written."""
        try:
            station = await self._upsert_station(db, record)

            q = await db.execute(select(PriceSnapshot).where(PriceSnapshot.station_pk == station.id))
            snapshots = {s.fuel_type: s for s in q.scalars().all()}

            now = now_utc()
            written = 0
            for fuel, price in record.prices.items():
                snap = snapshots.get(fuel.value)
                if snap is not None and snap.price_ppl == price:
                    continue

                if snap is None:
                    db.add(
                        PriceSnapshot(
                            station_pk=station.id,
                            fuel_type=fuel.value,
                            price_ppl=price,
                            source_updated_at=record.updated_at,
                            ingested_at=now,
                        )
                    )
                else:
                    snap.price_ppl = price
                    snap.source_updated_at = record.updated_at
                    snap.ingested_at = now

                db.add(
                    PriceHistoryEntry(
                        station_pk=station.id,
                        fuel_type=fuel.value,
                        price_ppl=price,
                        observed_at=record.updated_at,
                        ingested_at=now,
                    )
                )
                written += 1

            await db.commit()
            return written
        except SQLAlchemyError as e:
            raise ReconciliationError(record.station_id, str(getattr(e, "orig", None) or e)) from e

    async def _reconcile_one(self, record: StationRecord) -> tuple[int, str | None]:
        async with self.session_factory() as db:
            try:
                return await self._apply_record(db, record), None
            except Exception as e:
                await db.rollback()
                msg = str(e) if isinstance(e, ReconciliationError) else str(ReconciliationError(record.station_id, str(e)))
                logger.warning(msg, extra={"station_id": record.station_id})
                return 0, msg

    async def reconcile(self, records: list[StationRecord]) -> ReconcileResult:
        """
        Upsert stations and write price changes.

        Each record is its own transaction, so one failure never undoes another.
        Writes for the same station are serialised even with several workers.
        """
        sem = asyncio.Semaphore(self.concurrency)

        async def _worker(record: StationRecord) -> tuple[int, str | None]:
            async with sem:
                async with self._station_locks.hold(record.station_id):
                    return await self._reconcile_one(record)

        outcomes = await asyncio.gather(*(_worker(r) for r in records), return_exceptions=True)

        result = ReconcileResult()
        for record, outcome in zip(records, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("worker for %s crashed: %r", record.station_id, outcome)
                result.errors.append(str(ReconciliationError(record.station_id, str(outcome))))
                continue
            written, error = outcome
            if error:
                result.errors.append(error)
            else:
                result.stations_processed += 1
                result.prices_updated += written
        return result

    async def _record(self, result: IngestionResult) -> IngestionResult:
        async with self.session_factory() as db:
            await record_ingestion_run(db, result)
        return result

    async def _run(self, source: str, load) -> IngestionResult:
        started = now_utc()
        try:
            records = await load()
        except ValidationError as e:
            logger.warning("%s batch rejected: %s", source, e)
            return await self._record(
                IngestionResult(
                    source=source,
                    started_at=started,
                    finished_at=now_utc(),
                    status=RunStatus.FAILED,
                    errors=e.summary(),
                    rejected=True,
                )
            )
        except FeedError as e:
            logger.error("feed sync failed: %s", e)
            return await self._record(
                IngestionResult(
                    source=source, started_at=started, finished_at=now_utc(), status=RunStatus.FAILED, errors=[str(e)]
                )
            )
        except Exception as e:
            logger.exception("%s batch could not be loaded", source)
            return await self._record(
                IngestionResult(
                    source=source,
                    started_at=started,
                    finished_at=now_utc(),
                    status=RunStatus.FAILED,
                    errors=[f"Ingestion aborted: {e}"],
                )
            )

        try:
            rec = await self.reconcile(records)
        except Exception as e:
            logger.exception("%s ingestion aborted", source)
            return await self._record(
                IngestionResult(
                    source=source,
                    started_at=started,
                    finished_at=now_utc(),
                    status=RunStatus.FAILED,
                    errors=[f"Ingestion aborted: {e}"],
                )
            )

        result = IngestionResult(
            source=source,
            started_at=started,
            finished_at=now_utc(),
            status=rec.status,
            stations_processed=rec.stations_processed,
            prices_updated=rec.prices_updated,
            errors=rec.errors,
        )
        logger.info(
            "%s ingestion finished: %s (%d stations, %d prices, %d errors)",
            source,
            result.status.value,
            result.stations_processed,
            result.prices_updated,
            len(result.errors),
        )
        return await self._record(result)

    async def run_csv(self, csv_data: str) -> IngestionResult:
        async def _load():
            return parse_and_validate_csv(csv_data)

        return await self._run("csv", _load)

    async def run_feed_sync(self) -> IngestionResult:
        async def _load():
            return validate_feed_items(await self.feed_client.fetch_all_stations())

        return await self._run("feed", _load)
