import asyncio
import logging

from fuelwatch.core.locks import INGESTION_LOCK
from fuelwatch.core.settings import settings
from fuelwatch.ingestion.service import IngestionService

logger = logging.getLogger(__name__)


async def start_scheduler(svc: IngestionService | None = None) -> None:
    """Runs forever inside the app's startup task, pulling the feed every SYNC_PRICES_SECONDS."""
    svc = svc or IngestionService()

    while True:
        try:
            if INGESTION_LOCK.locked():
                logger.info("feed sync skipped, ingestion already running")
            else:
                async with INGESTION_LOCK:
                    await svc.run_feed_sync()
        except Exception:
            # keep scheduler alive
            logger.exception("scheduled feed sync failed")

        await asyncio.sleep(settings.SYNC_PRICES_SECONDS)
