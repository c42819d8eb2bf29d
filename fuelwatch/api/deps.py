"""FastAPI providers for the engine services. Tests override these with fakes."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fuelwatch.db.session import get_session_factory
from fuelwatch.feeds.client import FeedClient
from fuelwatch.geocoding.cache import GeocodeCache, Geocoder
from fuelwatch.geocoding.client import PostcodeGeocoder
from fuelwatch.ingestion.service import IngestionService
from fuelwatch.notifications.alert_scheduler import AlertEvaluator, Dispatcher
from fuelwatch.search.service import RadiusSearch
from fuelwatch.services.push_service import ExpoPushDispatcher


def get_geocoder() -> Geocoder:
    return PostcodeGeocoder()


def get_dispatcher() -> Dispatcher:
    return ExpoPushDispatcher()


def get_feed_client() -> FeedClient:
    return FeedClient()


def get_radius_search(geocoder: Geocoder = Depends(get_geocoder)) -> RadiusSearch:
    return RadiusSearch(GeocodeCache(geocoder))


def get_ingestion_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    feed_client: FeedClient = Depends(get_feed_client),
) -> IngestionService:
    return IngestionService(session_factory=session_factory, feed_client=feed_client)


def get_alert_evaluator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    search: RadiusSearch = Depends(get_radius_search),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> AlertEvaluator:
    return AlertEvaluator(session_factory=session_factory, search=search, dispatcher=dispatcher)
