# fuelwatch/db/init_db.py
from sqlalchemy.ext.asyncio import AsyncEngine

from fuelwatch.db.base import Base
from fuelwatch.db.session import engine as default_engine

# IMPORTANT: import models so SQLAlchemy registers tables before create_all()
from fuelwatch.db.models import geocode, runs, stations  # noqa: F401
from fuelwatch.db import models_notifications, models_rules  # noqa: F401


async def init_db(engine: AsyncEngine | None = None):
    async with (engine or default_engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
