import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fuelwatch.api.router import api
from fuelwatch.core.errors import AuthorizationError, ResolutionError, ValidationError
from fuelwatch.core.logging_config import setup_logging
from fuelwatch.core.settings import settings
from fuelwatch.db.init_db import init_db
from fuelwatch.ingestion.scheduler import start_scheduler
from fuelwatch.notifications.alert_scheduler import start_alert_scheduler

logger = logging.getLogger(__name__)

app = FastAPI(title="FuelWatch (ingestion and alerts)")


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(api)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc), "errors": exc.details})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(ResolutionError)
async def resolution_error_handler(request: Request, exc: ResolutionError):
    if exc.retryable:
        return JSONResponse(status_code=503, content={"detail": "Geocoding service unavailable, try again later"})
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError):
    return JSONResponse(status_code=401, content={"detail": str(exc)})


@app.on_event("startup")
async def on_startup():
    setup_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    await init_db()
    if settings.RUN_SCHEDULERS:
        # background passes for single-process deployments
        asyncio.create_task(start_scheduler())
        asyncio.create_task(start_alert_scheduler())
        logger.info("in-process schedulers started")
