from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from app.accounts import router as accounts_router
from app.api import get_hub, router
from app.realtime import router as realtime_router
from app.security import get_auth_service
from datastore.document_store import StoreUnavailableError
from logging_config import configure_logging
from services.mqtt_bridge import build_default_bridge
from settings import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    get_auth_service().seed_default_accounts()
    hub = get_hub()

    bridge = None
    if settings.mqtt_enabled:
        bridge = build_default_bridge()
        bridge.start(asyncio.get_running_loop())
    app.state.bridge = bridge
    try:
        yield
    finally:
        if bridge is not None:
            bridge.stop()
            build_default_bridge.cache_clear()
        await hub.close()


async def _http_error(_request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "detail": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"success": False, "detail": jsonable_encoder(exc.errors())},
    )


async def _store_unavailable(_request: Request, exc: StoreUnavailableError) -> JSONResponse:
    logger.error("Store unavailable", extra={"reason": str(exc)})
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"success": False, "detail": "Record store is unavailable."},
    )


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(
        title="IoT Dashboard",
        description="Realtime IoT telemetry ingestion, alerting and dashboard API.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(HTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(StoreUnavailableError, _store_unavailable)
    app.include_router(router)
    app.include_router(accounts_router)
    app.include_router(realtime_router)
    return app


app = create_app()
