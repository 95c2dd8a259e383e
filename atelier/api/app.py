"""FastAPI application exposing the production engine."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..services.exceptions import (
    ConcurrentModification,
    DatabaseError,
    InsufficientStock,
    InvalidTransition,
    InvariantViolation,
    MaterialNotFound,
    NoEligibleWorker,
    OrderNotFound,
    ProductNotFound,
    ReservationExpired,
    ReservationNotFound,
    ServiceError,
    StageNotFound,
    ValidationError,
    WorkerNotFound,
)
from ..services.reservation_sweeper import ReservationSweeper
from ..utils.config import get_config
from . import routes

logger = logging.getLogger(__name__)

# Most specific first; the first matching class decides the status code
ERROR_STATUS = [
    (OrderNotFound, 404),
    (StageNotFound, 404),
    (WorkerNotFound, 404),
    (MaterialNotFound, 404),
    (ProductNotFound, 404),
    (ReservationNotFound, 404),
    (ReservationExpired, 410),
    (InsufficientStock, 409),
    (NoEligibleWorker, 409),
    (InvalidTransition, 409),
    (ConcurrentModification, 409),
    (ValidationError, 422),
    (InvariantViolation, 500),
    (DatabaseError, 500),
]


def status_for(error: ServiceError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(error, error_class):
            return status_code
    return 400


def _error_body(error: ServiceError) -> dict:
    body = {"error": type(error).__name__, "detail": str(error)}
    if isinstance(error, ValidationError):
        body["errors"] = list(error.errors)
    if isinstance(error, InsufficientStock):
        body["material"] = error.material_name
        body["shortfall"] = str(error.shortfall)
    return body


def create_app(*, start_sweeper: bool = False) -> FastAPI:
    """
    Build the API application.

    Args:
        start_sweeper: Run the reservation expiry sweep in a background
            thread for the lifetime of the app
    """
    config = get_config()
    sweeper = ReservationSweeper() if start_sweeper else None

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if app.state.sweeper is not None:
            app.state.sweeper.start()
        try:
            yield
        finally:
            if app.state.sweeper is not None:
                app.state.sweeper.stop()

    app = FastAPI(title=config.app_name, version=config.app_version, lifespan=lifespan)
    app.state.sweeper = sweeper

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=status_code, content=_error_body(exc))

    @app.get("/health")
    def health() -> dict:
        sweeper = app.state.sweeper
        return {
            "status": "ok",
            "version": config.app_version,
            "sweeper_running": bool(sweeper and sweeper.is_running),
            "sweeper_fault": str(sweeper.fault) if sweeper and sweeper.fault else None,
        }

    app.include_router(routes.orders)
    app.include_router(routes.stages)
    app.include_router(routes.reservations)
    app.include_router(routes.materials)
    app.include_router(routes.performance)
    return app
