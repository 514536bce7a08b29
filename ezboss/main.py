import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from .config import settings
from .db import Base, engine
from .exceptions import (
    ConcurrencyError,
    EngineError,
    EstimateNotFoundError,
    ExternalDependencyError,
    LineItemNotFoundError,
    PaymentNotFoundError,
    PreconditionError,
    ValidationError,
)
from .logging import setup_logging, RequestIdMiddleware
from .models import models  # noqa: F401  (register tables on Base.metadata)
from .routes.estimates import router as estimates_router
from .routes.client_view import router as client_view_router


logger = structlog.get_logger(__name__)


def status_for(exc: EngineError) -> int:
    if isinstance(exc, (EstimateNotFoundError, LineItemNotFoundError, PaymentNotFoundError)):
        return 404
    if isinstance(exc, ValidationError):
        return 422
    if isinstance(exc, (PreconditionError, ConcurrencyError)):
        return 409
    if isinstance(exc, ExternalDependencyError):
        return 502
    return 500


def prepare_database() -> None:
    # Ensure local SQLite directory exists
    if settings.database_url.startswith("sqlite:///./"):
        os.makedirs("var", exist_ok=True)
    if settings.auto_create_db:
        Base.metadata.create_all(bind=engine)
        logger.info("database_tables_ready", url=engine.url.render_as_string(hide_password=True))


@asynccontextmanager
async def lifespan(app: FastAPI):
    prepare_database()
    yield


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    @app.exception_handler(EngineError)
    async def engine_error_handler(request: Request, exc: EngineError):
        status_code = status_for(exc)
        log = logger.warning if status_code >= 500 else logger.info
        log("engine_error", path=request.url.path, code=exc.code, status=status_code, detail=exc.message)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    # Routers
    app.include_router(estimates_router)
    app.include_router(client_view_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
