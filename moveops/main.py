import os

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from sqlalchemy import inspect

from .config import settings
from .db import Base, engine
from .errors import register_error_handlers
from .logging import setup_logging, RequestIdMiddleware
from .routes.orders import router as orders_router
from .routes.inventory import router as inventory_router
from .routes.fleet import router as fleet_router
from .routes.crew import router as crew_router


logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

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

    register_error_handlers(app)

    # Routers
    app.include_router(orders_router)
    app.include_router(inventory_router)
    app.include_router(fleet_router)
    app.include_router(crew_router)

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            existing = set(inspect(engine).get_table_names())
            missing = set(Base.metadata.tables.keys()) - existing
            if missing:
                logger.info("startup_create_tables", missing=sorted(missing))
                Base.metadata.create_all(bind=engine)
        logger.info("startup_complete", environment=settings.environment)

    @app.get("/health")
    def health():
        return {"status": "ok", "app": settings.app_name}

    return app


app = create_app()
