from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from telecare.core.config import settings
from telecare.core.db import init_db
from telecare.core.errors import register_exception_handlers
from telecare.core.logging import setup_logging
from telecare.core.middleware import StructlogMiddleware
from telecare.modules.alerts import router as alerts_router
from telecare.modules.alerts.history import MongoAlertHistorySink
from telecare.modules.alerts.service import AlertRuntime, build_runtime
from telecare.modules.vitals import router as vitals_router

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup; the history store is optional
    mongo_client = await init_db() if settings.MONGODB_URL else None
    app.state.mongo_client = mongo_client
    log.info(
        "alert pipeline started",
        history_sink=mongo_client is not None,
        thresholds_version=app.state.alert_runtime.classifier.table.version,
    )

    yield

    # Shutdown
    sink = app.state.history_sink
    if sink is not None:
        await sink.drain()
    if mongo_client is not None:
        mongo_client.close()


def create_app(runtime: AlertRuntime | None = None) -> FastAPI:
    setup_logging()

    history_sink = None
    if runtime is None:
        history_sink = MongoAlertHistorySink() if settings.MONGODB_URL else None
        runtime = build_runtime(settings, history_sink=history_sink)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="""
        ## Telecare Alerts API

        This API provides:
        * **Ingestion**: classify vital readings against clinical thresholds
        * **Alerts**: active alert listing and acknowledgment
        * **Realtime**: WebSocket alert stream with subscriptions and presence

        ### Authentication
        Endpoints and the WebSocket require a bearer token issued by the auth service.
        """,
        version="0.1.0",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )
    app.state.alert_runtime = runtime
    app.state.history_sink = history_sink

    # Set all CORS enabled origins
    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_middleware(StructlogMiddleware)
    register_exception_handlers(app)

    app.include_router(
        alerts_router.router, prefix=f"{settings.API_V1_STR}/alerts", tags=["alerts"]
    )
    app.include_router(
        vitals_router.router, prefix=f"{settings.API_V1_STR}/vitals", tags=["vitals"]
    )

    @app.get("/health")
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
