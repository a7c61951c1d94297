"""FastAPI application entry point for ToolTrust."""

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from aiokafka.errors import KafkaError
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tooltrust.api.dependencies import build_default_services
from tooltrust.api.middleware.error_handler import global_exception_handler, trust_error_handler
from tooltrust.api.middleware.logging import StructuredLoggingMiddleware
from tooltrust.api.routes.disputes import router as disputes_router
from tooltrust.api.routes.fraud import router as fraud_router
from tooltrust.api.routes.health import router as health_router
from tooltrust.api.routes.mutual_closure import router as mutual_closure_router
from tooltrust.api.routes.webhooks import router as webhooks_router
from tooltrust.config import settings
from tooltrust.integrations.notifications import KafkaNotificationPublisher, create_producer
from tooltrust.shared.errors import TrustError
from tooltrust.shared.logging import setup_logging

logger = structlog.get_logger()

# Set by the lifespan; /health reports uptime from it
APP_START_TIME: float = 0.0


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Configure logging, stores and the notification producer; tear them down on exit."""
    global APP_START_TIME
    APP_START_TIME = time.time()
    setup_logging(settings.log_level, json_logs=not settings.debug)

    logger.info(
        "tooltrust_starting",
        app_name=settings.app_name,
        version=settings.app_version,
        storage_backend=settings.storage_backend,
    )

    if settings.storage_backend == "database":
        from tooltrust.db.database import init_db

        await init_db()

    # Notifications are best-effort; without a broker they are logged and dropped
    producer = None
    if settings.kafka_enabled:
        try:
            producer = await create_producer(settings.kafka_bootstrap_servers)
        except KafkaError:
            logger.warning("kafka_producer_failed_to_start", exc_info=True)

    publisher = KafkaNotificationPublisher(producer, settings.notification_topic)
    services = build_default_services(settings, publisher)
    app.state.services = services

    yield

    await services.aclose()
    if producer is not None:
        await producer.stop()
    if settings.storage_backend == "database":
        from tooltrust.db.database import close_db

        await close_db()
    logger.info("tooltrust_shutting_down")


app = FastAPI(
    title="ToolTrust",
    description="Trust and risk engine for the peer-to-peer tool rental marketplace",
    version=settings.app_version,
    lifespan=lifespan,
)

# Browser clients are only expected in debug setups
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(StructuredLoggingMiddleware)

app.add_exception_handler(TrustError, trust_error_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.include_router(health_router)
app.include_router(disputes_router)
app.include_router(mutual_closure_router)
app.include_router(webhooks_router)
app.include_router(fraud_router)


def get_uptime() -> int:
    """Get application uptime in seconds."""
    if APP_START_TIME == 0.0:
        return 0
    return int(time.time() - APP_START_TIME)
