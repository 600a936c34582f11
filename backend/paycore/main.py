"""FastAPI application entry point"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from paycore.core import otel
from paycore.core.config import settings
from paycore.core.exceptions import PaymentCoreError, payment_core_exception_handler
from paycore.core.logging import setup_logging
from paycore.db.session import SessionLocal, engine, init_db

# Import routers
from paycore.api import anomalies, ledger, subscriptions, transactions, webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    otel_initialized = otel.initialize_otel()
    if otel_initialized:
        if otel.setup_otel_logging():
            logger.info(f"OpenTelemetry fully initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
        else:
            logger.warning("OpenTelemetry metrics/traces initialized but logging setup failed")
        otel.instrument_sqlalchemy(engine)
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    if settings.WEBHOOK_AUTH_BYPASS:
        if settings.ENVIRONMENT == "development":
            logger.warning("WEBHOOK_AUTH_BYPASS is on: unauthenticated webhooks will be accepted")
        else:
            logger.warning(f"WEBHOOK_AUTH_BYPASS ignored in {settings.ENVIRONMENT}")

    # Start background tasks
    from paycore.tasks.replay import anomaly_replay_task
    replay_task = asyncio.create_task(anomaly_replay_task(SessionLocal))
    logger.info("Anomaly replay task started")

    yield

    # Shutdown
    logger.info("Shutting down...")
    replay_task.cancel()


# Create FastAPI app
app = FastAPI(
    title="Paycore",
    description="Payment event reconciliation core",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with OpenTelemetry
otel.instrument_fastapi(app)

# Include routers
app.include_router(webhooks.router)
app.include_router(transactions.router)
app.include_router(subscriptions.router)
app.include_router(ledger.router)
app.include_router(anomalies.router)

app.add_exception_handler(PaymentCoreError, payment_core_exception_handler)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
