"""FastAPI application entry point — wires everything together.

Usage:
    python -m railshop.main

Starts the workflow HTTP API with the event bus and its subscribers (audit
projection, notification sink, alert engine).
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI

from railshop.api.routes import register_error_handlers, router
from railshop.config import settings
from railshop.db.engine import db_lifespan
from railshop.events.alerts import alert_engine
from railshop.events.audit import audit_on_event
from railshop.events.bus import emit, start_event_system, stop_event_system, subscribe, unsubscribe
from railshop.integrations.notifications.client import notification_sink
from railshop.schemas.events import EventType, SystemEvent

# ── Logging setup ────────────────────────────────────────────────────

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    stream=sys.stdout,
)
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
)

logger = logging.getLogger(__name__)

# ── FastAPI lifespan ─────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    logger.info("Starting railshop workflow engine (env=%s)", settings.environment)

    # 1. Database
    async with db_lifespan():
        logger.info("Database initialized")

        # 2. Event system
        await start_event_system()
        logger.info("Event system started")

        # 3. Audit projection — always active (global subscriber)
        subscribe(audit_on_event)
        logger.info("Audit logging subscriber registered")

        # 4. Notification sink + alert engine (only if webhook configured)
        if notification_sink.enabled:
            subscribe(notification_sink.on_event, on_failure=notification_sink.on_delivery_failed)
            alert_engine.set_send_fn(notification_sink.send_alert)
            subscribe(alert_engine.on_event, event_types=alert_engine.watched_types)
            logger.info("Notification sink and alert engine registered")
        else:
            logger.warning("NOTIFICATION_WEBHOOK_URL not set — notifications and alerts disabled")

        await emit(SystemEvent(
            event_type=EventType.SYSTEM_STARTUP,
            data={"environment": settings.environment},
            source_module="main",
        ))

        try:
            yield
        finally:
            logger.info("Shutting down railshop workflow engine...")

            await emit(SystemEvent(event_type=EventType.SYSTEM_SHUTDOWN, source_module="main"))
            await stop_event_system()

            unsubscribe(audit_on_event)
            if notification_sink.enabled:
                unsubscribe(notification_sink.on_event)
                unsubscribe(alert_engine.on_event)
            logger.info("Event system stopped")

    logger.info("Railshop workflow engine shutdown complete")


# ── FastAPI app ──────────────────────────────────────────────────────

app = FastAPI(
    title="Railshop Workflow API",
    description="Shopping event workflow for rail car repair shops",
    version="0.1.0",
    lifespan=lifespan,
)
app.include_router(router)
register_error_handlers(app)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {
        "status": "ok",
        "environment": settings.environment,
    }


# ── Entry point ──────────────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run(
        "railshop.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development",
        log_level=settings.log_level.lower(),
    )
