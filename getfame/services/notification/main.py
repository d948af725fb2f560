"""Notification service lifecycle and lightweight read endpoints."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI

from getfame.common.config import settings
from getfame.common.db import SessionLocal
from getfame.common.logging import configure_logging
from getfame.common.metrics import metrics_response
from getfame.common.startup import log_startup_config
from getfame.common.tracing import instrument_app, setup_tracing
from getfame.services.notification.service import NotificationService, TelegramSender

configure_logging()
setup_tracing(settings.service_name)
log_startup_config(
    settings.service_name,
    ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS", "TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID"],
)
service = NotificationService(
    SessionLocal,
    TelegramSender(settings.telegram_bot_token, settings.telegram_chat_id),
    service_name=settings.service_name,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    """Run consumer loops with FastAPI application lifecycle."""

    consumer_task = asyncio.create_task(service.start_consumers())
    yield
    consumer_task.cancel()


app = FastAPI(title="GetFame Notification Service", lifespan=lifespan)
instrument_app(app)


@app.get("/health")
def health():
    """Container health probe endpoint."""

    return {"ok": True, "telegram_configured": service.sender.configured}


@app.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""

    return metrics_response()
