from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.routes import router
from app.config.settings import Settings, get_settings
from app.integrations.booking_rest import RestBookingSource
from app.integrations.lock_http import HttpLockActuator
from app.integrations.memory import InMemoryBookingSource, InMemoryLockActuator, RecordingNotifier
from app.integrations.notifier_webhook import WebhookNotifier
from app.services.orchestrator import AccessOrchestrator

logger = logging.getLogger(__name__)


def build_orchestrator(settings: Settings) -> AccessOrchestrator:
    """Wire real adapters where configured, in-memory demo ones otherwise."""
    if settings.BOOKING_API_BASE_URL:
        booking_source = RestBookingSource(
            base_url=settings.BOOKING_API_BASE_URL,
            api_key=settings.BOOKING_API_KEY or "",
        )
    else:
        booking_source = InMemoryBookingSource()

    if settings.LOCK_API_BASE_URL:
        lock = HttpLockActuator(base_url=settings.LOCK_API_BASE_URL)
    else:
        lock = InMemoryLockActuator()

    if settings.NOTIFIER_WEBHOOK_URL:
        notifier = WebhookNotifier(url=settings.NOTIFIER_WEBHOOK_URL)
    else:
        notifier = RecordingNotifier()

    return AccessOrchestrator.from_settings(
        settings,
        booking_source=booking_source,
        lock=lock,
        notifier=notifier,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    orchestrator = app.state.orchestrator
    orchestrator.start()
    logger.info("[APP][orchestrator_start] demo_mode=%s", isinstance(orchestrator.lock, InMemoryLockActuator))
    try:
        yield
    finally:
        unsecured = orchestrator.stop()
        logger.info("[APP][orchestrator_stop] unsecured_reservations=%s", len(unsecured))


_settings = get_settings()
logging.basicConfig(level=_settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s %(message)s")

app = FastAPI(title="Door Access Gateway", version="0.1.0", lifespan=lifespan)
app.include_router(router, prefix="/v1")

app.state.get_settings = get_settings
app.state.orchestrator = build_orchestrator(_settings)
