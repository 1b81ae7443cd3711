from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import api
from .config import get_settings, missing_send_credentials, runtime_secret_issues

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    scheduler = None
    if app.state.reminder_scheduler_enabled:
        scheduler = api.get_reminder_scheduler()
        scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()


def create_app() -> FastAPI:
    settings = get_settings()
    missing = missing_send_credentials(settings)
    if missing:
        raise RuntimeError(
            "WhatsApp sender cannot start: "
            + ", ".join(missing)
            + " must be set when WA_SENDER_TYPE=http."
        )

    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set the listed values or relax RUNTIME_SECRET_GUARD_MODE."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=_lifespan)
    app.state.reminder_scheduler_enabled = settings.reminder_scheduler_enabled
    app.include_router(api.router)
    return app


app = create_app()
