from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from . import api
from .config import get_settings, runtime_secret_issues
from .poller import LocalDispatchPoller

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    secret_issues = runtime_secret_issues(settings)
    if secret_issues:
        if settings.runtime_secret_guard_mode == "enforce":
            raise RuntimeError(
                "runtime secret guard blocked startup: "
                + "; ".join(secret_issues)
                + ". Remediation: set WHATSAPP_AUTOMATION_MODE=disabled or configure the Meta Cloud credentials."
            )
        if settings.runtime_secret_guard_mode == "warn":
            for issue in secret_issues:
                logger.warning("runtime secret guard warning: %s", issue)

    poller = LocalDispatchPoller(
        processor=api.dispatch_processor,
        settings=settings,
        interval_seconds=settings.effective_poller_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if settings.local_poller_enabled and settings.dispatch_enabled:
            poller.start()
        try:
            yield
        finally:
            poller.stop()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.dispatch_poller = poller
    app.include_router(api.router)
    return app


app = create_app()
