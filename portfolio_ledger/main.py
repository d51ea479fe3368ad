"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import FastAPI

from . import __version__
from .api.routes import router as ledger_router
from .core.config import get_settings
from .core.logging import setup_logging
from .core.telemetry import setup_telemetry
from .db.init import init_database
from .db.session import get_database

logger = logging.getLogger("portfolio_ledger")

settings = get_settings()
app = FastAPI(title=settings.app_name, version=__version__)
setup_logging(settings.log_level)


@app.on_event("startup")
async def startup_event() -> None:
    """Initialise the database schema and telemetry when the service boots."""

    database = get_database()
    await init_database(database)
    setup_telemetry(app, settings, database.engine)
    logger.info("Portfolio ledger configuration", extra=settings.dict_for_logging())


@app.on_event("shutdown")
async def shutdown_event() -> None:
    await get_database().dispose()


@app.get("/health", tags=["system"])
async def health() -> dict[str, str]:
    return {"status": "ok", "timestamp": datetime.now().isoformat()}


app.include_router(ledger_router, prefix=settings.api_prefix)


__all__ = ["app"]
