"""Database schema initialization helpers."""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from .session import Database, get_database

# Import models so that SQLAlchemy is aware of all tables before create_all runs.
from .. import models  # noqa: F401  # pylint: disable=unused-import

logger = logging.getLogger(__name__)


async def init_database(database: Database | None = None) -> None:
    """Ensure all database tables exist for the running application."""

    database = database or get_database()
    try:
        await database.create_all()
    except SQLAlchemyError:
        logger.exception("Failed to initialise database schema")
        raise


__all__ = ["init_database"]
