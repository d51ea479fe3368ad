"""Database plumbing."""

from .base import Base
from .session import Database, get_database, get_session

__all__ = ["Base", "Database", "get_database", "get_session"]
