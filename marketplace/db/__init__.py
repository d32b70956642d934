"""Database package - all database-related code."""
from marketplace.db.connection import close_db, get_db_session, init_db
from marketplace.db.models import Base

__all__ = [
    "init_db",
    "get_db_session",
    "close_db",
    "Base",
]
