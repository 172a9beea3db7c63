"""
Database module.
Contains database connection, models, and repository implementations.
"""

from buildqueue.db.connection import (
    AsyncSessionLocal,
    close_db,
    get_async_session,
    get_engine,
    get_session_context,
    init_db,
)
from buildqueue.db.models import App, Base, BuildJob, Payment, User

__all__ = [
    "get_async_session",
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "AsyncSessionLocal",
    "BuildJob",
    "App",
    "Payment",
    "User",
    "Base",
]
