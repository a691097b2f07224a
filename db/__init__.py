"""Database package for audience-sync."""
from db.connection import (
    create_engine_for,
    dispose_engine,
    get_db,
    get_engine,
    get_session_factory,
    make_session_factory,
    session_scope,
)

__all__ = [
    "create_engine_for",
    "dispose_engine",
    "get_db",
    "get_engine",
    "get_session_factory",
    "make_session_factory",
    "session_scope",
]
