"""Database package for the identity sync backend."""
from db.connection import (
    after_commit,
    dispose_engine,
    savepoint,
    get_db,
    get_engine,
    get_warehouse_db,
    get_warehouse_engine,
)

__all__ = [
    "get_engine",
    "get_warehouse_engine",
    "get_db",
    "get_warehouse_db",
    "after_commit",
    "savepoint",
    "dispose_engine",
]
