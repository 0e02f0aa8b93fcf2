"""
Acceso al store relacional.
"""
from batchsync.infrastructure.database.session import (
    check_connection,
    close_db,
    get_connection,
)

__all__ = ["check_connection", "close_db", "get_connection"]
