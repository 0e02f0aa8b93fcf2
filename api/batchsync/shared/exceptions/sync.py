"""
Taxonomía de errores del motor de sincronización.

Cada fallo por registro se clasifica en una de estas clases antes de
convertirse en un resultado por registro y en una entrada del ledger.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

import psycopg
from psycopg import errors as pg_errors
from sqlalchemy import exc as sa_exc

from batchsync.shared.exceptions.base import AppException


class SyncException(AppException):
    """Excepción base del motor de sincronización."""

    def __init__(
        self,
        message: str,
        error_code: str = "SYNC_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, status_code=500, error_code=error_code, details=details)


class ConversionError(SyncException):
    """Un valor no se pudo tipar. El mapper degrada a string en lugar de propagarla."""

    def __init__(self, field_name: str, value: Any, reason: str):
        super().__init__(
            message=f"No se pudo convertir el campo {field_name}: {reason}",
            error_code="CONVERSION_ERROR",
            details={"field": field_name, "value": str(value)},
        )


class ConstraintError(SyncException):
    """Violación de unicidad (registro duplicado)."""

    def __init__(self, message: str):
        super().__init__(message=message, error_code="CONSTRAINT_ERROR")


class NotFoundError(SyncException):
    """El registro objetivo de un UPDATE/DELETE no existe para el tenant/versión."""

    def __init__(self, message: str):
        super().__init__(message=message, error_code="NOT_FOUND")


class TransientStoreError(SyncException):
    """Conexión o timeout contra el store. Se reintenta re-entregando el batch."""

    def __init__(self, message: str):
        super().__init__(message=message, error_code="TRANSIENT_STORE_ERROR")


class StoreError(SyncException):
    """Cualquier otro error reportado por el store (tipos, columnas, etc.)."""

    def __init__(self, message: str):
        super().__init__(message=message, error_code="STORE_ERROR")


class InconsistencyError(SyncException):
    """El ledger y la tabla materializada no coinciden."""

    def __init__(self, message: str):
        super().__init__(message=message, error_code="INCONSISTENCY")


def classify_store_error(exc: Exception) -> SyncException:
    """
    Traduce una excepción de psycopg (o del pool de SQLAlchemy) a la taxonomía
    del motor.

    Las excepciones que ya pertenecen a la taxonomía se devuelven tal cual.
    """
    if isinstance(exc, SyncException):
        return exc
    message = str(exc).strip() or exc.__class__.__name__
    if isinstance(exc, pg_errors.UniqueViolation):
        return ConstraintError(message)
    if isinstance(exc, sa_exc.DBAPIError) and exc.orig is not None:
        return classify_store_error(exc.orig)
    if isinstance(exc, (psycopg.OperationalError, psycopg.InterfaceError)):
        return TransientStoreError(message)
    if isinstance(exc, (sa_exc.DBAPIError, sa_exc.TimeoutError)):
        return TransientStoreError(message)
    return StoreError(message)
