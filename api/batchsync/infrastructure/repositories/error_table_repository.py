"""
Tabla de errores heredada (<tabla>_errors).

Solo se usa con LEGACY_ERROR_TABLE_ENABLED. Ninguna operación de esta tabla
interrumpe el flujo principal.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Optional

import psycopg
from loguru import logger

from batchsync.shared.utils.sql_identifiers import errors_table_name, quote_ident


class ErrorTableRepository:
    def save_error(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        record_id: str,
        client_id: str,
        batch_version: str,
        operation: str,
        error: Exception | str,
        field_id: Optional[str] = None,
        record_data: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        error_type = error.__class__.__name__ if isinstance(error, Exception) else "Error"
        error_message = getattr(error, "message", None) or str(error)

        sql = f"""
            INSERT INTO {quote_ident(errors_table_name(table))}
            (record_id, client_id, operation, error_type, error_message, field_id, record_data, ver, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, CURRENT_TIMESTAMP)
            ON CONFLICT (record_id, client_id, ver)
            DO UPDATE SET
                operation = EXCLUDED.operation,
                error_type = EXCLUDED.error_type,
                error_message = EXCLUDED.error_message,
                field_id = EXCLUDED.field_id,
                record_data = EXCLUDED.record_data,
                created_at = CURRENT_TIMESTAMP
        """
        params = (
            record_id,
            str(client_id)[:50] if client_id else None,
            str(operation)[:20] if operation else None,
            error_type[:50],
            error_message,
            str(field_id)[:50] if field_id else None,
            json.dumps(record_data, default=str) if record_data is not None else None,
            batch_version,
        )
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(sql, params)
            return True
        except psycopg.Error as e:
            logger.error(f"Error al guardar en {errors_table_name(table)}: {e}")
            return False

    def find_latest(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        record_id: str,
        client_id: str,
    ) -> Optional[dict[str, Any]]:
        """Último error registrado; None si no hay o si la tabla no existe."""
        sql = f"""
            SELECT record_id, client_id, operation, error_type, error_message,
                   field_id, record_data, created_at
            FROM {quote_ident(errors_table_name(table))}
            WHERE record_id = %s
              AND client_id = %s
            ORDER BY created_at DESC
            LIMIT 1
        """
        try:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(sql, (record_id, client_id))
                    row = cur.fetchone()
        except psycopg.Error as e:
            logger.warning(f"Tabla {errors_table_name(table)} no disponible: {e}")
            return None
        return dict(row) if row else None
