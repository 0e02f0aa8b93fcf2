"""
Repositorio del ledger de operaciones (<tabla>_operations).

PRIMARY KEY (client_id, batch_version, record_id): cada intento hace UPSERT
sobre la misma llave, así que siempre hay una sola entrada por registro y
refleja el último intento.

Las escrituras son best-effort: un fallo del ledger se registra en el log y
no interrumpe la aplicación del batch. Las lecturas si propagan el error.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence

import psycopg
from loguru import logger

from batchsync.domain.entities.ledger import LedgerEntry
from batchsync.shared.constants.sync_constants import (
    LEDGER_FIELD_ID_WIDTH,
    LEDGER_IDENTIFIER_WIDTH,
    LEDGER_OPERATION_WIDTH,
    LEDGER_STATUS_WIDTH,
    LedgerStatus,
)
from batchsync.shared.utils.sql_identifiers import operations_table_name, quote_ident

_LEDGER_COLUMNS = """
    client_id, record_id, batch_version, field_id, operation, status,
    error_message, batch_id, created_at, processed_at
"""

_UPSERT_CONFLICT = """
    ON CONFLICT (client_id, batch_version, record_id)
    DO UPDATE SET
        field_id = EXCLUDED.field_id,
        operation = EXCLUDED.operation,
        status = EXCLUDED.status,
        error_message = EXCLUDED.error_message,
        batch_id = EXCLUDED.batch_id,
        processed_at = CURRENT_TIMESTAMP
"""


def _truncate(value: Any, width: int) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)[:width]


def ledger_key(value: Any) -> Optional[str]:
    """
    Valor de client_id, record_id o batch_version tal como queda en la columna.

    Las lecturas deben usar el mismo recorte que las escrituras.
    """
    return _truncate(value, LEDGER_IDENTIFIER_WIDTH)


def ledger_params(entry: LedgerEntry) -> tuple:
    """
    Valores de una entrada ya truncados al ancho de cada columna.

    El orden corresponde a (client_id, record_id, batch_version, field_id,
    operation, status, error_message, batch_id).
    """
    status = _truncate(str(entry.status).upper(), LEDGER_STATUS_WIDTH) or LedgerStatus.ERROR.value
    operation = _truncate(str(entry.operation).upper(), LEDGER_OPERATION_WIDTH) if entry.operation else None
    return (
        ledger_key(entry.client_id),
        ledger_key(entry.record_id),
        ledger_key(entry.batch_version),
        _truncate(entry.field_id, LEDGER_FIELD_ID_WIDTH),
        operation,
        status,
        entry.error_message,
        _truncate(entry.batch_id, LEDGER_IDENTIFIER_WIDTH),
    )


def _dedupe_by_key(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    # ON CONFLICT no puede tocar la misma fila dos veces en una sentencia
    latest: dict[tuple, LedgerEntry] = {}
    for entry in entries:
        params = ledger_params(entry)
        latest[(params[0], params[2], params[1])] = entry
    return list(latest.values())


class OperationsRepository:
    def __init__(self, batch_size: int = 500) -> None:
        self._batch_size = max(1, batch_size)

    def save(self, conn: psycopg.Connection, *, table: str, entry: LedgerEntry) -> bool:
        """UPSERT de una entrada. Retorna False si no se pudo guardar."""
        return self.save_batch(conn, table=table, entries=[entry])

    def save_batch(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        entries: Sequence[LedgerEntry],
    ) -> bool:
        """
        UPSERT multi-fila, en bloques de batch_size entradas.

        Retorna False si algún bloque fallo (el error ya quedo en el log).
        """
        unique = _dedupe_by_key(entries)
        if not unique:
            return True

        ok = True
        for start in range(0, len(unique), self._batch_size):
            chunk = unique[start:start + self._batch_size]
            values: list[Any] = []
            rows_sql = []
            for entry in chunk:
                values.extend(ledger_params(entry))
                rows_sql.append("(%s, %s, %s, %s, %s, %s, %s, %s, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)")

            sql = f"""
                INSERT INTO {quote_ident(operations_table_name(table))}
                ({_LEDGER_COLUMNS})
                VALUES {', '.join(rows_sql)}
                {_UPSERT_CONFLICT}
            """
            try:
                with conn.transaction():
                    with conn.cursor() as cur:
                        cur.execute(sql, values)
            except psycopg.Error as e:
                ok = False
                logger.error(
                    f"Error al guardar {len(chunk)} operación(es) en {operations_table_name(table)}: {e}"
                )
        return ok

    def find_by_key(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        record_id: str,
        client_id: str,
        batch_version: str,
    ) -> Optional[LedgerEntry]:
        sql = f"""
            SELECT {_LEDGER_COLUMNS}
            FROM {quote_ident(operations_table_name(table))}
            WHERE record_id = %s
              AND client_id = %s
              AND batch_version = %s
            ORDER BY processed_at DESC, created_at DESC
            LIMIT 1
        """
        with conn.cursor() as cur:
            cur.execute(sql, (ledger_key(record_id), ledger_key(client_id), ledger_key(batch_version)))
            row = cur.fetchone()
            return LedgerEntry.from_row(row) if row else None

    def find_by_records(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        record_ids: Sequence[str],
        client_id: str,
        batch_version: str,
    ) -> dict[str, LedgerEntry]:
        """
        Entradas de varios registros en una sola consulta, indexadas por el
        record_id guardado (ver ledger_key).
        """
        if not record_ids:
            return {}
        sql = f"""
            SELECT {_LEDGER_COLUMNS}
            FROM {quote_ident(operations_table_name(table))}
            WHERE record_id = ANY(%s)
              AND client_id = %s
              AND batch_version = %s
        """
        with conn.cursor() as cur:
            cur.execute(
                sql, ([ledger_key(rid) for rid in record_ids], ledger_key(client_id), ledger_key(batch_version))
            )
            return {row["record_id"]: LedgerEntry.from_row(row) for row in cur.fetchall()}

    def find_by_batch(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        batch_id: str,
        client_id: str,
    ) -> list[LedgerEntry]:
        sql = f"""
            SELECT {_LEDGER_COLUMNS}
            FROM {quote_ident(operations_table_name(table))}
            WHERE batch_id = %s
              AND client_id = %s
            ORDER BY created_at ASC
        """
        with conn.cursor() as cur:
            cur.execute(sql, (ledger_key(batch_id), ledger_key(client_id)))
            return [LedgerEntry.from_row(row) for row in cur.fetchall()]

    def stats_by_batch(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        batch_id: str,
        client_id: str,
    ) -> dict[str, Any]:
        sql = f"""
            SELECT operation, status, COUNT(*) AS count
            FROM {quote_ident(operations_table_name(table))}
            WHERE batch_id = %s
              AND client_id = %s
            GROUP BY operation, status
        """
        with conn.cursor() as cur:
            cur.execute(sql, (ledger_key(batch_id), ledger_key(client_id)))
            rows = cur.fetchall()

        stats: dict[str, Any] = {"total": 0, "by_operation": {}, "by_status": {}}
        for row in rows:
            count = int(row["count"])
            stats["total"] += count
            stats["by_operation"][row["operation"]] = stats["by_operation"].get(row["operation"], 0) + count
            stats["by_status"][row["status"]] = stats["by_status"].get(row["status"], 0) + count
        return stats

    def delete_older_than(self, conn: psycopg.Connection, *, table: str, days: int) -> int:
        """
        Retención: borra entradas creadas hace más de `days` días.

        Housekeeping opcional; la corrección del sistema no depende de esto.
        """
        sql = f"""
            DELETE FROM {quote_ident(operations_table_name(table))}
            WHERE created_at < now() - make_interval(days => %s)
        """
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(sql, (int(days),))
                return cur.rowcount or 0
