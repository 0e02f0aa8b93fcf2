"""
Servicio de estado: reconcilia el ledger con la tabla materializada.

Orden de resolución por registro:
1. Sin entrada en el ledger -> se busca la fila (paso 5).
2. QUEUED / PROCESSING -> PROCESSING.
3. ERROR -> COMPLETED si el mensaje es un bypass conocido, si no ERROR.
4. COMPLETED + delete -> COMPLETED.
   COMPLETED + create/update -> fila presente: COMPLETED con sus datos;
   fila ausente: ERROR (inconsistencia).
5. Sin ledger: fila presente -> ERROR (falta historial); ausente -> NOT_FOUND.

El servicio es de solo lectura y nunca lanza por un registro: cualquier
fallo se reporta como ERROR de ese registro.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, Callable, Mapping, Optional, Sequence

import psycopg
from loguru import logger

from batchsync.domain.entities.ledger import LedgerEntry
from batchsync.domain.entities.record_status import RecordStatusResult
from batchsync.infrastructure.repositories.error_table_repository import ErrorTableRepository
from batchsync.infrastructure.repositories.materialized_table_repository import MaterializedTableRepository
from batchsync.infrastructure.repositories.operations_repository import OperationsRepository, ledger_key
from batchsync.shared.constants.sync_constants import (
    DELETE_NOT_FOUND_BYPASS_NOTE,
    DELETE_NOT_FOUND_MARKERS,
    DELETED_COLUMN,
    DUPLICATE_BYPASS_NOTE,
    DUPLICATE_MESSAGE_MARKERS,
    MISSING_LEDGER_MESSAGE,
    MISSING_ROW_MESSAGE,
    VERSION_COLUMN,
    LedgerStatus,
    Operation,
    RecordStatus,
)
from batchsync.shared.exceptions.sync import InconsistencyError, TransientStoreError
from batchsync.shared.utils.sql_identifiers import meta_column_name

RowLookup = Callable[[], Optional[Mapping[str, Any]]]
ErrorLookup = Callable[[], Optional[Mapping[str, Any]]]


def _matches(message: Optional[str], markers: Sequence[str]) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in markers)


def _bypass_note(entry: LedgerEntry) -> Optional[str]:
    """Nota de bypass si el error guardado es un reintento idempotente."""
    operation = entry.operation.lower()
    if operation == Operation.CREATE.value and _matches(entry.error_message, DUPLICATE_MESSAGE_MARKERS):
        return DUPLICATE_BYPASS_NOTE
    if operation == Operation.DELETE.value and _matches(entry.error_message, DELETE_NOT_FOUND_MARKERS):
        return DELETE_NOT_FOUND_BYPASS_NOTE
    return None


def _live_row(row: Optional[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    # Una fila marcada _deleted cuenta como ausente
    if row is None or row.get(DELETED_COLUMN):
        return None
    return row


def resolve_record_status(
    entry: Optional[LedgerEntry],
    fetch_row: RowLookup,
    project: Callable[[Mapping[str, Any]], dict[str, Any]],
    fetch_legacy_error: Optional[ErrorLookup] = None,
) -> RecordStatusResult:
    """
    Estado de un registro como función pura del ledger y de la fila.

    fetch_row solo se invoca cuando hace falta verificar presencia de datos.
    """
    if entry is None:
        row = _live_row(fetch_row())
        if row is not None:
            return RecordStatusResult(status=RecordStatus.ERROR, error_details=MISSING_LEDGER_MESSAGE)
        if fetch_legacy_error is not None:
            legacy = fetch_legacy_error()
            if legacy:
                return RecordStatusResult(status=RecordStatus.ERROR, error_details=legacy.get("error_message"))
        return RecordStatusResult(status=RecordStatus.NOT_FOUND)

    status = entry.status.upper()
    if status in (LedgerStatus.QUEUED.value, LedgerStatus.PROCESSING.value):
        return RecordStatusResult(status=RecordStatus.PROCESSING)

    if status == LedgerStatus.ERROR.value:
        note = _bypass_note(entry)
        if note:
            return RecordStatusResult(status=RecordStatus.COMPLETED, note=note)
        return RecordStatusResult(status=RecordStatus.ERROR, error_details=entry.error_message)

    if status == LedgerStatus.COMPLETED.value:
        if entry.operation.lower() == Operation.DELETE.value:
            return RecordStatusResult(status=RecordStatus.COMPLETED, note=entry.error_message)
        row = _live_row(fetch_row())
        if row is None:
            return RecordStatusResult(
                status=RecordStatus.ERROR,
                error_details=InconsistencyError(MISSING_ROW_MESSAGE).message,
            )
        return RecordStatusResult(status=RecordStatus.COMPLETED, data=project(row), note=entry.error_message)

    return RecordStatusResult(status=RecordStatus.ERROR, error_details=f"Estado de ledger desconocido: {entry.status}")


class RecordStatusService:
    def __init__(
        self,
        *,
        connection_factory: Callable[[], AbstractContextManager],
        table_repo: MaterializedTableRepository,
        operations_repo: OperationsRepository,
        error_repo: Optional[ErrorTableRepository] = None,
        server_id_column: Optional[str] = "_server_id",
    ) -> None:
        self._connect = connection_factory
        self._table_repo = table_repo
        self._operations = operations_repo
        self._errors = error_repo
        self._server_id_column = server_id_column or None

    def check_status(
        self,
        *,
        table: str,
        field_id: str,
        records: Sequence[Mapping[str, Any]],
        client_id: str,
        batch_version: str,
    ) -> dict[str, Any]:
        """
        Estado de varios registros: [{<field_id>: id, id_cola}] ->
        {version, field_id, table, client_id, total, records}.
        """
        requested = [(_request_id(r, field_id), r.get("id_cola")) for r in records]
        try:
            with self._connect() as conn:
                results = self._check_records(conn, table, field_id, requested, client_id, batch_version)
        except TransientStoreError as e:
            logger.error(f"Sin conexión al store para consultar {table}: {e.message}")
            failed = RecordStatusResult(status=RecordStatus.ERROR, error_details=e.message)
            results = [{field_id: rid, "id_cola": job_id, **failed.to_dict()} for rid, job_id in requested]

        return {
            "version": batch_version,
            "field_id": field_id,
            "table": table,
            "client_id": client_id,
            "total": len(results),
            "records": results,
        }

    def _check_records(
        self,
        conn: psycopg.Connection,
        table: str,
        field_id: str,
        requested: Sequence[tuple[Optional[str], Any]],
        client_id: str,
        batch_version: str,
    ) -> list[dict[str, Any]]:
        ids = [ledger_key(rid) for rid, _ in requested if rid]
        try:
            entries = self._operations.find_by_records(
                conn, table=table, record_ids=ids, client_id=client_id, batch_version=batch_version
            )
            ledger_error = None
        except psycopg.Error as e:
            logger.error(f"Error consultando el ledger de {table}: {e}")
            entries, ledger_error = {}, str(e)

        results = []
        for record_id, job_id in requested:
            if not record_id:
                result = RecordStatusResult(status=RecordStatus.ERROR, error_details=f"ID no proporcionado ({field_id})")
            elif ledger_error is not None:
                result = RecordStatusResult(status=RecordStatus.ERROR, error_details=ledger_error)
            else:
                result = self._resolve_one(
                    conn, table, field_id, record_id, client_id, batch_version, entries.get(ledger_key(record_id))
                )
            results.append({field_id: record_id, "id_cola": job_id, **result.to_dict()})
        return results

    def status(
        self,
        *,
        table: str,
        field_id: str,
        record_id: str,
        client_id: str,
        batch_version: str,
    ) -> RecordStatusResult:
        try:
            with self._connect() as conn:
                try:
                    entry = self._operations.find_by_key(
                        conn,
                        table=table,
                        record_id=ledger_key(record_id),
                        client_id=client_id,
                        batch_version=batch_version,
                    )
                except psycopg.Error as e:
                    logger.error(f"Error consultando el ledger de {table}: {e}")
                    return RecordStatusResult(status=RecordStatus.ERROR, error_details=str(e))
                return self._resolve_one(conn, table, field_id, record_id, client_id, batch_version, entry)
        except TransientStoreError as e:
            logger.error(f"Sin conexión al store para consultar {table}/{record_id}: {e.message}")
            return RecordStatusResult(status=RecordStatus.ERROR, error_details=e.message)

    def _resolve_one(
        self,
        conn: psycopg.Connection,
        table: str,
        field_id: str,
        record_id: str,
        client_id: str,
        batch_version: str,
        entry: Optional[LedgerEntry],
    ) -> RecordStatusResult:
        def fetch_row() -> Optional[Mapping[str, Any]]:
            return self._table_repo.find_row(
                conn,
                table=table,
                id_column=meta_column_name(field_id),
                client_id=client_id,
                batch_version=batch_version,
                record_id=record_id,
            )

        fetch_legacy_error = None
        if self._errors is not None:
            def fetch_legacy_error() -> Optional[Mapping[str, Any]]:
                return self._errors.find_latest(conn, table=table, record_id=record_id, client_id=client_id)

        try:
            return resolve_record_status(
                entry,
                fetch_row,
                lambda row: self._project(row, field_id),
                fetch_legacy_error,
            )
        except Exception as e:
            logger.error(f"Error resolviendo estado de {table}/{record_id}: {e}")
            return RecordStatusResult(status=RecordStatus.ERROR, error_details=str(e))

    def _project(self, row: Mapping[str, Any], field_id: str) -> dict[str, Any]:
        columns = [meta_column_name(field_id), VERSION_COLUMN, DELETED_COLUMN]
        if self._server_id_column:
            columns.insert(0, self._server_id_column)
        return {col: row[col] for col in columns if col in row}


def _request_id(request: Mapping[str, Any], field_id: str) -> Optional[str]:
    value = request.get(field_id)
    if value is None or value == "":
        return None
    return str(value)
