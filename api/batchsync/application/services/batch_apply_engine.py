"""
Motor de aplicación de batches.

Diseño (resumen):
- Cada bloque de BULK_CHUNK_SIZE registros se intenta con UNA sentencia
  multi-fila (INSERT multi-VALUES, UPDATE con CASE, DELETE con ANY).
- Si la sentencia por lotes falla, el bloque se reintenta registro por
  registro con la misma operación. El fallo del bulk nunca aborta el batch.
- Cada resultado por registro (éxito, error real o bypass) se escribe en el
  ledger <tabla>_operations antes de devolver el resultado del batch.

Estrategia de idempotencia (la cola entrega al-menos-una-vez):
- CREATE duplicado -> éxito con nota "duplicate bypassed" (si el hash de
  comparación no contradice lo guardado).
- DELETE de un registro ausente -> éxito con nota "delete not found bypassed".
- UPDATE de un registro ausente -> error real.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

import psycopg
from loguru import logger
from psycopg import errors as pg_errors

from batchsync.application.services.type_mapper import TypeMapper, normalize_value
from batchsync.domain.entities.batch import Batch
from batchsync.domain.entities.field_schema import FieldDescriptor
from batchsync.domain.entities.ledger import LedgerEntry
from batchsync.domain.entities.results import BatchApplyResult, RecordResult
from batchsync.infrastructure.repositories.error_table_repository import ErrorTableRepository
from batchsync.infrastructure.repositories.materialized_table_repository import MaterializedTableRepository
from batchsync.infrastructure.repositories.operations_repository import OperationsRepository
from batchsync.shared.constants.sync_constants import (
    CLIENT_ID_COLUMN,
    DELETE_NOT_FOUND_BYPASS_NOTE,
    DUPLICATE_BYPASS_NOTE,
    DUPLICATE_HASH_MISMATCH_MESSAGE,
    META_KEY,
    PLAZA_COLUMN,
    UPDATE_NOT_FOUND_MESSAGE,
    VERSION_COLUMN,
    LedgerStatus,
    Operation,
)
from batchsync.shared.exceptions.domain import ValidationException
from batchsync.shared.exceptions.sync import (
    ConstraintError,
    NotFoundError,
    SyncException,
    TransientStoreError,
    classify_store_error,
)
from batchsync.shared.utils.sql_identifiers import column_name, is_safe_identifier, meta_column_name

ConnectionFactory = Callable[[], AbstractContextManager]


@dataclass
class PreparedRecord:
    """Registro ya convertido: columnas listas para la sentencia."""

    record_id: str
    columns: dict[str, Any]
    comparison_hash: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class BulkOutcome:
    """Resultado de una sentencia por lotes que SI se ejecuto."""

    results: list[RecordResult]


class BatchApplyEngine:
    """
    Aplica batches de create/update/delete sobre las tablas materializadas.

    Es el único escritor de las filas y del ledger.
    """

    def __init__(
        self,
        *,
        connection_factory: ConnectionFactory,
        table_repo: MaterializedTableRepository,
        operations_repo: OperationsRepository,
        error_repo: Optional[ErrorTableRepository] = None,
        type_mapper: Optional[TypeMapper] = None,
        bulk_chunk_size: int = 500,
        comparison_hash_key: Optional[str] = "content_hash",
        excluded_meta_keys: Iterable[str] = ("recno", "ref_date"),
    ) -> None:
        self._connect = connection_factory
        self._table_repo = table_repo
        self._operations = operations_repo
        self._errors = error_repo
        self._mapper = type_mapper or TypeMapper()
        self._chunk_size = max(1, bulk_chunk_size)
        self._hash_key = comparison_hash_key or None
        self._excluded_meta = frozenset(excluded_meta_keys)

    # ------------------------------------------------------------------ ledger

    def mark_queued(self, batch: Batch, batch_id: Optional[str] = None) -> bool:
        """Registra cada llave del batch como QUEUED al encolarlo."""
        return self._track(batch, LedgerStatus.QUEUED, batch_id)

    def mark_processing(self, batch: Batch, batch_id: Optional[str] = None) -> bool:
        """Registra cada llave del batch como PROCESSING cuando un worker lo toma."""
        return self._track(batch, LedgerStatus.PROCESSING, batch_id)

    def mark_rejected(self, batch: Batch, message: str, batch_id: Optional[str] = None) -> bool:
        """
        Registra como ERROR las llaves de un batch que no se va a aplicar:
        cola llena al encolar o intentos agotados en la cola.
        """
        return self._track(batch, LedgerStatus.ERROR, batch_id, message)

    def _track(
        self,
        batch: Batch,
        status: LedgerStatus,
        batch_id: Optional[str],
        message: Optional[str] = None,
    ) -> bool:
        entries = [
            self._ledger_entry(batch, record_id, status, message, batch_id)
            for record_id in batch.record_ids()
        ]
        try:
            with self._connect() as conn:
                return self._operations.save_batch(conn, table=batch.table_name, entries=entries)
        except (psycopg.Error, TransientStoreError) as e:
            logger.error(f"No se pudo marcar {status.value} el batch {batch_id or batch.job_id}: {e}")
            return False

    @staticmethod
    def _ledger_entry(
        batch: Batch,
        record_id: str,
        status: LedgerStatus,
        message: Optional[str],
        batch_id: Optional[str],
    ) -> LedgerEntry:
        return LedgerEntry(
            client_id=batch.client_id,
            batch_version=batch.batch_version,
            record_id=record_id,
            operation=batch.operation.value,
            status=status.value,
            field_id=batch.field_id,
            batch_id=batch_id or batch.job_id,
            error_message=message,
        )

    # ------------------------------------------------------------------ apply

    def apply_batch(
        self,
        batch: Batch,
        schema: Optional[Sequence[FieldDescriptor]] = None,
    ) -> BatchApplyResult:
        """
        Aplica el batch y devuelve un resultado por registro, en el orden recibido.

        Un schema None no es fatal: los campos se guardan como texto normalizado.
        """
        log = logger.bind(job_id=batch.job_id)
        fields_by_name = _index_schema(schema)
        id_column = meta_column_name(batch.field_id)

        results: list[Optional[RecordResult]] = [None] * len(batch.records)
        pending: list[tuple[int, PreparedRecord]] = []

        for idx, record in enumerate(batch.records):
            record_id = batch.record_id(record)
            if not record_id:
                results[idx] = RecordResult.failure(
                    None, f"ID no proporcionado (field_id: {batch.field_id})", "MISSING_RECORD_ID"
                )
                continue
            try:
                pending.append((idx, self._prepare(batch, record, record_id, fields_by_name)))
            except ValidationException as e:
                results[idx] = RecordResult.failure(record_id, e.message, e.error_code)

        with self._connect() as conn:
            for start in range(0, len(pending), self._chunk_size):
                chunk = pending[start:start + self._chunk_size]
                prepared = [p for _, p in chunk]

                outcome = self._apply_bulk(conn, batch, id_column, prepared)
                if outcome is None:
                    chunk_results = self._apply_each(conn, batch, id_column, prepared)
                else:
                    chunk_results = outcome.results

                for (idx, _), result in zip(chunk, chunk_results):
                    results[idx] = result

            final = [r for r in results if r is not None]
            self._record_outcomes(conn, batch, final)

        applied = BatchApplyResult(operation=batch.operation.value, table=batch.table_name, results=final)
        log.info(
            f"Batch {batch.operation.value} {batch.table_name} ({batch.client_id}/{batch.batch_version}): "
            f"{applied.saved_successfully} ok, {applied.save_errors} error(es)"
        )
        return applied

    def _record_outcomes(self, conn: psycopg.Connection, batch: Batch, results: Sequence[RecordResult]) -> None:
        entries = [
            self._ledger_entry(batch, r.record_id, r.ledger_status, r.ledger_message, None)
            for r in results
            if r.record_id
        ]
        if not self._operations.save_batch(conn, table=batch.table_name, entries=entries):
            logger.warning(f"Ledger de {batch.table_name} incompleto para el batch {batch.job_id}")

        if self._errors is None:
            return
        records_by_id = {batch.record_id(r): r for r in batch.records}
        for r in results:
            if r.is_success or not r.record_id:
                continue
            self._errors.save_error(
                conn,
                table=batch.table_name,
                record_id=r.record_id,
                client_id=batch.client_id,
                batch_version=batch.batch_version,
                operation=batch.operation.value,
                error=r.error or "",
                field_id=batch.field_id,
                record_data=records_by_id.get(r.record_id),
            )

    # ------------------------------------------------------------------ prepare

    def _prepare(
        self,
        batch: Batch,
        record: Mapping[str, Any],
        record_id: str,
        fields_by_name: Mapping[str, FieldDescriptor],
    ) -> PreparedRecord:
        columns: dict[str, Any] = {}
        is_update = batch.operation == Operation.UPDATE

        if batch.operation != Operation.DELETE:
            for name, raw_value in record.items():
                if name == META_KEY:
                    continue
                # UPDATE: un valor ausente nunca pisa lo guardado
                if is_update and normalize_value(raw_value) is None:
                    continue
                col = _checked_column(column_name(name))
                columns[col] = self._mapper.convert(raw_value, _lookup(fields_by_name, name))

        meta = record.get(META_KEY) or {}
        if batch.operation != Operation.DELETE:
            for key, value in meta.items():
                if key in self._excluded_meta or (is_update and key == batch.field_id):
                    continue
                col = _checked_column(meta_column_name(key))
                columns[col] = None if value is None else str(value)

        if batch.operation == Operation.CREATE:
            columns[CLIENT_ID_COLUMN] = batch.client_id
            columns[PLAZA_COLUMN] = batch.plaza
            columns[VERSION_COLUMN] = batch.batch_version

        comparison_hash = None
        if self._hash_key and meta.get(self._hash_key) not in (None, ""):
            comparison_hash = str(meta[self._hash_key])

        return PreparedRecord(record_id=record_id, columns=columns, comparison_hash=comparison_hash, raw=record)

    # ------------------------------------------------------------------ bulk

    def _apply_bulk(
        self,
        conn: psycopg.Connection,
        batch: Batch,
        id_column: str,
        prepared: Sequence[PreparedRecord],
    ) -> Optional[BulkOutcome]:
        """
        Una sentencia para todo el bloque.

        Retorna None si la sentencia fallo; en ese caso nada del bloque se aplico.
        """
        if not prepared:
            return BulkOutcome(results=[])
        try:
            with conn.transaction():
                if batch.operation == Operation.CREATE:
                    return self._bulk_insert(conn, batch, id_column, prepared)
                if batch.operation == Operation.UPDATE:
                    return self._bulk_update(conn, batch, id_column, prepared)
                return self._bulk_delete(conn, batch, id_column, prepared)
        except psycopg.Error as e:
            logger.warning(
                f"Error en batch {batch.operation.value.upper()} sobre {batch.table_name}, "
                f"fallback a procesamiento individual: {e}"
            )
            return None

    def _bulk_insert(self, conn, batch: Batch, id_column: str, prepared: Sequence[PreparedRecord]) -> BulkOutcome:
        server_ids = self._table_repo.insert_many(
            conn,
            table=batch.table_name,
            id_column=id_column,
            rows=[p.columns for p in prepared],
        )
        return BulkOutcome(
            results=[RecordResult.success(p.record_id, postgres_id=server_ids.get(p.record_id)) for p in prepared]
        )

    def _bulk_update(self, conn, batch: Batch, id_column: str, prepared: Sequence[PreparedRecord]) -> BulkOutcome:
        updated = self._table_repo.update_many(
            conn,
            table=batch.table_name,
            id_column=id_column,
            client_id=batch.client_id,
            batch_version=batch.batch_version,
            updates=[(p.record_id, p.columns) for p in prepared],
        )
        return BulkOutcome(
            results=[
                RecordResult.success(p.record_id, postgres_id=p.record_id)
                if p.record_id in updated
                else RecordResult.failure(p.record_id, UPDATE_NOT_FOUND_MESSAGE, "NOT_FOUND")
                for p in prepared
            ]
        )

    def _bulk_delete(self, conn, batch: Batch, id_column: str, prepared: Sequence[PreparedRecord]) -> BulkOutcome:
        deleted = self._table_repo.delete_many(
            conn,
            table=batch.table_name,
            id_column=id_column,
            client_id=batch.client_id,
            batch_version=batch.batch_version,
            record_ids=[p.record_id for p in prepared],
        )
        return BulkOutcome(results=[self._delete_result(p.record_id, p.record_id in deleted) for p in prepared])

    # ------------------------------------------------------------------ per-record

    def _apply_each(
        self,
        conn: psycopg.Connection,
        batch: Batch,
        id_column: str,
        prepared: Sequence[PreparedRecord],
    ) -> list[RecordResult]:
        results = []
        for p in prepared:
            try:
                results.append(self._apply_one(conn, batch, id_column, p))
            except psycopg.Error as e:
                error = classify_store_error(e)
                results.append(RecordResult.failure(p.record_id, error.message, error.error_code))
            except SyncException as e:
                results.append(RecordResult.failure(p.record_id, e.message, e.error_code))
        return results

    def _apply_one(self, conn, batch: Batch, id_column: str, p: PreparedRecord) -> RecordResult:
        if batch.operation == Operation.CREATE:
            try:
                with conn.transaction():
                    server_id = self._table_repo.insert_one(
                        conn, table=batch.table_name, id_column=id_column, row=p.columns
                    )
            except pg_errors.UniqueViolation as e:
                return self._duplicate_result(conn, batch, id_column, p, e)
            return RecordResult.success(p.record_id, postgres_id=server_id)

        if batch.operation == Operation.UPDATE:
            with conn.transaction():
                found = self._table_repo.update_one(
                    conn,
                    table=batch.table_name,
                    id_column=id_column,
                    client_id=batch.client_id,
                    batch_version=batch.batch_version,
                    record_id=p.record_id,
                    fields=p.columns,
                )
            if not found:
                raise NotFoundError(UPDATE_NOT_FOUND_MESSAGE)
            return RecordResult.success(p.record_id, postgres_id=p.record_id)

        with conn.transaction():
            found = self._table_repo.delete_one(
                conn,
                table=batch.table_name,
                id_column=id_column,
                client_id=batch.client_id,
                batch_version=batch.batch_version,
                record_id=p.record_id,
            )
        return self._delete_result(p.record_id, found)

    def _duplicate_result(
        self,
        conn: psycopg.Connection,
        batch: Batch,
        id_column: str,
        p: PreparedRecord,
        error: Exception,
    ) -> RecordResult:
        """
        Un CREATE duplicado es un reintento idempotente solo si la fila existe
        bajo la misma llave (id, tenant, versión) y el hash de comparación
        guardado no difiere del recibido.

        Una violación de otro índice único (la llave no existe) es un error real.
        """
        row = self._table_repo.find_row(
            conn,
            table=batch.table_name,
            id_column=id_column,
            client_id=batch.client_id,
            batch_version=batch.batch_version,
            record_id=p.record_id,
        )
        if row is None:
            logger.warning(f"Violación de unicidad sin fila previa en {batch.table_name}: {p.record_id} ({error})")
            raise classify_store_error(error)

        if p.comparison_hash is not None:
            stored = row.get(meta_column_name(self._hash_key))
            if stored not in (None, "") and str(stored) != p.comparison_hash:
                logger.warning(f"Duplicado con hash distinto en {batch.table_name}: {p.record_id}")
                raise ConstraintError(DUPLICATE_HASH_MISMATCH_MESSAGE)

        logger.debug(f"Duplicado bypass en {batch.table_name}: {p.record_id} ({error})")
        return RecordResult.success(p.record_id, postgres_id=p.record_id, note=DUPLICATE_BYPASS_NOTE)

    @staticmethod
    def _delete_result(record_id: str, found: bool) -> RecordResult:
        if found:
            return RecordResult.success(record_id, postgres_id=record_id)
        return RecordResult.success(record_id, postgres_id=record_id, note=DELETE_NOT_FOUND_BYPASS_NOTE)


def _index_schema(schema: Optional[Sequence[FieldDescriptor]]) -> dict[str, FieldDescriptor]:
    if not schema:
        return {}
    indexed: dict[str, FieldDescriptor] = {}
    for descriptor in schema:
        indexed[descriptor.name] = descriptor
        indexed.setdefault(descriptor.name.lower(), descriptor)
    return indexed


def _lookup(fields_by_name: Mapping[str, FieldDescriptor], name: str) -> Optional[FieldDescriptor]:
    return fields_by_name.get(name) or fields_by_name.get(name.lower())


def _checked_column(name: str) -> str:
    if not is_safe_identifier(name):
        raise ValidationException(f"Nombre de columna inválido: {name}", field=name, error_code="INVALID_COLUMN")
    return name
