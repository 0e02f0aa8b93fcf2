"""
Casos de uso de ingesta de batches y consulta de estado.

Características clave:
- La ingesta valida la forma del batch, registra las llaves como QUEUED en el
  ledger y encola el job; la aplicación ocurre en los workers de la cola.
- El polling de estado es de solo lectura (ledger + tabla materializada).
- Las llamadas bloqueantes al store corren en hilos (asyncio.to_thread).
"""

from __future__ import annotations

import asyncio
import json
import uuid
from collections import Counter
from dataclasses import asdict
from typing import Any, Callable, List, Mapping, Optional

from loguru import logger

from batchsync.application.dto.items_dto import (
    BatchQueuedResponseDTO,
    BatchSummaryDTO,
    JobStatusDTO,
    RecordStatusRequestDTO,
    RecordStatusResponseDTO,
)
from batchsync.application.services.batch_apply_engine import BatchApplyEngine
from batchsync.application.services.record_status_service import RecordStatusService
from batchsync.domain.entities.batch import Batch
from batchsync.infrastructure.queue.batch_queue import BatchQueue
from batchsync.infrastructure.repositories.operations_repository import OperationsRepository
from batchsync.infrastructure.schema.schema_service import SchemaService
from batchsync.shared.exceptions.domain import (
    EntityNotFoundException,
    QueueFullException,
    ValidationException,
)
from batchsync.shared.utils.audit_logger import AuditLogger
from batchsync.shared.utils.sql_identifiers import is_safe_identifier

BATCH_META_PARAMS = ("operation", "table_name", "client_id", "field_id", "ver")


def parse_ndjson(body: str) -> List[Any]:
    """
    Parsea un cuerpo NDJSON (un registro JSON por línea, líneas vacias ignoradas).

    Raises:
        ValidationException: si alguna línea no es JSON válido
    """
    records = []
    for line_no, line in enumerate(body.strip().splitlines(), start=1):
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError as e:
            raise ValidationException(
                f"Error parseando línea NDJSON {line_no}: {e.msg}",
                field="records",
                error_code="INVALID_NDJSON",
            )
    return records


class ItemsUseCases:
    """Orquesta la ingesta de batches, el estado de jobs y el polling de registros."""

    def __init__(
        self,
        *,
        queue: BatchQueue,
        engine: BatchApplyEngine,
        status_service: RecordStatusService,
        operations_repo: OperationsRepository,
        connection_factory: Callable,
        track_queued: bool = True,
        schema_service: Optional[SchemaService] = None,
    ) -> None:
        self._queue = queue
        self._engine = engine
        self._status = status_service
        self._operations = operations_repo
        self._connect = connection_factory
        self._track_queued = track_queued
        # Con schema_service solo se aceptan tablas con schema registrado
        self._schemas = schema_service

    async def submit_batch(self, payload: Mapping[str, Any]) -> BatchQueuedResponseDTO:
        """
        Valida y encola un batch.

        Raises:
            ValidationException: batch mal formado o tabla sin schema (no se reintenta)
            QueueFullException: la cola no acepta más trabajos
        """
        batch = Batch.build(
            operation=payload.get("operation"),
            table_name=payload.get("table_name"),
            client_id=payload.get("client_id"),
            field_id=payload.get("field_id"),
            batch_version=payload.get("ver"),
            records=payload.get("records"),
        )
        self._require_registered(batch.table_name)
        job_id = uuid.uuid4().hex
        batch.job_id = job_id

        if self._track_queued:
            await asyncio.to_thread(self._engine.mark_queued, batch, job_id)

        try:
            await self._queue.enqueue(batch.to_job_payload(), job_id=job_id)
        except QueueFullException as e:
            if self._track_queued:
                await asyncio.to_thread(self._engine.mark_rejected, batch, e.message, job_id)
            raise

        logger.info(
            f"Batch {job_id} encolado: {batch.operation.value} {batch.table_name} "
            f"{batch.client_id} - {len(batch.records)} registros"
        )
        return BatchQueuedResponseDTO(id_cola=job_id)

    async def check_status(self, dto: RecordStatusRequestDTO) -> RecordStatusResponseDTO:
        _require_identifiers(dto.table_name, dto.field_id)
        self._require_registered(dto.table_name)
        result = await asyncio.to_thread(
            self._status.check_status,
            table=dto.table_name,
            field_id=dto.field_id,
            records=dto.records,
            client_id=dto.client_id,
            batch_version=dto.ver,
        )
        summary = Counter(r["status"] for r in result["records"])
        AuditLogger.log_status_poll(dto.table_name, dto.client_id, dict(summary))
        return RecordStatusResponseDTO(**result)

    def _require_registered(self, table_name: str) -> None:
        if self._schemas is not None and not self._schemas.is_registered(table_name):
            raise ValidationException(
                f"Tabla sin schema registrado: {table_name}",
                field="table_name",
                error_code="TABLE_NOT_REGISTERED",
            )

    async def get_job(self, job_id: str) -> JobStatusDTO:
        job = await self._queue.get_job(job_id)
        if job is None:
            raise EntityNotFoundException("Job", job_id)
        return JobStatusDTO(**job.to_dict())

    async def get_batch(self, batch_id: str, table_name: str, client_id: str) -> BatchSummaryDTO:
        _require_identifiers(table_name)
        entries, stats = await asyncio.to_thread(self._load_batch, batch_id, table_name, client_id)
        if not entries:
            raise EntityNotFoundException("Batch", batch_id)
        return BatchSummaryDTO(
            batch_id=batch_id,
            table=table_name,
            client_id=client_id,
            stats=stats,
            operations=[asdict(e) for e in entries],
        )

    def _load_batch(self, batch_id: str, table_name: str, client_id: str):
        with self._connect() as conn:
            entries = self._operations.find_by_batch(
                conn, table=table_name, batch_id=batch_id, client_id=client_id
            )
            stats = self._operations.stats_by_batch(
                conn, table=table_name, batch_id=batch_id, client_id=client_id
            )
        return entries, stats


def _require_identifiers(table_name: str, field_id: Optional[str] = None) -> None:
    if not is_safe_identifier(table_name):
        raise ValidationException(f"Table_name inválido: {table_name}", field="table_name", error_code="INVALID_TABLE_NAME")
    if field_id is not None and not is_safe_identifier(f"_{field_id}"):
        raise ValidationException("Field_id inválido", field="field_id", error_code="INVALID_FIELD_ID")
