"""
Worker de batches: lo que ejecuta la cola por cada job.
"""
from typing import Any, Dict, Mapping

from loguru import logger

from batchsync.application.services.batch_apply_engine import BatchApplyEngine
from batchsync.domain.entities.batch import Batch
from batchsync.infrastructure.schema.schema_service import SchemaService
from batchsync.shared.exceptions.domain import ValidationException
from batchsync.shared.exceptions.sync import TransientStoreError
from batchsync.shared.utils.audit_logger import AuditLogger


class BatchWorker:
    """
    Procesa un job de la cola (bloqueante; la cola lo corre en un hilo).

    La cola re-entrega el job si process() lanza, por eso los errores de
    conexión se propagan en lugar de quedarse en el resultado.
    """

    def __init__(self, engine: BatchApplyEngine, schema_service: SchemaService):
        self._engine = engine
        self._schemas = schema_service

    def process(self, job_id: str, payload: Mapping[str, Any], attempt: int = 1) -> Dict[str, Any]:
        batch = Batch.from_job_payload(payload, job_id=job_id)
        log = logger.bind(job_id=job_id)
        log.info(
            f"Iniciando procesamiento de batch {job_id} (intento {attempt}): "
            f"{batch.operation.value} {batch.table_name} {batch.client_id} - {len(batch.records)} registros"
        )

        schema = self._schemas.load_table_schema(batch.table_name)
        if schema is None:
            log.warning(f"Schema no encontrado para {batch.table_name}, se usa conversión de respaldo")

        self._engine.mark_processing(batch)
        result = self._engine.apply_batch(batch, schema)

        if result.save_errors:
            errors = [
                {"record_id": r.record_id, "error": r.error}
                for r in result.results
                if not r.is_success
            ]
            log.error(f"Errores en batch {job_id}: {errors[:20]}")

        if result.has_transient_errors:
            raise TransientStoreError(
                f"Batch {job_id}: {result.save_errors} registro(s) con error de conexión, se reintenta"
            )

        AuditLogger.log_batch(
            "completed",
            job_id=job_id,
            table=batch.table_name,
            client_id=batch.client_id,
            operation=batch.operation.value,
            records=len(batch.records),
            ok=result.saved_successfully,
            errors=result.save_errors,
        )
        return result.to_dict()

    def mark_failed(self, job_id: str, payload: Mapping[str, Any], message: str) -> None:
        """
        Se llama cuando la cola agota los intentos del job: las llaves que
        quedaron en PROCESSING pasan a ERROR con el mensaje del último fallo.
        """
        try:
            batch = Batch.from_job_payload(payload, job_id=job_id)
        except ValidationException as e:
            logger.warning(f"Job {job_id} fallido con payload inválido, sin llaves que marcar: {e.message}")
            return
        self._engine.mark_rejected(batch, f"Batch fallido tras agotar reintentos: {message}", job_id)
