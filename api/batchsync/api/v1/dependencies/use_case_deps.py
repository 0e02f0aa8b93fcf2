"""
Dependencias para inyección de servicios y casos de uso.
"""
from functools import lru_cache

from batchsync.api.v1.dependencies.repository_deps import (
    get_error_table_repository,
    get_operations_repository,
    get_schema_service,
    get_table_repository,
)
from batchsync.application.services.batch_apply_engine import BatchApplyEngine
from batchsync.application.services.record_status_service import RecordStatusService
from batchsync.application.use_cases.items_use_cases import ItemsUseCases
from batchsync.core.config import settings
from batchsync.infrastructure.database.session import get_connection
from batchsync.infrastructure.queue.batch_queue import BatchQueue
from batchsync.infrastructure.queue.batch_worker import BatchWorker


@lru_cache
def get_batch_apply_engine() -> BatchApplyEngine:
    return BatchApplyEngine(
        connection_factory=get_connection,
        table_repo=get_table_repository(),
        operations_repo=get_operations_repository(),
        error_repo=get_error_table_repository(),
        bulk_chunk_size=settings.BULK_CHUNK_SIZE,
        comparison_hash_key=settings.COMPARISON_HASH_KEY,
        excluded_meta_keys=settings.excluded_meta_keys,
    )


@lru_cache
def get_record_status_service() -> RecordStatusService:
    return RecordStatusService(
        connection_factory=get_connection,
        table_repo=get_table_repository(),
        operations_repo=get_operations_repository(),
        error_repo=get_error_table_repository(),
        server_id_column=settings.SERVER_ID_COLUMN,
    )


@lru_cache
def get_batch_queue() -> BatchQueue:
    """
    Cola única del proceso. Se inicia en el evento de startup.
    """
    worker = BatchWorker(get_batch_apply_engine(), get_schema_service())
    return BatchQueue(
        worker.process,
        concurrency=settings.WORKER_CONCURRENCY,
        max_attempts=settings.QUEUE_MAX_ATTEMPTS,
        max_size=settings.QUEUE_MAX_SIZE,
        on_failed=worker.mark_failed,
    )


def get_items_use_cases() -> ItemsUseCases:
    """
    Dependencia para obtener los casos de uso de items.

    Returns:
        ItemsUseCases: Instancia de casos de uso de items
    """
    return ItemsUseCases(
        queue=get_batch_queue(),
        engine=get_batch_apply_engine(),
        status_service=get_record_status_service(),
        operations_repo=get_operations_repository(),
        connection_factory=get_connection,
        track_queued=settings.LEDGER_TRACK_QUEUED,
        schema_service=get_schema_service() if settings.REQUIRE_REGISTERED_TABLES else None,
    )
