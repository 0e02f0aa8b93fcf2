"""
Servicios de aplicación.

Contiene la lógica de sincronización reutilizable que no pertenece
a un caso de uso específico.
"""
from batchsync.application.services.type_mapper import TypeMapper, normalize_value
from batchsync.application.services.batch_apply_engine import BatchApplyEngine, BulkOutcome, PreparedRecord
from batchsync.application.services.record_status_service import (
    RecordStatusService,
    resolve_record_status,
)

__all__ = [
    # Conversión de tipos
    "TypeMapper",
    "normalize_value",
    # Aplicación de batches
    "BatchApplyEngine",
    "BulkOutcome",
    "PreparedRecord",
    # Reconciliación
    "RecordStatusService",
    "resolve_record_status",
]
