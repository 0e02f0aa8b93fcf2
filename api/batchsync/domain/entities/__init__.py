"""
Entidades del dominio.
"""
from batchsync.domain.entities.field_schema import FieldDescriptor
from batchsync.domain.entities.batch import Batch
from batchsync.domain.entities.results import RecordResult, BatchApplyResult
from batchsync.domain.entities.ledger import LedgerEntry
from batchsync.domain.entities.record_status import RecordStatusResult

__all__ = [
    "FieldDescriptor",
    "Batch",
    "RecordResult",
    "BatchApplyResult",
    "LedgerEntry",
    "RecordStatusResult",
]
