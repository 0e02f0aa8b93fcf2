"""
Resultados del motor de aplicación de batches.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from batchsync.shared.constants.sync_constants import LedgerStatus, ResultStatus


@dataclass
class RecordResult:
    """Resultado definitivo de un registro dentro de un batch."""

    record_id: Optional[str]
    status: ResultStatus
    error: Optional[str] = None
    note: Optional[str] = None
    postgres_id: Optional[Any] = None
    error_code: Optional[str] = None

    @classmethod
    def success(cls, record_id: str, postgres_id: Any = None, note: Optional[str] = None) -> "RecordResult":
        return cls(record_id=record_id, status=ResultStatus.SUCCESS, postgres_id=postgres_id, note=note)

    @classmethod
    def failure(
        cls, record_id: Optional[str], error: str, error_code: Optional[str] = None
    ) -> "RecordResult":
        return cls(record_id=record_id, status=ResultStatus.ERROR, error=error, error_code=error_code)

    @property
    def is_success(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    @property
    def ledger_status(self) -> LedgerStatus:
        return LedgerStatus.COMPLETED if self.is_success else LedgerStatus.ERROR

    @property
    def ledger_message(self) -> Optional[str]:
        # Los bypass quedan COMPLETED con la nota como mensaje
        return self.note if self.is_success else self.error

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"record_id": self.record_id, "status": self.status.value}
        if self.postgres_id is not None:
            payload["postgres_id"] = self.postgres_id
        if self.error:
            payload["error"] = self.error
        if self.note:
            payload["note"] = self.note
        return payload


@dataclass
class BatchApplyResult:
    """Contrato que devuelve applyBatch a la cola."""

    operation: str
    table: str
    results: List[RecordResult] = field(default_factory=list)

    @property
    def saved_successfully(self) -> int:
        return sum(1 for r in self.results if r.is_success)

    @property
    def save_errors(self) -> int:
        return len(self.results) - self.saved_successfully

    @property
    def success(self) -> bool:
        return self.save_errors == 0

    @property
    def has_transient_errors(self) -> bool:
        return any(r.error_code == "TRANSIENT_STORE_ERROR" for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "operation": self.operation,
            "table": self.table,
            "records_processed": len(self.results),
            "saved_successfully": self.saved_successfully,
            "save_errors": self.save_errors,
            "detailed_results": [r.to_dict() for r in self.results],
        }
