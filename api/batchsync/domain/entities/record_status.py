"""
Entidad de dominio: estado reconciliado de un registro.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from batchsync.shared.constants.sync_constants import RecordStatus


@dataclass(frozen=True)
class RecordStatusResult:
    status: RecordStatus
    data: Optional[Dict[str, Any]] = None
    note: Optional[str] = None
    error_details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": self.status.value, "data": self.data}
        if self.note:
            payload["note"] = self.note
        if self.error_details:
            payload["error_details"] = self.error_details
        return payload
