"""
Entidad de dominio: entrada del ledger de operaciones.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping, Optional


@dataclass
class LedgerEntry:
    """
    Resultado del último intento para (client_id, batch_version, record_id).

    Existe exactamente una entrada por llave; cada intento la sobreescribe.
    """

    client_id: str
    batch_version: str
    record_id: str
    operation: str
    status: str
    field_id: Optional[str] = None
    batch_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.client_id, self.batch_version, self.record_id)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LedgerEntry":
        return cls(
            client_id=row["client_id"],
            batch_version=row["batch_version"],
            record_id=row["record_id"],
            operation=(row.get("operation") or "").upper(),
            status=(row.get("status") or "").upper(),
            field_id=row.get("field_id"),
            batch_id=row.get("batch_id"),
            error_message=row.get("error_message"),
            created_at=row.get("created_at"),
            processed_at=row.get("processed_at"),
        )
