"""
Entidad de dominio: Batch (unidad de entrega de la cola).
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from batchsync.shared.constants.sync_constants import META_KEY, Operation
from batchsync.shared.exceptions.domain import ValidationException
from batchsync.shared.utils.sql_identifiers import is_safe_identifier


@dataclass
class Batch:
    """
    Operación aplicada a una lista de registros de una tabla/tenant/versión.

    No se persiste; se persisten sus efectos (filas y ledger).
    """

    operation: Operation
    table_name: str
    client_id: str
    field_id: str
    batch_version: str
    records: List[Dict[str, Any]] = field(default_factory=list)
    job_id: Optional[str] = None

    @property
    def plaza(self) -> str:
        """Llave de partición: prefijo del client_id antes del primer '_'."""
        return self.client_id.split("_", 1)[0]

    def record_id(self, record: Mapping[str, Any]) -> Optional[str]:
        return extract_record_id(record, self.field_id)

    def record_ids(self) -> List[str]:
        return [rid for rid in (self.record_id(r) for r in self.records) if rid]

    def to_job_payload(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "table_name": self.table_name,
            "client_id": self.client_id,
            "field_id": self.field_id,
            "ver": self.batch_version,
            "records": self.records,
        }

    @classmethod
    def build(
        cls,
        *,
        operation: Any,
        table_name: Any,
        client_id: Any,
        field_id: Any,
        batch_version: Any,
        records: Any,
        job_id: Optional[str] = None,
    ) -> "Batch":
        """
        Valida la forma del batch y construye la entidad.

        Raises:
            ValidationException: si el batch está mal formado
        """
        if not operation:
            raise ValidationException("Operation es requerido", field="operation", error_code="MISSING_OPERATION")
        try:
            op = Operation(str(operation).lower())
        except ValueError:
            raise ValidationException(
                f"Operation no soportada: {operation}", field="operation", error_code="INVALID_OPERATION"
            )

        if not table_name:
            raise ValidationException("Table_name es requerido", field="table_name", error_code="MISSING_TABLE_NAME")
        if not is_safe_identifier(str(table_name)):
            raise ValidationException(
                f"Table_name inválido: {table_name}", field="table_name", error_code="INVALID_TABLE_NAME"
            )
        if not client_id:
            raise ValidationException("Client_id es requerido", field="client_id", error_code="MISSING_CLIENT_ID")
        if not field_id or not is_safe_identifier(f"_{field_id}"):
            raise ValidationException("Field_id inválido o ausente", field="field_id", error_code="INVALID_FIELD_ID")
        if not batch_version:
            raise ValidationException("Ver es requerido", field="ver", error_code="MISSING_VERSION")

        if not isinstance(records, list):
            raise ValidationException("Records debe ser un array no vacío", field="records", error_code="INVALID_RECORDS")
        if not records:
            raise ValidationException("Records no puede estar vacío", field="records", error_code="EMPTY_RECORDS")

        for idx, record in enumerate(records):
            if not isinstance(record, dict):
                raise ValidationException(
                    f"El registro {idx} no es un objeto", field="records", error_code="INVALID_RECORDS"
                )
            if not extract_record_id(record, str(field_id)):
                raise ValidationException(
                    f"El registro {idx} no trae {META_KEY}.{field_id}", field="records", error_code="MISSING_RECORD_ID"
                )

        return cls(
            operation=op,
            table_name=str(table_name),
            client_id=str(client_id),
            field_id=str(field_id),
            batch_version=str(batch_version),
            records=records,
            job_id=job_id,
        )

    @classmethod
    def from_job_payload(cls, payload: Mapping[str, Any], job_id: Optional[str] = None) -> "Batch":
        return cls.build(
            operation=payload.get("operation"),
            table_name=payload.get("table_name"),
            client_id=payload.get("client_id"),
            field_id=payload.get("field_id"),
            batch_version=payload.get("ver"),
            records=payload.get("records"),
            job_id=job_id,
        )


def extract_record_id(record: Mapping[str, Any], field_id: str) -> Optional[str]:
    meta = record.get(META_KEY)
    if not isinstance(meta, Mapping):
        return None
    value = meta.get(field_id)
    if value is None or value == "":
        return None
    return str(value)
