"""
DTOs para la ingesta de batches y la consulta de estado de registros.

La forma del batch se valida en la entidad Batch (con códigos de error por
campo), por eso el request de batch no declara tipos estrictos.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class BatchQueuedResponseDTO(BaseModel):
    """Respuesta inmediata al encolar un batch."""

    status: str = "ok"
    msg: str = "Batch encolado exitosamente"
    status_id: str = "BATCH_QUEUED"
    id_cola: Optional[str] = None
    status_code: int = 200


class RecordStatusRequestDTO(BaseModel):
    """
    Request de polling de estado.

    Cada elemento de `records` trae el id bajo la llave `field_id`
    y opcionalmente el `id_cola` que devolvio la ingesta.
    """

    table_name: str = Field(..., min_length=1)
    field_id: str = Field(..., min_length=1)
    client_id: str = Field(..., min_length=1)
    ver: str = Field(..., min_length=1)
    records: List[Dict[str, Any]] = Field(..., min_length=1, max_length=5000)


class RecordStatusItemDTO(BaseModel):
    """Estado de un registro. El id viaja bajo la llave dinámica `field_id`."""

    model_config = {"extra": "allow"}

    id_cola: Optional[Any] = None
    status: str
    data: Optional[Dict[str, Any]] = None
    note: Optional[str] = None
    error_details: Optional[str] = None


class RecordStatusResponseDTO(BaseModel):
    version: str
    field_id: str
    table: str
    client_id: str
    total: int
    records: List[RecordStatusItemDTO]


class JobStatusDTO(BaseModel):
    """Estado actual de un job de la cola (polling)."""

    job_id: str
    status: str
    attempts: int
    table_name: Optional[str] = None
    operation: Optional[str] = None
    client_id: Optional[str] = None
    records: int = 0
    created_at: datetime
    updated_at: datetime
    finished_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None


class BatchSummaryDTO(BaseModel):
    """Entradas del ledger de un batch y su conteo por operación y estado."""

    batch_id: str
    table: str
    client_id: str
    stats: Dict[str, Any]
    operations: List[Dict[str, Any]]
