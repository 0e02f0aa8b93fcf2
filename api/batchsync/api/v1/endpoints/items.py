"""
Endpoints de ingesta de batches y consulta de estado.

- POST /items acepta JSON o NDJSON (un registro por línea, metadata del batch
  en query params) y responde en cuanto el batch queda encolado.
- POST /items/status reconcilia ledger y tabla materializada por registro.
"""

from __future__ import annotations

import json
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from loguru import logger

from batchsync.api.v1.dependencies.use_case_deps import get_items_use_cases
from batchsync.application.dto.items_dto import (
    BatchQueuedResponseDTO,
    BatchSummaryDTO,
    JobStatusDTO,
    RecordStatusRequestDTO,
    RecordStatusResponseDTO,
)
from batchsync.application.use_cases.items_use_cases import BATCH_META_PARAMS, ItemsUseCases, parse_ndjson
from batchsync.core.security import require_api_key
from batchsync.shared.exceptions.base import AppException
from batchsync.shared.exceptions.domain import ValidationException
from batchsync.shared.utils.audit_logger import AuditLogger

NDJSON_CONTENT_TYPES = ("text/plain", "application/x-ndjson")


router = APIRouter(prefix="/items", tags=["Items"], dependencies=[Depends(require_api_key)])


async def _read_batch_payload(request: Request) -> Dict[str, Any]:
    content_type = request.headers.get("content-type", "").split(";", 1)[0].strip().lower()

    if content_type in NDJSON_CONTENT_TYPES:
        try:
            body = (await request.body()).decode("utf-8")
        except UnicodeDecodeError:
            raise ValidationException("El cuerpo NDJSON no es UTF-8 válido", error_code="INVALID_NDJSON")
        payload: Dict[str, Any] = {key: request.query_params.get(key) for key in BATCH_META_PARAMS}
        payload["records"] = parse_ndjson(body)
        logger.debug(f"NDJSON parseado: {len(payload['records'])} registros para {payload.get('client_id')}")
        return payload

    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationException("El cuerpo no es JSON válido", error_code="INVALID_JSON")
    if not isinstance(payload, dict):
        raise ValidationException("El cuerpo debe ser un objeto JSON", error_code="INVALID_BODY")
    return payload


@router.post(
    "",
    response_model=BatchQueuedResponseDTO,
    summary="Encolar un batch de registros"
)
async def create_items(
    request: Request,
    use_cases: ItemsUseCases = Depends(get_items_use_cases),
):
    """
    Valida la forma del batch y lo encola. La aplicación es asincrona:
    el resultado por registro se consulta con /items/status.
    """
    client_id = request.query_params.get("client_id")
    try:
        payload = await _read_batch_payload(request)
        client_id = payload.get("client_id") or client_id
        response = await use_cases.submit_batch(payload)
    except AppException as exc:
        body = {
            "status": "error",
            "msg": exc.message,
            "status_id": exc.error_code,
            "id_cola": None,
            "status_code": exc.status_code,
        }
        if exc.status_code >= 500:
            logger.error(f"Error interno en create_items ({client_id}): {exc.message}")
        else:
            logger.warning(f"Error del cliente en create_items ({client_id}): {exc.message}")
        AuditLogger.log_response(client_id, "POST", "/items", exc.status_code, body)
        return JSONResponse(status_code=exc.status_code, content=body)

    AuditLogger.log_response(client_id, "POST", "/items", status.HTTP_200_OK, response.model_dump())
    return response


@router.post(
    "/status",
    response_model=RecordStatusResponseDTO,
    summary="Consultar el estado de registros"
)
async def check_items_status(
    dto: RecordStatusRequestDTO,
    use_cases: ItemsUseCases = Depends(get_items_use_cases),
) -> RecordStatusResponseDTO:
    """
    Retorna PROCESSING, COMPLETED, ERROR o NOT_FOUND por registro.
    Solo lectura: se puede llamar cuantas veces se quiera.
    """
    return await use_cases.check_status(dto)


@router.get(
    "/jobs/{job_id}",
    response_model=JobStatusDTO,
    summary="Obtener estado de un job de la cola (polling)"
)
async def get_job_status(
    job_id: str,
    use_cases: ItemsUseCases = Depends(get_items_use_cases),
) -> JobStatusDTO:
    return await use_cases.get_job(job_id)


@router.get(
    "/batches/{batch_id}",
    response_model=BatchSummaryDTO,
    summary="Entradas del ledger y estadísticas de un batch"
)
async def get_batch_summary(
    batch_id: str,
    table_name: str = Query(..., min_length=1),
    client_id: str = Query(..., min_length=1),
    use_cases: ItemsUseCases = Depends(get_items_use_cases),
) -> BatchSummaryDTO:
    return await use_cases.get_batch(batch_id, table_name, client_id)
