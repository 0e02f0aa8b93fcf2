"""
Excepciones relacionadas con la lógica de dominio.
"""
from typing import Any

from batchsync.shared.exceptions.base import AppException


class DomainException(AppException):
    """Excepción base para errores de dominio."""

    def __init__(self, message: str, error_code: str = "DOMAIN_ERROR", details=None):
        super().__init__(
            message=message,
            status_code=400,
            error_code=error_code,
            details=details
        )


class EntityNotFoundException(DomainException):
    """Excepción cuando no se encuentra una entidad."""

    def __init__(self, entity_name: str, entity_id: Any):
        super().__init__(
            message=f"{entity_name} con ID {entity_id} no encontrado",
            error_code="ENTITY_NOT_FOUND",
            details={"entity": entity_name, "id": str(entity_id)}
        )
        self.status_code = 404


class ValidationException(DomainException):
    """
    Excepción para batches mal formados.

    Se rechazan antes de llegar al motor y no se reintentan.
    """

    def __init__(self, message: str, field: str = None, error_code: str = "VALIDATION_ERROR"):
        details = {"field": field} if field else None
        super().__init__(
            message=message,
            error_code=error_code,
            details=details
        )


class UnauthorizedException(AppException):
    """Excepción para API key ausente o inválida."""

    def __init__(self, message: str = "API key inválida o ausente", error_code: str = "UNAUTHORIZED"):
        super().__init__(
            message=message,
            status_code=401,
            error_code=error_code
        )


class QueueFullException(AppException):
    """La cola de batches no acepta más trabajos."""

    def __init__(self, max_size: int):
        super().__init__(
            message=f"La cola de batches está llena (max {max_size})",
            status_code=503,
            error_code="QUEUE_FULL",
            details={"max_size": max_size}
        )
