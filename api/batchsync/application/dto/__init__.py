"""
Data Transfer Objects (DTOs) para la capa de aplicación.
"""
from .items_dto import (
    BatchQueuedResponseDTO,
    RecordStatusRequestDTO,
    RecordStatusItemDTO,
    RecordStatusResponseDTO,
    JobStatusDTO,
    BatchSummaryDTO,
)

__all__ = [
    "BatchQueuedResponseDTO",
    "RecordStatusRequestDTO",
    "RecordStatusItemDTO",
    "RecordStatusResponseDTO",
    "JobStatusDTO",
    "BatchSummaryDTO",
]
