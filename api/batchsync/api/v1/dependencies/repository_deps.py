"""
Dependencias para inyección de repositorios y servicios de infraestructura.

Son instancias únicas por proceso: no guardan estado por request y comparten
el pool de conexiones.
"""
from functools import lru_cache
from typing import Optional

from batchsync.core.config import settings
from batchsync.infrastructure.repositories.error_table_repository import ErrorTableRepository
from batchsync.infrastructure.repositories.materialized_table_repository import MaterializedTableRepository
from batchsync.infrastructure.repositories.operations_repository import OperationsRepository
from batchsync.infrastructure.schema.schema_service import SchemaService


@lru_cache
def get_table_repository() -> MaterializedTableRepository:
    return MaterializedTableRepository(server_id_column=settings.SERVER_ID_COLUMN)


@lru_cache
def get_operations_repository() -> OperationsRepository:
    return OperationsRepository(batch_size=settings.BULK_CHUNK_SIZE)


@lru_cache
def get_error_table_repository() -> Optional[ErrorTableRepository]:
    """Solo existe con LEGACY_ERROR_TABLE_ENABLED."""
    if not settings.LEGACY_ERROR_TABLE_ENABLED:
        return None
    return ErrorTableRepository()


@lru_cache
def get_schema_service() -> SchemaService:
    return SchemaService(settings.SCHEMAS_DIR)
