"""
Constantes del motor de sincronización de batches.
"""
from enum import Enum


class Operation(str, Enum):
    """Operaciones que puede traer un batch."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class FieldType(str, Enum):
    """Tipos de campo declarados en el schema de una tabla."""
    STRING = "string"
    NUMBER = "number"
    FIXED_DECIMAL = "fixed-decimal"
    DATE = "date"
    BOOLEAN = "boolean"
    MEMO = "memo"


# Códigos DBF usados por los archivos de schema de las terminales
DBF_TYPE_CODES = {
    "C": FieldType.STRING,
    "N": FieldType.NUMBER,
    "F": FieldType.FIXED_DECIMAL,
    "D": FieldType.DATE,
    "L": FieldType.BOOLEAN,
    "M": FieldType.MEMO,
}


class LedgerStatus(str, Enum):
    """Estados persistidos en la tabla <tabla>_operations."""
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class RecordStatus(str, Enum):
    """Estados que ve el cliente al consultar un registro."""
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    NOT_FOUND = "NOT_FOUND"


class ResultStatus(str, Enum):
    """Resultado por registro de un batch aplicado."""
    SUCCESS = "success"
    ERROR = "error"


# Llave del sobre con metadata de cada registro
META_KEY = "__meta"

# Columnas tecnicas de las tablas materializadas
CLIENT_ID_COLUMN = "_client_id"
VERSION_COLUMN = "_ver"
PLAZA_COLUMN = "plaza"
UPDATED_AT_COLUMN = "_updated_at"
DELETED_COLUMN = "_deleted"

# Notas de bypass (fallos que son reintentos idempotentes)
DUPLICATE_BYPASS_NOTE = "duplicate bypassed"
DELETE_NOT_FOUND_BYPASS_NOTE = "delete not found bypassed"

# Mensajes de error por registro
UPDATE_NOT_FOUND_MESSAGE = "Registro no encontrado para UPDATE"
DELETE_NOT_FOUND_MESSAGE = "Registro no encontrado para DELETE"
DUPLICATE_HASH_MISMATCH_MESSAGE = "Registro duplicado con contenido distinto (hash no coincide)"
MISSING_ROW_MESSAGE = "Operación marcada COMPLETED pero el registro no existe en la tabla principal"
MISSING_LEDGER_MESSAGE = "Falta la entrada en el ledger pero los datos existen - reenviar para reconstruir historial"

# Fragmentos que identifican un duplicado en mensajes de error heredados
DUPLICATE_MESSAGE_MARKERS = (
    "duplicate key",
    "llave duplicada",
    "unique constraint",
    DUPLICATE_BYPASS_NOTE,
)
DELETE_NOT_FOUND_MARKERS = (
    DELETE_NOT_FOUND_MESSAGE.lower(),
    DELETE_NOT_FOUND_BYPASS_NOTE,
)

# Anchos de columna del ledger (se trunca, no se rechaza)
LEDGER_OPERATION_WIDTH = 10
LEDGER_STATUS_WIDTH = 20
LEDGER_IDENTIFIER_WIDTH = 100
LEDGER_FIELD_ID_WIDTH = 50
