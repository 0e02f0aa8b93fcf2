"""
TypeMapper - convierte valores crudos de las terminales a valores tipados.

Las terminales envian todo como texto (o casi). Cada campo se convierte según
el descriptor declarado en el schema de la tabla:

- string        -> texto recortado
- number        -> Decimal con la precisión completa enviada (sin redondeo)
- fixed-decimal -> igual que number
- date          -> "DD/MM/YYYY" a "YYYY-MM-DD"
- boolean       -> True si el valor es T/Y/S/1, False en otro caso
- memo          -> texto tal cual

Un valor que el tipo declarado no puede interpretar NO aborta el batch:
se degrada a su forma de texto normalizada.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Optional, Union

from loguru import logger

from batchsync.domain.entities.field_schema import FieldDescriptor
from batchsync.shared.constants.sync_constants import FieldType
from batchsync.shared.exceptions.sync import ConversionError

# Union cerrada de valores que maneja el resto del motor
TypedValue = Union[None, str, Decimal, bool]

TRUTHY_TOKENS = frozenset({"T", "Y", "S", "1"})
CLIENT_DATE_FORMAT = "%d/%m/%Y"
STORE_DATE_FORMAT = "%Y-%m-%d"

_POSTGRESQL_TYPES = {
    FieldType.STRING: "VARCHAR({length})",
    FieldType.NUMBER: "NUMERIC({length},{decimal_places})",
    FieldType.FIXED_DECIMAL: "NUMERIC({length},{decimal_places})",
    FieldType.DATE: "DATE",
    FieldType.BOOLEAN: "BOOLEAN",
    FieldType.MEMO: "TEXT",
}


def normalize_value(value: Any) -> Any:
    """
    Normaliza ausentes antes de convertir.

    None, "" y [None] (arreglo de un solo null) se vuelven None, para que
    un arreglo mal formado nunca llegue a convertirse como texto "[None]".
    """
    if value is None or value == "":
        return None
    if isinstance(value, list) and len(value) == 1 and value[0] is None:
        return None
    return value


def _to_text(value: Any) -> str:
    return str(value).strip()


def _to_memo(value: Any) -> str:
    return str(value)


def _to_decimal(value: Any) -> Optional[Decimal]:
    text = _to_text(value)
    if not text:
        return None
    try:
        number = Decimal(text)
    except InvalidOperation:
        raise ValueError(f"'{text}' no es numérico")
    if not number.is_finite():
        raise ValueError(f"'{text}' no es un número finito")
    return number


def _to_date(value: Any) -> Optional[str]:
    text = _to_text(value)
    if not text:
        return None
    for fmt in (CLIENT_DATE_FORMAT, STORE_DATE_FORMAT):
        try:
            return datetime.strptime(text, fmt).strftime(STORE_DATE_FORMAT)
        except ValueError:
            continue
    raise ValueError(f"'{text}' no tiene formato DD/MM/YYYY")


def _to_bool(value: Any) -> Optional[bool]:
    text = _to_text(value)
    if not text:
        return None
    return text.upper() in TRUTHY_TOKENS


class TypeMapper:
    """Convierte valores crudos de un registro según su descriptor de campo."""

    def __init__(self, converters: Optional[Dict[FieldType, Callable[[Any], TypedValue]]] = None):
        self._converters = converters or {
            FieldType.STRING: _to_text,
            FieldType.NUMBER: _to_decimal,
            FieldType.FIXED_DECIMAL: _to_decimal,
            FieldType.DATE: _to_date,
            FieldType.BOOLEAN: _to_bool,
            FieldType.MEMO: _to_memo,
        }

    def convert(self, raw_value: Any, descriptor: Optional[FieldDescriptor]) -> TypedValue:
        """
        Convierte un valor crudo al tipo de su columna.

        Politica de nulos: sin descriptor, o con descriptor no-nullable, un valor
        nulo se guarda como "" para respetar los NOT NULL sin inventar contenido.
        """
        value = normalize_value(raw_value)
        if value is None:
            return self._null_for(descriptor)

        if descriptor is None:
            return normalize_value(_to_text(value))

        converter = self._converters.get(descriptor.type)
        if converter is None:
            return normalize_value(_to_text(value))

        try:
            converted = converter(value)
        except (ValueError, TypeError) as e:
            error = ConversionError(descriptor.name, value, str(e))
            logger.warning(f"{error.message}. Se guarda como texto")
            converted = _to_text(value)

        converted = normalize_value(converted)
        if converted is None:
            return self._null_for(descriptor)
        return converted

    @staticmethod
    def _null_for(descriptor: Optional[FieldDescriptor]) -> Optional[str]:
        if descriptor is None or not descriptor.nullable:
            return ""
        return None

    @staticmethod
    def postgresql_type(descriptor: Optional[FieldDescriptor]) -> str:
        """Tipo de columna PostgreSQL al que corresponde cada tipo de campo."""
        if descriptor is None:
            return "TEXT"
        template = _POSTGRESQL_TYPES.get(descriptor.type, "TEXT")
        return template.format(
            length=descriptor.length or 255,
            decimal_places=descriptor.decimal_places or 0,
        )
