"""
Entidad de dominio: descriptor de campo del schema de una tabla.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from batchsync.shared.constants.sync_constants import DBF_TYPE_CODES, FieldType


@dataclass(frozen=True)
class FieldDescriptor:
    """
    Un campo de la tabla lógica tal como lo declara su archivo de schema.

    Inmutable: el schema se carga una vez y se comparte entre workers.
    """

    name: str
    type: FieldType
    length: Optional[int] = None
    decimal_places: Optional[int] = None
    nullable: bool = True

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "FieldDescriptor":
        """
        Construye el descriptor desde el JSON del schema.

        Acepta el código DBF ("C", "N", ...) o el nombre del tipo ("string", ...).
        """
        name = str(raw.get("name") or "").strip()
        if not name:
            raise ValueError("Descriptor de campo sin nombre")
        return cls(
            name=name,
            type=parse_field_type(raw.get("type")),
            length=_optional_int(raw.get("length")),
            decimal_places=_optional_int(raw.get("decimal_places")),
            nullable=bool(raw.get("nullable", True)),
        )


def parse_field_type(raw: Any) -> FieldType:
    code = str(raw or "").strip()
    if code.upper() in DBF_TYPE_CODES:
        return DBF_TYPE_CODES[code.upper()]
    try:
        return FieldType(code.lower())
    except ValueError as e:
        raise ValueError(f"Tipo de campo desconocido: {raw!r}") from e


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)
