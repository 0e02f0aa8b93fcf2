"""
Utilidades para interpolar nombres de tabla/columna en SQL dinámico.

Solo los nombres se interpolan (validados y entre comillas dobles);
los valores siempre viajan como parámetros.
"""
import re

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class UnsafeIdentifierError(ValueError):
    """Nombre de tabla o columna que no se puede interpolar."""


def is_safe_identifier(name: str) -> bool:
    return bool(name) and bool(_IDENTIFIER_RE.match(name))


def quote_ident(name: str) -> str:
    """
    Devuelve el identificador entre comillas dobles.

    Raises:
        UnsafeIdentifierError: si el nombre no es un identificador simple
    """
    if not isinstance(name, str) or not is_safe_identifier(name):
        raise UnsafeIdentifierError(f"Identificador SQL inválido: {name!r}")
    return f'"{name}"'


def column_name(field_name: str) -> str:
    """Nombre de columna para un campo de datos (los DBF llegan en mayúsculas)."""
    return field_name.lower()


def meta_column_name(meta_key: str) -> str:
    """Nombre de columna para una llave del sobre __meta."""
    return f"_{meta_key}"


def table_name(logical_table: str) -> str:
    return logical_table.lower()


def operations_table_name(logical_table: str) -> str:
    return f"{table_name(logical_table)}_operations"


def errors_table_name(logical_table: str) -> str:
    return f"{table_name(logical_table)}_errors"
