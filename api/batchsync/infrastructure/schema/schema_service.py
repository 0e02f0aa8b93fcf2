"""
Carga de schemas de tabla desde archivos JSON.

Cada tabla lógica tiene un archivo <SCHEMAS_DIR>/<TABLA>.json con la forma
{"fields": [{"name": ..., "type": ..., "length": ..., "decimal_places": ...}]}.

Cache por proceso (cache-aside): se lee el cache, en un miss se lee el archivo
y se llena el cache. reload() y clear() refrescan bajo demanda.
"""
import json
import threading
from pathlib import Path
from typing import Dict, List, Optional, Union

from loguru import logger

from batchsync.domain.entities.field_schema import FieldDescriptor

FieldSchema = List[FieldDescriptor]


class SchemaService:
    """Registro de schemas de tabla compartido por los workers."""

    def __init__(self, schemas_dir: Union[str, Path]):
        self._schemas_dir = Path(schemas_dir)
        self._cache: Dict[str, FieldSchema] = {}
        self._lock = threading.Lock()

    @property
    def schemas_dir(self) -> Path:
        return self._schemas_dir

    def load_table_schema(self, table_name: str) -> Optional[FieldSchema]:
        """
        Retorna los descriptores de la tabla o None si no hay schema.

        None no es fatal: el motor aplica el batch con conversión de respaldo.
        """
        with self._lock:
            cached = self._cache.get(table_name)
        if cached is not None:
            return cached

        schema = self._read_schema_file(table_name)
        if schema is None:
            return None

        with self._lock:
            # Si otro hilo ganó la carrera, se conserva su instancia
            return self._cache.setdefault(table_name, schema)

    def reload(self, table_name: str) -> Optional[FieldSchema]:
        with self._lock:
            self._cache.pop(table_name, None)
        return self.load_table_schema(table_name)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()
        logger.info("Cache de schemas limpiado")

    def is_registered(self, table_name: str) -> bool:
        """Indica si la tabla tiene archivo de schema."""
        return self._schema_path(table_name).is_file()

    def _schema_path(self, table_name: str) -> Path:
        # Nombre exacto del archivo, sin cambiar mayúsculas
        return self._schemas_dir / f"{table_name}.json"

    def _read_schema_file(self, table_name: str) -> Optional[FieldSchema]:
        path = self._schema_path(table_name)
        try:
            with path.open("r", encoding="utf-8") as fh:
                raw = json.load(fh)
            fields = [FieldDescriptor.from_dict(item) for item in raw["fields"]]
        except FileNotFoundError:
            logger.warning(f"Schema no encontrado para {table_name}: {path}")
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Error cargando schema {table_name}: {e}")
            return None

        logger.info(f"Schema cargado: {table_name} ({len(fields)} campos)")
        return fields
