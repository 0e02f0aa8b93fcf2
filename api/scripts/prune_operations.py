"""
CLI: retención del ledger de operaciones (<tabla>_operations).

Borra entradas con más de LEDGER_RETENTION_DAYS días. Es housekeeping:
la corrección del sistema no depende de que se ejecute.

Ejecución:
  python scripts/prune_operations.py XCORTE CANOTA
  python scripts/prune_operations.py XCORTE --days 90
  python scripts/prune_operations.py --all
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

from loguru import logger
from dotenv import load_dotenv

# Permite ejecutar este script desde cualquier cwd sin configurar PYTHONPATH.
# La carpeta "api" contiene el paquete raíz `batchsync/`.
_API_ROOT = Path(__file__).resolve().parents[1]
if str(_API_ROOT) not in sys.path:
    sys.path.insert(0, str(_API_ROOT))

load_dotenv(_API_ROOT / ".env", override=False)

from batchsync.core.config import settings
from batchsync.infrastructure.database.session import close_db, get_connection
from batchsync.infrastructure.repositories.operations_repository import OperationsRepository
from batchsync.shared.utils.sql_identifiers import is_safe_identifier


def _tables_from_schemas() -> list[str]:
    schemas_dir = Path(settings.SCHEMAS_DIR)
    if not schemas_dir.is_absolute():
        schemas_dir = _API_ROOT / schemas_dir
    return sorted(p.stem for p in schemas_dir.glob("*.json"))


def main() -> int:
    parser = argparse.ArgumentParser(description="Retención del ledger de operaciones")
    parser.add_argument("tables", nargs="*", help="Tablas lógicas (ej. XCORTE)")
    parser.add_argument("--all", action="store_true", help="Todas las tablas con schema en SCHEMAS_DIR")
    parser.add_argument("--days", type=int, default=settings.LEDGER_RETENTION_DAYS, help="Antigüedad máxima en días")
    args = parser.parse_args()

    tables = _tables_from_schemas() if args.all else args.tables
    if not tables:
        parser.error("Indica al menos una tabla o usa --all")
    if args.days < 1:
        parser.error("--days debe ser mayor a 0")

    invalid = [t for t in tables if not is_safe_identifier(t)]
    if invalid:
        parser.error(f"Nombres de tabla inválidos: {', '.join(invalid)}")

    repo = OperationsRepository()
    total = 0
    failed = 0
    try:
        with get_connection() as conn:
            for table in tables:
                try:
                    deleted = repo.delete_older_than(conn, table=table, days=args.days)
                except Exception as e:
                    failed += 1
                    logger.error(f"{table}: no se pudo podar el ledger: {e}")
                    continue
                total += deleted
                logger.info(f"{table}: {deleted} entradas con más de {args.days} días eliminadas")
    finally:
        close_db()

    logger.success(f"Retención terminada: {total} entradas eliminadas en {len(tables) - failed} tabla(s)")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
