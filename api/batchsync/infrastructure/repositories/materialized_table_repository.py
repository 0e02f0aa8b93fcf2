"""
Repositorio de tablas materializadas (una por tabla lógica, todas las
terminales/tenants comparten la tabla y se separan por _client_id + _ver).

Todas las sentencias aceptan varios registros en un solo round trip; las
variantes de un solo registro reutilizan la misma construcción para que la
ruta individual produzca exactamente lo mismo que la ruta por lotes.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Sequence

import psycopg

from batchsync.shared.constants.sync_constants import (
    CLIENT_ID_COLUMN,
    UPDATED_AT_COLUMN,
    VERSION_COLUMN,
)
from batchsync.shared.utils.sql_identifiers import quote_ident, table_name as physical_table_name


class MaterializedTableRepository:
    def __init__(self, server_id_column: Optional[str] = "_server_id") -> None:
        self._server_id_column = server_id_column or None

    def _returning(self, id_column: str) -> str:
        cols = [quote_ident(id_column)]
        if self._server_id_column:
            cols.insert(0, quote_ident(self._server_id_column))
        return ", ".join(cols)

    def insert_many(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        id_column: str,
        rows: Sequence[Mapping[str, Any]],
    ) -> dict[str, Any]:
        """
        INSERT multi-VALUES con la union de columnas del lote.

        Las columnas ausentes en una fila se insertan como NULL.

        Returns:
            {record_id: server_id} por cada fila insertada
        """
        if not rows:
            return {}

        columns = list(dict.fromkeys(col for row in rows for col in row))
        values: list[Any] = []
        value_clauses = []
        for row in rows:
            placeholders = []
            for col in columns:
                if col in row:
                    placeholders.append("%s")
                    values.append(row[col])
                else:
                    placeholders.append("NULL")
            value_clauses.append(f"({', '.join(placeholders)})")

        cols_sql = ", ".join(quote_ident(c) for c in columns)
        sql = f"""
            INSERT INTO {quote_ident(physical_table_name(table))} ({cols_sql})
            VALUES {', '.join(value_clauses)}
            RETURNING {self._returning(id_column)}
        """

        with conn.cursor() as cur:
            cur.execute(sql, values)
            returned = cur.fetchall()

        return {
            str(r[id_column]): (r.get(self._server_id_column) if self._server_id_column else r[id_column])
            for r in returned
        }

    def insert_one(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        id_column: str,
        row: Mapping[str, Any],
    ) -> Any:
        inserted = self.insert_many(conn, table=table, id_column=id_column, rows=[row])
        return next(iter(inserted.values()), None)

    def update_many(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        id_column: str,
        client_id: str,
        batch_version: str,
        updates: Sequence[tuple[str, Mapping[str, Any]]],
    ) -> set[str]:
        """
        UPDATE por lotes: un CASE por columna indexado por el id del registro.

        Solo se tocan las filas del tenant/versión; una columna que un registro
        no trae conserva su valor (ELSE columna).

        Returns:
            ids efectivamente actualizados
        """
        if not updates:
            return set()

        # Un id repetido acumula sus campos en orden, igual que aplicarlos uno por uno
        merged: dict[str, dict[str, Any]] = {}
        for record_id, fields in updates:
            merged.setdefault(record_id, {}).update(fields)
        updates = list(merged.items())

        id_sql = quote_ident(id_column)
        columns = list(dict.fromkeys(col for _, fields in updates for col in fields))

        set_clauses = []
        values: list[Any] = []
        for col in columns:
            col_sql = quote_ident(col)
            whens = []
            for record_id, fields in updates:
                if col in fields:
                    whens.append("WHEN %s THEN %s")
                    values.extend([record_id, fields[col]])
            set_clauses.append(f"{col_sql} = CASE {id_sql} {' '.join(whens)} ELSE {col_sql} END")
        set_clauses.append(f"{quote_ident(UPDATED_AT_COLUMN)} = CURRENT_TIMESTAMP")

        record_ids = [record_id for record_id, _ in updates]
        values.extend([record_ids, client_id, batch_version])

        sql = f"""
            UPDATE {quote_ident(physical_table_name(table))}
            SET {', '.join(set_clauses)}
            WHERE {id_sql} = ANY(%s)
              AND {quote_ident(CLIENT_ID_COLUMN)} = %s
              AND {quote_ident(VERSION_COLUMN)} = %s
            RETURNING {id_sql}
        """

        with conn.cursor() as cur:
            cur.execute(sql, values)
            return {str(r[id_column]) for r in cur.fetchall()}

    def update_one(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        id_column: str,
        client_id: str,
        batch_version: str,
        record_id: str,
        fields: Mapping[str, Any],
    ) -> bool:
        updated = self.update_many(
            conn,
            table=table,
            id_column=id_column,
            client_id=client_id,
            batch_version=batch_version,
            updates=[(record_id, fields)],
        )
        return record_id in updated

    def delete_many(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        id_column: str,
        client_id: str,
        batch_version: str,
        record_ids: Iterable[str],
    ) -> set[str]:
        ids = list(record_ids)
        if not ids:
            return set()

        id_sql = quote_ident(id_column)
        sql = f"""
            DELETE FROM {quote_ident(physical_table_name(table))}
            WHERE {id_sql} = ANY(%s)
              AND {quote_ident(CLIENT_ID_COLUMN)} = %s
              AND {quote_ident(VERSION_COLUMN)} = %s
            RETURNING {id_sql}
        """
        with conn.cursor() as cur:
            cur.execute(sql, (ids, client_id, batch_version))
            return {str(r[id_column]) for r in cur.fetchall()}

    def delete_one(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        id_column: str,
        client_id: str,
        batch_version: str,
        record_id: str,
    ) -> bool:
        deleted = self.delete_many(
            conn,
            table=table,
            id_column=id_column,
            client_id=client_id,
            batch_version=batch_version,
            record_ids=[record_id],
        )
        return record_id in deleted

    def find_row(
        self,
        conn: psycopg.Connection,
        *,
        table: str,
        id_column: str,
        client_id: str,
        batch_version: str,
        record_id: str,
    ) -> Optional[dict[str, Any]]:
        sql = f"""
            SELECT *
            FROM {quote_ident(physical_table_name(table))}
            WHERE {quote_ident(id_column)} = %s
              AND {quote_ident(CLIENT_ID_COLUMN)} = %s
              AND {quote_ident(VERSION_COLUMN)} = %s
            LIMIT 1
        """
        with conn.cursor() as cur:
            cur.execute(sql, (record_id, client_id, batch_version))
            row = cur.fetchone()
            return dict(row) if row else None
