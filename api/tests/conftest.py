"""
Configuración de fixtures para pytest.

Dobles en memoria del store: tablas materializadas con unicidad por
(id, _client_id, _ver), ledger con una entrada por llave y transacciones
que revierten los cambios de filas si el bloque lanza.
"""
from __future__ import annotations

import copy
from contextlib import contextmanager, nullcontext
from dataclasses import replace
from typing import Any, Dict, List, Optional

import pytest
from psycopg import errors as pg_errors
import psycopg

from batchsync.application.services.batch_apply_engine import BatchApplyEngine
from batchsync.application.services.record_status_service import RecordStatusService
from batchsync.domain.entities.field_schema import FieldDescriptor
from batchsync.domain.entities.ledger import LedgerEntry
from batchsync.infrastructure.repositories.operations_repository import ledger_key
from batchsync.shared.constants.sync_constants import FieldType


class InMemoryStore:
    def __init__(self) -> None:
        self.rows: Dict[str, List[Dict[str, Any]]] = {}
        self.ledger: Dict[str, Dict[tuple, LedgerEntry]] = {}
        self.next_server_id = 1
        self.fail_bulk = False
        self.ledger_down = False
        self.statements: List[str] = []

    def table(self, name: str) -> List[Dict[str, Any]]:
        return self.rows.setdefault(name.lower(), [])

    def ledger_for(self, name: str) -> Dict[tuple, LedgerEntry]:
        return self.ledger.setdefault(name.lower(), {})


class FakeConnection:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(self.store.rows)
        try:
            yield self
        except Exception:
            self.store.rows = snapshot
            raise


def _matches(row, id_column, record_id, client_id, batch_version) -> bool:
    return (
        row.get(id_column) == record_id
        and row.get("_client_id") == client_id
        and row.get("_ver") == batch_version
    )


class FakeTableRepository:
    """Misma interfaz que MaterializedTableRepository, sobre InMemoryStore."""

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def _bulk_guard(self, name: str) -> None:
        self.store.statements.append(name)
        if self.store.fail_bulk:
            raise psycopg.OperationalError(f"{name} por lotes deshabilitado en el test")

    def _insert(self, table, id_column, row) -> Any:
        rows = self.store.table(table)
        for existing in rows:
            if _matches(existing, id_column, row.get(id_column), row.get("_client_id"), row.get("_ver")):
                raise pg_errors.UniqueViolation("duplicate key value violates unique constraint")
        stored = dict(row)
        stored["_server_id"] = self.store.next_server_id
        self.store.next_server_id += 1
        rows.append(stored)
        return stored["_server_id"]

    def insert_many(self, conn, *, table, id_column, rows):
        self._bulk_guard("insert_many")
        return {str(r[id_column]): self._insert(table, id_column, r) for r in rows}

    def insert_one(self, conn, *, table, id_column, row):
        self.store.statements.append("insert_one")
        return self._insert(table, id_column, row)

    def update_many(self, conn, *, table, id_column, client_id, batch_version, updates):
        self._bulk_guard("update_many")
        return {rid for rid, fields in updates if self._update(table, id_column, client_id, batch_version, rid, fields)}

    def update_one(self, conn, *, table, id_column, client_id, batch_version, record_id, fields):
        self.store.statements.append("update_one")
        return self._update(table, id_column, client_id, batch_version, record_id, fields)

    def _update(self, table, id_column, client_id, batch_version, record_id, fields) -> bool:
        for row in self.store.table(table):
            if _matches(row, id_column, record_id, client_id, batch_version):
                row.update(fields)
                row["_updated_at"] = "now"
                return True
        return False

    def delete_many(self, conn, *, table, id_column, client_id, batch_version, record_ids):
        self._bulk_guard("delete_many")
        return {rid for rid in record_ids if self._delete(table, id_column, client_id, batch_version, rid)}

    def delete_one(self, conn, *, table, id_column, client_id, batch_version, record_id):
        self.store.statements.append("delete_one")
        return self._delete(table, id_column, client_id, batch_version, record_id)

    def _delete(self, table, id_column, client_id, batch_version, record_id) -> bool:
        rows = self.store.table(table)
        for idx, row in enumerate(rows):
            if _matches(row, id_column, record_id, client_id, batch_version):
                del rows[idx]
                return True
        return False

    def find_row(self, conn, *, table, id_column, client_id, batch_version, record_id):
        for row in self.store.table(table):
            if _matches(row, id_column, record_id, client_id, batch_version):
                return dict(row)
        return None


class FakeOperationsRepository:
    """Misma interfaz que OperationsRepository, sobre InMemoryStore."""

    def __init__(self, store: InMemoryStore) -> None:
        self.store = store

    def save_batch(self, conn, *, table, entries) -> bool:
        if self.store.ledger_down:
            return False
        ledger = self.store.ledger_for(table)
        for entry in entries:
            # Las columnas de la llave tienen ancho fijo, como en la tabla real
            stored = replace(
                entry,
                client_id=ledger_key(entry.client_id),
                batch_version=ledger_key(entry.batch_version),
                record_id=ledger_key(entry.record_id),
                operation=entry.operation.upper(),
                status=entry.status.upper(),
            )
            ledger[stored.key] = stored
        return True

    def save(self, conn, *, table, entry) -> bool:
        return self.save_batch(conn, table=table, entries=[entry])

    def find_by_key(self, conn, *, table, record_id, client_id, batch_version) -> Optional[LedgerEntry]:
        if self.store.ledger_down:
            raise psycopg.OperationalError("ledger no disponible")
        return self.store.ledger_for(table).get((client_id, batch_version, record_id))

    def find_by_records(self, conn, *, table, record_ids, client_id, batch_version):
        if self.store.ledger_down:
            raise psycopg.OperationalError("ledger no disponible")
        ledger = self.store.ledger_for(table)
        return {
            rid: ledger[(client_id, batch_version, rid)]
            for rid in record_ids
            if (client_id, batch_version, rid) in ledger
        }

    def find_by_batch(self, conn, *, table, batch_id, client_id):
        return [
            e for e in self.store.ledger_for(table).values()
            if e.batch_id == batch_id and e.client_id == client_id
        ]


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def fake_conn(store: InMemoryStore) -> FakeConnection:
    return FakeConnection(store)


@pytest.fixture
def connection_factory(fake_conn: FakeConnection):
    return lambda: nullcontext(fake_conn)


@pytest.fixture
def table_repo(store: InMemoryStore) -> FakeTableRepository:
    return FakeTableRepository(store)


@pytest.fixture
def operations_repo(store: InMemoryStore) -> FakeOperationsRepository:
    return FakeOperationsRepository(store)


@pytest.fixture
def engine(connection_factory, table_repo, operations_repo) -> BatchApplyEngine:
    return BatchApplyEngine(
        connection_factory=connection_factory,
        table_repo=table_repo,
        operations_repo=operations_repo,
        bulk_chunk_size=500,
    )


@pytest.fixture
def status_service(connection_factory, table_repo, operations_repo) -> RecordStatusService:
    return RecordStatusService(
        connection_factory=connection_factory,
        table_repo=table_repo,
        operations_repo=operations_repo,
    )


@pytest.fixture
def xcorte_schema() -> List[FieldDescriptor]:
    return [
        FieldDescriptor(name="FOLIO", type=FieldType.STRING, length=10),
        FieldDescriptor(name="FECHA", type=FieldType.DATE, length=8),
        FieldDescriptor(name="VTACONT", type=FieldType.NUMBER, length=14, decimal_places=4),
        FieldDescriptor(name="DESCONT", type=FieldType.NUMBER, length=14, decimal_places=4),
        FieldDescriptor(name="CERRADO", type=FieldType.BOOLEAN, length=1),
        FieldDescriptor(name="OBSERVA", type=FieldType.MEMO),
        FieldDescriptor(name="USUARIO", type=FieldType.STRING, length=10, nullable=False),
    ]


@pytest.fixture
def make_record():
    """Registro estilo XCORTE con su sobre __meta."""

    def _make(record_id: str, field_id: str = "hash_id", meta: Optional[Dict[str, Any]] = None, **fields: Any):
        envelope = {field_id: record_id, "recno": 1, "ref_date": "2025-09-25"}
        envelope.update(meta or {})
        record: Dict[str, Any] = {"FOLIO": f"F-{record_id}", "FECHA": "25/09/2025", "VTACONT": "20931.0900"}
        record.update(fields)
        record["__meta"] = envelope
        return record

    return _make


@pytest.fixture
def make_batch(make_record):
    """Batch de XCORTE para ARAUC_XALAP versión v1."""
    from batchsync.domain.entities.batch import Batch

    def _make(operation: str, ids, records=None, **overrides: Any) -> Batch:
        params = dict(
            operation=operation,
            table_name="XCORTE",
            client_id="ARAUC_XALAP",
            field_id="hash_id",
            batch_version="v1",
            records=records if records is not None else [make_record(i) for i in ids],
            job_id="job-1",
        )
        params.update(overrides)
        return Batch.build(**params)

    return _make


@pytest.fixture
def broken_pool(monkeypatch):
    """get_connection con un pool que no puede entregar conexiones."""
    from sqlalchemy import exc as sa_exc

    from batchsync.infrastructure.database import session

    class _BrokenEngine:
        def raw_connection(self):
            raise sa_exc.OperationalError(None, None, psycopg.OperationalError("connection refused"))

    monkeypatch.setattr(session, "engine", _BrokenEngine())
    return session.get_connection
