from __future__ import annotations

from contextlib import contextmanager

import pytest

psycopg = pytest.importorskip("psycopg")
from psycopg import errors as pg_errors
from sqlalchemy import exc as sa_exc

from batchsync.core.security import SecurityService
from batchsync.infrastructure.repositories.error_table_repository import ErrorTableRepository
from batchsync.shared.exceptions.sync import (
    ConstraintError,
    NotFoundError,
    StoreError,
    TransientStoreError,
    classify_store_error,
)
from batchsync.shared.utils.sql_identifiers import (
    UnsafeIdentifierError,
    is_safe_identifier,
    operations_table_name,
    quote_ident,
)


class TestClassifyStoreError:
    def test_unique_violation_is_constraint(self):
        error = classify_store_error(pg_errors.UniqueViolation("duplicate key value"))

        assert isinstance(error, ConstraintError)
        assert error.error_code == "CONSTRAINT_ERROR"
        assert "duplicate key" in error.message

    def test_connection_errors_are_transient(self):
        assert isinstance(classify_store_error(psycopg.OperationalError("timeout")), TransientStoreError)
        assert isinstance(classify_store_error(psycopg.InterfaceError("closed")), TransientStoreError)

    def test_other_store_errors(self):
        error = classify_store_error(pg_errors.UndefinedColumn('column "x" does not exist'))

        assert isinstance(error, StoreError)
        assert error.error_code == "STORE_ERROR"

    def test_pool_errors_are_transient(self):
        wrapped = sa_exc.OperationalError(None, None, psycopg.OperationalError("connection refused"))

        assert isinstance(classify_store_error(wrapped), TransientStoreError)
        assert isinstance(classify_store_error(sa_exc.TimeoutError("QueuePool limit reached")), TransientStoreError)

    def test_wrapped_unique_violation_keeps_its_class(self):
        wrapped = sa_exc.IntegrityError(None, None, pg_errors.UniqueViolation("duplicate key value"))

        assert isinstance(classify_store_error(wrapped), ConstraintError)

    def test_get_connection_translates_pool_failures(self, broken_pool):
        with pytest.raises(TransientStoreError) as exc_info:
            with broken_pool():
                pass

        assert "connection refused" in exc_info.value.message

    def test_sync_exceptions_pass_through(self):
        original = NotFoundError("no existe")

        assert classify_store_error(original) is original


class TestSqlIdentifiers:
    @pytest.mark.parametrize("name", ["XCORTE", "_hash_id", "tabla_2"])
    def test_safe(self, name):
        assert is_safe_identifier(name)
        assert quote_ident(name) == f'"{name}"'

    @pytest.mark.parametrize("name", ["", "1tabla", 'a"b', "a b", "x;drop", "a" * 64])
    def test_unsafe(self, name):
        assert not is_safe_identifier(name)
        with pytest.raises(UnsafeIdentifierError):
            quote_ident(name)

    def test_operations_table_is_lowercase(self):
        assert operations_table_name("XCORTE") == "xcorte_operations"


class TestSecurityService:
    def test_valid_key(self):
        assert SecurityService.is_valid_api_key("k2", ["k1", "k2"]) is True

    def test_invalid_key(self):
        assert SecurityService.is_valid_api_key("k3", ["k1", "k2"]) is False
        assert SecurityService.is_valid_api_key("k1", []) is False


class _DummyCursor:
    def __init__(self, fail: bool = False, rows=None) -> None:
        self.fail = fail
        self.rows = rows or []
        self.executed_params = None

    def execute(self, sql, params) -> None:
        if self.fail:
            raise pg_errors.UndefinedTable('relation "xcorte_errors" does not exist')
        self.executed_params = params

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class _DummyConn:
    def __init__(self, fail: bool = False, rows=None) -> None:
        self._cursor = _DummyCursor(fail, rows)

    def cursor(self):
        return self._cursor

    @contextmanager
    def transaction(self):
        yield self


class TestErrorTableRepository:
    def test_save_error_truncates_and_serializes(self):
        conn = _DummyConn()

        ok = ErrorTableRepository().save_error(
            conn,
            table="XCORTE",
            record_id="h1",
            client_id="c" * 60,
            batch_version="v1",
            operation="create",
            error=ConstraintError("duplicate key"),
            record_data={"FOLIO": "1"},
        )

        assert ok is True
        params = conn._cursor.executed_params
        assert params[1] == "c" * 50
        assert params[3] == "ConstraintError"
        assert params[4] == "duplicate key"
        assert params[6] == '{"FOLIO": "1"}'

    def test_missing_table_is_not_fatal(self):
        repo = ErrorTableRepository()
        conn = _DummyConn(fail=True)

        assert repo.save_error(
            conn, table="XCORTE", record_id="h1", client_id="c", batch_version="v1", operation="create", error="x"
        ) is False
        assert repo.find_latest(conn, table="XCORTE", record_id="h1", client_id="c") is None

    def test_find_latest(self):
        conn = _DummyConn(rows=[{"record_id": "h1", "error_message": "tipo inválido"}])

        found = ErrorTableRepository().find_latest(conn, table="XCORTE", record_id="h1", client_id="c")

        assert found["error_message"] == "tipo inválido"
