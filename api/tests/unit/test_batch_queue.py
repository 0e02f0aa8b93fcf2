"""
Tests unitarios para BatchQueue y BatchWorker.

Verifica la entrega al-menos-una-vez: reintentos cuando el proceso lanza,
job fallido al agotar intentos y rechazo cuando la cola está llena.
"""
import asyncio
import threading

import psycopg
import pytest

from batchsync.infrastructure.queue.batch_queue import JOB_COMPLETED, JOB_FAILED, BatchQueue
from batchsync.infrastructure.queue.batch_worker import BatchWorker
from batchsync.shared.constants.sync_constants import RecordStatus
from batchsync.shared.exceptions.domain import QueueFullException, ValidationException
from batchsync.shared.exceptions.sync import TransientStoreError


def _payload(records=1):
    return {
        "operation": "create",
        "table_name": "XCORTE",
        "client_id": "ARAUC_XALAP",
        "field_id": "hash_id",
        "ver": "v1",
        "records": [{"__meta": {"hash_id": f"h{i}"}} for i in range(records)],
    }


@pytest.mark.asyncio
async def test_job_completes_with_result():
    calls = []

    def process(job_id, payload, attempt):
        calls.append((job_id, attempt))
        return {"success": True, "records_processed": len(payload["records"])}

    queue = BatchQueue(process, concurrency=2)
    await queue.start()
    try:
        job = await queue.enqueue(_payload(3), job_id="job-1")
        await asyncio.wait_for(queue.wait_idle(), timeout=5)

        finished = await queue.get_job(job.job_id)
        assert finished.status == JOB_COMPLETED
        assert finished.result == {"success": True, "records_processed": 3}
        assert finished.attempts == 1
        assert calls == [("job-1", 1)]
        assert finished.to_dict()["records"] == 3
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_failed_job_is_redelivered():
    attempts = []

    def process(job_id, payload, attempt):
        attempts.append(attempt)
        if attempt < 3:
            raise TransientStoreError("connection refused")
        return {"success": True}

    queue = BatchQueue(process, max_attempts=3, retry_delay=0)
    try:
        job = await queue.enqueue(_payload())
        await asyncio.wait_for(queue.wait_idle(), timeout=5)

        finished = await queue.get_job(job.job_id)
        assert finished.status == JOB_COMPLETED
        assert finished.error is None
        assert attempts == [1, 2, 3]
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_job_fails_after_max_attempts():
    def process(job_id, payload, attempt):
        raise TransientStoreError("connection refused")

    queue = BatchQueue(process, max_attempts=2, retry_delay=0)
    try:
        job = await queue.enqueue(_payload())
        await asyncio.wait_for(queue.wait_idle(), timeout=5)

        finished = await queue.get_job(job.job_id)
        assert finished.status == JOB_FAILED
        assert finished.attempts == 2
        assert finished.error == "connection refused"
        assert (await queue.stats())[JOB_FAILED] == 1
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_full_queue_rejects_new_jobs():
    release = threading.Event()

    def process(job_id, payload, attempt):
        release.wait(timeout=5)
        return {}

    queue = BatchQueue(process, concurrency=1, max_size=1)
    try:
        await queue.enqueue(_payload(), job_id="a")
        # Dar tiempo a que el worker tome "a"
        for _ in range(100):
            if (await queue.get_job("a")).status != "queued":
                break
            await asyncio.sleep(0.01)
        await queue.enqueue(_payload(), job_id="b")

        with pytest.raises(QueueFullException):
            await queue.enqueue(_payload(), job_id="c")
        assert await queue.get_job("c") is None
    finally:
        release.set()
        await queue.stop()


@pytest.mark.asyncio
async def test_same_client_batches_never_overlap():
    lock = threading.Lock()
    state = {"running": {}, "overlap": False, "max_parallel": 0}

    def process(job_id, payload, attempt):
        client = payload["client_id"]
        with lock:
            if state["running"].get(client):
                state["overlap"] = True
            state["running"][client] = True
            state["max_parallel"] = max(state["max_parallel"], sum(state["running"].values()))
        threading.Event().wait(0.05)
        with lock:
            state["running"][client] = False
        return {}

    queue = BatchQueue(process, concurrency=4)
    try:
        for i in range(3):
            await queue.enqueue(_payload())
            other = _payload()
            other["client_id"] = f"OTRA_{i}"
            await queue.enqueue(other)
        await asyncio.wait_for(queue.wait_idle(), timeout=5)

        assert state["overlap"] is False
        assert state["max_parallel"] > 1
    finally:
        await queue.stop()


class _FakeSchemas:
    def load_table_schema(self, table_name):
        return None


@pytest.mark.asyncio
async def test_worker_raises_on_transient_errors_so_queue_retries(engine, store, make_record):
    """El worker real contra el store en memoria: falla el primer intento, luego aplica."""
    worker = BatchWorker(engine, _FakeSchemas())
    original_insert_one = engine._table_repo.insert_one
    state = {"down": True}

    def flaky_insert_one(conn, **kwargs):
        if state["down"]:
            state["down"] = False
            raise psycopg.OperationalError("connection reset")
        return original_insert_one(conn, **kwargs)

    engine._table_repo.insert_one = flaky_insert_one
    store.fail_bulk = True

    payload = _payload()
    payload["records"] = [make_record("h1")]
    queue = BatchQueue(worker.process, max_attempts=3, retry_delay=0)
    try:
        job = await queue.enqueue(payload)
        await asyncio.wait_for(queue.wait_idle(), timeout=5)

        finished = await queue.get_job(job.job_id)
        assert finished.status == JOB_COMPLETED
        assert finished.attempts == 2
        assert finished.result["saved_successfully"] == 1
        assert store.ledger_for("XCORTE")[("ARAUC_XALAP", "v1", "h1")].status == "COMPLETED"
    finally:
        await queue.stop()


def test_worker_returns_result_dict(engine, store, make_record):
    worker = BatchWorker(engine, _FakeSchemas())
    payload = _payload()
    payload["records"] = [make_record("h1"), make_record("h2")]

    result = worker.process("job-1", payload)

    assert result["success"] is True
    assert result["records_processed"] == 2
    assert result["detailed_results"][0]["record_id"] == "h1"
    assert store.ledger_for("XCORTE")[("ARAUC_XALAP", "v1", "h1")].batch_id == "job-1"


def test_worker_rejects_malformed_payload(engine):
    worker = BatchWorker(engine, _FakeSchemas())

    with pytest.raises(ValidationException):
        worker.process("job-1", {"operation": "create"})


def test_transient_error_is_raised_not_returned(engine, store, make_record, monkeypatch):
    worker = BatchWorker(engine, _FakeSchemas())

    def down(conn, **kwargs):
        raise psycopg.OperationalError("timeout")

    monkeypatch.setattr(engine._table_repo, "insert_many", down)
    monkeypatch.setattr(engine._table_repo, "insert_one", down)
    payload = _payload()
    payload["records"] = [make_record("h1")]

    with pytest.raises(TransientStoreError):
        worker.process("job-1", payload)


@pytest.mark.asyncio
async def test_exhausted_job_leaves_its_records_in_error(engine, store, status_service, make_record, monkeypatch):
    """Sin intentos restantes, las llaves en PROCESSING pasan a ERROR."""
    worker = BatchWorker(engine, _FakeSchemas())

    def pool_down(batch, schema=None):
        raise TransientStoreError("No se pudo obtener conexión del pool")

    monkeypatch.setattr(engine, "apply_batch", pool_down)
    payload = _payload()
    payload["records"] = [make_record("h1"), make_record("h2")]
    queue = BatchQueue(worker.process, max_attempts=2, retry_delay=0, on_failed=worker.mark_failed)
    try:
        await queue.enqueue(payload, job_id="job-9")
        await asyncio.wait_for(queue.wait_idle(), timeout=5)

        finished = await queue.get_job("job-9")
        assert finished.status == JOB_FAILED
        assert finished.attempts == 2
        for record_id in ("h1", "h2"):
            entry = store.ledger_for("XCORTE")[("ARAUC_XALAP", "v1", record_id)]
            assert entry.status == "ERROR"
            assert entry.batch_id == "job-9"
            assert "conexión del pool" in entry.error_message

        status = status_service.status(
            table="XCORTE", field_id="hash_id", record_id="h1", client_id="ARAUC_XALAP", batch_version="v1"
        )
        assert status.status == RecordStatus.ERROR
    finally:
        await queue.stop()


def test_mark_failed_ignores_malformed_payload(engine, store):
    worker = BatchWorker(engine, _FakeSchemas())

    worker.mark_failed("job-1", {"operation": "create"}, "sin conexión")

    assert store.ledger == {}


@pytest.mark.asyncio
async def test_stop_cancels_pending_redeliveries():
    def process(job_id, payload, attempt):
        raise TransientStoreError("connection refused")

    queue = BatchQueue(process, max_attempts=3, retry_delay=60)
    await queue.enqueue(_payload(), job_id="a")
    for _ in range(100):
        if queue._retry_tasks:
            break
        await asyncio.sleep(0.01)
    pending = set(queue._retry_tasks)
    assert len(pending) == 1

    await queue.stop()

    assert all(task.cancelled() for task in pending)
    assert not queue._retry_tasks


@pytest.mark.asyncio
async def test_client_locks_are_dropped_once_jobs_finish():
    queue = BatchQueue(lambda job_id, payload, attempt: {}, concurrency=2)
    try:
        for i in range(5):
            payload = _payload()
            payload["client_id"] = f"CLIENTE_{i}"
            await queue.enqueue(payload)
        await asyncio.wait_for(queue.wait_idle(), timeout=5)

        await queue.enqueue(_payload(), job_id="siguiente")

        assert set(queue._client_locks) <= {"ARAUC_XALAP"}
    finally:
        await queue.stop()
