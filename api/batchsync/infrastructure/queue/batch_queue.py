"""
Cola de batches en proceso.

- Entrega al-menos-una-vez: un job que lanza se re-encola hasta
  QUEUE_MAX_ATTEMPTS intentos.
- WORKER_CONCURRENCY consumidores; cada job corre en un hilo
  (asyncio.to_thread) para no bloquear el event loop con el store.
- Los batches de un mismo client_id se aplican de uno en uno: nunca hay dos
  intentos concurrentes sobre la misma llave del ledger.
- Estados de job: queued, active, completed, failed. Al pasar a failed se
  llama on_failed para que ningún registro quede sin resultado.

Los jobs se guardan en memoria (dict). Para el caso de uso actual es suficiente:
el ledger es la fuente de verdad del resultado de cada registro, la cola solo
expone el estado del job para polling.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set

from loguru import logger

from batchsync.shared.exceptions.domain import QueueFullException
from batchsync.shared.utils.audit_logger import AuditLogger

ProcessFn = Callable[[str, Dict[str, Any], int], Dict[str, Any]]
FailedFn = Callable[[str, Dict[str, Any], str], Any]

JOB_QUEUED = "queued"
JOB_ACTIVE = "active"
JOB_COMPLETED = "completed"
JOB_FAILED = "failed"

# Jobs terminados que se conservan para polling
_MAX_FINISHED_JOBS = 10000


@dataclass
class QueueJob:
    job_id: str
    payload: Dict[str, Any]
    status: str
    created_at: datetime
    updated_at: datetime
    attempts: int = 0
    finished_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status,
            "attempts": self.attempts,
            "table_name": self.payload.get("table_name"),
            "operation": self.payload.get("operation"),
            "client_id": self.payload.get("client_id"),
            "records": len(self.payload.get("records") or []),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "finished_at": self.finished_at,
            "result": self.result,
            "error": self.error,
        }


class BatchQueue:
    """Cola asyncio con reintentos y estado de jobs consultable."""

    def __init__(
        self,
        process: ProcessFn,
        *,
        concurrency: int = 2,
        max_attempts: int = 3,
        max_size: int = 1000,
        retry_delay: float = 1.0,
        on_failed: Optional[FailedFn] = None,
    ) -> None:
        self._process = process
        self._on_failed = on_failed
        self._concurrency = max(1, concurrency)
        self._max_attempts = max(1, max_attempts)
        self._max_size = max_size
        self._retry_delay = retry_delay

        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._jobs: Dict[str, QueueJob] = {}
        self._jobs_lock = asyncio.Lock()
        self._client_locks: Dict[str, asyncio.Lock] = {}
        self._retry_tasks: Set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    async def start(self) -> None:
        if self._workers:
            return
        self._queue = asyncio.Queue(maxsize=self._max_size)
        self._workers = [
            asyncio.create_task(self._consume(i), name=f"batch-worker-{i}")
            for i in range(self._concurrency)
        ]
        logger.info(f"Cola de batches iniciada con {self._concurrency} worker(s)")

    async def stop(self) -> None:
        pending = [*self._workers, *self._retry_tasks]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._workers = []
        self._retry_tasks.clear()
        logger.info("Cola de batches detenida")

    async def enqueue(self, payload: Dict[str, Any], job_id: Optional[str] = None) -> QueueJob:
        """
        Agrega un batch a la cola.

        Raises:
            QueueFullException: si la cola alcanzo QUEUE_MAX_SIZE
        """
        if self._queue is None:
            await self.start()

        now = datetime.now(timezone.utc)
        job = QueueJob(
            job_id=job_id or uuid.uuid4().hex,
            payload=payload,
            status=JOB_QUEUED,
            created_at=now,
            updated_at=now,
        )
        async with self._jobs_lock:
            self._jobs[job.job_id] = job
            try:
                self._queue.put_nowait(job.job_id)
            except asyncio.QueueFull:
                del self._jobs[job.job_id]
                raise QueueFullException(self._max_size)
            self._prune_finished()

        AuditLogger.log_batch(
            "queued",
            job_id=job.job_id,
            table=payload.get("table_name"),
            client_id=payload.get("client_id"),
            operation=payload.get("operation"),
            records=len(payload.get("records") or []),
        )
        return job

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        async with self._jobs_lock:
            return self._jobs.get(job_id)

    async def stats(self) -> Dict[str, int]:
        async with self._jobs_lock:
            counts = {JOB_QUEUED: 0, JOB_ACTIVE: 0, JOB_COMPLETED: 0, JOB_FAILED: 0}
            for job in self._jobs.values():
                counts[job.status] = counts.get(job.status, 0) + 1
        return counts

    async def wait_idle(self, poll_interval: float = 0.01) -> None:
        """Espera a que no queden jobs en cola ni activos (scripts y tests)."""
        while True:
            counts = await self.stats()
            if counts[JOB_QUEUED] == 0 and counts[JOB_ACTIVE] == 0:
                return
            await asyncio.sleep(poll_interval)

    async def _update_job(self, job_id: str, **changes: Any) -> Optional[QueueJob]:
        async with self._jobs_lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            for k, v in changes.items():
                setattr(job, k, v)
            job.updated_at = datetime.now(timezone.utc)
            return job

    def _prune_finished(self) -> None:
        finished = [j for j in self._jobs.values() if j.status in (JOB_COMPLETED, JOB_FAILED)]
        overflow = len(finished) - _MAX_FINISHED_JOBS
        if overflow > 0:
            finished.sort(key=lambda j: j.updated_at)
            for job in finished[:overflow]:
                del self._jobs[job.job_id]
        self._prune_client_locks()

    def _prune_client_locks(self) -> None:
        # Solo se conservan los locks de clientes con jobs pendientes o tomados
        pending = {
            _client_key(j.payload) for j in self._jobs.values() if j.status in (JOB_QUEUED, JOB_ACTIVE)
        }
        for client, lock in list(self._client_locks.items()):
            if client not in pending and not lock.locked():
                del self._client_locks[client]

    async def _consume(self, worker_idx: int) -> None:
        while True:
            job_id = await self._queue.get()
            try:
                await self._run_job(job_id)
            except Exception as e:
                logger.exception(f"Worker {worker_idx}: error inesperado en job {job_id}: {e}")
            finally:
                self._queue.task_done()

    async def _run_job(self, job_id: str) -> None:
        async with self._jobs_lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.attempts += 1
            job.status = JOB_ACTIVE
            job.updated_at = datetime.now(timezone.utc)
            attempt, payload = job.attempts, job.payload

        client_lock = self._client_locks.setdefault(_client_key(payload), asyncio.Lock())
        try:
            async with client_lock:
                result = await asyncio.to_thread(self._process, job_id, payload, attempt)
        except Exception as e:
            await self._handle_failure(job_id, payload, attempt, e)
            return

        await self._update_job(
            job_id,
            status=JOB_COMPLETED,
            result=result,
            error=None,
            finished_at=datetime.now(timezone.utc),
        )

    async def _handle_failure(self, job_id: str, payload: Dict[str, Any], attempt: int, error: Exception) -> None:
        message = getattr(error, "message", None) or str(error)
        if attempt < self._max_attempts:
            logger.warning(f"Job {job_id} fallo (intento {attempt}/{self._max_attempts}), se re-encola: {message}")
            await self._update_job(job_id, status=JOB_QUEUED, error=message)
            AuditLogger.log_batch("retry", job_id=job_id, attempt=attempt, error=message)
            task = asyncio.create_task(self._requeue(job_id, payload, self._retry_delay * attempt))
            self._retry_tasks.add(task)
            task.add_done_callback(self._retry_tasks.discard)
            return

        logger.error(f"Job {job_id} fallido tras {attempt} intento(s): {message}")
        await self._fail_job(job_id, payload, message)
        AuditLogger.log_batch("failed", job_id=job_id, attempts=attempt, error=message)

    async def _fail_job(self, job_id: str, payload: Dict[str, Any], message: str) -> None:
        # on_failed corre antes de publicar el estado failed
        if self._on_failed is not None:
            try:
                await asyncio.to_thread(self._on_failed, job_id, payload, message)
            except Exception as e:
                logger.exception(f"on_failed lanzo para el job {job_id}: {e}")
        await self._update_job(job_id, status=JOB_FAILED, error=message, finished_at=datetime.now(timezone.utc))

    async def _requeue(self, job_id: str, payload: Dict[str, Any], delay: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        try:
            self._queue.put_nowait(job_id)
        except asyncio.QueueFull:
            logger.error(f"Cola llena, no se pudo re-encolar el job {job_id}")
            await self._fail_job(job_id, payload, "Cola llena al re-encolar el batch")


def _client_key(payload: Dict[str, Any]) -> str:
    return str(payload.get("client_id"))
