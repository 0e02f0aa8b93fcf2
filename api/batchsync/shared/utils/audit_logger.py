"""
AuditLogger - Registro estructurado de la actividad de la cola.

Proporciona funciones simples para registrar logs de:
- Queue: batches encolados, completados y fallidos
- Status: consultas de estado de registros
- API: requests y responses de los endpoints de items
"""
import json
from datetime import datetime
from typing import Optional, Dict, Any
from pathlib import Path

from loguru import logger


class AuditLogger:
    """
    Gestor de logs de auditoría de la cola de batches.

    Crea y mantiene logs separados para:
    - queue_logs/: una línea por evento de batch, un archivo por día
    - api_logs/: requests y responses de la API por día

    Uso:
        # Al inicio de la app
        AuditLogger.initialize()

        # En la cola
        AuditLogger.log_batch("queued", job_id=job_id, table="XCORTE", records=3)
    """

    # Rutas base para los logs
    BASE_LOG_DIR = Path("logs")
    QUEUE_LOG_DIR = BASE_LOG_DIR / "queue_logs"
    API_LOG_DIR = BASE_LOG_DIR / "api_logs"

    # Formatos de timestamp
    FILE_TIMESTAMP_FORMAT = "%Y-%m-%d"
    LOG_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%f"

    _sink_ids: list = []
    _initialized: bool = False

    @classmethod
    def initialize(cls, base_dir: Optional[Path] = None) -> None:
        """
        Inicializa las carpetas y los sinks de logs.
        Debe llamarse al inicio de la aplicación.
        """
        if cls._initialized:
            return

        base = Path(base_dir) if base_dir else cls.BASE_LOG_DIR
        queue_dir = base / cls.QUEUE_LOG_DIR.name
        api_dir = base / cls.API_LOG_DIR.name
        queue_dir.mkdir(parents=True, exist_ok=True)
        api_dir.mkdir(parents=True, exist_ok=True)

        today = datetime.now().strftime(cls.FILE_TIMESTAMP_FORMAT)

        cls._sink_ids.append(logger.add(
            str(queue_dir / f"queue_{today}.log"),
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {message}",
            filter=lambda record: record["extra"].get("context") == "queue",
            rotation="1 day",
            retention="30 days",
            level="DEBUG"
        ))
        cls._sink_ids.append(logger.add(
            str(api_dir / f"api_{today}.log"),
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level} | {message}",
            filter=lambda record: record["extra"].get("context") == "api",
            rotation="1 day",
            retention="30 days",
            level="DEBUG"
        ))

        cls._initialized = True
        logger.info("AuditLogger inicializado")

    @classmethod
    def shutdown(cls) -> None:
        """Quita los sinks agregados por initialize()."""
        for sink_id in cls._sink_ids:
            try:
                logger.remove(sink_id)
            except ValueError:
                pass
        cls._sink_ids = []
        cls._initialized = False

    @classmethod
    def log_batch(cls, event: str, job_id: Optional[str] = None, **fields: Any) -> None:
        """
        Registra un evento de batch (queued, active, completed, retry, failed).

        Args:
            event: Tipo de evento
            job_id: ID del job en la cola
            fields: Datos del batch (tabla, cliente, conteos, error...)
        """
        log_data = {
            "type": "BATCH",
            "event": event.upper(),
            "timestamp": datetime.now().strftime(cls.LOG_TIMESTAMP_FORMAT),
            "job_id": job_id,
            **fields,
        }
        queue_logger = logger.bind(context="queue", job_id=job_id)
        level = "error" if event.lower() == "failed" else "warning" if event.lower() == "retry" else "info"
        getattr(queue_logger, level)(json.dumps(log_data, default=str))

    @classmethod
    def log_status_poll(cls, table: str, client_id: str, summary: Dict[str, int]) -> None:
        """Registra una consulta de estado con el conteo por estado."""
        log_data = {
            "type": "STATUS",
            "timestamp": datetime.now().strftime(cls.LOG_TIMESTAMP_FORMAT),
            "table": table,
            "client_id": client_id,
            "summary": summary,
        }
        logger.bind(context="queue").info(json.dumps(log_data, default=str))

    @classmethod
    def log_response(
        cls,
        client_id: Optional[str],
        method: str,
        path: str,
        status_code: int,
        body: Optional[Dict] = None,
    ) -> None:
        """
        Registra una response de API.

        Args:
            client_id: Cliente que origino la request
            method: Metodo HTTP
            path: Path del endpoint
            status_code: Código HTTP de respuesta
            body: Cuerpo de la respuesta
        """
        body_str = ""
        if body:
            # Limitar tamaño del body en el log
            body_str = json.dumps(body, default=str)
            if len(body_str) > 1000:
                body_str = body_str[:1000] + "...[truncated]"

        # Determinar nivel de log
        log_level = "info" if status_code < 400 else "warning" if status_code < 500 else "error"

        api_logger = logger.bind(context="api")
        getattr(api_logger, log_level)(f"[{client_id or '-'}] RESPONSE {status_code} {method} {path} {body_str}")


# Alias para uso más simple
audit = AuditLogger
