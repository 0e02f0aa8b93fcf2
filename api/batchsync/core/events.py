"""
Manejadores de eventos de inicio y cierre de la aplicación.
"""
from typing import Callable
from fastapi import FastAPI
from loguru import logger

from batchsync.core.config import settings
from batchsync.api.v1.dependencies.repository_deps import get_schema_service
from batchsync.api.v1.dependencies.use_case_deps import get_batch_queue
from batchsync.infrastructure.database.session import close_db
from batchsync.shared.utils.audit_logger import AuditLogger


def startup_handler(app: FastAPI) -> Callable:
    """
    Manejador de eventos de inicio de la aplicación.

    Args:
        app: Instancia de FastAPI

    Returns:
        Callable: Función asincrona de inicio
    """
    async def startup() -> None:
        """Inicializa recursos al inicio de la aplicación."""
        try:
            logger.info(f"Iniciando {settings.APP_NAME} v{settings.APP_VERSION}")
            logger.info(f"Entorno: {settings.ENVIRONMENT}")

            # Validar configuración critica
            _validate_config()

            # Inicializar sistema de auditoría
            AuditLogger.initialize()
            logger.info("Sistema de auditoría inicializado")

            # Configurar logging adicional
            logger.add(
                settings.LOG_FILE,
                rotation="500 MB",
                retention="10 days",
                level=settings.LOG_LEVEL
            )

            # Iniciar workers de la cola
            await get_batch_queue().start()

            logger.success("Aplicación iniciada correctamente")

            # Mostrar URLs disponibles
            _print_available_urls()

        except Exception as e:
            logger.error(f"Error durante startup: {e}")
            logger.exception("Detalle del error:")
            raise

    return startup


def _validate_config() -> None:
    """Valida que la configuración critica este presente."""
    warnings = []

    if not settings.api_keys:
        warnings.append("API_KEYS vacío - los endpoints de items no requieren autenticación")

    if not get_schema_service().schemas_dir.is_dir():
        warnings.append(f"SCHEMAS_DIR no existe ({settings.SCHEMAS_DIR}) - se usará conversión de respaldo")

    if settings.WORKER_CONCURRENCY > settings.DB_POOL_SIZE + settings.DB_MAX_OVERFLOW:
        warnings.append("WORKER_CONCURRENCY supera el tamaño del pool de conexiones")

    # Mostrar advertencias
    for warning in warnings:
        logger.warning(f"CONFIG: {warning}")


def _print_available_urls() -> None:
    """Imprime las URLs disponibles de la aplicación."""
    # Determinar la URL base de acceso
    if settings.HOST == "0.0.0.0":
        access_host = "localhost"
    else:
        access_host = settings.HOST

    base_url = f"http://{access_host}:{settings.PORT}"

    # Mostrar las URLs disponibles
    logger.opt(colors=True).info("<bold><green>" + "=" * 80 + "</green></bold>")
    logger.opt(colors=True).info("<bold><green>URLS DISPONIBLES:</green></bold>")
    logger.opt(colors=True).info("<bold><green>" + "=" * 80 + "</green></bold>")
    logger.opt(colors=True).info(f"<cyan>  Swagger UI:  {base_url}/docs</cyan>")
    logger.opt(colors=True).info(f"<cyan>  Items:       {base_url}/api/v1/items</cyan>")
    logger.opt(colors=True).info(f"<cyan>  Health:      {base_url}/health</cyan>")
    logger.opt(colors=True).info(f"<cyan>  Health DB:   {base_url}/health/db</cyan>")
    logger.opt(colors=True).info("<bold><green>" + "=" * 80 + "</green></bold>")


def shutdown_handler(app: FastAPI) -> Callable:
    """
    Manejador de eventos de cierre de la aplicación.

    Args:
        app: Instancia de FastAPI

    Returns:
        Callable: Función asincrona de cierre
    """
    async def shutdown() -> None:
        """Libera recursos al cerrar la aplicación."""
        logger.info("Cerrando aplicación...")

        # Detener workers de la cola (los jobs pendientes se pierden; el
        # cliente los reenvía y el motor es idempotente)
        queue = get_batch_queue()
        pending = await queue.stats()
        await queue.stop()
        logger.info(f"Cola detenida. Jobs al cierre: {pending}")

        # Cerrar conexiones de base de datos
        close_db()
        logger.info("Conexiones de base de datos cerradas")

        logger.success("Aplicación cerrada correctamente")

    return shutdown
