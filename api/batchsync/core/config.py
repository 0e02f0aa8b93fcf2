"""
Configuración central de la aplicación.
Gestiona variables de entorno y configuraciones globales.
Soporta configuración dinámica para desarrollo (ENVIRONMENT=development)
y producción (ENVIRONMENT=production).
"""
import json
from typing import List
from pydantic_settings import BaseSettings
from pydantic import Field, computed_field


class Settings(BaseSettings):
    """
    Clase de configuración de la aplicación.
    Lee variables de entorno y proporciona valores por defecto.

    Notas:
    - DATABASE_URL se puede especificar completa o por componentes
    - DB_STATEMENT_TIMEOUT_MS acota cada llamada bloqueante al store
    - Los workers de la cola y el servicio de estado comparten el pool
    """

    # Configuración de la aplicación
    APP_NAME: str = Field(default="POS Batch Sync")
    APP_VERSION: str = Field(default="1.0.0")
    DEBUG: bool = Field(default=False)
    ENVIRONMENT: str = Field(default="production")

    # Configuración del servidor
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=3000)

    # Base de datos - Componentes separados
    DATABASE_HOST: str = Field(default="localhost")
    DATABASE_PORT: int = Field(default=5432)
    DATABASE_USER: str = Field(default="sync_user")
    DATABASE_PASSWORD: str = Field(default="sync_pass")
    DATABASE_NAME: str = Field(default="sync_db")

    # Base de datos - URL completa (override de componentes si se proporciona)
    DATABASE_URL: str = Field(default="")
    DB_POOL_SIZE: int = Field(default=5)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_STATEMENT_TIMEOUT_MS: int = Field(default=30000)

    # CORS (acepta lista JSON o "*" para todos los origenes)
    CORS_ORIGINS: str = Field(default="*")

    # Logging
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FILE: str = Field(default="logs/app.log")

    # Schemas de tablas (archivos <TABLA>.json)
    SCHEMAS_DIR: str = Field(default="schemas")
    # Rechaza en la ingesta las tablas sin archivo de schema
    REQUIRE_REGISTERED_TABLES: bool = Field(default=True)

    # API keys aceptadas (separadas por coma). Vacío = sin autenticación.
    API_KEYS: str = Field(default="")

    # Cola de batches
    WORKER_CONCURRENCY: int = Field(default=2)
    QUEUE_MAX_ATTEMPTS: int = Field(default=3)
    QUEUE_MAX_SIZE: int = Field(default=1000)

    # Motor de aplicación de batches
    BULK_CHUNK_SIZE: int = Field(default=500)
    COMPARISON_HASH_KEY: str = Field(default="content_hash")
    SERVER_ID_COLUMN: str = Field(default="_server_id")
    EXCLUDED_META_KEYS: str = Field(default="recno,ref_date")

    # Ledger de operaciones
    LEDGER_RETENTION_DAYS: int = Field(default=30)
    LEDGER_TRACK_QUEUED: bool = Field(default=True)
    LEGACY_ERROR_TABLE_ENABLED: bool = Field(default=False)

    @computed_field
    @property
    def effective_database_url(self) -> str:
        """
        Retorna la URL de base de datos efectiva.
        Si DATABASE_URL está definida, la usa directamente.
        Si no, construye la URL desde los componentes individuales.
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}"
            f"@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_NAME}"
        )

    @computed_field
    @property
    def is_development(self) -> bool:
        """Indica si el entorno es de desarrollo."""
        return self.ENVIRONMENT.lower() == "development"

    @property
    def api_keys(self) -> List[str]:
        return split_csv(self.API_KEYS)

    @property
    def excluded_meta_keys(self) -> List[str]:
        return split_csv(self.EXCLUDED_META_KEYS)

    class Config:
        """Configuración de Pydantic."""
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignorar campos extra del .env


def split_csv(raw: str) -> List[str]:
    """Parsea una lista separada por comas, ignorando vacíos."""
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


def get_cors_origins(cors_string: str) -> List[str]:
    """
    Parsea la configuración de CORS.
    Acepta "*" para todos los origenes o una lista JSON.
    """
    if cors_string == "*":
        return ["*"]
    try:
        return json.loads(cors_string)
    except json.JSONDecodeError:
        # Si no es JSON válido, retornar como lista simple
        return split_csv(cors_string)


# Instancia global de configuración
settings = Settings()
