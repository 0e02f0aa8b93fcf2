"""
Utilidades de seguridad: autenticación por API key.
"""
import hmac
from typing import List, Optional

from fastapi import Header

from batchsync.core.config import settings
from batchsync.shared.exceptions.domain import UnauthorizedException


class SecurityService:
    """Servicio para operaciones de seguridad."""

    @staticmethod
    def is_valid_api_key(api_key: str, accepted: List[str]) -> bool:
        """
        Verifica la API key contra la lista aceptada.

        Usa comparación en tiempo constante.
        """
        return any(hmac.compare_digest(api_key, candidate) for candidate in accepted)


async def require_api_key(
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Optional[str]:
    """
    Dependencia de FastAPI para los endpoints de items.

    Con API_KEYS vacío la autenticación queda deshabilitada.

    Raises:
        UnauthorizedException: si falta la API key o no es válida
    """
    accepted = settings.api_keys
    if not accepted:
        return None
    if not x_api_key:
        raise UnauthorizedException("API Key requerida", error_code="MISSING_API_KEY")
    if not SecurityService.is_valid_api_key(x_api_key, accepted):
        raise UnauthorizedException("API Key inválida", error_code="INVALID_API_KEY")
    return x_api_key
