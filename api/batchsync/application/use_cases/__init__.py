"""
Casos de uso de la aplicación.
"""
from .items_use_cases import ItemsUseCases, parse_ndjson

__all__ = ["ItemsUseCases", "parse_ndjson"]
