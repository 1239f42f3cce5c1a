"""Utility helpers: method registry and result cache."""

from .cache import ResultCache
from .registry import (
    clear_methods,
    get_method,
    get_registry_info,
    has_method,
    list_methods,
    list_steps,
    register_method,
)

__all__ = [
    "ResultCache",
    "register_method",
    "get_method",
    "list_methods",
    "list_steps",
    "has_method",
    "clear_methods",
    "get_registry_info",
]
