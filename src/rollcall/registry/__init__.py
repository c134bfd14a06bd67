"""
In-process Service Registry

This package provides:
1. InMemoryRegistry — lock-guarded registry store
2. register / normalize_name — registration rules
3. ServiceRegistryClient — HTTP client for the registry API
"""

from .errors import (
    NotFoundError,
    RegistryConnectionError,
    RegistryError,
    ValidationError,
)
from .service_registry import InMemoryRegistry, Instance
from .protocol import normalize_name, register
from .client import ServiceRegistryClient

__all__ = [
    'InMemoryRegistry',
    'Instance',
    'NotFoundError',
    'RegistryConnectionError',
    'RegistryError',
    'ServiceRegistryClient',
    'ValidationError',
    'normalize_name',
    'register',
]
