"""
Persistence registry — builds the configured backend.

Built-in backends are referenced by short name; anything else is treated as
a fully qualified class path so custom backends can be plugged in from
config.
"""

from __future__ import annotations

import importlib
import logging

from budgetpilot.config import PersistenceConfig
from budgetpilot.persistence.base import BasePersistence
from budgetpilot.persistence.http import HttpPersistence

logger = logging.getLogger("budgetpilot.persistence.registry")

# Built-in backend type mapping
_BUILTIN_BACKENDS: dict[str, str] = {
    "memory": "budgetpilot.persistence.memory.InMemoryPersistence",
    "http": "budgetpilot.persistence.http.HttpPersistence",
}


def load_backend_class(backend: str) -> type[BasePersistence]:
    """Resolve a backend name or dotted path to a ``BasePersistence`` subclass."""
    backend_path = _BUILTIN_BACKENDS.get(backend, backend)
    if "." not in backend_path:
        raise ValueError(f"Unknown persistence backend '{backend}'")

    module_path, class_name = backend_path.rsplit(".", 1)
    try:
        module = importlib.import_module(module_path)
        backend_cls = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        raise ValueError(f"Cannot load persistence backend '{backend}': {e}") from e

    if not (isinstance(backend_cls, type) and issubclass(backend_cls, BasePersistence)):
        raise ValueError(f"'{backend}' is not a BasePersistence subclass")
    return backend_cls


def create_persistence(config: PersistenceConfig) -> BasePersistence:
    """Instantiate the backend named in ``config``."""
    backend_cls = load_backend_class(config.backend)
    if issubclass(backend_cls, HttpPersistence):
        instance = backend_cls(
            config.base_url or "",
            api_token=config.api_token,
            timeout=config.timeout,
            **config.options,
        )
    else:
        instance = backend_cls(**config.options)
    logger.info("Using persistence backend: %s", instance.name)
    return instance
