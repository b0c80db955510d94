"""Factory for creating key-value stores based on configuration.

Registry pattern keeps backend selection configurable while allowing tests
and deployments to register additional backends.
"""

import logging
from collections.abc import Callable

from ledger.shared.config import Settings
from ledger.storage.service import DynamoDBKeyValueStore, InMemoryKeyValueStore, KeyValueStore

logger = logging.getLogger(__name__)


class StoreRegistry:
    """Registry of available storage backends.

    Maps backend names (matching Settings.storage_backend) to constructors.
    """

    _backends: dict[str, Callable[[Settings], KeyValueStore]] = {
        "memory": lambda settings: InMemoryKeyValueStore(),
        "dynamodb": DynamoDBKeyValueStore,
    }

    @classmethod
    def register(cls, name: str, factory: Callable[[Settings], KeyValueStore]) -> None:
        """Register a new backend.

        Args:
            name: Backend identifier
            factory: Callable building the store from settings
        """
        cls._backends[name] = factory
        logger.info(f"Registered storage backend: {name}")

    @classmethod
    def get_backend(cls, name: str) -> Callable[[Settings], KeyValueStore]:
        """Get backend constructor by name.

        Raises:
            ValueError: If backend not found in registry
        """
        if name not in cls._backends:
            available = ", ".join(cls._backends.keys())
            raise ValueError(f"Unknown storage backend: '{name}'. Available backends: {available}")
        return cls._backends[name]

    @classmethod
    def list_backends(cls) -> list[str]:
        return list(cls._backends.keys())


def create_store(settings: Settings) -> KeyValueStore:
    """Create the key-value store selected by ``settings.storage_backend``.

    Args:
        settings: Application settings

    Returns:
        Configured store instance

    Raises:
        ValueError: If configured backend is unknown
    """
    backend = settings.storage_backend
    store = StoreRegistry.get_backend(backend)(settings)

    if not store.is_available():
        logger.warning(f"Storage backend '{backend}' is not fully configured.")

    logger.info(f"Created storage backend: {backend}")
    return store
