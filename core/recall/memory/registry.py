"""Per-folder store registry.

Each folder gets its own database under {data_dir}/{folder_id}; episodes
recorded without a folder go under {data_dir}/global. The registry hands out
one EpisodicMemoryStore per folder key until it is closed.
"""

from __future__ import annotations

import logging
from typing import Callable

from recall.memory.backend import VectorBackend
from recall.memory.config import GLOBAL_FOLDER_KEY, MemoryConfig
from recall.memory.embeddings import EmbeddingFunction
from recall.memory.errors import EpisodicMemoryError
from recall.memory.store import EpisodicMemoryStore

logger = logging.getLogger(__name__)


class StoreRegistry:
    """Memoizes one EpisodicMemoryStore per folder.

    Usage:
        registry = StoreRegistry(MemoryConfig.from_env(), embedding_function=embed)
        store = registry.get("folder_1")
        ...
        await registry.close_all()
    """

    def __init__(
        self,
        config: MemoryConfig | None = None,
        embedding_function: EmbeddingFunction | None = None,
        backend_factory: Callable[[str], VectorBackend] | None = None,
    ) -> None:
        self.config = config or MemoryConfig()
        self._embedding_function = embedding_function
        self._backend_factory = backend_factory
        self._stores: dict[str, EpisodicMemoryStore] = {}

    def __contains__(self, folder_id: str | None) -> bool:
        return (folder_id or GLOBAL_FOLDER_KEY) in self._stores

    def __len__(self) -> int:
        return len(self._stores)

    def get(self, folder_id: str | None = None) -> EpisodicMemoryStore:
        """Store for a folder, created on first request."""
        key = folder_id or GLOBAL_FOLDER_KEY
        store = self._stores.get(key)
        if store is None:
            store = EpisodicMemoryStore(
                self.config.folder_path(folder_id),
                backend=self._backend_factory(key) if self._backend_factory else None,
                embedding_function=self._embedding_function,
                config=self.config,
            )
            self._stores[key] = store
            logger.debug(f"Created episode store for folder {key}")
        return store

    async def close(self, folder_id: str | None = None) -> None:
        store = self._stores.pop(folder_id or GLOBAL_FOLDER_KEY, None)
        if store is not None:
            await store.close()

    async def close_all(self) -> None:
        stores = list(self._stores.values())
        self._stores.clear()
        for store in stores:
            await store.close()


_default_registry: StoreRegistry | None = None


def configure_default_registry(registry: StoreRegistry | None) -> None:
    """Install the registry used by get_episode_store(). None uninstalls it."""
    global _default_registry
    _default_registry = registry


def get_episode_store(folder_id: str | None = None) -> EpisodicMemoryStore:
    if _default_registry is None:
        raise EpisodicMemoryError(
            "No default store registry; call configure_default_registry() first"
        )
    return _default_registry.get(folder_id)
