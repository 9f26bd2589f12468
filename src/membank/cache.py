"""Time-bounded in-process cache of parsed tag indexes."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from membank.index_store import TagIndexStore
from membank.models import GLOBAL_SCOPE_KEY, Scope
from membank.tag_index import TagIndex

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 30.0


class IndexCache:
    """Read-through, write-through cache in front of a TagIndexStore.

    Entries are served without touching disk while younger than ``ttl``
    seconds. Every write goes to the store first and then replaces the cached
    entry, so a reader following a writer always sees the new index.
    """

    def __init__(
        self,
        store: TagIndexStore,
        ttl: float = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl < 0:
            raise ValueError(f"Cache TTL must be non-negative, got {ttl}")
        self._store = store
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[str, tuple[TagIndex, float]] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, scope: Scope) -> TagIndex | None:
        with self._lock:
            cached = self._entries.get(scope.key)
        if cached is not None:
            index, cached_at = cached
            if self._clock() - cached_at < self._ttl:
                logger.debug("Using cached tag index for %s", scope.label)
                return index

        index = self._store.read(scope)
        if index is not None:
            self.put(scope, index)
        return index

    def put(self, scope: Scope, index: TagIndex) -> None:
        with self._lock:
            self._entries[scope.key] = (index, self._clock())

    def write(self, scope: Scope, index: TagIndex) -> None:
        """Persist ``index`` and make it the cached value for ``scope``."""
        self._store.write(scope, index)
        self.put(scope, index)

    def invalidate(self, scope: Scope | None = None) -> None:
        """Drop one scope's entry; with no scope, drop the global entry."""
        key = scope.key if scope is not None else GLOBAL_SCOPE_KEY
        with self._lock:
            self._entries.pop(key, None)
        logger.debug("Invalidated tag index cache for %s", key)

    def invalidate_all(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.debug("Invalidated all tag index caches")
