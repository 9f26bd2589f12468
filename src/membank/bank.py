"""Wires the document store, index cache, service and watcher for one docs root."""

from __future__ import annotations

import logging
import threading

from membank.backend import FileSystem
from membank.backends.localfs import LocalFileSystem
from membank.cache import IndexCache
from membank.config import MembankConfig
from membank.documents import FileDocumentStore
from membank.index_store import TagIndexStore
from membank.service import TagIndexService
from membank.watcher import DocumentWatcher

logger = logging.getLogger(__name__)


class MemoryBank:
    """Owns the long-lived objects behind the MCP tools and the CLI."""

    def __init__(self, config: MembankConfig, fs: FileSystem | None = None) -> None:
        self._config = config
        self._fs = fs or LocalFileSystem()
        self._lock = threading.Lock()
        self._watcher: DocumentWatcher | None = None

        self.documents = FileDocumentStore(self._fs, config.docs_root)
        self.index_store = TagIndexStore(self._fs, config.docs_root)
        self.cache = IndexCache(self.index_store, ttl=config.cache_ttl)
        self.service = TagIndexService(self.documents, self.cache)

    @property
    def config(self) -> MembankConfig:
        return self._config

    @property
    def fs(self) -> FileSystem:
        return self._fs

    def start_watcher(self) -> None:
        """Reconcile every scope and start the document watcher (skipped if watch=false)."""
        if not self._config.watch:
            logger.info("Document watching disabled")
            return
        with self._lock:
            if self._watcher is not None:
                return
            watcher = DocumentWatcher(self.service, self._config.docs_root)
            self._watcher = watcher
        count = watcher.reconcile()
        logger.info("Reconciled %d documents under %s", count, self._config.docs_root)
        watcher.start()

    def shutdown(self) -> None:
        """Stop the document watcher if one is running."""
        with self._lock:
            watcher, self._watcher = self._watcher, None
        if watcher is not None:
            logger.info("Stopping document watcher")
            watcher.stop()
