"""Keeps tag indexes current when documents change on disk outside the server."""

from __future__ import annotations

import logging
import os

from watchdog.events import (
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from membank.documents import is_document_name
from membank.errors import InvalidPathError
from membank.models import BRANCH_ROOT_DIR, GLOBAL_ROOT_DIR, DocumentPath, Scope
from membank.service import TagIndexService

logger = logging.getLogger(__name__)


def locate_document(docs_root: str, file_path: str) -> tuple[Scope, DocumentPath] | None:
    """Map an absolute file path to its scope and document path.

    Returns None for anything that is not a document inside a scope root,
    including tag index files and in-flight temp files.
    """
    rel = os.path.relpath(file_path, docs_root).replace(os.sep, "/")
    parts = rel.split("/")
    if parts[0] == GLOBAL_ROOT_DIR and len(parts) >= 2:
        scope = Scope.global_scope()
        doc_rel = "/".join(parts[1:])
    elif parts[0] == BRANCH_ROOT_DIR and len(parts) >= 3:
        try:
            scope = Scope.branch(parts[1])
        except InvalidPathError:
            return None
        doc_rel = "/".join(parts[2:])
    else:
        return None

    if not is_document_name(doc_rel):
        return None
    try:
        return scope, DocumentPath(doc_rel)
    except InvalidPathError:
        return None


class _IndexHandler(FileSystemEventHandler):
    """Watchdog handler that patches the owning scope's index on change."""

    def __init__(self, service: TagIndexService, docs_root: str) -> None:
        self._service = service
        self._docs_root = docs_root

    def _index(self, file_path: str) -> None:
        located = locate_document(self._docs_root, file_path)
        if located is None:
            return
        scope, path = located
        try:
            logger.info("Document changed, re-indexing: %s", file_path)
            self._service.reindex_path(scope, path)
        except Exception:
            logger.exception("Failed to index changed document: %s", file_path)

    def _remove(self, file_path: str) -> None:
        located = locate_document(self._docs_root, file_path)
        if located is None:
            return
        scope, path = located
        try:
            logger.info("Document deleted, removing from tag index: %s", file_path)
            self._service.remove_document(scope, path)
        except Exception:
            logger.exception("Failed to remove deleted document: %s", file_path)

    def on_created(self, event: FileCreatedEvent) -> None:
        if not event.is_directory:
            self._index(event.src_path)

    def on_modified(self, event: FileModifiedEvent) -> None:
        if not event.is_directory:
            self._index(event.src_path)

    def on_deleted(self, event: FileDeletedEvent) -> None:
        if not event.is_directory:
            self._remove(event.src_path)

    def on_moved(self, event: FileMovedEvent) -> None:
        # Atomic writes arrive as a move from a temp file onto the document.
        if not event.is_directory:
            self._remove(event.src_path)
            self._index(event.dest_path)


class DocumentWatcher:
    def __init__(self, service: TagIndexService, docs_root: str) -> None:
        self._service = service
        self._docs_root = docs_root
        self._observer: Observer | None = None

    @property
    def running(self) -> bool:
        return self._observer is not None

    def reconcile(self) -> int:
        """Bring every scope's index up to date with disk. Returns documents loaded."""
        total = 0
        for scope in self._service.documents.list_scopes():
            try:
                result = self._service.update_index(scope)
            except Exception:
                logger.exception("Failed to reconcile tag index for %s", scope.label)
                continue
            total += result.document_count
        return total

    def start(self) -> None:
        """Start watching the docs root for document changes."""
        os.makedirs(self._docs_root, exist_ok=True)
        self._observer = Observer()
        handler = _IndexHandler(self._service, self._docs_root)
        self._observer.schedule(handler, self._docs_root, recursive=True)
        self._observer.start()
        logger.info("Watching %s for document changes", self._docs_root)

    def stop(self) -> None:
        """Stop watching for document changes."""
        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None
