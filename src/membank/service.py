"""Business-logic layer over documents and their per-scope tag indexes."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass

import jsonpatch
from jsonpointer import JsonPointerException

from membank.builder import IndexBuilder
from membank.cache import IndexCache
from membank.documents import FileDocumentStore
from membank.errors import DocumentNotFoundError, InvalidDocumentError
from membank.models import DocumentPath, MemoryDocument, Scope, Tag
from membank.query import find_paths
from membank.tag_index import TagIndex, format_timestamp, utc_now
from membank.updater import (
    DocumentIdentity,
    IncrementalUpdater,
    apply_to_mapping,
    drop_from_mapping,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpdateInfo:
    full_rebuild: bool
    update_location: str
    timestamp: str


@dataclass(frozen=True)
class IndexUpdateResult:
    document_count: int
    tags: list[str]
    update_info: UpdateInfo

    def to_dict(self) -> dict:
        return {
            "documentCount": self.document_count,
            "tags": list(self.tags),
            "updateInfo": {
                "fullRebuild": self.update_info.full_rebuild,
                "updateLocation": self.update_info.update_location,
                "timestamp": self.update_info.timestamp,
            },
        }


class TagIndexService:
    """Keeps each scope's tag index in step with its documents.

    Index mutations for one scope run under that scope's lock so concurrent
    writers cannot lose each other's updates. Queries take no lock and see
    whichever index was last written through the cache.
    """

    def __init__(self, documents: FileDocumentStore, cache: IndexCache) -> None:
        self._documents = documents
        self._cache = cache
        self._builder = IndexBuilder(documents, cache)
        self._updater = IncrementalUpdater(self._builder, cache)
        self._lock = threading.Lock()
        self._scope_locks: dict[str, threading.Lock] = {}

    @property
    def documents(self) -> FileDocumentStore:
        return self._documents

    @property
    def cache(self) -> IndexCache:
        return self._cache

    def _get_scope_lock(self, scope: Scope) -> threading.Lock:
        """Get or create the mutation lock for a scope (thread-safe)."""
        with self._lock:
            if scope.key not in self._scope_locks:
                self._scope_locks[scope.key] = threading.Lock()
            return self._scope_locks[scope.key]

    # -- queries --

    def get_index(self, scope: Scope) -> TagIndex | None:
        return self._cache.get(scope)

    def find_documents_by_tags(
        self, scope: Scope, tags: Iterable[Tag | str], match_all: bool = False
    ) -> list[DocumentPath]:
        """Paths of documents matching the tags; empty when the scope has no index."""
        index = self._cache.get(scope)
        if index is None:
            return []
        return [DocumentPath(p) for p in find_paths(index, tags, match_all)]

    def search_documents(
        self, scope: Scope, tags: Iterable[Tag | str], match_all: bool = False
    ) -> list[MemoryDocument]:
        """Load the matching documents, skipping ones deleted or unreadable since indexing."""
        results: list[MemoryDocument] = []
        for path in self.find_documents_by_tags(scope, tags, match_all):
            try:
                document = self._documents.get_document(scope, path)
            except Exception:
                logger.exception("Skipping indexed document %s in %s", path, scope.label)
                continue
            if document is None:
                logger.debug("Indexed document %s no longer exists in %s", path, scope.label)
                continue
            results.append(document)
        return results

    def load_documents(self, scope: Scope, prefix: str = "") -> list[MemoryDocument]:
        """Load every readable document in a scope whose path starts with ``prefix``."""
        results: list[MemoryDocument] = []
        for path in self._documents.list_documents(scope):
            if not path.value.startswith(prefix):
                continue
            try:
                document = self._documents.get_document(scope, path)
            except Exception:
                logger.exception("Skipping %s while reading %s", path, scope.label)
                continue
            if document is not None:
                results.append(document)
        return results

    def list_tags(self, scope: Scope) -> dict[str, int]:
        """Return tag -> number of documents carrying it."""
        index = self._cache.get(scope)
        if index is None:
            return {}
        return {entry.tag: len(entry.documents) for entry in index.entries}

    # -- index maintenance --

    def add_document(self, scope: Scope, document: MemoryDocument) -> TagIndex:
        with self._get_scope_lock(scope):
            return self._updater.add_or_update(scope, document)

    def remove_document(self, scope: Scope, identity: DocumentIdentity) -> TagIndex | None:
        with self._get_scope_lock(scope):
            return self._updater.remove(scope, identity)

    def reindex_path(self, scope: Scope, path: DocumentPath) -> TagIndex | None:
        """Re-read a document from disk and apply whatever is there to the index.

        The read happens under the scope lock, so a concurrent write cannot be
        overwritten by an older copy of the document.
        """
        with self._get_scope_lock(scope):
            document = self._documents.get_document(scope, path)
            if document is None:
                return self._updater.remove(scope, path)
            return self._updater.add_or_update(scope, document)

    def update_index(self, scope: Scope, full_rebuild: bool = False) -> IndexUpdateResult:
        """Rebuild or reconcile a scope's index against its stored documents.

        A full rebuild (or a scope with no index yet) derives the index from
        scratch. Otherwise each stored document is re-applied to the existing
        index and paths that no longer exist are dropped; documents that fail
        to load keep whatever the index already held for them. A branch name
        recorded in the existing index is kept.
        """
        with self._get_scope_lock(scope):
            current = self._cache.get(scope)
            if current is not None:
                scope = current.scope
            rebuilt = full_rebuild or current is None
            if rebuilt:
                result = self._builder.rebuild(scope)
                index, loaded = result.index, result.loaded
            else:
                index, loaded = self._reconcile(scope, current)

        return IndexUpdateResult(
            document_count=loaded,
            tags=index.tags,
            update_info=UpdateInfo(
                full_rebuild=rebuilt,
                update_location=scope.label,
                timestamp=format_timestamp(utc_now()),
            ),
        )

    def _reconcile(self, scope: Scope, current: TagIndex) -> tuple[TagIndex, int]:
        mapping = current.to_mapping()
        present: set[str] = set()
        loaded = 0
        for path in self._documents.list_documents(scope):
            present.add(path.value)
            try:
                document = self._documents.get_document(scope, path)
            except Exception:
                logger.exception("Skipping %s while updating tag index for %s", path, scope.label)
                continue
            if document is None:
                continue
            loaded += 1
            apply_to_mapping(mapping, document)

        for stale in current.all_paths() - present:
            drop_from_mapping(mapping, stale)

        index = TagIndex.from_mapping(scope, mapping)
        self._cache.write(scope, index)
        logger.info(
            "Updated tag index for %s: %d documents loaded, %d tags",
            scope.label, loaded, index.tag_count,
        )
        return index, loaded

    # -- document operations that keep the index current --

    def read_document(self, scope: Scope, path: DocumentPath) -> MemoryDocument:
        document = self._documents.get_document(scope, path)
        if document is None:
            raise DocumentNotFoundError(path.value)
        return document

    def write_document(
        self,
        scope: Scope,
        path: DocumentPath,
        content: str,
        tags: list[str] | None = None,
    ) -> MemoryDocument:
        """Store a document and index it under its tags."""
        with self._get_scope_lock(scope):
            document = self._documents.write_document(scope, path, content, tags)
            self._updater.add_or_update(scope, document)
        return document

    def patch_document(
        self,
        scope: Scope,
        path: DocumentPath,
        patches: list[dict],
        tags: list[str] | None = None,
    ) -> MemoryDocument:
        """Apply an RFC 6902 JSON Patch to a stored JSON document and reindex it.

        The patch addresses the whole stored file, so ``/metadata/tags`` can
        be patched like any other member.
        """
        if not path.is_json:
            raise InvalidDocumentError(f"JSON Patch only applies to JSON documents, not {path}")
        with self._get_scope_lock(scope):
            current = self._documents.get_document(scope, path)
            if current is None:
                raise DocumentNotFoundError(path.value)
            try:
                patched = jsonpatch.apply_patch(json.loads(current.content), patches)
            except (jsonpatch.JsonPatchException, JsonPointerException) as exc:
                raise InvalidDocumentError(f"Cannot patch {path}: {exc}") from exc
            document = self._documents.write_document(scope, path, json.dumps(patched), tags)
            self._updater.add_or_update(scope, document)
        return document

    def delete_document(self, scope: Scope, path: DocumentPath) -> bool:
        """Delete a document and drop it from the index. False if it did not exist."""
        with self._get_scope_lock(scope):
            deleted = self._documents.delete_document(scope, path)
            self._updater.remove(scope, path)
        return deleted
