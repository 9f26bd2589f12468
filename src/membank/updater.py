"""Single-document changes applied to an existing tag index."""

from __future__ import annotations

import logging

from membank.builder import IndexBuilder, add_to_mapping
from membank.cache import IndexCache
from membank.models import DocumentId, DocumentPath, MemoryDocument, Scope
from membank.tag_index import DocumentReference, TagIndex

logger = logging.getLogger(__name__)

DocumentIdentity = MemoryDocument | DocumentPath | DocumentId | str


def apply_to_mapping(
    mapping: dict[str, dict[str, DocumentReference]], document: MemoryDocument
) -> None:
    """Make ``document`` appear under exactly its current tags."""
    ref = add_to_mapping(mapping, document)
    current = set(document.tag_values)
    for tag, refs in mapping.items():
        if tag not in current:
            refs.pop(ref.path, None)


def drop_from_mapping(mapping: dict[str, dict[str, DocumentReference]], path: str) -> None:
    for refs in mapping.values():
        refs.pop(path, None)


def apply_document(index: TagIndex, document: MemoryDocument) -> TagIndex:
    mapping = index.to_mapping()
    apply_to_mapping(mapping, document)
    return TagIndex.from_mapping(index.scope, mapping)


def drop_path(index: TagIndex, path: str) -> TagIndex:
    mapping = index.to_mapping()
    drop_from_mapping(mapping, path)
    return TagIndex.from_mapping(index.scope, mapping)


def resolve_path(index: TagIndex, identity: DocumentIdentity) -> str | None:
    """Find the indexed path for a document, path or id; None if absent.

    A bare string is tried as a path first and then as a document id.
    """
    known = index.all_paths()
    if isinstance(identity, MemoryDocument):
        path = identity.path.value
        if path in known:
            return path
        return index.id_to_path().get(identity.id)
    if isinstance(identity, DocumentPath):
        return identity.value if identity.value in known else None
    if isinstance(identity, DocumentId):
        return index.id_to_path().get(identity.value)
    if identity in known:
        return identity
    return index.id_to_path().get(identity)


class IncrementalUpdater:
    """Adds, replaces and removes single documents in a persisted index.

    Callers are expected to serialize calls per scope; the updater itself does
    a plain read-modify-write through the cache.
    """

    def __init__(self, builder: IndexBuilder, cache: IndexCache) -> None:
        self._builder = builder
        self._cache = cache

    def add_or_update(self, scope: Scope, document: MemoryDocument) -> TagIndex:
        current = self._cache.get(scope)
        if current is None:
            logger.info("No tag index for %s yet, building one", scope.label)
            current = self._builder.build(scope).index
        updated = apply_document(current, document)
        self._cache.write(scope, updated)
        logger.debug("Indexed %s in %s under %s", document.path, scope.label, document.tag_values)
        return updated

    def remove(self, scope: Scope, identity: DocumentIdentity) -> TagIndex | None:
        """Drop a document from the index.

        Returns the updated index, or None when there is no index or the
        document is not in it. Nothing is written in the None case.
        """
        current = self._cache.get(scope)
        if current is None:
            logger.debug("No tag index for %s, nothing to remove", scope.label)
            return None
        path = resolve_path(current, identity)
        if path is None:
            logger.debug("Document %s not in tag index for %s", identity, scope.label)
            return None
        updated = drop_path(current, path)
        self._cache.write(scope, updated)
        logger.debug("Removed %s from tag index for %s", path, scope.label)
        return updated
