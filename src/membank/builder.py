"""Full rebuild of a scope's tag index from its stored documents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from membank.backend import DocumentStore
from membank.cache import IndexCache
from membank.models import MemoryDocument, Scope
from membank.tag_index import DocumentReference, TagIndex

logger = logging.getLogger(__name__)


@dataclass
class BuildResult:
    index: TagIndex
    loaded: int = 0
    failed: list[str] = field(default_factory=list)


def add_to_mapping(
    mapping: dict[str, dict[str, DocumentReference]], document: MemoryDocument
) -> DocumentReference:
    """Record ``document`` under each of its tags in a working map."""
    ref = DocumentReference.from_document(document)
    for tag in document.tags:
        mapping.setdefault(tag.value, {})[ref.path] = ref
    return ref


class IndexBuilder:
    """Derives a tag index from scratch by loading every document in a scope."""

    def __init__(self, documents: DocumentStore, cache: IndexCache) -> None:
        self._documents = documents
        self._cache = cache

    def build(self, scope: Scope) -> BuildResult:
        """Build an index without persisting it.

        Documents that fail to load are logged and left out; the build itself
        only fails when the scope's documents cannot be listed.
        """
        mapping: dict[str, dict[str, DocumentReference]] = {}
        loaded = 0
        failed: list[str] = []

        for path in self._documents.list_documents(scope):
            try:
                document = self._documents.get_document(scope, path)
            except Exception:
                logger.exception("Skipping %s while building tag index for %s", path, scope.label)
                failed.append(path.value)
                continue
            if document is None:
                continue
            loaded += 1
            add_to_mapping(mapping, document)

        index = TagIndex.from_mapping(scope, mapping)
        return BuildResult(index=index, loaded=loaded, failed=failed)

    def rebuild(self, scope: Scope) -> BuildResult:
        """Build the scope's index and write it through the cache."""
        result = self.build(scope)
        self._cache.write(scope, result.index)
        logger.info(
            "Rebuilt tag index for %s: %d documents loaded, %d tags, %d failed",
            scope.label, result.loaded, result.index.tag_count, len(result.failed),
        )
        return result
