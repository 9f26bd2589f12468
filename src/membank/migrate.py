"""Migrate legacy tag index files to the current filename and format."""

from __future__ import annotations

import logging

from membank.backend import FileSystem
from membank.documents import FileDocumentStore
from membank.index_store import TagIndexStore

logger = logging.getLogger(__name__)


def migrate_legacy_indexes(fs: FileSystem, docs_root: str) -> int:
    """Write ``tag-index.json`` for every scope that only has a legacy index.

    Legacy ``_index.json`` / ``_global_index.json`` files are parsed in
    whichever shape they use and re-serialized as v2. They are left in place;
    the new file takes precedence on every later read. Returns the number of
    scopes migrated.
    """
    documents = FileDocumentStore(fs, docs_root)
    store = TagIndexStore(fs, docs_root)

    migrated = 0
    for scope in documents.list_scopes():
        if fs.file_exists(store.index_path(scope)):
            continue
        legacy_path = store.legacy_index_path(scope)
        if not fs.file_exists(legacy_path):
            continue
        index = store.read(scope)
        if index is None:
            logger.warning("Skipping unreadable legacy tag index %s", legacy_path)
            continue
        store.write(scope, index)
        migrated += 1
        logger.info(
            "Migrated %s (%d tags, %d documents)",
            legacy_path, index.tag_count, index.document_count,
        )
    return migrated
