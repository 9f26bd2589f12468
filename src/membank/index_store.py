"""On-disk persistence of per-scope tag index files."""

from __future__ import annotations

import json
import logging
import os

from membank.backend import FileSystem
from membank.errors import PersistenceError
from membank.models import Scope, scope_root
from membank.tag_index import TagIndex

logger = logging.getLogger(__name__)

INDEX_FILENAME = "tag-index.json"
LEGACY_BRANCH_INDEX_FILENAME = "_index.json"
LEGACY_GLOBAL_INDEX_FILENAME = "_global_index.json"

INDEX_FILENAMES = frozenset({
    INDEX_FILENAME,
    LEGACY_BRANCH_INDEX_FILENAME,
    LEGACY_GLOBAL_INDEX_FILENAME,
})


class TagIndexStore:
    """Reads and writes one tag index JSON file per scope."""

    def __init__(self, fs: FileSystem, docs_root: str) -> None:
        self._fs = fs
        self._docs_root = docs_root

    def index_path(self, scope: Scope) -> str:
        return os.path.join(scope_root(self._docs_root, scope), INDEX_FILENAME)

    def legacy_index_path(self, scope: Scope) -> str:
        name = LEGACY_GLOBAL_INDEX_FILENAME if scope.is_global else LEGACY_BRANCH_INDEX_FILENAME
        return os.path.join(scope_root(self._docs_root, scope), name)

    def read(self, scope: Scope) -> TagIndex | None:
        """Load the scope's index, or None when it is missing or malformed.

        The current filename wins over the legacy one when both exist.
        """
        for path in (self.index_path(scope), self.legacy_index_path(scope)):
            if self._fs.file_exists(path):
                return self._read_file(scope, path)
        return None

    def _read_file(self, scope: Scope, path: str) -> TagIndex | None:
        logger.debug("Reading tag index from disk: %s", path)
        try:
            content = self._fs.read_file(path)
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            logger.warning("Ignoring undecodable tag index %s: %s", path, exc)
            return None
        except OSError as exc:
            raise PersistenceError(f"Failed to read tag index {path}: {exc}", path=path) from exc

        try:
            return TagIndex.from_dict(json.loads(content), scope)
        except ValueError as exc:
            logger.warning("Ignoring malformed tag index %s: %s", path, exc)
            return None

    def write(self, scope: Scope, index: TagIndex) -> None:
        path = self.index_path(scope)
        try:
            self._fs.create_directory(os.path.dirname(path))
            self._fs.write_file(path, index.to_json())
        except OSError as exc:
            logger.error("Failed to write tag index %s: %s", path, exc)
            raise PersistenceError(f"Failed to write tag index {path}: {exc}", path=path) from exc
        logger.debug(
            "Wrote tag index for %s (%d tags, %d documents)",
            scope.label, index.tag_count, index.document_count,
        )
