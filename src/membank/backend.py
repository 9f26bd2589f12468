"""Storage protocols for the memory bank."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from membank.models import DocumentPath, MemoryDocument, Scope


class FileSystem(Protocol):
    """Low-level file operations used by the document and index stores."""

    def file_exists(self, path: str) -> bool: ...

    def read_file(self, path: str) -> str: ...

    def write_file(self, path: str, content: str) -> None: ...

    def create_directory(self, path: str) -> None: ...

    def list_files(self, path: str) -> list[str]: ...

    def list_directories(self, path: str) -> list[str]: ...

    def delete_file(self, path: str) -> bool: ...

    def last_modified(self, path: str) -> datetime: ...


class DocumentStore(Protocol):
    """Authoritative document storage the tag index is built from."""

    def list_documents(self, scope: Scope) -> list[DocumentPath]: ...

    def get_document(self, scope: Scope, path: DocumentPath) -> MemoryDocument | None: ...
