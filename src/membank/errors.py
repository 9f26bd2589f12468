"""Exception types raised by the memory bank."""

from __future__ import annotations


class MembankError(Exception):
    """Base class for memory bank errors."""


class InvalidTagError(MembankError, ValueError):
    """Raised when a tag does not match the allowed format."""


class InvalidPathError(MembankError, ValueError):
    """Raised when a document path is empty, absolute or escapes its scope."""


class DocumentNotFoundError(MembankError, KeyError):
    """Raised when a document that must exist is missing."""

    def __init__(self, path: str) -> None:
        super().__init__(path)
        self.path = path

    def __str__(self) -> str:
        return f"Document not found: {self.path}"


class PersistenceError(MembankError):
    """Raised when reading or writing a file fails for an environmental reason.

    Missing or malformed index files are not persistence errors; the index
    store reports those as "no index" so callers can rebuild.
    """

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class InvalidDocumentError(MembankError, ValueError):
    """Raised when document content cannot be parsed or has the wrong shape."""
