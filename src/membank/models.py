"""Value objects shared across the memory bank."""

from __future__ import annotations

import os
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from membank.errors import InvalidPathError, InvalidTagError

_TAG_RE = re.compile(r"^[a-z0-9][a-z0-9-]*$")
_INVALID_TAG_CHARS_RE = re.compile(r"[^a-z0-9-]")
_INVALID_PATH_CHARS_RE = re.compile(r'[<>:"|?*]')
_WINDOWS_DRIVE_RE = re.compile(r"^[a-zA-Z]:")

GLOBAL_SCOPE_KEY = "global"
BRANCH_ROOT_DIR = "branch-memory-bank"
GLOBAL_ROOT_DIR = "global-memory-bank"


@dataclass(frozen=True, order=True)
class Tag:
    """A normalized tag label: lowercase alphanumerics and hyphens."""

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not _TAG_RE.match(self.value):
            raise InvalidTagError(
                f"Invalid tag '{self.value}': use lowercase letters, digits and hyphens"
            )

    @classmethod
    def sanitize(cls, raw: str) -> Tag:
        """Coerce free-form input into a valid tag, or raise if nothing is left."""
        cleaned = _INVALID_TAG_CHARS_RE.sub("-", raw.strip().lower()).lstrip("-")
        return cls(cleaned)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, order=True)
class DocumentPath:
    """A relative, forward-slash document path inside one scope."""

    value: str

    def __post_init__(self) -> None:
        value = self.value
        if not value:
            raise InvalidPathError("Document path cannot be empty")
        if "\\" in value:
            raise InvalidPathError("Document path cannot contain backslashes; use '/'")
        if ".." in value:
            raise InvalidPathError("Document path cannot contain '..'")
        if value.startswith("/") or _WINDOWS_DRIVE_RE.match(value):
            raise InvalidPathError("Document path cannot be absolute")
        if _INVALID_PATH_CHARS_RE.search(value):
            raise InvalidPathError('Document path contains invalid characters (<, >, :, ", |, ?, *)')
        if value.endswith("/"):
            raise InvalidPathError("Document path cannot end with a slash")

    @property
    def directory(self) -> str:
        return self.value.rpartition("/")[0]

    @property
    def filename(self) -> str:
        return self.value.rpartition("/")[2]

    @property
    def basename(self) -> str:
        name = self.filename
        return name.rpartition(".")[0] if "." in name else name

    @property
    def extension(self) -> str:
        name = self.filename
        return name.rpartition(".")[2].lower() if "." in name else ""

    @property
    def is_json(self) -> bool:
        return self.extension == "json"

    @property
    def is_markdown(self) -> bool:
        return self.extension == "md"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class DocumentId:
    value: str

    def __post_init__(self) -> None:
        if not self.value:
            raise ValueError("Document id cannot be empty")

    @classmethod
    def generate(cls) -> DocumentId:
        return cls(str(uuid.uuid4()))

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class Scope:
    """Unit of index partitioning: one branch, or the global memory bank."""

    branch_name: str | None = None

    def __post_init__(self) -> None:
        name = self.branch_name
        if name is None:
            return
        if not name.strip():
            raise InvalidPathError("Branch name cannot be empty")
        if ".." in name or "\\" in name or name.startswith("/"):
            raise InvalidPathError(f"Invalid branch name '{name}'")
        # the directory name must not resolve to the branch root or a hidden entry
        if self.safe_name.startswith("."):
            raise InvalidPathError(f"Invalid branch name '{name}'")

    @classmethod
    def branch(cls, name: str) -> Scope:
        return cls(branch_name=name)

    @classmethod
    def global_scope(cls) -> Scope:
        return cls()

    @classmethod
    def from_branch(cls, name: str | None) -> Scope:
        """Branch scope when a name is given, global scope otherwise."""
        return cls(branch_name=name) if name else cls()

    @property
    def is_global(self) -> bool:
        return self.branch_name is None

    @property
    def safe_name(self) -> str | None:
        if self.branch_name is None:
            return None
        return self.branch_name.replace("/", "-")

    @property
    def key(self) -> str:
        if self.branch_name is None:
            return GLOBAL_SCOPE_KEY
        return f"branch:{self.safe_name}"

    @property
    def label(self) -> str:
        return self.branch_name if self.branch_name is not None else GLOBAL_SCOPE_KEY


@dataclass(frozen=True)
class MemoryDocument:
    """A stored document as seen by the index: identity, title and tags."""

    path: DocumentPath
    id: str
    title: str
    tags: tuple[Tag, ...] = field(default_factory=tuple)
    last_modified: datetime | None = None
    content: str = ""

    @property
    def tag_values(self) -> list[str]:
        return [t.value for t in self.tags]

    def has_tag(self, tag: Tag) -> bool:
        return tag in self.tags


def scope_root(docs_root: str, scope: Scope) -> str:
    """Directory holding a scope's documents and its tag index."""
    if scope.is_global:
        return os.path.join(docs_root, GLOBAL_ROOT_DIR)
    return os.path.join(docs_root, BRANCH_ROOT_DIR, scope.safe_name)
