"""Tag index data model and its JSON (de)serialization.

Two on-disk shapes exist. The v1 shape maps each tag to a list of paths::

    {"schema": "tag_index_v1", "metadata": {...}, "index": {"auth": ["a.json"]}}

The v2 shape lists entries with denormalized document references::

    {"schema": "tag_index_v2", "metadata": {...},
     "index": [{"tag": "auth", "documents": [{"id": ..., "path": ..., ...}]}]}

Both are parsed into the same in-memory ``TagIndex``; the shape of ``index``
decides which parser runs, since older writers labelled array-shaped files
``tag_index_v1``. Serialization always emits v2.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from membank.errors import InvalidPathError
from membank.models import MemoryDocument, Scope

TAG_INDEX_SCHEMA_V1 = "tag_index_v1"
TAG_INDEX_SCHEMA_V2 = "tag_index_v2"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any, default: datetime | None = None) -> datetime:
    """Parse an ISO 8601 timestamp, falling back to ``default`` (or the epoch)."""
    fallback = default or _EPOCH
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return fallback
    else:
        return fallback
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _filename(path: str) -> str:
    return path.rpartition("/")[2] or path


@dataclass(frozen=True)
class DocumentReference:
    """Snapshot of a document's identity kept inside index entries."""

    id: str
    path: str
    title: str
    last_modified: datetime

    @classmethod
    def from_document(cls, document: MemoryDocument) -> DocumentReference:
        return cls(
            id=document.id,
            path=document.path.value,
            title=document.title or document.path.filename,
            last_modified=document.last_modified or utc_now(),
        )

    @classmethod
    def from_dict(cls, raw: Any, default_modified: datetime) -> DocumentReference:
        if not isinstance(raw, dict) or not isinstance(raw.get("path"), str) or not raw["path"]:
            raise ValueError(f"Invalid document reference: {raw!r}")
        path = raw["path"]
        return cls(
            id=str(raw.get("id") or ""),
            path=path,
            title=str(raw.get("title") or _filename(path)),
            last_modified=parse_timestamp(raw.get("lastModified"), default_modified),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": self.path,
            "title": self.title,
            "lastModified": format_timestamp(self.last_modified),
        }


@dataclass(frozen=True)
class TagIndexEntry:
    tag: str
    documents: tuple[DocumentReference, ...] = ()

    @property
    def paths(self) -> set[str]:
        return {ref.path for ref in self.documents}


@dataclass(frozen=True)
class TagIndex:
    """Immutable tag index for one scope.

    Counts are derived from the entries, so ``tag_count`` always equals the
    number of entries and ``document_count`` the number of distinct paths.
    """

    scope: Scope
    last_updated: datetime = field(default_factory=utc_now)
    entries: tuple[TagIndexEntry, ...] = ()
    schema: str = TAG_INDEX_SCHEMA_V2

    @classmethod
    def empty(cls, scope: Scope) -> TagIndex:
        return cls(scope=scope)

    @classmethod
    def from_mapping(
        cls,
        scope: Scope,
        mapping: dict[str, dict[str, DocumentReference]],
        last_updated: datetime | None = None,
    ) -> TagIndex:
        """Freeze a ``{tag: {path: reference}}`` working map into an index.

        Tags with no references are dropped; entries are sorted by tag and
        references by path so serialized output is deterministic.
        """
        entries = tuple(
            TagIndexEntry(tag=tag, documents=tuple(refs[p] for p in sorted(refs)))
            for tag, refs in sorted(mapping.items())
            if refs
        )
        return cls(scope=scope, last_updated=last_updated or utc_now(), entries=entries)

    def to_mapping(self) -> dict[str, dict[str, DocumentReference]]:
        """Return a mutable working copy keyed by tag, then by path."""
        return {
            entry.tag: {ref.path: ref for ref in entry.documents}
            for entry in self.entries
        }

    @property
    def index_type(self) -> str:
        return "global" if self.scope.is_global else "branch"

    @property
    def tag_count(self) -> int:
        return len(self.entries)

    @property
    def document_count(self) -> int:
        return len(self.all_paths())

    @property
    def tags(self) -> list[str]:
        return [entry.tag for entry in self.entries]

    def entry(self, tag: str) -> TagIndexEntry | None:
        for entry in self.entries:
            if entry.tag == tag:
                return entry
        return None

    def paths_for(self, tag: str) -> set[str]:
        entry = self.entry(tag)
        return entry.paths if entry else set()

    def all_paths(self) -> set[str]:
        paths: set[str] = set()
        for entry in self.entries:
            paths.update(entry.paths)
        return paths

    def references(self) -> dict[str, DocumentReference]:
        """Latest reference per path across all entries."""
        refs: dict[str, DocumentReference] = {}
        for entry in self.entries:
            for ref in entry.documents:
                refs[ref.path] = ref
        return refs

    def id_to_path(self) -> dict[str, str]:
        return {ref.id: ref.path for ref in self.references().values() if ref.id}

    def canonical(self) -> dict:
        """Comparison key that ignores ``last_updated`` and all ordering."""
        return {
            "indexType": self.index_type,
            "branchName": self.scope.branch_name,
            "documentCount": self.document_count,
            "tagCount": self.tag_count,
            "index": {
                entry.tag: frozenset(
                    (ref.id, ref.path, ref.title, format_timestamp(ref.last_modified))
                    for ref in entry.documents
                )
                for entry in self.entries
            },
        }

    def to_dict(self) -> dict:
        metadata: dict[str, Any] = {"indexType": self.index_type}
        if not self.scope.is_global:
            metadata["branchName"] = self.scope.branch_name
        metadata.update({
            "lastUpdated": format_timestamp(self.last_updated),
            "documentCount": self.document_count,
            "tagCount": self.tag_count,
        })
        return {
            "schema": TAG_INDEX_SCHEMA_V2,
            "metadata": metadata,
            "index": [
                {"tag": entry.tag, "documents": [ref.to_dict() for ref in entry.documents]}
                for entry in self.entries
            ],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n"

    @classmethod
    def from_dict(cls, raw: Any, scope: Scope) -> TagIndex:
        """Parse either on-disk shape. Raises ``ValueError`` on anything else."""
        if not isinstance(raw, dict):
            raise ValueError("Tag index must be a JSON object")
        metadata = raw.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("Tag index metadata must be an object")
        last_updated = parse_timestamp(
            metadata.get("lastUpdated") or metadata.get("updatedAt"), utc_now()
        )
        body = raw.get("index")
        if isinstance(body, dict):
            mapping = _parse_map_shape(body, last_updated)
        elif isinstance(body, list):
            mapping = _parse_entries_shape(body, last_updated)
        else:
            raise ValueError("Tag index 'index' must be an object or an array")
        index = cls.from_mapping(
            _recorded_scope(scope, metadata.get("branchName")), mapping, last_updated=last_updated
        )
        return replace(index, schema=str(raw.get("schema") or TAG_INDEX_SCHEMA_V1))


def _recorded_scope(scope: Scope, branch_name: Any) -> Scope:
    """Prefer the branch name stored in the file when it names the same directory."""
    if scope.is_global or not isinstance(branch_name, str) or branch_name == scope.branch_name:
        return scope
    try:
        recorded = Scope.branch(branch_name)
    except InvalidPathError:
        return scope
    return recorded if recorded.key == scope.key else scope


def _parse_map_shape(
    body: dict, last_updated: datetime
) -> dict[str, dict[str, DocumentReference]]:
    mapping: dict[str, dict[str, DocumentReference]] = {}
    for tag, paths in body.items():
        if not isinstance(paths, list):
            raise ValueError(f"Tag '{tag}' must map to a list of paths")
        refs = mapping.setdefault(str(tag), {})
        for path in paths:
            if not isinstance(path, str) or not path:
                raise ValueError(f"Invalid path under tag '{tag}': {path!r}")
            refs.setdefault(
                path,
                DocumentReference(id="", path=path, title=_filename(path), last_modified=last_updated),
            )
    return mapping


def _parse_entries_shape(
    body: list, last_updated: datetime
) -> dict[str, dict[str, DocumentReference]]:
    mapping: dict[str, dict[str, DocumentReference]] = {}
    for item in body:
        if not isinstance(item, dict) or not isinstance(item.get("tag"), str):
            raise ValueError(f"Invalid tag index entry: {item!r}")
        documents = item.get("documents") or []
        if not isinstance(documents, list):
            raise ValueError(f"Documents of tag '{item['tag']}' must be a list")
        refs = mapping.setdefault(item["tag"], {})
        for raw_ref in documents:
            ref = DocumentReference.from_dict(raw_ref, last_updated)
            refs.setdefault(ref.path, ref)
    return mapping
