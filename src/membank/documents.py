"""File-backed document store for JSON and Markdown memory bank documents."""

from __future__ import annotations

import json
import logging
import os
import re
import uuid
from datetime import datetime

from membank.backend import FileSystem
from membank.errors import InvalidDocumentError, InvalidPathError, InvalidTagError, PersistenceError
from membank.index_store import INDEX_FILENAMES
from membank.models import BRANCH_ROOT_DIR, DocumentPath, MemoryDocument, Scope, Tag, scope_root
from membank.tag_index import format_timestamp, parse_timestamp, utc_now

logger = logging.getLogger(__name__)

DOCUMENT_SCHEMA = "memory_document_v2"
DOCUMENT_EXTENSIONS = (".json", ".md")

_TAGS_LINE_RE = re.compile(r"^tags:\s*(.*)$", re.IGNORECASE | re.MULTILINE)
_HASHTAG_RE = re.compile(r"#([^\s#]+)")
_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "membank:document")


def derive_document_id(path: DocumentPath) -> str:
    """Stable id for documents that do not carry one (Markdown, bare JSON)."""
    return str(uuid.uuid5(_ID_NAMESPACE, path.value))


def _lenient_tags(raw_tags: list, path: DocumentPath) -> tuple[Tag, ...]:
    """Parse stored tags, sanitizing bad ones rather than failing the read."""
    tags: list[Tag] = []
    for raw in raw_tags:
        if not isinstance(raw, str):
            continue
        try:
            tag = Tag(raw)
        except InvalidTagError:
            try:
                tag = Tag.sanitize(raw)
            except InvalidTagError:
                logger.warning("Dropping invalid tag '%s' in %s", raw, path)
                continue
            logger.warning("Sanitized tag '%s' to '%s' in %s", raw, tag.value, path)
        if tag not in tags:
            tags.append(tag)
    return tuple(tags)


def _strict_tags(raw_tags: list) -> list[Tag]:
    tags: list[Tag] = []
    for raw in raw_tags:
        tag = raw if isinstance(raw, Tag) else Tag(raw)
        if tag not in tags:
            tags.append(tag)
    return tags


def _markdown_title(content: str) -> str | None:
    for line in content.split("\n"):
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip() or None
    return None


def _markdown_tags(content: str) -> list[str]:
    raw: list[str] = []
    for match in _TAGS_LINE_RE.finditer(content):
        raw.extend(_HASHTAG_RE.findall(match.group(1)))
    return raw


class FileDocumentStore:
    """DocumentStore over ``<docs_root>/{branch,global}-memory-bank`` directories."""

    def __init__(self, fs: FileSystem, docs_root: str) -> None:
        self._fs = fs
        self._docs_root = docs_root

    @property
    def docs_root(self) -> str:
        return self._docs_root

    def scope_root(self, scope: Scope) -> str:
        return scope_root(self._docs_root, scope)

    def resolve(self, scope: Scope, path: DocumentPath) -> str:
        return os.path.join(self.scope_root(scope), *path.value.split("/"))

    def list_scopes(self) -> list[Scope]:
        """The global scope followed by every branch directory on disk."""
        branch_root = os.path.join(self._docs_root, BRANCH_ROOT_DIR)
        try:
            names = self._fs.list_directories(branch_root)
        except OSError as exc:
            raise PersistenceError(f"Failed to list branches in {branch_root}: {exc}", path=branch_root) from exc
        scopes = [Scope.global_scope()]
        for name in names:
            try:
                scopes.append(Scope.branch(name))
            except InvalidPathError:
                logger.debug("Ignoring non-branch directory %s in %s", name, branch_root)
        return scopes

    def list_documents(self, scope: Scope) -> list[DocumentPath]:
        root = self.scope_root(scope)
        try:
            files = self._fs.list_files(root)
        except OSError as exc:
            raise PersistenceError(f"Failed to list documents in {root}: {exc}", path=root) from exc
        paths: list[DocumentPath] = []
        for file_path in files:
            rel = os.path.relpath(file_path, root).replace(os.sep, "/")
            if not is_document_name(rel):
                continue
            try:
                paths.append(DocumentPath(rel))
            except InvalidPathError:
                logger.warning("Skipping document with unsupported path: %s", file_path)
        return sorted(paths)

    def get_document(self, scope: Scope, path: DocumentPath) -> MemoryDocument | None:
        file_path = self.resolve(scope, path)
        if not self._fs.file_exists(file_path):
            return None
        try:
            content = self._fs.read_file(file_path)
            modified = self._fs.last_modified(file_path)
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            raise InvalidDocumentError(f"Document {path} is not valid UTF-8: {exc}") from exc
        except OSError as exc:
            raise PersistenceError(f"Failed to read document {path}: {exc}", path=file_path) from exc

        if path.is_json:
            return self._parse_json(path, content, modified)
        title = _markdown_title(content) or path.filename
        return MemoryDocument(
            path=path,
            id=derive_document_id(path),
            title=title,
            tags=_lenient_tags(_markdown_tags(content), path),
            last_modified=modified,
            content=content,
        )

    def _parse_json(self, path: DocumentPath, content: str, modified: datetime) -> MemoryDocument:
        try:
            raw = json.loads(content)
        except ValueError as exc:
            raise InvalidDocumentError(f"Document {path} is not valid JSON: {exc}") from exc
        metadata = raw.get("metadata") if isinstance(raw, dict) else None
        if not isinstance(metadata, dict):
            metadata = {}
        raw_tags = metadata.get("tags") if isinstance(metadata.get("tags"), list) else []
        return MemoryDocument(
            path=path,
            id=str(metadata.get("id") or derive_document_id(path)),
            title=str(metadata.get("title") or path.filename),
            tags=_lenient_tags(raw_tags, path),
            last_modified=parse_timestamp(metadata.get("lastModified"), modified),
            content=content,
        )

    def write_document(
        self,
        scope: Scope,
        path: DocumentPath,
        content: str,
        tags: list[str] | list[Tag] | None = None,
    ) -> MemoryDocument:
        """Create or replace a document. Explicit ``tags`` replace the stored ones.

        Raises InvalidTagError for malformed tags and InvalidDocumentError
        for JSON content that is not an object.
        """
        new_tags = _strict_tags(tags) if tags is not None else None
        if path.is_json:
            body = self._prepare_json(scope, path, content, new_tags)
        elif path.is_markdown:
            body = self._prepare_markdown(content, new_tags)
        else:
            raise InvalidPathError(f"Unsupported document type: {path} (use .json or .md)")

        file_path = self.resolve(scope, path)
        try:
            self._fs.create_directory(os.path.dirname(file_path))
            self._fs.write_file(file_path, body)
        except OSError as exc:
            raise PersistenceError(f"Failed to write document {path}: {exc}", path=file_path) from exc
        logger.info("Wrote document %s in %s", path, scope.label)

        document = self.get_document(scope, path)
        if document is None:
            raise PersistenceError(f"Document {path} vanished after write", path=file_path)
        return document

    def _prepare_json(
        self, scope: Scope, path: DocumentPath, content: str, tags: list[Tag] | None
    ) -> str:
        try:
            raw = json.loads(content)
        except ValueError as exc:
            raise InvalidDocumentError(f"Document {path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise InvalidDocumentError(f"Document {path} must be a JSON object")
        if not isinstance(raw.get("metadata"), dict):
            raw = {"metadata": {}, "content": raw}

        metadata = raw["metadata"]
        if tags is None:
            raw_tags = metadata.get("tags") or []
            if not isinstance(raw_tags, list):
                raise InvalidDocumentError(f"Document {path} metadata.tags must be a list")
            tags = _strict_tags(raw_tags)

        previous_meta = self._stored_metadata(scope, path)
        now = format_timestamp(utc_now())

        metadata["id"] = metadata.get("id") or previous_meta.get("id") or str(uuid.uuid4())
        metadata.setdefault("title", path.basename)
        metadata.setdefault("documentType", "generic")
        metadata["path"] = path.value
        metadata["tags"] = [t.value for t in tags]
        metadata["createdAt"] = previous_meta.get("createdAt") or metadata.get("createdAt") or now
        metadata["lastModified"] = now
        metadata["version"] = int(previous_meta.get("version") or 0) + 1

        document = {"schema": raw.get("schema") or DOCUMENT_SCHEMA, "metadata": metadata}
        document["content"] = raw.get("content", {})
        return json.dumps(document, indent=2, ensure_ascii=False) + "\n"

    def _stored_metadata(self, scope: Scope, path: DocumentPath) -> dict:
        file_path = self.resolve(scope, path)
        if not self._fs.file_exists(file_path):
            return {}
        try:
            return _json_metadata(self._fs.read_file(file_path))
        except FileNotFoundError:
            return {}
        except UnicodeDecodeError:
            return {}
        except OSError as exc:
            raise PersistenceError(f"Failed to read document {path}: {exc}", path=file_path) from exc

    @staticmethod
    def _prepare_markdown(content: str, tags: list[Tag] | None) -> str:
        if tags is None:
            _strict_tags(_markdown_tags(content))
            return content
        body = _TAGS_LINE_RE.sub("", content).rstrip()
        if not tags:
            return body + "\n"
        tag_line = "tags: " + " ".join(f"#{t.value}" for t in tags)
        return f"{body}\n\n{tag_line}\n" if body else f"{tag_line}\n"

    def delete_document(self, scope: Scope, path: DocumentPath) -> bool:
        file_path = self.resolve(scope, path)
        try:
            deleted = self._fs.delete_file(file_path)
        except OSError as exc:
            raise PersistenceError(f"Failed to delete document {path}: {exc}", path=file_path) from exc
        if deleted:
            logger.info("Deleted document %s in %s", path, scope.label)
        return deleted


def is_document_name(rel_path: str) -> bool:
    """True for .json/.md files that are neither index files nor temp files."""
    name = rel_path.rpartition("/")[2]
    if name in INDEX_FILENAMES or name.startswith("."):
        return False
    return name.lower().endswith(DOCUMENT_EXTENSIONS)


def _json_metadata(content: str) -> dict:
    try:
        raw = json.loads(content)
    except ValueError:
        return {}
    metadata = raw.get("metadata") if isinstance(raw, dict) else None
    return metadata if isinstance(metadata, dict) else {}
