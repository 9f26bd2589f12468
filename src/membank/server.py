"""membank MCP server: tagged memory bank documents with a per-scope tag index."""

from __future__ import annotations

import atexit
import json
import logging
import sys
import threading
from typing import Any

from mcp.server.fastmcp import FastMCP

from membank.bank import MemoryBank
from membank.config import DEFAULT_CONFIG_PATH, MembankConfig
from membank.errors import MembankError
from membank.migrate import migrate_legacy_indexes
from membank.models import GLOBAL_SCOPE_KEY, DocumentPath, MemoryDocument, Scope

logging.basicConfig(level=logging.INFO, stream=sys.stderr)
logger = logging.getLogger(__name__)

MATCH_MODES = ("and", "or")
SEARCH_SCOPES = ("branch", "global", "all")
GLOBAL_CONTEXT_PREFIX = "core/"


def _normalize_tags(tags: list[str] | str | None) -> list[str] | None:
    """Normalize tags input: accept string or list, lowercase, strip, deduplicate."""
    if tags is None:
        return None
    if isinstance(tags, str):
        tags = [tags]
    seen: set[str] = set()
    result: list[str] = []
    for tag in tags:
        normalized = tag.strip().lstrip("#").lower()
        if normalized and normalized not in seen:
            seen.add(normalized)
            result.append(normalized)
    return result


def _label(branch: str | None) -> str:
    return branch or GLOBAL_SCOPE_KEY


def _context_entries(documents: list[MemoryDocument]) -> dict[str, Any]:
    """Map document paths to parsed JSON bodies, or raw text for Markdown."""
    return {
        document.path.value: json.loads(document.content) if document.path.is_json else document.content
        for document in documents
    }


SERVER_INSTRUCTIONS = """\
membank stores memory bank documents (JSON or Markdown) per git branch and in a
shared global bank, and keeps a tag index for each so documents can be found
by tag without scanning them.

## Branch parameter
Every tool takes an optional `branch`. Pass the git branch you are working on
to use that branch's memory bank. Leave it out to use the global memory bank.

## Tags
Tags are lowercase letters, digits and hyphens, e.g. "auth", "design-decision".
JSON documents keep them in `metadata.tags`; Markdown documents in a line like
`tags: #auth #design-decision`. Passing `tags` to write_document replaces the
document's tags.

## Partial updates
write_document accepts `patches` instead of `content`: an RFC 6902 JSON Patch
list such as `[{"op": "replace", "path": "/content/status", "value": "done"}]`,
applied to an existing JSON document. Paths address the whole stored file, so
`/metadata/tags/-` adds a tag.

## Context
read_context returns every document in a branch's memory bank together with
the global memory bank's `core/` documents. Call it at the start of a session.

## Searching
search_documents_by_tags with match="or" returns documents carrying any of the
tags; match="and" returns documents carrying all of them. scope="all" searches
the branch bank and the global bank together.

## Keeping the index current
Every write and delete through these tools updates the tag index. If documents
were edited by other means, call update_tag_index (full_rebuild=true derives
the index from scratch).
"""


def create_server(
    config_path: str = DEFAULT_CONFIG_PATH,
    bank: MemoryBank | None = None,
) -> tuple[FastMCP, MemoryBank]:
    """Create and configure the membank MCP server."""
    if bank is None:
        bank = MemoryBank(MembankConfig.load(config_path))
    config = bank.config

    mcp = FastMCP(
        "membank",
        instructions=SERVER_INSTRUCTIONS,
        host="127.0.0.1",
        port=config.port,
    )

    if config.watch:
        # Reconcile on a background thread so the server can accept calls immediately
        def _startup_reconcile() -> None:
            try:
                bank.start_watcher()
            except Exception:
                logger.exception("Startup reconciliation failed")

        threading.Thread(target=_startup_reconcile, daemon=True).start()

    atexit.register(bank.shutdown)
    service = bank.service

    @mcp.tool()
    def write_document(
        path: str,
        content: str | None = None,
        tags: list[str] | str | None = None,
        branch: str | None = None,
        patches: list[dict] | None = None,
    ) -> str:
        """Create or replace a memory bank document and index its tags.

        Args:
            path: Document path relative to the memory bank, e.g. "decisions/auth.json"
            content: Full document content (JSON object or Markdown)
            tags: Tags for the document; replaces the tags stored in the content
            branch: Git branch name; omit for the global memory bank
            patches: RFC 6902 JSON Patch operations for an existing JSON document, instead of content
        """
        label = _label(branch)
        if (content is None) == (patches is None):
            return f"[{label}] Failed to write {path}: provide either content or patches"
        try:
            scope = Scope.from_branch(branch)
            if patches is not None:
                document = service.patch_document(
                    scope, DocumentPath(path), patches, _normalize_tags(tags)
                )
            else:
                document = service.write_document(
                    scope, DocumentPath(path), content, _normalize_tags(tags)
                )
        except MembankError as exc:
            return f"[{label}] Failed to write {path}: {exc}"
        tag_text = ", ".join(document.tag_values) or "no tags"
        verb = "Patched" if patches is not None else "Wrote"
        return f"[{label}] {verb} {document.path} ({tag_text})"

    @mcp.tool()
    def read_context(branch: str) -> str:
        """Read a branch's memory bank together with the global core documents.

        Args:
            branch: Git branch name
        """
        try:
            context = {
                "branchMemory": _context_entries(service.load_documents(Scope.branch(branch))),
                "globalMemory": _context_entries(
                    service.load_documents(Scope.global_scope(), GLOBAL_CONTEXT_PREFIX)
                ),
            }
        except MembankError as exc:
            return f"[{branch}] Failed to read context: {exc}"
        return f"[{branch}] Context:\n" + json.dumps(context, indent=2, ensure_ascii=False)

    @mcp.tool()
    def read_document(path: str, branch: str | None = None) -> str:
        """Read a memory bank document.

        Args:
            path: Document path relative to the memory bank
            branch: Git branch name; omit for the global memory bank
        """
        label = _label(branch)
        try:
            document = service.read_document(Scope.from_branch(branch), DocumentPath(path))
        except MembankError as exc:
            return f"[{label}] {exc}"
        return document.content

    @mcp.tool()
    def delete_document(path: str, branch: str | None = None) -> str:
        """Delete a memory bank document and drop it from the tag index.

        Args:
            path: Document path relative to the memory bank
            branch: Git branch name; omit for the global memory bank
        """
        label = _label(branch)
        try:
            deleted = service.delete_document(Scope.from_branch(branch), DocumentPath(path))
        except MembankError as exc:
            return f"[{label}] Failed to delete {path}: {exc}"
        if not deleted:
            return f"[{label}] Document not found: {path}"
        return f"[{label}] Deleted {path}"

    @mcp.tool()
    def search_documents_by_tags(
        tags: list[str] | str,
        match: str = "or",
        scope: str = "all",
        branch: str | None = None,
    ) -> str:
        """Find documents by tag using the tag index.

        Args:
            tags: Tags to look for
            match: "or" (any tag, default) or "and" (every tag)
            scope: "branch", "global" or "all" (default; branch and global together)
            branch: Git branch name; required for scope="branch"
        """
        if match not in MATCH_MODES:
            return f"Invalid match mode '{match}': use 'and' or 'or'"
        if scope not in SEARCH_SCOPES:
            return f"Invalid scope '{scope}': use 'branch', 'global' or 'all'"
        if scope == "branch" and not branch:
            return "A branch name is required when scope is 'branch'"

        tag_list = _normalize_tags(tags) or []
        targets: list[str | None] = []
        if scope in ("branch", "all") and branch:
            targets.append(branch)
        if scope in ("global", "all"):
            if scope == "all" and not branch:
                logger.warning("No branch given for scope 'all'; searching the global memory bank only")
            targets.append(None)

        lines: list[str] = []
        for target in targets:
            label = _label(target)
            try:
                documents = service.search_documents(
                    Scope.from_branch(target), tag_list, match_all=(match == "and")
                )
            except MembankError as exc:
                lines.append(f"[{label}] Search failed: {exc}")
                continue
            for document in documents:
                tag_text = ", ".join(document.tag_values)
                lines.append(f"[{label}] {document.path}: {document.title} ({tag_text})")

        if not lines:
            return f"No documents found with tags: {', '.join(tag_list) or '(none)'}"
        return f"{len(lines)} results:\n" + "\n".join(lines)

    @mcp.tool()
    def update_tag_index(branch: str | None = None, full_rebuild: bool = False) -> str:
        """Bring the tag index up to date with the documents on disk.

        Args:
            branch: Git branch name; omit for the global memory bank
            full_rebuild: Derive the index from scratch instead of updating it
        """
        label = _label(branch)
        try:
            result = service.update_index(Scope.from_branch(branch), full_rebuild=full_rebuild)
        except MembankError as exc:
            return f"[{label}] Failed to update tag index: {exc}"
        return f"[{label}] Tag index updated:\n" + json.dumps(result.to_dict(), indent=2)

    @mcp.tool()
    def list_tags(branch: str | None = None) -> str:
        """List all tags in a memory bank with their document counts.

        Args:
            branch: Git branch name; omit for the global memory bank
        """
        label = _label(branch)
        try:
            counts = service.list_tags(Scope.from_branch(branch))
        except MembankError as exc:
            return f"[{label}] {exc}"
        if not counts:
            return f"[{label}] No tags found."
        lines = [f"[{label}] {len(counts)} tags:"]
        for tag, count in sorted(counts.items(), key=lambda item: (-item[1], item[0])):
            lines.append(f"  {tag} ({count})")
        return "\n".join(lines)

    return mcp, bank


def _rebuild(config: MembankConfig, branch: str | None) -> None:
    bank = MemoryBank(config)
    scopes = [Scope.from_branch(branch)] if branch else bank.documents.list_scopes()
    for scope in scopes:
        result = bank.service.update_index(scope, full_rebuild=True)
        location = result.update_info.update_location
        print(f"{location}: {result.document_count} documents, {len(result.tags)} tags")


def _add_serve_args(parser: "argparse.ArgumentParser") -> None:
    """Add --transport and --config flags to a parser."""
    parser.add_argument(
        "--transport",
        choices=["stdio", "streamable-http"],
        default="stdio",
        help="Transport protocol (default: stdio)",
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG_PATH,
        help="Path to config file",
    )


def main() -> None:
    """Entry point for running the server."""
    import argparse

    parser = argparse.ArgumentParser(description="membank tagged memory bank server")
    # Serve flags on the top-level parser so bare `membank --transport ...` works
    _add_serve_args(parser)

    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Run the MCP server")
    _add_serve_args(serve_parser)

    rebuild_parser = subparsers.add_parser("rebuild", help="Rebuild tag indexes from disk")
    rebuild_parser.add_argument("--branch", default=None, help="Only rebuild this branch")
    rebuild_parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config file")

    migrate_parser = subparsers.add_parser("migrate", help="Convert legacy tag index files")
    migrate_parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to config file")

    args = parser.parse_args()
    config = MembankConfig.load(args.config)
    logging.getLogger().setLevel(config.log_level)

    if args.command == "rebuild":
        _rebuild(config, args.branch)
        return

    if args.command == "migrate":
        count = migrate_legacy_indexes(MemoryBank(config).fs, config.docs_root)
        print(f"Migrated {count} legacy tag index files")
        return

    # Default: serve (handles both `membank serve` and bare `membank`)
    transport = getattr(args, "transport", "stdio")
    mcp, _ = create_server(config_path=args.config, bank=MemoryBank(config))
    mcp.run(transport=transport)


if __name__ == "__main__":
    main()
