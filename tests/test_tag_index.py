import json
from datetime import datetime, timezone

import pytest

from membank.models import DocumentPath, MemoryDocument, Scope, Tag
from membank.tag_index import (
    TAG_INDEX_SCHEMA_V1,
    TAG_INDEX_SCHEMA_V2,
    DocumentReference,
    TagIndex,
    parse_timestamp,
)

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _ref(path: str, doc_id: str | None = None) -> DocumentReference:
    return DocumentReference(id=doc_id or f"id-{path}", path=path, title=path, last_modified=T0)


def _index(scope: Scope, mapping: dict[str, list[str]]) -> TagIndex:
    return TagIndex.from_mapping(
        scope,
        {tag: {p: _ref(p) for p in paths} for tag, paths in mapping.items()},
        last_updated=T0,
    )


def test_counts_are_derived_from_entries():
    index = _index(Scope.global_scope(), {"auth": ["a.json", "b.json"], "api": ["b.json"]})
    assert index.tag_count == 2
    assert index.document_count == 2
    assert index.tags == ["api", "auth"]
    assert index.paths_for("auth") == {"a.json", "b.json"}
    assert index.paths_for("missing") == set()


def test_from_mapping_drops_empty_entries_and_sorts():
    index = TagIndex.from_mapping(
        Scope.global_scope(),
        {"zeta": {"b.json": _ref("b.json"), "a.json": _ref("a.json")}, "empty": {}},
    )
    assert index.tags == ["zeta"]
    assert [ref.path for ref in index.entries[0].documents] == ["a.json", "b.json"]


def test_to_dict_branch_metadata():
    index = _index(Scope.branch("feature/x"), {"auth": ["a.json"]})
    raw = index.to_dict()
    assert raw["schema"] == TAG_INDEX_SCHEMA_V2
    assert raw["metadata"]["indexType"] == "branch"
    assert raw["metadata"]["branchName"] == "feature/x"
    assert raw["metadata"]["documentCount"] == 1
    assert raw["metadata"]["tagCount"] == 1
    assert raw["index"] == [{
        "tag": "auth",
        "documents": [{
            "id": "id-a.json",
            "path": "a.json",
            "title": "a.json",
            "lastModified": "2025-01-01T00:00:00+00:00",
        }],
    }]


def test_to_dict_global_omits_branch_name():
    raw = _index(Scope.global_scope(), {}).to_dict()
    assert raw["metadata"]["indexType"] == "global"
    assert "branchName" not in raw["metadata"]
    assert raw["index"] == []


@pytest.mark.parametrize("stored, expected", [
    ("feature/x", "feature/x"),
    ("feature-y", "feature-x"),
    ("../escape", "feature-x"),
    (None, "feature-x"),
])
def test_from_dict_keeps_recorded_branch_name(stored, expected):
    raw = {"schema": TAG_INDEX_SCHEMA_V2, "metadata": {"branchName": stored}, "index": []}
    index = TagIndex.from_dict(raw, Scope.branch("feature-x"))
    assert index.scope.branch_name == expected


def test_v2_round_trip_preserves_canonical_form():
    index = _index(Scope.branch("main"), {"auth": ["a.json", "b.json"], "api": ["b.json"]})
    parsed = TagIndex.from_dict(json.loads(index.to_json()), Scope.branch("main"))
    assert parsed.canonical() == index.canonical()
    assert parsed.schema == TAG_INDEX_SCHEMA_V2


def test_parses_v1_map_shape():
    raw = {
        "schema": TAG_INDEX_SCHEMA_V1,
        "metadata": {"updatedAt": "2024-05-01T12:00:00Z", "context": "global"},
        "index": {"auth": ["docs/a.json", "b.json"], "api": ["b.json"]},
    }
    index = TagIndex.from_dict(raw, Scope.global_scope())
    assert index.schema == TAG_INDEX_SCHEMA_V1
    assert index.paths_for("auth") == {"docs/a.json", "b.json"}
    ref = index.references()["docs/a.json"]
    assert ref.id == ""
    assert ref.title == "a.json"
    assert ref.last_modified == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)
    assert index.id_to_path() == {}


def test_array_shape_labelled_v1_is_parsed_as_entries():
    raw = {
        "schema": TAG_INDEX_SCHEMA_V1,
        "metadata": {"lastUpdated": "2024-05-01T12:00:00Z"},
        "index": [{"tag": "auth", "documents": [{"id": "1", "path": "a.json", "title": "A"}]}],
    }
    index = TagIndex.from_dict(raw, Scope.global_scope())
    assert index.id_to_path() == {"1": "a.json"}
    assert index.references()["a.json"].title == "A"


@pytest.mark.parametrize("raw", [
    [],
    "index",
    {"index": "nope"},
    {"index": {"auth": "a.json"}},
    {"index": [{"documents": []}]},
    {"index": [{"tag": "auth", "documents": [{"title": "no path"}]}]},
    {"metadata": "x", "index": []},
])
def test_from_dict_rejects_unrecognized_shapes(raw):
    with pytest.raises(ValueError):
        TagIndex.from_dict(raw, Scope.global_scope())


def test_reference_from_document():
    doc = MemoryDocument(
        path=DocumentPath("notes/a.md"),
        id="abc",
        title="",
        tags=(Tag("x"),),
        last_modified=T0,
    )
    ref = DocumentReference.from_document(doc)
    assert ref == DocumentReference(id="abc", path="notes/a.md", title="a.md", last_modified=T0)


def test_parse_timestamp_fallbacks():
    assert parse_timestamp("not a date", T0) == T0
    assert parse_timestamp(None, T0) == T0
    assert parse_timestamp("2025-01-01T00:00:00") == T0
    assert parse_timestamp(None).year == 1970


def test_canonical_ignores_last_updated_and_order():
    scope = Scope.global_scope()
    a = TagIndex.from_mapping(scope, {"x": {"a": _ref("a"), "b": _ref("b")}}, last_updated=T0)
    b = TagIndex.from_mapping(
        scope, {"x": {"b": _ref("b"), "a": _ref("a")}},
        last_updated=datetime(2030, 1, 1, tzinfo=timezone.utc),
    )
    assert a.canonical() == b.canonical()
