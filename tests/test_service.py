import json
import os
import threading

import pytest

from membank.errors import DocumentNotFoundError, InvalidDocumentError
from membank.models import DocumentPath, Scope
from tests.conftest import make_bank, write_json_doc


@pytest.fixture
def bank(tmp_docs_root):
    return make_bank(tmp_docs_root)


@pytest.fixture
def service(bank):
    return bank.service


def _body(tags: list[str]) -> str:
    return json.dumps({"metadata": {"tags": tags}, "content": {"text": "x"}})


def test_write_document_updates_index(service):
    scope = Scope.branch("main")
    service.write_document(scope, DocumentPath("a.json"), _body(["auth"]))
    assert service.find_documents_by_tags(scope, ["auth"]) == [DocumentPath("a.json")]


def test_find_without_index_is_empty(service):
    assert service.find_documents_by_tags(Scope.branch("none"), ["x"]) == []
    assert service.list_tags(Scope.branch("none")) == {}


def test_scopes_are_isolated(service):
    branch, global_scope = Scope.branch("main"), Scope.global_scope()
    service.write_document(branch, DocumentPath("a.json"), _body(["x"]))
    service.write_document(global_scope, DocumentPath("b.json"), _body(["x"]))
    assert service.find_documents_by_tags(branch, ["x"]) == [DocumentPath("a.json")]
    assert service.find_documents_by_tags(global_scope, ["x"]) == [DocumentPath("b.json")]


def test_delete_document_updates_index(service):
    scope = Scope.global_scope()
    service.write_document(scope, DocumentPath("a.json"), _body(["x"]))
    assert service.delete_document(scope, DocumentPath("a.json")) is True
    assert service.find_documents_by_tags(scope, ["x"]) == []
    assert service.delete_document(scope, DocumentPath("a.json")) is False


def test_read_missing_document_raises(service):
    with pytest.raises(DocumentNotFoundError):
        service.read_document(Scope.global_scope(), DocumentPath("none.json"))


def test_search_documents_skips_deleted_files(service, bank):
    scope = Scope.global_scope()
    service.write_document(scope, DocumentPath("a.json"), _body(["x"]))
    service.write_document(scope, DocumentPath("b.json"), _body(["x"]))
    os.remove(bank.documents.resolve(scope, DocumentPath("a.json")))

    results = service.search_documents(scope, ["x"])
    assert [d.path.value for d in results] == ["b.json"]


@pytest.mark.parametrize("garbage", [b"{broken", b"\xff\xfe\x00garbage"])
def test_search_documents_skips_unreadable_files(service, bank, garbage):
    scope = Scope.global_scope()
    service.write_document(scope, DocumentPath("a.json"), _body(["x"]))
    service.write_document(scope, DocumentPath("b.json"), _body(["x"]))
    with open(bank.documents.resolve(scope, DocumentPath("b.json")), "wb") as f:
        f.write(garbage)

    results = service.search_documents(scope, ["x"])
    assert [d.path.value for d in results] == ["a.json"]


def test_list_tags_counts_documents(service):
    scope = Scope.global_scope()
    service.write_document(scope, DocumentPath("a.json"), _body(["x", "y"]))
    service.write_document(scope, DocumentPath("b.json"), _body(["x"]))
    assert service.list_tags(scope) == {"x": 2, "y": 1}


def test_update_index_full_rebuild(service, tmp_docs_root):
    scope = Scope.branch("feature/x")
    write_json_doc(tmp_docs_root, scope, "a.json", ["auth"])
    write_json_doc(tmp_docs_root, scope, "b.json", [])

    result = service.update_index(scope, full_rebuild=True)
    assert result.document_count == 2
    assert result.tags == ["auth"]
    assert result.update_info.full_rebuild is True
    assert result.update_info.update_location == "feature/x"

    raw = result.to_dict()
    assert raw["documentCount"] == 2
    assert raw["updateInfo"]["fullRebuild"] is True
    assert raw["updateInfo"]["timestamp"]


def test_update_index_reconciles_existing_index(service, bank, tmp_docs_root):
    scope = Scope.global_scope()
    service.write_document(scope, DocumentPath("a.json"), _body(["old"]))
    service.write_document(scope, DocumentPath("gone.json"), _body(["old"]))

    # Edited and deleted behind the service's back
    write_json_doc(tmp_docs_root, scope, "a.json", ["new"])
    os.remove(bank.documents.resolve(scope, DocumentPath("gone.json")))
    write_json_doc(tmp_docs_root, scope, "added.json", ["new"])

    result = service.update_index(scope)
    assert result.update_info.full_rebuild is False
    assert result.document_count == 2
    assert result.tags == ["new"]
    assert service.find_documents_by_tags(scope, ["new"]) == [
        DocumentPath("a.json"), DocumentPath("added.json"),
    ]


def test_update_index_without_index_rebuilds(service, tmp_docs_root):
    scope = Scope.branch("main")
    write_json_doc(tmp_docs_root, scope, "a.json", ["x"])
    result = service.update_index(scope)
    assert result.update_info.full_rebuild is True
    assert service.find_documents_by_tags(scope, ["x"]) == [DocumentPath("a.json")]


def test_reconcile_keeps_unreadable_documents(service, bank):
    scope = Scope.global_scope()
    service.write_document(scope, DocumentPath("a.json"), _body(["x"]))
    with open(bank.documents.resolve(scope, DocumentPath("a.json")), "w") as f:
        f.write("{broken")

    result = service.update_index(scope)
    assert result.document_count == 0
    assert service.find_documents_by_tags(scope, ["x"]) == [DocumentPath("a.json")]


def test_concurrent_adds_are_not_lost(service, bank):
    """Concurrent writers to one scope must all end up in its index."""
    scope = Scope.branch("main")
    service.update_index(scope, full_rebuild=True)
    documents = []
    for i in range(20):
        path = DocumentPath(f"doc-{i}.json")
        documents.append(bank.documents.write_document(scope, path, _body([f"t{i}", "shared"])))

    threads = [
        threading.Thread(target=service.add_document, args=(scope, document))
        for document in documents
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    bank.cache.invalidate_all()
    assert len(service.find_documents_by_tags(scope, ["shared"])) == 20
    assert service.get_index(scope).tag_count == 21


def test_remove_document_by_id(service):
    scope = Scope.global_scope()
    document = service.write_document(scope, DocumentPath("a.json"), _body(["x"]))
    service.remove_document(scope, document.id)
    assert service.find_documents_by_tags(scope, ["x"]) == []


def test_reindex_path_applies_current_file(service, bank, tmp_docs_root):
    scope = Scope.branch("main")
    service.write_document(scope, DocumentPath("a.json"), _body(["old"]))
    write_json_doc(tmp_docs_root, scope, "a.json", ["new"])

    service.reindex_path(scope, DocumentPath("a.json"))
    assert service.find_documents_by_tags(scope, ["old"]) == []
    assert service.find_documents_by_tags(scope, ["new"]) == [DocumentPath("a.json")]

    os.remove(bank.documents.resolve(scope, DocumentPath("a.json")))
    service.reindex_path(scope, DocumentPath("a.json"))
    assert service.find_documents_by_tags(scope, ["new"]) == []


def test_update_index_keeps_recorded_branch_name(service, bank):
    service.write_document(Scope.branch("feature/x"), DocumentPath("a.json"), _body(["x"]))
    bank.cache.invalidate_all()

    # The directory scan only knows the on-disk name
    scanned = Scope.branch("feature-x")
    result = service.update_index(scanned, full_rebuild=True)
    assert result.update_info.update_location == "feature/x"
    raw = bank.index_store.read(scanned).to_dict()
    assert raw["metadata"]["branchName"] == "feature/x"


def test_patch_document(service):
    scope = Scope.branch("main")
    service.write_document(scope, DocumentPath("a.json"), _body(["auth"]))

    document = service.patch_document(scope, DocumentPath("a.json"), [
        {"op": "replace", "path": "/content/text", "value": "patched"},
        {"op": "add", "path": "/metadata/tags/-", "value": "api"},
    ])
    assert document.tag_values == ["auth", "api"]
    stored = json.loads(service.read_document(scope, DocumentPath("a.json")).content)
    assert stored["content"] == {"text": "patched"}
    assert stored["metadata"]["version"] == 2
    assert service.find_documents_by_tags(scope, ["api"]) == [DocumentPath("a.json")]


def test_patch_document_errors(service):
    scope = Scope.global_scope()
    with pytest.raises(DocumentNotFoundError):
        service.patch_document(scope, DocumentPath("none.json"), [])

    service.write_document(scope, DocumentPath("a.json"), _body(["x"]))
    with pytest.raises(InvalidDocumentError):
        service.patch_document(scope, DocumentPath("a.json"), [{"op": "remove", "path": "/content/missing"}])
    assert json.loads(service.read_document(scope, DocumentPath("a.json")).content)["metadata"]["version"] == 1

    service.write_document(scope, DocumentPath("notes.md"), "# Notes\n")
    with pytest.raises(InvalidDocumentError):
        service.patch_document(scope, DocumentPath("notes.md"), [])
