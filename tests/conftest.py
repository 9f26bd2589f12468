import json
import os

import pytest

from membank.bank import MemoryBank
from membank.config import MembankConfig
from membank.models import Scope, scope_root


@pytest.fixture
def tmp_docs_root(tmp_path):
    """Provide a temporary docs root for memory bank documents."""
    return str(tmp_path / "docs")


@pytest.fixture
def tmp_config_path(tmp_path):
    """Provide a temporary config file path."""
    return str(tmp_path / "config.yaml")


class FakeClock:
    """Manually advanced stand-in for time.monotonic."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_bank(docs_root: str, **overrides) -> MemoryBank:
    """Factory to create a MemoryBank on local disk for tests."""
    config = MembankConfig(
        config_path=os.path.join(os.path.dirname(docs_root), "config.yaml"),
        docs_root=docs_root,
        **overrides,
    )
    return MemoryBank(config)


def write_json_doc(
    docs_root: str,
    scope: Scope,
    rel_path: str,
    tags: list[str],
    doc_id: str | None = None,
    title: str | None = None,
) -> str:
    """Write a JSON document straight to disk, bypassing the index."""
    file_path = os.path.join(scope_root(docs_root, scope), *rel_path.split("/"))
    os.makedirs(os.path.dirname(file_path), exist_ok=True)
    document = {
        "schema": "memory_document_v2",
        "metadata": {
            "id": doc_id or f"id-{rel_path}",
            "title": title or rel_path,
            "tags": tags,
            "lastModified": "2025-01-01T00:00:00+00:00",
        },
        "content": {"text": f"body of {rel_path}"},
    }
    with open(file_path, "w") as f:
        json.dump(document, f)
    return file_path
