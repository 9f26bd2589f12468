"""AND/OR tag queries evaluated against a loaded tag index."""

from __future__ import annotations

from collections.abc import Iterable

from membank.models import Tag
from membank.tag_index import DocumentReference, TagIndex


def _tag_value(tag: Tag | str) -> str:
    return tag.value if isinstance(tag, Tag) else tag


def match_paths(index: TagIndex, tags: Iterable[Tag | str], match_all: bool = False) -> set[str]:
    """Paths of documents carrying any (OR) or every (AND) requested tag.

    An empty tag list matches nothing in either mode. Tags missing from the
    index contribute an empty set.
    """
    values = [_tag_value(t) for t in tags]
    if not values:
        return set()

    if not match_all:
        matched: set[str] = set()
        for value in values:
            matched |= index.paths_for(value)
        return matched

    matched = index.paths_for(values[0])
    for value in values[1:]:
        if not matched:
            break
        matched &= index.paths_for(value)
    return matched


def find_paths(index: TagIndex, tags: Iterable[Tag | str], match_all: bool = False) -> list[str]:
    """Sorted list form of ``match_paths``."""
    return sorted(match_paths(index, tags, match_all))


def find_references(
    index: TagIndex, tags: Iterable[Tag | str], match_all: bool = False
) -> list[DocumentReference]:
    refs = index.references()
    return [refs[path] for path in find_paths(index, tags, match_all)]
