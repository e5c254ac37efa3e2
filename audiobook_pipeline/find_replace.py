"""
Literal find/replace across the source text and the chunk texts.

Search is plain substring matching (no regular expression syntax is honoured
in the query) with optional case folding. ``find_next`` walks the regions in
order and wraps around to the first one.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .chunks import ChunkStore

logger = logging.getLogger(__name__)

__all__ = [
    "FindItem",
    "FindMatch",
    "FindScope",
    "find_next",
    "text_matches_at",
    "replace_at_range",
    "replace_all_literal",
    "replace_all_in_store",
    "FindReplaceSession",
]

SOURCE_KEY = "original"
CHUNK_KEY_PREFIX = "chunk:"


class FindScope(str, enum.Enum):
    SOURCE = "source"
    CHUNKS = "chunks"
    BOTH = "both"


@dataclass(frozen=True)
class FindItem:
    key: str
    text: str


@dataclass(frozen=True)
class FindMatch:
    key: str
    item_index: int
    start: int
    end: int


def _pattern(query: str, case_sensitive: bool) -> "re.Pattern[str]":
    flags = 0 if case_sensitive else re.IGNORECASE
    return re.compile(re.escape(query), flags)


def find_next(
    items: Sequence[FindItem],
    query: str,
    case_sensitive: bool = False,
    cursor: Optional[Tuple[int, int]] = None,
) -> Optional[FindMatch]:
    """
    First match at or after ``cursor`` (item index, offset), wrapping across
    items and back to the start. Pass the previous match's ``end`` as the
    offset to continue past it. The starting item is searched from the cursor
    onwards first and its head before the cursor last.
    """
    if not query or not items:
        return None

    pattern = _pattern(query, case_sensitive)
    start_index, start_offset = 0, 0
    if cursor is not None:
        index, offset = cursor
        if 0 <= index < len(items):
            start_index = index
        if offset >= 0:
            start_offset = offset

    for step in range(len(items)):
        item_index = (start_index + step) % len(items)
        item = items[item_index]
        offset = start_offset if step == 0 else 0
        found = pattern.search(item.text, offset)
        if found is None:
            continue
        return FindMatch(key=item.key, item_index=item_index, start=found.start(), end=found.end())

    if start_offset > 0:
        item = items[start_index]
        found = pattern.search(item.text)
        if found is not None and found.start() < start_offset:
            return FindMatch(key=item.key, item_index=start_index, start=found.start(), end=found.end())
    return None


def text_matches_at(text: str, start: int, end: int, query: str, case_sensitive: bool = False) -> bool:
    if start < 0 or end < start or end > len(text):
        return False
    fragment = text[start:end]
    if case_sensitive:
        return fragment == query
    return fragment.lower() == query.lower()


def replace_at_range(text: str, start: int, end: int, replacement: str) -> str:
    if start < 0 or end < start or start > len(text):
        return text
    return text[:start] + replacement + text[end:]


def replace_all_literal(
    text: str, query: str, replacement: str, case_sensitive: bool = False
) -> Tuple[str, int]:
    """Non-overlapping, left-to-right replacement. Returns (new text, count)."""
    if not query or not text:
        return text, 0
    if case_sensitive:
        count = text.count(query)
        return (text.replace(query, replacement), count) if count else (text, 0)
    return _pattern(query, False).subn(lambda _: replacement, text)


def replace_all_in_store(
    store: ChunkStore, query: str, replacement: str, case_sensitive: bool = False
) -> int:
    """
    Replace in every chunk. Chunks whose text changes go through
    ``ChunkStore.update_text`` and lose their audio.
    """
    total = 0
    for chunk in store:
        new_text, count = replace_all_literal(chunk.text, query, replacement, case_sensitive)
        if count:
            total += count
            store.update_text(chunk.id, new_text)
    return total


class FindReplaceSession:
    """
    Find/replace state bound to a source text and a chunk store: the scope,
    case sensitivity and the cursor left by the last match.
    """

    def __init__(
        self,
        store: ChunkStore,
        source_text: str = "",
        *,
        scope: FindScope = FindScope.SOURCE,
        case_sensitive: bool = False,
    ) -> None:
        self.store = store
        self.source_text = source_text
        self.scope = FindScope(scope)
        self.case_sensitive = case_sensitive
        self.last_match: Optional[FindMatch] = None

    @property
    def effective_scope(self) -> FindScope:
        if self.scope is FindScope.CHUNKS and len(self.store) == 0:
            return FindScope.SOURCE
        return self.scope

    def items(self) -> List[FindItem]:
        scope = self.effective_scope
        items: List[FindItem] = []
        if scope in (FindScope.SOURCE, FindScope.BOTH):
            items.append(FindItem(SOURCE_KEY, self.source_text))
        if scope in (FindScope.CHUNKS, FindScope.BOTH):
            items.extend(FindItem(f"{CHUNK_KEY_PREFIX}{c.id}", c.text) for c in self.store)
        return items

    def find_next(self, query: str) -> Optional[FindMatch]:
        items = self.items()
        cursor = None
        if self.last_match is not None:
            index = next((i for i, item in enumerate(items) if item.key == self.last_match.key), None)
            if index is not None:
                cursor = (index, self.last_match.end)
        match = find_next(items, query, self.case_sensitive, cursor)
        self.last_match = match
        if match is None:
            logger.debug("No match for %r.", query)
        return match

    def replace_current(self, query: str, replacement: str) -> bool:
        """
        Replace the last match if the text there still matches ``query``.
        Without a current match this only searches. Returns True on replacement.
        """
        if not query:
            return False
        match = self.last_match
        if match is None:
            self.find_next(query)
            return False

        if match.key == SOURCE_KEY:
            if not text_matches_at(self.source_text, match.start, match.end, query, self.case_sensitive):
                self.last_match = None
                return False
            self.source_text = replace_at_range(self.source_text, match.start, match.end, replacement)
        elif match.key.startswith(CHUNK_KEY_PREFIX):
            chunk = self.store.get(int(match.key[len(CHUNK_KEY_PREFIX):]))
            if chunk is None or not text_matches_at(
                chunk.text, match.start, match.end, query, self.case_sensitive
            ):
                self.last_match = None
                return False
            self.store.update_text(
                chunk.id, replace_at_range(chunk.text, match.start, match.end, replacement)
            )
        else:
            return False

        self.last_match = FindMatch(
            key=match.key,
            item_index=match.item_index,
            start=match.start,
            end=match.start + len(replacement),
        )
        return True

    def replace_all(self, query: str, replacement: str) -> int:
        if not query:
            return 0
        scope = self.effective_scope
        total = 0
        if scope in (FindScope.SOURCE, FindScope.BOTH):
            self.source_text, count = replace_all_literal(
                self.source_text, query, replacement, self.case_sensitive
            )
            total += count
        if scope in (FindScope.CHUNKS, FindScope.BOTH):
            total += replace_all_in_store(self.store, query, replacement, self.case_sensitive)
        if total:
            self.last_match = None
            logger.info("Replaced %d occurrences of %r.", total, query)
        return total
