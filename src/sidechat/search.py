"""Fuzzy search index over stored messages.

Approximate matching over message `text` and `display_name`, scoped to one
room. Scores are in [0, 1]; an exact (case-insensitive) substring hit scores
1.0, otherwise each query token is matched against the entry's tokens with
difflib and the token scores are averaged.

The index is per room, built lazily from the store on the first search,
appended to as messages are saved, and dropped when messages are purged.
Callers serialize access (the store holds its lock around every call).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher

from .metrics import timed

logger = logging.getLogger(__name__)

# Minimum score for a message to be part of the result set
DEFAULT_THRESHOLD = 0.6

DEFAULT_RESULT_LIMIT = 50

_TOKEN_PATTERN = re.compile(r"\w+", re.UNICODE)


def tokenize(value: str) -> list[str]:
    return _TOKEN_PATTERN.findall(value.casefold())


@dataclass
class IndexEntry:
    id: int
    timestamp: int
    text: str
    display_name: str
    tokens: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict) -> "IndexEntry":
        text = row["text"].casefold()
        name = row["display_name"].casefold()
        return cls(
            id=row["id"],
            timestamp=row["timestamp"],
            text=text,
            display_name=name,
            tokens=sorted(set(tokenize(text) + tokenize(name))),
        )


def _token_score(query_token: str, tokens: list[str], threshold: float) -> float:
    best = 0.0
    matcher = SequenceMatcher(a=query_token, autojunk=False)
    for token in tokens:
        if token == query_token:
            return 1.0
        if token.startswith(query_token):
            best = max(best, 0.9)
            continue
        matcher.set_seq2(token)
        # quick_ratio is an upper bound on ratio
        if matcher.quick_ratio() < threshold or matcher.quick_ratio() <= best:
            continue
        best = max(best, matcher.ratio())
    return best


def score_entry(query: str, query_tokens: list[str], entry: IndexEntry, threshold: float) -> float:
    """Similarity of `entry` to an already case-folded query."""
    if query in entry.text or query in entry.display_name:
        return 1.0
    if not query_tokens or not entry.tokens:
        return 0.0
    scores = [_token_score(token, entry.tokens, threshold) for token in query_tokens]
    return sum(scores) / len(scores)


class SearchIndex:
    """Per-room in-memory index of message text and display names."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD):
        self.threshold = threshold
        self._rooms: dict[str, list[IndexEntry]] = {}

    def is_built(self, room_id: str) -> bool:
        return room_id in self._rooms

    def build(self, room_id: str, rows: list[dict]) -> None:
        """(Re)build the index of one room from stored message rows."""
        with timed("search.build"):
            self._rooms[room_id] = [IndexEntry.from_row(row) for row in rows]
        logger.debug(f"Built search index for room {room_id}: {len(rows)} messages")

    def add(self, room_id: str, row: dict) -> None:
        """Add one message to a room's index. No-op if the room is not built yet."""
        entries = self._rooms.get(room_id)
        if entries is not None:
            entries.append(IndexEntry.from_row(row))

    def invalidate(self, room_id: str | None = None) -> None:
        """Drop one room's index, or all of them."""
        if room_id is None:
            self._rooms.clear()
        else:
            self._rooms.pop(room_id, None)

    def search(self, room_id: str, query: str, limit: int = DEFAULT_RESULT_LIMIT) -> list[int]:
        """Return sequence ids of matching messages, ordered by timestamp ascending.

        Scores select which messages are returned (best `limit` matches);
        they do not affect the order of the result.
        """
        folded = query.casefold().strip()
        if not folded:
            return []
        entries = self._rooms.get(room_id, [])
        query_tokens = tokenize(folded)

        with timed("search.query"):
            scored = []
            for entry in entries:
                score = score_entry(folded, query_tokens, entry, self.threshold)
                if score >= self.threshold:
                    scored.append((score, entry))

        scored.sort(key=lambda item: (-item[0], item[1].timestamp, item[1].id))
        selected = [entry for _, entry in scored[:limit]]
        selected.sort(key=lambda entry: (entry.timestamp, entry.id))
        return [entry.id for entry in selected]
