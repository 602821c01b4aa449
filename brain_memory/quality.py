"""
Duplicate detection for captured memories.

Two checks, cheapest first:
1. Fingerprint: hash of the sorted title and content keywords (title counted
   twice), so reworded punctuation or word order still collides
2. Similarity: weighted Jaccard overlap of title keywords (0.5), content
   keywords (0.3) and tags (0.2)
"""

import hashlib
from typing import NamedTuple, Optional

from .memory_types import MemoryRecord
from .tokenizer import tokenize

DUPLICATE_THRESHOLD = 0.85

TITLE_WEIGHT = 0.5
CONTENT_WEIGHT = 0.3
TAG_WEIGHT = 0.2

MIN_KEYWORD_LENGTH = 3


class DuplicateMatch(NamedTuple):
    record: MemoryRecord
    similarity: float


def extract_keywords(text: str) -> list[str]:
    """Sorted, unique, stop-word-free tokens of 3+ characters."""
    return sorted(t for t in tokenize(text) if len(t) >= MIN_KEYWORD_LENGTH)


def compute_fingerprint(title: str, content: str = '') -> str:
    title_kw = extract_keywords(title)
    normalized = '|'.join(sorted(title_kw + title_kw + extract_keywords(content)))
    return hashlib.md5(normalized.encode()).hexdigest()[:12]


def _jaccard(a: set, b: set) -> float:
    if not a and not b:
        return 1.0
    return len(a & b) / len(a | b)


def content_similarity(a: MemoryRecord, b: MemoryRecord) -> float:
    """Weighted keyword/tag overlap between two records, 0 to 1."""
    title_sim = _jaccard(set(extract_keywords(a.title)), set(extract_keywords(b.title)))
    content_sim = _jaccard(set(extract_keywords(a.content)), set(extract_keywords(b.content)))
    tag_sim = _jaccard(set(a.tags), set(b.tags))
    return round(title_sim * TITLE_WEIGHT + content_sim * CONTENT_WEIGHT + tag_sim * TAG_WEIGHT, 4)


def find_duplicate(
    candidate: MemoryRecord,
    existing: list[MemoryRecord],
    threshold: float = DUPLICATE_THRESHOLD,
) -> Optional[DuplicateMatch]:
    """
    The stored record `candidate` duplicates, if any.

    An exact fingerprint match wins outright; otherwise the most similar
    record counts when its similarity reaches `threshold`.
    """
    fingerprint = compute_fingerprint(candidate.title, candidate.content)
    for record in existing:
        if compute_fingerprint(record.title, record.content) == fingerprint:
            return DuplicateMatch(record, 1.0)

    best = None
    for record in existing:
        similarity = content_similarity(candidate, record)
        if best is None or similarity > best.similarity:
            best = DuplicateMatch(record, similarity)
    if best is not None and best.similarity >= threshold:
        return best
    return None
