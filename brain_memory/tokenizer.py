"""
Tokenizer and tag index.

Turns free text into matchable tokens and builds the token/tag -> memory id
index that retrieval walks. Rebuilding the index is O(total tokens), so the
engine simply rebuilds it whenever it is not handed a fresh one.
"""

import re
from typing import Iterable, Optional

_TOKEN_RE = re.compile(r"\w[\w.-]*")

# Canonical stop words, shared by tokenizing, indexing and tag inference
STOP_WORDS = frozenset({
    'a', 'about', 'above', 'after', 'again', 'all', 'also', 'an', 'and', 'any',
    'are', 'as', 'at', 'be', 'because', 'been', 'before', 'being', 'below',
    'between', 'both', 'but', 'by', 'can', 'could', 'did', 'do', 'does',
    'doing', 'done', 'during', 'each', 'every', 'few', 'for', 'from',
    'further', 'has', 'had', 'have', 'he', 'her', 'here', 'his', 'how', 'i',
    'if', 'in', 'into', 'is', 'it', 'its', 'just', 'like', 'may', 'me',
    'might', 'more', 'most', 'my', 'no', 'not', 'of', 'off', 'on', 'once',
    'one', 'only', 'or', 'other', 'our', 'out', 'over', 'own', 'same', 'shall',
    'she', 'should', 'so', 'some', 'such', 'than', 'that', 'the', 'their',
    'them', 'then', 'there', 'these', 'they', 'this', 'through', 'to', 'too',
    'under', 'up', 'use', 'used', 'using', 'very', 'was', 'we', 'were', 'what',
    'when', 'where', 'which', 'while', 'who', 'whom', 'why', 'will', 'with',
    'would', 'you', 'your',
})


def tokenize(text: str, drop_stop_words: bool = True) -> list[str]:
    """
    Split text into normalized tokens.

    Lowercases, keeps word characters plus inner dots/dashes (so "page.evaluate"
    and "x-ray" survive), strips trailing punctuation and drops duplicates while
    preserving first-seen order.

    Args:
        text: Free text (prompt, memory title, ...)
        drop_stop_words: Remove STOP_WORDS and single-character tokens
    """
    tokens = {}
    for raw in _TOKEN_RE.findall((text or '').lower()):
        token = raw.rstrip('.-')
        if not token:
            continue
        if drop_stop_words and (len(token) < 2 or token in STOP_WORDS):
            continue
        tokens.setdefault(token, None)
    return list(tokens)


def record_tokens(record) -> set[str]:
    """Text tokens of a memory (title, rule and content)."""
    return set(tokenize(record.text()))


def build_tag_index(records: Iterable) -> dict[str, set[str]]:
    """
    Map every tag and every text token to the ids of the records carrying it.

    Tags are indexed verbatim (already normalized by MemoryRecord), tokens come
    from tokenize() over title, rule and content.
    """
    index: dict[str, set[str]] = {}
    for record in records:
        for key in set(record.tags) | record_tokens(record):
            index.setdefault(key, set()).add(record.id)
    return index


def expand_with_cortex(tokens: Iterable[str], cortex: Optional[dict]) -> set[str]:
    """Tokens plus every tag the sensory cortex maps them to."""
    expanded = set()
    for token in tokens:
        expanded.add(token)
        for tag in (cortex or {}).get(token, []):
            expanded.add(tag.lower())
    return expanded


def infer_tags(text: str, cortex: Optional[dict], limit: int = 8) -> list[str]:
    """Infer tags for a memory from its text via the sensory cortex."""
    tags = {}
    for token in tokenize(text):
        for tag in (cortex or {}).get(token, []):
            tags.setdefault(tag.lower(), None)
    return list(tags)[:limit]
