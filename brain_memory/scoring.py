"""
Memory relevance scoring and health classification.

Exponential age decay by memory type, plus a boost for recent access and a
log-scaled frequency bonus, weighted by severity. Used by retrieval as an
optional gate (EngineConfig.min_relevance) and by maintenance to build a
review queue of memories that have gone stale.
"""

import math
from datetime import datetime, timezone
from typing import Optional

from .memory_types import MemoryRecord, days_between

# Per-day decay rate. Half-life: fact ~17d, pain ~28d, win ~46d, decision ~87d, architecture ~173d
DECAY_RATE = {
    'fact': 0.04,
    'pain': 0.025,
    'win': 0.015,
    'decision': 0.008,
    'architecture': 0.004,
}

SEVERITY_MULT = {
    'high': 1.4,
    'medium': 1.0,
    'low': 0.7,
}

ACTIVE_SCORE = 0.5
AGING_SCORE = 0.25


def clamp(value, lo, hi):
    return max(lo, min(hi, value))


def score_memory(record: MemoryRecord, now: Optional[datetime] = None) -> float:
    """Relevance score in [0, 1] for a memory at time `now`."""
    now = now or datetime.now(timezone.utc)
    age_days = max(0.0, days_between(record.created_at, now))

    decay = math.exp(-DECAY_RATE.get(record.type, 0.025) * age_days)

    access_boost = 0.0
    if record.last_accessed:
        since = max(0.0, days_between(record.last_accessed, now))
        access_boost = math.exp(-0.05 * since) * 0.3

    freq_bonus = min(0.2, math.log2(record.access_count + 1) * 0.05)
    sev_mult = SEVERITY_MULT.get(record.severity or 'medium', 1.0)

    return clamp((decay + access_boost + freq_bonus) * sev_mult, 0.0, 1.0)


def classify_health(score: float) -> str:
    if score >= ACTIVE_SCORE:
        return 'active'
    if score >= AGING_SCORE:
        return 'aging'
    return 'stale'


def review_queue(records: list[MemoryRecord], now: Optional[datetime] = None) -> list[dict]:
    """
    Stale memories needing human review, lowest score first.

    Returns:
        List of {'id', 'title', 'score', 'reason'} dicts
    """
    now = now or datetime.now(timezone.utc)
    queue = []
    for record in records:
        score = score_memory(record, now)
        if classify_health(score) == 'stale':
            queue.append({
                'id': record.id,
                'title': record.title,
                'score': round(score, 4),
                'reason': f"Score {score:.2f} -- below threshold",
            })
    queue.sort(key=lambda item: item['score'])
    return queue
