"""
Retrieval Engine

Given a prompt and the tags active in the conversation, pick the few memories
worth surfacing right now.

Pipeline:
1. Tokenize the prompt and expand it through the sensory cortex
2. Attention filter: keyword patterns that warrant a hard warning
3. Direct matches through the tag index (prompt terms + recent tags); with none,
   fall back to substring matching of prompt words against title, rule and content
4. Associative chaining: tags of the top direct hits pull in neighbours at half weight
5. Weighting: severity x synaptic strength x freshness
6. Rank, then cut to the attention budget for the current context phase
7. Hot tags: matched tags that keep firing this session

Severity inference lives here too, but only runs at capture time (see
MemoryStore); retrieval trusts the stored severity.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from .brain_state import get_context_phase
from .config import DEFAULT_CONFIG, EngineConfig
from .memory_types import (
    SEVERITY_RANK,
    BrainState,
    MemoryRecord,
    RetrievalResult,
    ScoredMemory,
    days_between,
    parse_timestamp,
)
from .scoring import score_memory
from .tokenizer import build_tag_index, expand_with_cortex, record_tokens, tokenize

logger = logging.getLogger(__name__)

# text -> severity; swap in a different one via MemoryStore(severity_classifier=...)
SeverityClassifier = Callable[..., str]

HIGH_SEVERITY = (
    'critical', 'never', 'always', 'hours', 'broke', 'lost', 'destroyed',
    'catastrophe', 'disaster', 'data loss', 'irreversible', 'production',
    'security', 'credential', 'password', 'secret',
)

MEDIUM_SEVERITY = (
    'important', 'careful', 'warning', 'gotcha', 'tricky', 'subtle',
    'mistake', 'bug', 'wrong',
)

SEVERITY_WEIGHT = {'high': 2.0, 'medium': 1.5, 'low': 1.0}

QUERY_TAG_WEIGHT = 1.0
RECENT_TAG_WEIGHT = 0.5
TOKEN_WEIGHT = 0.25
ASSOCIATIVE_WEIGHT = 0.5
ASSOCIATIVE_SEEDS = 6

# Fuzzy fallback weights by where the word was found
FUZZY_TITLE_WEIGHT = 1.0
FUZZY_RULE_WEIGHT = 0.8
FUZZY_CONTENT_WEIGHT = 0.5
FUZZY_MIN_WORD = 4
FUZZY_MIN_CONTENT_WORD = 5

RULE_PREVIEW = 200
PUNCTUATION = ".,;:!?()[]{}\"'`"

TYPE_HEADINGS = {
    'pain': 'PAIN',
    'win': 'WIN',
    'fact': 'FACT',
    'decision': 'DECISION',
    'architecture': 'ARCHITECTURE',
}


def _keyword_pattern(words: Iterable[str]) -> re.Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b")


_HIGH_RE = _keyword_pattern(HIGH_SEVERITY)
_MEDIUM_RE = _keyword_pattern(MEDIUM_SEVERITY)


def infer_severity(content: str, rule: str = '') -> str:
    """Keyword heuristic: 'high' for loss/security language, 'medium' for gotchas, else 'low'."""
    text = f"{content} {rule}".lower()
    if _HIGH_RE.search(text):
        return 'high'
    if _MEDIUM_RE.search(text):
        return 'medium'
    return 'low'


def run_attention_filter(prompt: str, patterns: dict) -> Optional[dict]:
    """First attention pattern whose keyword appears in the prompt, as {'type', 'message'}."""
    lower = (prompt or '').lower()
    for keyword, message in patterns.items():
        if keyword in lower:
            return {'type': keyword, 'message': message}
    return None


def _freshness(last_access: str, now: datetime, threshold_days: int) -> float:
    """1.0 when just accessed, halving toward 0.5 every threshold_days."""
    days = max(0.0, days_between(last_access, now))
    return 0.5 + 0.5 * 0.5 ** (days / threshold_days)


def _overlap(record: MemoryRecord, query_terms: set, recent: set) -> float:
    tags = set(record.tags)
    score = QUERY_TAG_WEIGHT * len(tags & query_terms)
    score += RECENT_TAG_WEIGHT * len(tags & recent)
    score += TOKEN_WEIGHT * len((record_tokens(record) - tags) & (query_terms | recent))
    return score


def fuzzy_match(prompt: str, records: list[MemoryRecord]) -> dict[str, float]:
    """
    Substring fallback for prompts that hit no tag.

    Prompt words of FUZZY_MIN_WORD+ characters are looked up in each record's
    title, then rule, then content (content only for longer words). A record
    scores by the best place any word was found.
    """
    words = [w.strip(PUNCTUATION) for w in (prompt or '').lower().split()]
    words = [w for w in words if len(w) >= FUZZY_MIN_WORD]
    if not words:
        return {}

    scores = {}
    for record in records:
        title = record.title.lower()
        rule = record.rule.lower()
        content = record.content.lower()
        if any(w in title for w in words):
            scores[record.id] = FUZZY_TITLE_WEIGHT
        elif any(w in rule for w in words):
            scores[record.id] = FUZZY_RULE_WEIGHT
        elif any(len(w) >= FUZZY_MIN_CONTENT_WORD and w in content for w in words):
            scores[record.id] = FUZZY_CONTENT_WEIGHT
    return scores


def format_injection(result: RetrievalResult) -> str:
    """Render a retrieval result as plain text for the assistant prompt."""
    parts = []

    if result.attention_filter:
        parts.append(f"WARNING: {result.attention_filter['message']}")

    if result.ranked:
        parts.append('MEMORY RETRIEVED (auto-cue from your prompt):')
        for sm in result.ranked:
            heading = TYPE_HEADINGS.get(sm.memory.type, sm.memory.type.upper())
            line = f"- [{heading}] #{sm.memory.id}: {sm.memory.title}"
            if sm.memory.rule:
                line += f"\n  -> {sm.memory.rule[:RULE_PREVIEW]}"
            parts.append(line)

    if result.hot_tags:
        tag_list = ', '.join(f"`{t}`" for t in result.hot_tags)
        parts.append(f"PATTERN DETECTED: Tags {tag_list} have fired repeatedly. Consider addressing the root cause.")

    return '\n'.join(parts)


def retrieve_memories(
    query_text: str,
    recent_tags: Iterable[str],
    records: list[MemoryRecord],
    tag_index: Optional[dict] = None,
    brain_state: Optional[BrainState] = None,
    config: EngineConfig = DEFAULT_CONFIG,
    now: Optional[datetime] = None,
) -> RetrievalResult:
    """
    Rank memories for a prompt and cut them to the attention budget.

    Args:
        query_text: The user's prompt. Shorter than config.min_prompt_length -> no prompt terms
        recent_tags: Tags active in the conversation; match even when the prompt yields nothing
        records: The project's memories
        tag_index: Prebuilt build_tag_index(records); rebuilt when omitted
        brain_state: Session state (synaptic strength, phase, firing frequency)
        config: Engine tuning
        now: Clock override for freshness

    Returns:
        RetrievalResult, ranked by score, then severity, then newest first
    """
    now = now or datetime.now(timezone.utc)
    phase = get_context_phase(brain_state.message_count if brain_state else 0, config)

    if not records:
        return RetrievalResult(ranked=[], truncated=False, context_phase=phase)

    by_id = {r.id: r for r in records}
    index = tag_index if tag_index is not None else build_tag_index(records)

    query_terms = set()
    prompt_ok = len((query_text or '').strip()) >= config.min_prompt_length
    if prompt_ok:
        query_terms = expand_with_cortex(tokenize(query_text), config.cortex)
    recent = {t.strip().lower() for t in recent_tags or [] if t and t.strip()}

    # Direct matches; text tokens find records but only tags count as matched
    known_tags = {tag for r in records for tag in r.tags}
    matched = {}
    direct = {}
    for key in sorted(query_terms | recent):
        ids = [mid for mid in index.get(key, ()) if mid in by_id]
        if not ids:
            continue
        if key in known_tags:
            matched.setdefault(key, None)
        for mid in ids:
            direct.setdefault(mid, _overlap(by_id[mid], query_terms, recent))

    # Nothing tagged; fall back to substring matching, counting the hits' tags as matched
    fuzzy = {}
    if not direct and prompt_ok:
        fuzzy = fuzzy_match(query_text, records)
        for mid in sorted(fuzzy):
            direct[mid] = fuzzy[mid]
            for tag in by_id[mid].tags:
                matched.setdefault(tag, None)

    # Associative chaining from the strongest direct hits
    seeds = sorted(direct, key=lambda mid: (-direct[mid], mid))[:ASSOCIATIVE_SEEDS]
    neighbour_tags = {}
    for mid in seeds:
        for tag in by_id[mid].tags:
            if tag not in matched:
                neighbour_tags.setdefault(tag, None)

    associative = {}
    for tag in neighbour_tags:
        for neighbour in sorted(index.get(tag, ())):
            if neighbour in direct or neighbour not in by_id:
                continue
            associative[neighbour] = associative.get(neighbour, 0.0) + ASSOCIATIVE_WEIGHT
            matched.setdefault(tag, None)

    candidates = [(mid, overlap, 'fuzzy' if mid in fuzzy else 'direct') for mid, overlap in direct.items()]
    candidates += [(mid, overlap, 'associative') for mid, overlap in associative.items()]

    traces = brain_state.memory_traces if brain_state else {}
    scored = []
    for mid, overlap, source in candidates:
        record = by_id[mid]
        if config.min_relevance > 0 and score_memory(record, now) < config.min_relevance:
            continue

        trace = traces.get(mid)
        strength = trace.synaptic_strength if trace else record.synaptic_strength
        last_access = (trace.last_accessed if trace else None) or record.last_accessed or record.created_at

        score = (
            overlap
            * SEVERITY_WEIGHT.get(record.severity, 1.0)
            * strength
            * _freshness(last_access, now, config.decay_threshold_days)
        )
        scored.append(ScoredMemory(
            memory=record,
            score=round(score, 4),
            matched_tags=[t for t in record.tags if t in matched],
            source=source,
        ))

    scored.sort(key=lambda sm: (
        -sm.score,
        -SEVERITY_RANK.get(sm.memory.severity, 0),
        -parse_timestamp(sm.memory.created_at).timestamp(),
    ))

    budget = config.budget_for(phase)
    matched_tags = list(matched)

    hot_tags = []
    if brain_state:
        for tag in matched_tags:
            if brain_state.firing_frequency.get(tag, 0) + 1 >= config.session_tag_repeat_threshold:
                hot_tags.append(tag)

    result = RetrievalResult(
        ranked=scored[:budget],
        truncated=len(scored) > budget,
        context_phase=phase,
        matched_tags=matched_tags,
        attention_filter=run_attention_filter(query_text, config.attention_patterns),
        hot_tags=hot_tags,
    )
    result.injection_text = format_injection(result)

    logger.debug(
        "Retrieved %d/%d memories (direct=%d, fuzzy=%d, associative=%d, phase=%s, budget=%d)",
        len(result.ranked), len(scored), len(direct) - len(fuzzy), len(fuzzy), len(associative), phase, budget,
    )
    return result
