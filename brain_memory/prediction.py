"""
Prediction-Error Auto-Capture

The brain stores surprises, not routine events. This module keeps a simple
frequency model of event "signatures" and scores how surprising a new event
is against it:

1. Fingerprint events into coarse signatures ("error::TypeError")
2. Track how often each signature has been observed (ExpectationModel)
3. Score surprise: novel signatures are maximally surprising, frequent ones are not
4. Decide whether an event is worth capturing, adapting the bar to how many
   memories were captured recently
5. Draft a memory (pain / win / fact by valence) for the capture pipeline

This module only classifies. Turning a draft into a stored memory is the
caller's job (see MemoryStore.capture / BrainSession.store_surprise).

All model updates are pure: they return a new ExpectationModel.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import cached_property
from typing import Iterable, Optional

from .memory_types import ExpectationModel, FrequencyEntry, parse_timestamp
from .scoring import clamp

SIGNATURE_SEPARATOR = '::'

DEFAULT_SURPRISE_THRESHOLD = 0.6   # Below this expectedness an event is surprising
MIN_SURPRISE_THRESHOLD = 0.3
MAX_SURPRISE_THRESHOLD = 0.85
DENSITY_WINDOW_HOURS = 4           # Recent-capture window for the adaptive threshold
DENSITY_SOFT_CAP = 8               # Captures in the window before the bar rises
FREQUENCY_DECAY_RATE = 0.1         # Per day
MAX_FREQUENCY_ENTRIES = 500
HIGH_SURPRISE_CUTOFF = 0.2         # Below this expectedness, encode strongly
FORGOTTEN_COUNT = 0.5              # Decayed counts below this are dropped


class EventCategory(str, Enum):
    ERROR = 'error'
    TOOL_RESULT = 'tool_result'
    USER_PATTERN = 'user_pattern'
    SYSTEM = 'system'


@dataclass(frozen=True)
class PredictionEvent:
    """
    Something that happened during a session, evaluated for surprise.

    The category-specific fields (error_class, tool_name/outcome_class,
    pattern_type) feed the signature; the rest describes the event should it
    be captured as a memory.
    """

    category: EventCategory
    description: str = ''
    subcategory: Optional[str] = None
    details: Optional[str] = None
    title: Optional[str] = None
    lesson: Optional[str] = None
    tags: tuple = ()
    severity: Optional[str] = None
    valence: Optional[str] = None        # 'positive' | 'negative' | 'neutral'
    error_class: Optional[str] = None
    tool_name: Optional[str] = None
    outcome_class: Optional[str] = None  # 'success' | 'failure' | 'unexpected_success' | 'partial'
    pattern_type: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'category', EventCategory(self.category))
        object.__setattr__(self, 'tags', tuple(self.tags or ()))

    @cached_property
    def signature(self) -> str:
        """
        Coarse fingerprint of the event's class.

        Deliberately ignores the description: "build failed" matches any other
        "build failed" regardless of the specific message.
        """
        parts = [self.category.value]
        if self.subcategory:
            parts.append(self.subcategory)
        if self.category is EventCategory.ERROR and self.error_class:
            parts.append(self.error_class)
        if self.category is EventCategory.TOOL_RESULT and self.tool_name:
            parts.append(self.tool_name)
            if self.outcome_class:
                parts.append(self.outcome_class)
        if self.category is EventCategory.USER_PATTERN and self.pattern_type:
            parts.append(self.pattern_type)
        return SIGNATURE_SEPARATOR.join(parts)


@dataclass
class CaptureDecision:
    capture: bool
    expectedness: float
    threshold: float
    reason: str
    encoding_strength: float = 0.0
    memory: Optional[dict] = None
    signature: str = ''


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


# ============================================================================
# EXPECTATION MODEL
# ============================================================================

def signature_of(event: PredictionEvent) -> str:
    return event.signature


def create_expectation_model(now: Optional[datetime] = None) -> ExpectationModel:
    return ExpectationModel(frequencies={}, total_events=0, last_updated=_now(now).isoformat())


def surprise(model: ExpectationModel, signature: str) -> float:
    """
    Inverse-frequency surprise in [0, 1].

    1.0 for a signature never seen. Otherwise 1 minus an expectedness that
    blends the log-scaled count (first sighting novel, ~15th routine) with
    the signature's share of all observed events. Observing the same
    signature again never makes it more surprising.
    """
    entry = model.frequencies.get(signature)
    if entry is None or entry.count <= 0:
        return 1.0

    frequency = min(1.0, math.log2(entry.count + 1) / 4)
    share = min(1.0, entry.count / model.total_events) if model.total_events > 0 else 0.0
    return clamp(1.0 - (0.5 * frequency + 0.5 * share), 0.0, 1.0)


def is_surprising(model: ExpectationModel, signature: str, threshold: float) -> bool:
    return surprise(model, signature) > threshold


def observe(model: ExpectationModel, signature: str, now: Optional[datetime] = None) -> ExpectationModel:
    """Count one more sighting of `signature`, pruning when the model grows too large."""
    stamp = _now(now).isoformat()
    existing = model.frequencies.get(signature)

    frequencies = dict(model.frequencies)
    frequencies[signature] = FrequencyEntry(
        count=(existing.count if existing else 0) + 1,
        first_seen=existing.first_seen if existing else stamp,
        last_seen=stamp,
    )
    result = ExpectationModel(
        frequencies=frequencies,
        total_events=model.total_events + 1,
        last_updated=stamp,
    )

    if len(result.frequencies) > MAX_FREQUENCY_ENTRIES:
        result = prune_expectation_model(result, now=now)
    return result


def prune_expectation_model(model: ExpectationModel, now: Optional[datetime] = None) -> ExpectationModel:
    """
    Keep the top 80% of signatures by a recency/frequency score.

    total_events drops by the counts removed so it stays the sum of counts.
    """
    current = _now(now)
    scored = []
    for sig, entry in model.frequencies.items():
        days_since = (current - parse_timestamp(entry.last_seen)).total_seconds() / 86400
        recency = math.exp(-0.05 * max(0.0, days_since))
        frequency = math.log2(entry.count + 1)
        scored.append((recency * 0.6 + frequency * 0.4, sig, entry))

    scored.sort(key=lambda item: item[0], reverse=True)
    kept = scored[:int(len(scored) * 0.8)]

    frequencies = {sig: entry for _, sig, entry in kept}
    removed = sum(entry.count for _, _, entry in scored[len(kept):])
    return ExpectationModel(
        frequencies=frequencies,
        total_events=round(model.total_events - removed, 2),
        last_updated=model.last_updated,
    )


def decay_expectation_model(model: ExpectationModel, now: Optional[datetime] = None) -> ExpectationModel:
    """
    Time-decay every count by days since last seen; drop the forgotten ones.

    Called at session start alongside brain state decay.
    """
    current = _now(now)
    frequencies = {}
    for sig, entry in model.frequencies.items():
        days_since = (current - parse_timestamp(entry.last_seen)).total_seconds() / 86400
        decayed = entry.count * math.exp(-FREQUENCY_DECAY_RATE * max(0.0, days_since))
        if decayed < FORGOTTEN_COUNT:
            continue
        frequencies[sig] = FrequencyEntry(
            count=round(decayed, 2),
            first_seen=entry.first_seen,
            last_seen=entry.last_seen,
        )

    return ExpectationModel(
        frequencies=frequencies,
        total_events=round(sum(e.count for e in frequencies.values()), 2),
        last_updated=current.isoformat(),
    )


def estimate_expectedness(
    event: PredictionEvent,
    model: ExpectationModel,
    session_message_count: int = 0,
    now: Optional[datetime] = None,
) -> float:
    """
    How expected an event is, 0.0 (never seen) to 1.0 (routine).

    Weighted blend of time-decayed frequency, share of all events, recency of
    the last sighting, and session fatigue (deep in a session, routine events
    are more expected).
    """
    entry = model.frequencies.get(event.signature)
    if entry is None:
        return 0.0

    days_since = max(0.0, (_now(now) - parse_timestamp(entry.last_seen)).total_seconds() / 86400)
    decayed_count = entry.count * math.exp(-FREQUENCY_DECAY_RATE * days_since)
    frequency_score = min(1.0, math.log2(decayed_count + 1) / 4)

    proportion = min(1.0, (entry.count / model.total_events) * 5) if model.total_events > 0 else 0.0

    hours_since = days_since * 24
    if hours_since < 1:
        recency = 0.8
    elif hours_since < 4:
        recency = 0.5
    elif hours_since < 24:
        recency = 0.2
    else:
        recency = 0.0

    fatigue = min(0.15, session_message_count * 0.005)

    expectedness = frequency_score * 0.4 + proportion * 0.15 + recency * 0.3 + fatigue * 0.15
    return clamp(expectedness, 0.0, 1.0)


# ============================================================================
# CAPTURE DECISION
# ============================================================================

def compute_adaptive_threshold(
    recent_created_at: Iterable[str],
    base_threshold: float = DEFAULT_SURPRISE_THRESHOLD,
    now: Optional[datetime] = None,
) -> float:
    """
    Raise the capture bar when many memories were captured recently, lower it when few were.
    """
    window_start = _now(now) - timedelta(hours=DENSITY_WINDOW_HOURS)
    recent = sum(1 for ts in recent_created_at if parse_timestamp(ts) > window_start)

    if recent <= 2:
        return max(MIN_SURPRISE_THRESHOLD, base_threshold - 0.1)
    if recent >= DENSITY_SOFT_CAP:
        raise_by = min(0.25, (recent - DENSITY_SOFT_CAP) * 0.05)
        return min(MAX_SURPRISE_THRESHOLD, base_threshold + raise_by)
    return base_threshold


def should_auto_capture(
    event: PredictionEvent,
    expectedness: float,
    recent_created_at: Iterable[str] = (),
    base_threshold: float = DEFAULT_SURPRISE_THRESHOLD,
    now: Optional[datetime] = None,
) -> CaptureDecision:
    """Decide whether an event is surprising enough to capture, and how strongly to encode it."""
    threshold = compute_adaptive_threshold(recent_created_at, base_threshold, now=now)

    if event.severity == 'high':
        return CaptureDecision(
            capture=True,
            expectedness=expectedness,
            threshold=threshold,
            reason='High severity event -- always capture',
            encoding_strength=1.5,
            signature=event.signature,
        )

    if expectedness >= threshold:
        return CaptureDecision(
            capture=False,
            expectedness=expectedness,
            threshold=threshold,
            reason=f"Expected event ({expectedness:.2f} >= threshold {threshold:.2f})",
            signature=event.signature,
        )

    if expectedness < HIGH_SURPRISE_CUTOFF:
        strength = 1.3
    elif expectedness < threshold * 0.5:
        strength = 1.1
    else:
        strength = 0.9

    return CaptureDecision(
        capture=True,
        expectedness=expectedness,
        threshold=threshold,
        reason=f"Surprising event ({expectedness:.2f} < threshold {threshold:.2f})",
        encoding_strength=strength,
        signature=event.signature,
    )


def _classify_valence(event: PredictionEvent) -> str:
    if event.valence == 'negative':
        return 'pain'
    if event.valence == 'positive':
        return 'win'
    if event.category is EventCategory.ERROR:
        return 'pain'
    if event.category is EventCategory.TOOL_RESULT and event.outcome_class == 'failure':
        return 'pain'
    if event.category is EventCategory.TOOL_RESULT and event.outcome_class == 'unexpected_success':
        return 'win'
    return 'fact'


def _classify_severity(event: PredictionEvent, expectedness: float) -> str:
    if event.severity:
        return event.severity
    if expectedness < 0.1:
        return 'high'
    if expectedness < 0.3:
        return 'medium'
    return 'low'


def draft_surprise_memory(event: PredictionEvent, expectedness: float) -> dict:
    """
    Memory fields for a surprising event, ready for MemoryStore.capture(**draft).
    """
    memory_type = _classify_valence(event)
    prediction_error = 1 - expectedness

    if event.title:
        title = event.title
    else:
        prefix = {
            'pain': 'Unexpected failure',
            'win': 'Unexpected success',
        }.get(memory_type, 'Unexpected observation')
        title = f"{prefix}: {event.description[:80]}"

    content = [event.description]
    if event.details:
        content.append(event.details)
    content.append(f"Prediction error: {prediction_error:.2f} (expectedness: {expectedness:.2f})")

    if event.lesson:
        rule = event.lesson
    elif memory_type == 'pain':
        rule = f"Watch for: {event.description[:120]}"
    elif memory_type == 'win':
        rule = f"Pattern that worked: {event.description[:120]}"
    else:
        rule = ''

    tags = list(event.tags) + ['auto-surprise']
    if event.category is EventCategory.ERROR:
        tags.append('error-pattern')
    if event.category is EventCategory.TOOL_RESULT:
        tags.append(f"tool:{event.tool_name or 'unknown'}")

    return {
        'type': memory_type,
        'title': title,
        'content': '\n'.join(content),
        'rule': rule,
        'tags': list(dict.fromkeys(tags)),
        'severity': _classify_severity(event, expectedness),
    }


def process_event(
    event: PredictionEvent,
    model: ExpectationModel,
    recent_created_at: Iterable[str] = (),
    session_message_count: int = 0,
    base_threshold: float = DEFAULT_SURPRISE_THRESHOLD,
    now: Optional[datetime] = None,
) -> tuple[ExpectationModel, CaptureDecision]:
    """
    Run one event through the pipeline: estimate, decide, learn, draft.

    The model always learns the event, captured or not.
    """
    expectedness = estimate_expectedness(event, model, session_message_count, now=now)
    decision = should_auto_capture(event, expectedness, recent_created_at, base_threshold, now=now)
    updated = observe(model, event.signature, now=now)
    if decision.capture:
        decision.memory = draft_surprise_memory(event, expectedness)
    return updated, decision


# ============================================================================
# EVENT CONSTRUCTORS
# ============================================================================

def tool_result_event(tool_name: str, success: bool, description: str, details: Optional[str] = None,
                      tags: Iterable[str] = (), lesson: Optional[str] = None,
                      error_class: Optional[str] = None) -> PredictionEvent:
    return PredictionEvent(
        category=EventCategory.TOOL_RESULT,
        tool_name=tool_name,
        outcome_class='success' if success else 'failure',
        description=description,
        details=details,
        tags=tuple(tags),
        lesson=lesson,
        valence='positive' if success else 'negative',
        error_class=error_class,
    )


def error_event(error_class: str, description: str, details: Optional[str] = None,
                tags: Iterable[str] = (), lesson: Optional[str] = None,
                severity: Optional[str] = None) -> PredictionEvent:
    return PredictionEvent(
        category=EventCategory.ERROR,
        error_class=error_class,
        description=description,
        details=details,
        tags=tuple(tags),
        lesson=lesson,
        valence='negative',
        severity=severity,
    )


def task_outcome_event(outcome: str, task_title: str, description: str, details: Optional[str] = None,
                       tags: Iterable[str] = (), lesson: Optional[str] = None) -> PredictionEvent:
    """outcome is 'success', 'partial' or 'failure'."""
    outcome_class = {'success': 'success', 'failure': 'failure'}.get(outcome, 'partial')
    valence = {'success': 'positive', 'failure': 'negative'}.get(outcome, 'neutral')
    return PredictionEvent(
        category=EventCategory.TOOL_RESULT,
        subcategory='task_outcome',
        tool_name='task_completion',
        outcome_class=outcome_class,
        description=f"{task_title}: {description}",
        details=details,
        tags=tuple(tags),
        lesson=lesson,
        valence=valence,
    )


def user_pattern_event(pattern_type: str, description: str, details: Optional[str] = None,
                       tags: Iterable[str] = (), valence: str = 'neutral') -> PredictionEvent:
    return PredictionEvent(
        category=EventCategory.USER_PATTERN,
        pattern_type=pattern_type,
        description=description,
        details=details,
        tags=tuple(tags),
        valence=valence,
    )


def build_result_event(success: bool, description: str, error_class: Optional[str] = None,
                       details: Optional[str] = None, tags: Iterable[str] = (),
                       lesson: Optional[str] = None) -> PredictionEvent:
    return PredictionEvent(
        category=EventCategory.TOOL_RESULT,
        subcategory='build',
        tool_name='build',
        outcome_class='success' if success else 'failure',
        description=description,
        details=details,
        tags=tuple(tags) + ('build', 'compilation'),
        lesson=lesson,
        valence='positive' if success else 'negative',
        error_class=error_class,
    )
