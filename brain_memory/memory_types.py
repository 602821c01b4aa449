"""
Core records for the memory engine.

MemoryRecord is what the store persists. BrainState is the per-project
session ledger owned by brain_state.py. ExpectationModel is the frequency
model owned by prediction.py and carried inside BrainState so it is saved
alongside it.

Every type round-trips through to_dict()/from_dict(); from_dict() raises
ValueError (or KeyError/TypeError for missing/mistyped fields) on malformed
input so storage can report corruption.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

MEMORY_TYPES = ('pain', 'win', 'fact', 'decision', 'architecture')
SEVERITIES = ('low', 'medium', 'high')
SEVERITY_RANK = {'low': 0, 'medium': 1, 'high': 2}
CONTEXT_PHASES = ('early', 'mid', 'late')

NEUTRAL_STRENGTH = 1.0


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO timestamp, treating naive values as UTC."""
    ts = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def days_between(earlier: str, now: Optional[datetime] = None) -> float:
    now = now or datetime.now(timezone.utc)
    return (now - parse_timestamp(earlier)).total_seconds() / 86400


def normalize_tags(tags) -> list[str]:
    """Lowercase, strip and dedupe tags, keeping first occurrence order."""
    seen = {}
    for tag in tags or []:
        if not isinstance(tag, str):
            raise ValueError(f"tag must be a string, got {tag!r}")
        cleaned = tag.strip().lower()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def _require_timestamp(name: str, value) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{name} must be an ISO timestamp string, got {value!r}")
    parse_timestamp(value)
    return value


def _require_number(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    return float(value)


def _require_count(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{name} must be a non-negative integer, got {value!r}")
    return value


def _require_mapping(name: str, value) -> dict:
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be a mapping, got {type(value).__name__}")
    return value


# ============================================================================
# MEMORY RECORDS
# ============================================================================

@dataclass
class MemoryRecord:
    """A stored lesson, fact or decision."""

    id: str
    project_id: str
    type: str
    title: str
    content: str = ''
    rule: str = ''
    tags: list = field(default_factory=list)
    severity: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    # Owned by the state machine; only MemoryStore.sync_traces writes these
    access_count: int = 0
    last_accessed: Optional[str] = None
    synaptic_strength: float = NEUTRAL_STRENGTH

    def __post_init__(self):
        self.tags = normalize_tags(self.tags)

    def text(self) -> str:
        return f"{self.title} {self.content} {self.rule}"

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'project_id': self.project_id,
            'type': self.type,
            'title': self.title,
            'content': self.content,
            'rule': self.rule,
            'tags': list(self.tags),
            'severity': self.severity,
            'created_at': self.created_at,
            'access_count': self.access_count,
            'last_accessed': self.last_accessed,
            'synaptic_strength': self.synaptic_strength,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MemoryRecord":
        if not isinstance(data, dict):
            raise ValueError(f"memory record must be a mapping, got {type(data).__name__}")

        for key in ('id', 'project_id', 'title'):
            if not isinstance(data.get(key), str) or not data[key]:
                raise ValueError(f"memory record field '{key}' must be a non-empty string")
        if data.get('type') not in MEMORY_TYPES:
            raise ValueError(f"unknown memory type {data.get('type')!r}")
        severity = data.get('severity')
        if severity not in SEVERITIES:
            raise ValueError(f"unknown severity {severity!r}")
        for key in ('content', 'rule'):
            if not isinstance(data.get(key, ''), str):
                raise ValueError(f"memory record field '{key}' must be a string")
        if not isinstance(data.get('tags', []), list):
            raise ValueError("memory record tags must be a list")

        strength = _require_number('synaptic_strength', data.get('synaptic_strength', NEUTRAL_STRENGTH))
        if strength < 0:
            raise ValueError(f"synaptic_strength must not be negative, got {strength}")
        last_accessed = data.get('last_accessed')
        if last_accessed is not None:
            _require_timestamp('last_accessed', last_accessed)

        return cls(
            id=data['id'],
            project_id=data['project_id'],
            type=data['type'],
            title=data['title'],
            content=data.get('content', ''),
            rule=data.get('rule', ''),
            tags=data.get('tags', []),
            severity=severity,
            created_at=_require_timestamp('created_at', data.get('created_at')),
            access_count=_require_count('access_count', data.get('access_count', 0)),
            last_accessed=last_accessed,
            synaptic_strength=strength,
        )


# ============================================================================
# BRAIN STATE
# ============================================================================

@dataclass
class TagActivity:
    count: int
    last_hit: str


@dataclass
class MemoryTrace:
    count: int
    last_accessed: str
    synaptic_strength: float = NEUTRAL_STRENGTH


@dataclass
class FrequencyEntry:
    count: float
    first_seen: str
    last_seen: str


@dataclass
class ExpectationModel:
    """Frequency counts per event signature. total_events == sum of counts."""

    frequencies: dict = field(default_factory=dict)
    total_events: float = 0
    last_updated: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return {
            'frequencies': {
                sig: {'count': e.count, 'first_seen': e.first_seen, 'last_seen': e.last_seen}
                for sig, e in self.frequencies.items()
            },
            'total_events': self.total_events,
            'last_updated': self.last_updated,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExpectationModel":
        _require_mapping('expectations', data)
        frequencies = {}
        for sig, entry in _require_mapping('frequencies', data.get('frequencies', {})).items():
            _require_mapping(f"frequencies[{sig}]", entry)
            frequencies[sig] = FrequencyEntry(
                count=_require_number(f"frequencies[{sig}].count", entry['count']),
                first_seen=_require_timestamp('first_seen', entry['first_seen']),
                last_seen=_require_timestamp('last_seen', entry['last_seen']),
            )
        return cls(
            frequencies=frequencies,
            total_events=_require_number('total_events', data.get('total_events', 0)),
            last_updated=_require_timestamp('last_updated', data.get('last_updated', utc_now())),
        )


@dataclass
class BrainState:
    """Per-project session ledger. context_phase is derived from message_count."""

    session_start: str = field(default_factory=utc_now)
    message_count: int = 0
    context_phase: str = 'early'
    synaptic_activity: dict = field(default_factory=dict)   # tag -> TagActivity
    firing_frequency: dict = field(default_factory=dict)    # tag -> int, session-local
    memory_traces: dict = field(default_factory=dict)       # memory id -> MemoryTrace
    active_traces: list = field(default_factory=list)       # ids surfaced this session
    expectations: ExpectationModel = field(default_factory=ExpectationModel)

    def to_dict(self) -> dict:
        return {
            'session_start': self.session_start,
            'message_count': self.message_count,
            'context_phase': self.context_phase,
            'synaptic_activity': {
                tag: {'count': a.count, 'last_hit': a.last_hit}
                for tag, a in self.synaptic_activity.items()
            },
            'firing_frequency': dict(self.firing_frequency),
            'memory_traces': {
                mid: {
                    'count': t.count,
                    'last_accessed': t.last_accessed,
                    'synaptic_strength': t.synaptic_strength,
                }
                for mid, t in self.memory_traces.items()
            },
            'active_traces': list(self.active_traces),
            'expectations': self.expectations.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BrainState":
        if not isinstance(data, dict):
            raise ValueError(f"brain state must be a mapping, got {type(data).__name__}")
        phase = data.get('context_phase', 'early')
        if phase not in CONTEXT_PHASES:
            raise ValueError(f"unknown context phase {phase!r}")

        activity = {}
        for tag, a in _require_mapping('synaptic_activity', data.get('synaptic_activity', {})).items():
            _require_mapping(f"synaptic_activity[{tag}]", a)
            activity[tag] = TagActivity(
                count=_require_count(f"synaptic_activity[{tag}].count", a['count']),
                last_hit=_require_timestamp('last_hit', a['last_hit']),
            )
        traces = {}
        for mid, t in _require_mapping('memory_traces', data.get('memory_traces', {})).items():
            _require_mapping(f"memory_traces[{mid}]", t)
            traces[mid] = MemoryTrace(
                count=_require_count(f"memory_traces[{mid}].count", t['count']),
                last_accessed=_require_timestamp('last_accessed', t['last_accessed']),
                synaptic_strength=_require_number('synaptic_strength', t['synaptic_strength']),
            )
        firing = {
            tag: _require_count(f"firing_frequency[{tag}]", n)
            for tag, n in _require_mapping('firing_frequency', data.get('firing_frequency', {})).items()
        }
        active = data.get('active_traces', [])
        if not isinstance(active, list):
            raise ValueError("active_traces must be a list")
        missing = [mid for mid in active if mid not in traces]
        if missing:
            raise ValueError(f"active traces without a memory trace: {missing}")

        expectations = data.get('expectations')
        return cls(
            session_start=_require_timestamp('session_start', data['session_start']),
            message_count=_require_count('message_count', data.get('message_count', 0)),
            context_phase=phase,
            synaptic_activity=activity,
            firing_frequency=firing,
            memory_traces=traces,
            active_traces=list(active),
            expectations=ExpectationModel.from_dict(expectations) if expectations is not None else ExpectationModel(),
        )


# ============================================================================
# RETRIEVAL RESULTS
# ============================================================================

@dataclass
class ScoredMemory:
    memory: MemoryRecord
    score: float
    matched_tags: list = field(default_factory=list)
    source: str = 'direct'   # 'direct', 'fuzzy' or 'associative'


@dataclass
class RetrievalResult:
    ranked: list = field(default_factory=list)
    truncated: bool = False
    context_phase: str = 'early'
    matched_tags: list = field(default_factory=list)
    attention_filter: Optional[dict] = None
    hot_tags: list = field(default_factory=list)
    injection_text: str = ''

    @property
    def memory_ids(self) -> list[str]:
        return [sm.memory.id for sm in self.ranked]
