"""
Brain State -- session tracking, synaptic plasticity and decay.

Every function here is a pure transition: it takes a BrainState and returns
a new one, never touching the input. Callers persist the result (see
memory_store.BrainStateStore) after each transition.

Lifecycle:
    session start   init_brain_state(previous)    decay carried-over traces, reset session fields
    every turn      tick_message_count             advance message count / context phase
                    record_synaptic_activity       tag usage (cross-session + session-local)
                    record_memory_traces           memories surfaced this turn
                    should_checkpoint              consolidation cadence
    session end     apply_synaptic_plasticity      boost what this session used
    maintenance     find_decayed_memories          long-unused memories

Synaptic strength regresses toward the neutral 1.0 at each session start
(s <- s + 0.1 * (1 - s), same shape as a Q-value update with reward 1.0) and
is boosted at session end for every memory surfaced during the session.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, NamedTuple, Optional

from .config import DEFAULT_CONFIG, EngineConfig
from .memory_types import (
    NEUTRAL_STRENGTH,
    BrainState,
    MemoryTrace,
    TagActivity,
    days_between,
    parse_timestamp,
)
from .prediction import decay_expectation_model

DECAY_RATE = 0.1           # Fraction of the distance to neutral recovered per session
PLASTICITY_BOOST = 0.1
MAX_STRENGTH = 2.0

# Pruned at session start, before the size caps
SETTLED_DISTANCE = 0.05    # Trace this close to neutral carries no signal
STALE_ACTIVITY_DAYS = 7    # Single-hit tags idle this long are dropped

# Effective checkpoint interval as a fraction of the configured one
CHECKPOINT_SCALE = {
    'early': 1.0,
    'mid': 0.75,
    'late': 0.5,
}


class PlasticityResult(NamedTuple):
    state: BrainState
    boosted_ids: list


@dataclass
class DecayedMemory:
    id: str
    days_since: int
    access_count: int


def _now_iso(now: Optional[datetime]) -> str:
    return (now or datetime.now(timezone.utc)).isoformat()


def _move_toward(value: float, target: float, rate: float) -> float:
    """v <- v + rate * (target - v), rounded to 2 decimals, snapping once rounding stalls."""
    moved = round(value + rate * (target - value), 2)
    if moved == value:
        return target
    return moved


def get_context_phase(message_count: int, config: EngineConfig = DEFAULT_CONFIG) -> str:
    """Context phase is a pure function of the message count."""
    if message_count >= config.context_phase_late:
        return 'late'
    if message_count >= config.context_phase_mid:
        return 'mid'
    return 'early'


# ============================================================================
# SESSION BOUNDARIES
# ============================================================================

def _prune_memory_traces(traces: dict) -> dict:
    return {
        mid: trace for mid, trace in traces.items()
        if abs(trace.synaptic_strength - NEUTRAL_STRENGTH) > SETTLED_DISTANCE
    }


def _prune_synaptic_activity(activity: dict, now: Optional[datetime] = None) -> dict:
    return {
        tag: a for tag, a in activity.items()
        if a.count > 1 or days_between(a.last_hit, now) <= STALE_ACTIVITY_DAYS
    }


def _cap_memory_traces(traces: dict, limit: int) -> dict:
    """Keep the `limit` strongest traces (most recently accessed breaks ties)."""
    if len(traces) <= limit:
        return dict(traces)
    ranked = sorted(
        traces.items(),
        key=lambda item: (item[1].synaptic_strength, parse_timestamp(item[1].last_accessed)),
        reverse=True,
    )
    return dict(ranked[:limit])


def _cap_synaptic_activity(activity: dict, limit: int) -> dict:
    """Keep the `limit` busiest tags (most recent hit breaks ties)."""
    if len(activity) <= limit:
        return dict(activity)
    ranked = sorted(
        activity.items(),
        key=lambda item: (item[1].count, parse_timestamp(item[1].last_hit)),
        reverse=True,
    )
    return dict(ranked[:limit])


def init_brain_state(
    previous: Optional[BrainState] = None,
    now: Optional[datetime] = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> BrainState:
    """
    Start a session.

    With a previous state: decay it, then reset the session-local fields
    (message count, phase, firing frequency, active traces) while keeping
    cross-session tag activity and the decayed memory traces. Traces that
    have settled back to neutral and single-hit tags idle for over a week
    are pruned before the size caps apply. Without a previous state, build
    a zero state.
    """
    started = _now_iso(now)
    if previous is None:
        return BrainState(session_start=started)

    decayed = apply_decay(previous)
    return replace(
        decayed,
        session_start=started,
        message_count=0,
        context_phase='early',
        firing_frequency={},
        active_traces=[],
        memory_traces=_cap_memory_traces(
            _prune_memory_traces(decayed.memory_traces), config.max_memory_traces,
        ),
        synaptic_activity=_cap_synaptic_activity(
            _prune_synaptic_activity(decayed.synaptic_activity, now), config.max_synaptic_activity,
        ),
        expectations=decay_expectation_model(decayed.expectations, now=now),
    )


def apply_decay(state: BrainState) -> BrainState:
    """Move every tracked memory's strength 10% of the way back to neutral (1.0)."""
    traces = {}
    for memory_id, trace in state.memory_traces.items():
        if trace.synaptic_strength != NEUTRAL_STRENGTH:
            trace = replace(
                trace,
                synaptic_strength=_move_toward(trace.synaptic_strength, NEUTRAL_STRENGTH, DECAY_RATE),
            )
        traces[memory_id] = trace
    return replace(state, memory_traces=traces)


def apply_synaptic_plasticity(
    state: BrainState,
    boost: float = PLASTICITY_BOOST,
    max_strength: float = MAX_STRENGTH,
) -> PlasticityResult:
    """
    Boost every memory surfaced this session, clamped at max_strength.

    Called once at session end. The active traces are consumed: the returned
    state has an empty active set, so a second call boosts nothing.
    """
    if not state.active_traces:
        return PlasticityResult(state, [])

    traces = dict(state.memory_traces)
    boosted = []
    for memory_id in state.active_traces:
        trace = traces.get(memory_id)
        if trace is None:
            continue
        strength = min(max_strength, round(trace.synaptic_strength + boost, 2))
        traces[memory_id] = replace(trace, synaptic_strength=strength)
        boosted.append(memory_id)

    return PlasticityResult(replace(state, memory_traces=traces, active_traces=[]), boosted)


# ============================================================================
# PER-TURN TRANSITIONS
# ============================================================================

def tick_message_count(state: BrainState, config: EngineConfig = DEFAULT_CONFIG) -> BrainState:
    """Count one more message and recompute the context phase."""
    count = state.message_count + 1
    return replace(state, message_count=count, context_phase=get_context_phase(count, config))


def record_synaptic_activity(
    state: BrainState,
    tags: Iterable[str],
    now: Optional[datetime] = None,
) -> BrainState:
    """Record activated tags, cross-session (synaptic_activity) and session-local (firing_frequency)."""
    tags = list(tags)
    if not tags:
        return state

    stamp = _now_iso(now)
    activity = dict(state.synaptic_activity)
    firing = dict(state.firing_frequency)

    for tag in tags:
        previous = activity.get(tag)
        activity[tag] = TagActivity(count=(previous.count if previous else 0) + 1, last_hit=stamp)
        firing[tag] = firing.get(tag, 0) + 1

    return replace(state, synaptic_activity=activity, firing_frequency=firing)


def record_memory_traces(
    state: BrainState,
    memory_ids: Iterable[str],
    now: Optional[datetime] = None,
) -> BrainState:
    """Record which memories were surfaced by a retrieval."""
    memory_ids = list(memory_ids)
    if not memory_ids:
        return state

    stamp = _now_iso(now)
    traces = dict(state.memory_traces)
    active = list(state.active_traces)

    for memory_id in memory_ids:
        previous = traces.get(memory_id)
        traces[memory_id] = MemoryTrace(
            count=(previous.count if previous else 0) + 1,
            last_accessed=stamp,
            synaptic_strength=previous.synaptic_strength if previous else NEUTRAL_STRENGTH,
        )
        if memory_id not in active:
            active.append(memory_id)

    return replace(state, memory_traces=traces, active_traces=active)


# ============================================================================
# QUERIES
# ============================================================================

def effective_checkpoint_interval(phase: str, config: EngineConfig = DEFAULT_CONFIG) -> int:
    """Checkpoint cadence for a phase: full interval early, 75% mid, 50% late (floored)."""
    return int(config.checkpoint_interval * CHECKPOINT_SCALE[phase])


def should_checkpoint(state: BrainState, config: EngineConfig = DEFAULT_CONFIG) -> bool:
    """True when the message count lands on the phase's effective interval."""
    interval = effective_checkpoint_interval(state.context_phase, config)
    return state.message_count > 0 and state.message_count % interval == 0


def find_decayed_memories(
    state: BrainState,
    config: EngineConfig = DEFAULT_CONFIG,
    now: Optional[datetime] = None,
) -> list[DecayedMemory]:
    """Memories not accessed for decay_threshold_days or more, most stale first."""
    now = now or datetime.now(timezone.utc)
    result = []
    for memory_id, trace in state.memory_traces.items():
        if not trace.last_accessed:
            continue
        days_since = int(days_between(trace.last_accessed, now))
        if days_since >= config.decay_threshold_days:
            result.append(DecayedMemory(id=memory_id, days_since=days_since, access_count=trace.count))

    result.sort(key=lambda d: d.days_since, reverse=True)
    return result
