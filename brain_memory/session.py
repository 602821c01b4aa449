"""
BrainSession - one project's memory engine for the lifetime of an assistant session.

Wires the pure pieces together in the order the collaborators call them:

    session = BrainSession(root, "my-project")
    session.start()                                  # load, decay, reset session fields
    turn = session.process_message(prompt, tags)     # tick, retrieve, record, checkpoint?
    decision = session.observe_event(event)          # surprise model
    session.store_surprise(decision)                 # capture it as a memory
    session.end()                                    # plasticity, sync traces to records

The state is saved after every transition. Corrupt files never stop a
session: the state starts fresh, an unreadable memory collection is treated
as empty, and `recovered` is set so the caller can warn the user.
"""

import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import NamedTuple, Optional

from .brain_state import (
    DecayedMemory,
    apply_synaptic_plasticity,
    find_decayed_memories,
    init_brain_state,
    record_memory_traces,
    record_synaptic_activity,
    should_checkpoint,
    tick_message_count,
)
from .config import EngineConfig, load_config
from .engine import retrieve_memories
from .errors import BrainMemoryError, MemoryCorruptionError
from .memory_store import BrainStateStore, MemoryStore
from .memory_types import BrainState, MemoryRecord, RetrievalResult
from .prediction import CaptureDecision, PredictionEvent, process_event

logger = logging.getLogger(__name__)


class TurnResult(NamedTuple):
    retrieval: RetrievalResult
    checkpoint: bool


class BrainSession:
    """Single-writer session over a project's memories and brain state."""

    def __init__(self, root: Path, project_id: str, config: Optional[EngineConfig] = None):
        self.project_id = project_id
        self.config = config or load_config()
        self.memories = MemoryStore(root, project_id)
        self.states = BrainStateStore(root, project_id)
        self.state: Optional[BrainState] = None
        self.recovered = False

    def _require_state(self) -> BrainState:
        if self.state is None:
            raise BrainMemoryError("session not started; call start() first")
        return self.state

    def _commit(self, state: BrainState) -> BrainState:
        self.state = state
        self.states.save(state)
        return state

    def _records(self) -> list[MemoryRecord]:
        try:
            return self.memories.list_all()
        except MemoryCorruptionError as e:
            self.recovered = True
            logger.warning("Memory collection for %s is corrupt (%s); continuing without it", self.project_id, e)
            return []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, now: Optional[datetime] = None) -> BrainState:
        previous = self.states.load()
        if self.states.recovered:
            self.recovered = True
        state = self._commit(init_brain_state(previous, now=now, config=self.config))
        logger.info(
            "Session started for %s (%d traces carried over%s)",
            self.project_id, len(state.memory_traces), ", recovered from corruption" if self.recovered else "",
        )
        return state

    def process_message(self, query: str, recent_tags=(), now: Optional[datetime] = None) -> TurnResult:
        """Handle one assistant turn: tick, retrieve, record what surfaced, decide on a checkpoint."""
        state = tick_message_count(self._require_state(), self.config)
        retrieval = retrieve_memories(
            query,
            recent_tags,
            self._records(),
            brain_state=state,
            config=self.config,
            now=now,
        )
        state = record_synaptic_activity(state, retrieval.matched_tags, now=now)
        state = record_memory_traces(state, retrieval.memory_ids, now=now)
        state = self._commit(state)

        checkpoint = should_checkpoint(state, self.config)
        if checkpoint:
            logger.info("Checkpoint due at message %d (%s phase)", state.message_count, state.context_phase)
        return TurnResult(retrieval, checkpoint)

    def observe_event(self, event: PredictionEvent, now: Optional[datetime] = None) -> CaptureDecision:
        """Score an event against the expectation model and learn from it."""
        state = self._require_state()
        recent = [r.created_at for r in self._records()]
        model, decision = process_event(
            event,
            state.expectations,
            recent_created_at=recent,
            session_message_count=state.message_count,
            base_threshold=self.config.surprise_threshold,
            now=now,
        )
        self._commit(replace(state, expectations=model))
        logger.debug("Event %s: %s", decision.signature, decision.reason)
        return decision

    def store_surprise(self, decision: CaptureDecision) -> Optional[MemoryRecord]:
        """Turn a capture decision into a stored memory. No-op for events not worth capturing."""
        if not decision.capture or decision.memory is None:
            return None
        try:
            record = self.memories.capture(**decision.memory, cortex=self.config.cortex)
        except MemoryCorruptionError as e:
            # Duplicate check needs every record; store without it
            self.recovered = True
            logger.warning("Could not check %s for duplicates (%s)", self.project_id, e)
            record = self.memories.capture(**decision.memory, cortex=self.config.cortex, dedupe=False)
        logger.info(
            "Captured surprise %s as %s memory %s (encoding %.1f)",
            decision.signature, record.type, record.id, decision.encoding_strength,
        )
        return record

    def end(self) -> list[str]:
        """
        Close the session: boost this session's memories and write traces back to the records.

        Returns:
            Ids of the memories that were boosted
        """
        result = apply_synaptic_plasticity(self._require_state())
        self._commit(result.state)
        try:
            self.memories.sync_traces(result.state)
        except MemoryCorruptionError as e:
            self.recovered = True
            logger.warning("Could not sync traces for %s (%s)", self.project_id, e)
        logger.info("Session ended for %s (%d memories boosted)", self.project_id, len(result.boosted_ids))
        return result.boosted_ids

    def decayed_memories(self, now: Optional[datetime] = None) -> list[DecayedMemory]:
        return find_decayed_memories(self._require_state(), self.config, now=now)
