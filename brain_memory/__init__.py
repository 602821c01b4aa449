"""Per-project memory engine: record store, retrieval, session state and surprise capture."""

from .brain_state import (
    apply_decay,
    apply_synaptic_plasticity,
    find_decayed_memories,
    get_context_phase,
    init_brain_state,
    record_memory_traces,
    record_synaptic_activity,
    should_checkpoint,
    tick_message_count,
)
from .config import DEFAULT_CONFIG, EngineConfig, load_config
from .engine import infer_severity, retrieve_memories
from .errors import BrainMemoryError, ConfigError, MemoryCorruptionError
from .memory_store import BrainStateStore, MemoryStore
from .memory_types import BrainState, ExpectationModel, MemoryRecord, RetrievalResult, ScoredMemory
from .prediction import PredictionEvent, EventCategory, observe, signature_of, surprise
from .quality import compute_fingerprint, find_duplicate
from .session import BrainSession, TurnResult
from .tokenizer import build_tag_index, tokenize

__version__ = "0.1.0"
