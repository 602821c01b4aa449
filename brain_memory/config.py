"""
Engine configuration.

Tuning knobs for the retrieval engine and the session state machine live on
a single ``EngineConfig`` dataclass. Values are validated on construction, so
a config that would produce nonsense (zero checkpoint interval, phases out of
order, an attention budget that grows late in a session) can never exist.

Resolution order for ``load_config()``:
    1. Built-in defaults (``DEFAULT_CONFIG``)
    2. YAML file (path argument, else $BRAIN_MEMORY_CONFIG)
    3. Environment overrides (BRAIN_CONTEXT_PHASE_MID, BRAIN_CONTEXT_PHASE_LATE,
       BRAIN_CHECKPOINT_INTERVAL, BRAIN_DECAY_THRESHOLD_DAYS), after loading
       a .env file with python-dotenv
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Mapping, Optional

import yaml
from dotenv import load_dotenv

from .errors import ConfigError

PHASES = ('early', 'mid', 'late')

# Sensory cortex: prompt keyword -> memory tags it should light up
DEFAULT_CORTEX = {
    # --- Source control ---
    'github': ['github', 'git'],
    'repo': ['github', 'git'],
    'repository': ['github', 'git'],
    'pr': ['github', 'git'],
    'commit': ['git'],
    'merge': ['git'],
    'rebase': ['git'],
    'branch': ['git'],

    # --- Packages / build ---
    'npm': ['npm', 'dependencies', 'packages'],
    'pip': ['python', 'dependencies', 'packages'],
    'install': ['dependencies'],
    'dependency': ['dependencies'],
    'publish': ['packages', 'release'],
    'build': ['build'],
    'compile': ['build'],
    'webpack': ['build', 'bundler'],
    'vite': ['build', 'bundler'],

    # --- Testing ---
    'test': ['testing'],
    'tests': ['testing'],
    'pytest': ['testing', 'python'],
    'vitest': ['testing'],
    'flaky': ['testing', 'flaky'],

    # --- Runtime / platform ---
    'windows': ['windows', 'platform'],
    'encoding': ['encoding', 'windows'],
    'path': ['paths', 'filesystem'],
    'file': ['filesystem'],
    'docker': ['docker', 'deploy'],
    'deploy': ['deploy'],
    'deployment': ['deploy'],

    # --- Data ---
    'database': ['database'],
    'sqlite': ['database', 'sqlite'],
    'postgres': ['database', 'postgres'],
    'migration': ['database', 'migration'],
    'schema': ['database', 'schema'],
    'json': ['serialization'],

    # --- Money / security ---
    'stripe': ['stripe', 'payments'],
    'payment': ['stripe', 'payments'],
    'token': ['auth', 'credentials'],
    'password': ['auth', 'credentials', 'security'],
    'secret': ['credentials', 'security'],
    'auth': ['auth'],

    # --- Design ---
    'architecture': ['architecture'],
    'design': ['architecture', 'design'],
    'refactor': ['architecture', 'refactor'],
}

# Attention patterns: hard interrupts surfaced before any memory
ATTENTION_PATTERNS = {
    'deploy': 'DEPLOYMENT detected - check deployment memories',
    'production': 'PRODUCTION context - extra caution required',
    'security': 'SECURITY context - review security memories',
    'delete': 'DESTRUCTIVE operation - check for related pain memories',
    'payment': 'PAYMENT context - mandatory human review',
    'migration': 'MIGRATION detected - check for related pain memories',
}

# Integer fields that may be overridden from the environment
ENV_OVERRIDES = {
    'BRAIN_CONTEXT_PHASE_MID': 'context_phase_mid',
    'BRAIN_CONTEXT_PHASE_LATE': 'context_phase_late',
    'BRAIN_CHECKPOINT_INTERVAL': 'checkpoint_interval',
    'BRAIN_DECAY_THRESHOLD_DAYS': 'decay_threshold_days',
}

CONFIG_PATH_ENV = 'BRAIN_MEMORY_CONFIG'


def _positive_int(name: str, value) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")


@dataclass
class EngineConfig:
    """Resolved engine tuning.

    Attributes:
        context_phase_mid: message count at which the session enters 'mid'
        context_phase_late: message count at which the session enters 'late'
        checkpoint_interval: messages between consolidation checkpoints (early phase)
        decay_threshold_days: days without access before a memory is reported as decayed
        attention_budget: max memories surfaced per retrieval, by context phase
        session_tag_repeat_threshold: firings in one session before a tag is "hot"
        min_prompt_length: shorter queries contribute no tokens (recent tags still match)
        min_relevance: records scoring below this in scoring.score_memory are skipped
        max_memory_traces: cap on carried-over traces at session start
        max_synaptic_activity: cap on carried-over tag activity at session start
        surprise_threshold: base expectedness threshold for auto-capture
        cortex: keyword -> tags expansion table
        attention_patterns: keyword -> warning message
    """

    context_phase_mid: int = 20
    context_phase_late: int = 40
    checkpoint_interval: int = 12
    decay_threshold_days: int = 30
    attention_budget: dict = field(default_factory=lambda: {'early': 5, 'mid': 4, 'late': 2})
    session_tag_repeat_threshold: int = 3
    min_prompt_length: int = 5
    min_relevance: float = 0.0
    max_memory_traces: int = 500
    max_synaptic_activity: int = 500
    surprise_threshold: float = 0.6
    cortex: dict = field(default_factory=lambda: {k: list(v) for k, v in DEFAULT_CORTEX.items()})
    attention_patterns: dict = field(default_factory=lambda: dict(ATTENTION_PATTERNS))

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError if any value is out of range."""
        for name in ('context_phase_mid', 'context_phase_late', 'checkpoint_interval',
                     'decay_threshold_days', 'session_tag_repeat_threshold',
                     'max_memory_traces', 'max_synaptic_activity'):
            _positive_int(name, getattr(self, name))

        if isinstance(self.min_prompt_length, bool) or not isinstance(self.min_prompt_length, int) \
                or self.min_prompt_length < 0:
            raise ConfigError(f"min_prompt_length must be a non-negative integer, got {self.min_prompt_length!r}")

        if self.context_phase_mid > self.context_phase_late:
            raise ConfigError(
                f"context_phase_mid ({self.context_phase_mid}) must not exceed "
                f"context_phase_late ({self.context_phase_late})"
            )

        # Late phase halves the interval; it has to stay >= 1
        if self.checkpoint_interval < 2:
            raise ConfigError(f"checkpoint_interval must be at least 2, got {self.checkpoint_interval}")

        if not isinstance(self.attention_budget, dict):
            raise ConfigError("attention_budget must be a mapping of phase -> count")
        for phase in PHASES:
            if phase not in self.attention_budget:
                raise ConfigError(f"attention_budget is missing phase '{phase}'")
            _positive_int(f"attention_budget[{phase}]", self.attention_budget[phase])
        budgets = [self.attention_budget[p] for p in PHASES]
        if budgets != sorted(budgets, reverse=True):
            raise ConfigError(f"attention_budget must shrink from early to late, got {budgets}")

        for name in ('min_relevance', 'surprise_threshold'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be a number in [0, 1], got {value!r}")

        if not isinstance(self.cortex, dict):
            raise ConfigError("cortex must be a mapping of keyword -> tags")
        if not isinstance(self.attention_patterns, dict):
            raise ConfigError("attention_patterns must be a mapping of keyword -> message")

    def budget_for(self, phase: str) -> int:
        return self.attention_budget[phase]


DEFAULT_CONFIG = EngineConfig()


def _read_yaml(path: Path) -> dict:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
    return data


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> EngineConfig:
    """
    Build an EngineConfig from defaults, an optional YAML file and the environment.

    Args:
        path: YAML file to read. Falls back to $BRAIN_MEMORY_CONFIG; a missing file is fine.
        env: Environment mapping. Defaults to os.environ after loading ./.env.

    Raises:
        ConfigError: unreadable file, unknown key, bad override, or invalid values.
    """
    if env is None:
        env_file = Path.cwd() / ".env"
        if env_file.exists():
            load_dotenv(env_file)
        env = os.environ

    overrides: dict = {}

    config_path = path or env.get(CONFIG_PATH_ENV)
    if config_path:
        config_path = Path(config_path)
        if config_path.exists():
            overrides.update(_read_yaml(config_path))

    known = {f.name for f in fields(EngineConfig)}
    unknown = sorted(set(overrides) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")

    for var, name in ENV_OVERRIDES.items():
        raw = env.get(var)
        if raw is None or raw == '':
            continue
        try:
            overrides[name] = int(raw)
        except ValueError as e:
            raise ConfigError(f"{var} must be an integer, got {raw!r}") from e

    # attention_budget from YAML may be partial
    if 'attention_budget' in overrides and isinstance(overrides['attention_budget'], dict):
        overrides['attention_budget'] = {**DEFAULT_CONFIG.attention_budget, **overrides['attention_budget']}

    return replace(EngineConfig(), **overrides)
