"""
Memory Store - file-backed persistence for one project's memories and brain state.

Layout under the store root:

    <root>/<project_id>/
        memories/
            pain-a1b2c3d4.md        # YAML frontmatter + content body
            win-9f8e7d6c.md
        brain-state.json

Every write replaces the whole file: the new text goes to "<file>.tmp", the
current file is copied to "<file>.backup", then the tmp file is moved into
place. A missing directory is simply an empty store and is created on the
first write.

Malformed memory files raise MemoryCorruptionError. A malformed brain state
file does not raise: BrainStateStore.load() falls back to the backup, then to
"no state", and sets `recovered` so the caller can tell the user.

Single writer per project; there is no locking.
"""

import hashlib
import json
import logging
import os
import re
import shutil
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Optional

import yaml

from .config import DEFAULT_CORTEX
from .engine import SeverityClassifier, infer_severity
from .errors import MemoryCorruptionError
from .memory_types import MEMORY_TYPES, BrainState, MemoryRecord, normalize_tags, parse_timestamp
from .quality import find_duplicate
from .tokenizer import infer_tags

logger = logging.getLogger(__name__)

MEMORIES_DIR = "memories"
STATE_FILE = "brain-state.json"

FRONTMATTER = "---"

# Never changed by update()
IMMUTABLE_FIELDS = ('id', 'project_id', 'created_at')
# Owned by the state machine; written only through sync_traces()
TRACE_FIELDS = ('access_count', 'last_accessed', 'synaptic_strength')
MUTABLE_FIELDS = ('type', 'title', 'content', 'rule', 'tags', 'severity')

_ID_RE = re.compile(r"^[\w.-]+$")


def generate_id() -> str:
    """Generate a short, readable memory ID."""
    return hashlib.md5(str(uuid.uuid4()).encode()).hexdigest()[:8]


def _atomic_write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(text, encoding='utf-8')
    if path.exists():
        shutil.copy2(path, path.with_name(path.name + ".backup"))
    os.replace(tmp, path)


def parse_memory_file(filepath: Path) -> tuple[dict, str]:
    """
    Parse a memory file with YAML frontmatter.

    Raises:
        MemoryCorruptionError: no frontmatter, bad YAML, or frontmatter that is not a mapping
    """
    try:
        text = filepath.read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise MemoryCorruptionError(f"Could not read {filepath}: {e}", path=filepath) from e

    if not text.startswith(FRONTMATTER + "\n"):
        raise MemoryCorruptionError(f"{filepath} has no YAML frontmatter", path=filepath)
    end = text.find("\n" + FRONTMATTER + "\n", len(FRONTMATTER))
    if end == -1:
        raise MemoryCorruptionError(f"{filepath} has unterminated frontmatter", path=filepath)

    try:
        metadata = yaml.safe_load(text[len(FRONTMATTER) + 1:end + 1])
    except yaml.YAMLError as e:
        raise MemoryCorruptionError(f"{filepath} has invalid frontmatter: {e}", path=filepath) from e
    if not isinstance(metadata, dict):
        raise MemoryCorruptionError(f"{filepath} frontmatter is not a mapping", path=filepath)

    body = text[end + len(FRONTMATTER) + 2:]
    if body.startswith("\n"):
        body = body[1:]
    return metadata, body


def write_memory_file(filepath: Path, metadata: dict, content: str):
    """Write a memory file with YAML frontmatter."""
    yaml_str = yaml.safe_dump(metadata, default_flow_style=False, sort_keys=False, allow_unicode=True)
    _atomic_write(filepath, f"{FRONTMATTER}\n{yaml_str}{FRONTMATTER}\n\n{content}")


class MemoryStore:
    """
    CRUD over one project's memory records.

    Every mutating call has persisted by the time it returns. Lookups of
    unknown ids return None.
    """

    def __init__(self, root: Path, project_id: str, severity_classifier: SeverityClassifier = infer_severity):
        if not project_id or not _ID_RE.match(project_id):
            raise ValueError(f"invalid project id {project_id!r}")
        self.root = Path(root)
        self.project_id = project_id
        self.directory = self.root / project_id / MEMORIES_DIR
        self.severity_classifier = severity_classifier

    def _path_for(self, record: MemoryRecord) -> Path:
        return self.directory / f"{record.type}-{record.id}.md"

    def _find_path(self, memory_id: str) -> Optional[Path]:
        if not self.directory.exists() or not _ID_RE.match(memory_id or ''):
            return None
        for memory_type in MEMORY_TYPES:
            filepath = self.directory / f"{memory_type}-{memory_id}.md"
            if filepath.exists():
                return filepath
        return None

    def _load(self, filepath: Path) -> MemoryRecord:
        metadata, body = parse_memory_file(filepath)
        try:
            record = MemoryRecord.from_dict({**metadata, 'content': body})
        except (ValueError, KeyError, TypeError) as e:
            raise MemoryCorruptionError(f"{filepath}: {e}", path=filepath) from e
        if record.project_id != self.project_id:
            raise MemoryCorruptionError(
                f"{filepath} belongs to project {record.project_id!r}, not {self.project_id!r}",
                path=filepath,
            )
        return record

    def _write(self, record: MemoryRecord, previous_path: Optional[Path] = None) -> None:
        data = record.to_dict()
        content = data.pop('content')
        path = self._path_for(record)
        write_memory_file(path, data, content)
        # Type change moves the record to a new file name
        if previous_path is not None and previous_path != path:
            previous_path.unlink(missing_ok=True)
            previous_path.with_name(previous_path.name + ".backup").unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, record: MemoryRecord) -> str:
        """
        Persist a new record and return its id.

        An empty id is generated; an unset severity is inferred with the
        store's severity classifier.

        Raises:
            ValueError: wrong project, duplicate id, or invalid field values
        """
        if record.project_id != self.project_id:
            raise ValueError(f"record belongs to project {record.project_id!r}, not {self.project_id!r}")

        record = replace(record, id=record.id or generate_id(), tags=list(record.tags))
        if not _ID_RE.match(record.id):
            raise ValueError(f"invalid memory id {record.id!r}")
        if record.severity is None:
            record.severity = self.severity_classifier(record.content, record.rule)
        if self._find_path(record.id) is not None:
            raise ValueError(f"memory {record.id} already exists")

        # Reject anything that would not load back
        MemoryRecord.from_dict(record.to_dict())

        self._write(record)
        logger.info("Created %s memory %s: %s", record.type, record.id, record.title)
        return record.id

    def get_by_id(self, memory_id: str) -> Optional[MemoryRecord]:
        filepath = self._find_path(memory_id)
        if filepath is None:
            return None
        return self._load(filepath)

    def list_all(self) -> list[MemoryRecord]:
        """Every record in the project, oldest first."""
        if not self.directory.exists():
            return []
        records = [self._load(fp) for fp in self.directory.glob("*.md")]
        records.sort(key=lambda r: (parse_timestamp(r.created_at), r.id))
        return records

    def update(self, memory_id: str, changes: dict) -> Optional[MemoryRecord]:
        """
        Merge a partial change set into a record and persist it.

        Returns:
            The updated record, or None if no record has this id

        Raises:
            ValueError: immutable, state-owned or unknown fields, or invalid values
        """
        for key in changes:
            if key in IMMUTABLE_FIELDS:
                raise ValueError(f"'{key}' is immutable")
            if key in TRACE_FIELDS:
                raise ValueError(f"'{key}' is owned by the brain state; use sync_traces()")
            if key not in MUTABLE_FIELDS:
                raise ValueError(f"unknown memory field '{key}'")

        filepath = self._find_path(memory_id)
        if filepath is None:
            return None
        record = self._load(filepath)

        data = record.to_dict()
        data.update(changes)
        if 'tags' in changes:
            data['tags'] = normalize_tags(changes['tags'])
        updated = MemoryRecord.from_dict(data)

        self._write(updated, previous_path=filepath)
        return updated

    # ------------------------------------------------------------------
    # Capture and tags
    # ------------------------------------------------------------------

    def capture(
        self,
        type: str,
        title: str,
        content: str = '',
        rule: str = '',
        tags: Optional[list] = None,
        severity: Optional[str] = None,
        cortex: Optional[dict] = None,
        dedupe: bool = True,
    ) -> MemoryRecord:
        """
        Build and store a memory from loose fields.

        With fewer than two tags given, more are inferred from the text via
        the sensory cortex. With `dedupe`, a capture that duplicates a stored
        record (same fingerprint, or similar enough) stores nothing and
        returns the existing record.
        """
        tags = normalize_tags(tags)
        if len(tags) < 2:
            inferred = infer_tags(f"{title} {content} {rule}", cortex if cortex is not None else DEFAULT_CORTEX)
            tags = normalize_tags(tags + inferred)

        record = MemoryRecord(
            id='',
            project_id=self.project_id,
            type=type,
            title=title,
            content=content,
            rule=rule,
            tags=tags,
            severity=severity,
        )
        if dedupe:
            match = find_duplicate(record, self.list_all())
            if match is not None:
                logger.info(
                    "Skipped capture %r: duplicate of %s (similarity %.2f)",
                    title, match.record.id, match.similarity,
                )
                return match.record
        return self.get_by_id(self.create(record))

    def find_by_tag(self, tag: str) -> list[MemoryRecord]:
        tag = tag.strip().lower()
        return [r for r in self.list_all() if tag in r.tags]

    def list_tags(self) -> dict[str, int]:
        """Get all tags across all memories with counts."""
        tag_counts = {}
        for record in self.list_all():
            for tag in record.tags:
                tag_counts[tag] = tag_counts.get(tag, 0) + 1
        return dict(sorted(tag_counts.items(), key=lambda x: x[1], reverse=True))

    def sync_traces(self, state: BrainState) -> int:
        """
        Copy trace count, last access and strength from the brain state into the records.

        Returns:
            Number of records rewritten
        """
        written = 0
        for record in self.list_all():
            trace = state.memory_traces.get(record.id)
            if trace is None:
                continue
            if (record.access_count, record.last_accessed, record.synaptic_strength) == \
                    (trace.count, trace.last_accessed, trace.synaptic_strength):
                continue
            synced = replace(
                record,
                access_count=trace.count,
                last_accessed=trace.last_accessed,
                synaptic_strength=trace.synaptic_strength,
            )
            self._write(synced)
            written += 1
        if written:
            logger.debug("Synced traces into %d memories", written)
        return written


class BrainStateStore:
    """Load/save the project's BrainState as JSON."""

    def __init__(self, root: Path, project_id: str):
        self.path = Path(root) / project_id / STATE_FILE
        self.backup_path = self.path.with_name(self.path.name + ".backup")
        self.recovered = False

    def load(self) -> Optional[BrainState]:
        """
        The persisted state, or None if there is none.

        A corrupt file falls back to the backup copy; if that fails too the
        state is treated as absent. Either way `recovered` is set; it is
        cleared at the start of every load.
        """
        self.recovered = False
        for candidate in (self.path, self.backup_path):
            if not candidate.exists():
                continue
            try:
                data = json.loads(candidate.read_text(encoding='utf-8'))
                return BrainState.from_dict(data)
            except (OSError, ValueError, KeyError, TypeError) as e:
                self.recovered = True
                logger.warning("Brain state %s is corrupt (%s); falling back", candidate, e)
        return None

    def save(self, state: BrainState) -> None:
        _atomic_write(self.path, json.dumps(state.to_dict(), indent=2))
