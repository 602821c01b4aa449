"""Tests for the file-backed record store and brain state store."""

import json
from dataclasses import replace

import pytest

from brain_memory.errors import MemoryCorruptionError
from brain_memory.memory_store import MemoryStore, parse_memory_file
from brain_memory.memory_types import BrainState, MemoryTrace, TagActivity

PROJECT = "demo-project"


@pytest.mark.integration
class TestMemoryStoreCrud:

    def test_round_trip_is_lossless(self, store, make_record):
        record = make_record(
            title="Windows paths: use pathlib",
            content="Line one\n\n  indented: yes\n--- not frontmatter\n",
            rule="Never build paths with '+'",
            tags=['windows', 'paths'],
            severity='medium',
        )

        memory_id = store.create(record)

        assert memory_id == record.id
        assert store.get_by_id(memory_id) == record

    def test_file_layout(self, store, make_record, tmp_path):
        record = make_record(type='win')
        store.create(record)

        path = tmp_path / PROJECT / "memories" / f"win-{record.id}.md"
        metadata, body = parse_memory_file(path)
        assert metadata['title'] == record.title
        assert 'content' not in metadata
        assert body == record.content

    def test_generates_id_and_infers_severity(self, store, make_record):
        memory_id = store.create(make_record(id='', severity=None, content="This broke production"))

        stored = store.get_by_id(memory_id)
        assert len(memory_id) == 8
        assert stored.severity == 'high'

    def test_pluggable_severity_classifier(self, tmp_path, make_record):
        store = MemoryStore(tmp_path, PROJECT, severity_classifier=lambda content, rule='': 'medium')
        memory_id = store.create(make_record(severity=None))
        assert store.get_by_id(memory_id).severity == 'medium'

    def test_rejects_other_project(self, store, make_record):
        with pytest.raises(ValueError, match="project"):
            store.create(make_record(project_id='someone-else'))

    def test_rejects_duplicate_id(self, store, make_record):
        record = make_record()
        store.create(record)
        with pytest.raises(ValueError, match="already exists"):
            store.create(record)

    def test_id_suffix_does_not_alias_another_record(self, store, make_record):
        longer = make_record(id='x-a', title="Longer id")
        store.create(longer)

        assert store.get_by_id('a') is None
        assert store.update('a', {'title': "Changed"}) is None

        shorter = make_record(id='a', type='win', title="Short id")
        store.create(shorter)

        assert store.get_by_id('a') == shorter
        assert store.get_by_id('x-a') == longer
        assert store.update('a', {'title': "Changed"}).title == "Changed"
        assert store.get_by_id('x-a').title == "Longer id"
        assert {r.id for r in store.list_all()} == {'x-a', 'a'}

    def test_rejects_invalid_type(self, store, make_record):
        with pytest.raises(ValueError, match="type"):
            store.create(make_record(type='rumour'))

    def test_missing_store_is_empty(self, store, tmp_path):
        assert store.list_all() == []
        assert store.get_by_id('nope') is None
        assert not (tmp_path / PROJECT).exists()

    def test_list_all_oldest_first(self, store, make_record, days_ago):
        newer = make_record(created_at=days_ago(1))
        older = make_record(created_at=days_ago(5))
        store.create(newer)
        store.create(older)

        assert [r.id for r in store.list_all()] == [older.id, newer.id]


@pytest.mark.integration
class TestMemoryStoreUpdate:

    def test_update_merges_and_persists(self, store, make_record):
        record = make_record(tags=['git'])
        store.create(record)

        updated = store.update(record.id, {'title': "Rebase, don't merge", 'tags': ['Git', 'rebase']})

        assert updated.title == "Rebase, don't merge"
        assert updated.tags == ['git', 'rebase']
        assert store.get_by_id(record.id) == updated

    def test_update_unknown_id(self, store):
        assert store.update('missing', {'title': "x"}) is None

    @pytest.mark.parametrize("field_name", ['id', 'project_id', 'created_at'])
    def test_immutable_fields_rejected(self, store, make_record, field_name):
        record = make_record()
        store.create(record)
        with pytest.raises(ValueError, match="immutable"):
            store.update(record.id, {field_name: 'x'})

    def test_trace_fields_rejected(self, store, make_record):
        record = make_record()
        store.create(record)
        with pytest.raises(ValueError, match="sync_traces"):
            store.update(record.id, {'synaptic_strength': 1.5})

    def test_unknown_field_rejected(self, store, make_record):
        record = make_record()
        store.create(record)
        with pytest.raises(ValueError, match="unknown"):
            store.update(record.id, {'colour': 'red'})

    def test_invalid_value_leaves_record_untouched(self, store, make_record):
        record = make_record()
        store.create(record)
        with pytest.raises(ValueError):
            store.update(record.id, {'severity': 'apocalyptic'})
        assert store.get_by_id(record.id) == record

    def test_type_change_moves_file(self, store, make_record, tmp_path):
        record = make_record(type='pain')
        store.create(record)

        store.update(record.id, {'type': 'win'})

        directory = tmp_path / PROJECT / "memories"
        assert not (directory / f"pain-{record.id}.md").exists()
        assert (directory / f"win-{record.id}.md").exists()
        assert len(store.list_all()) == 1

    def test_rewrite_keeps_backup(self, store, make_record, tmp_path):
        record = make_record()
        store.create(record)
        store.update(record.id, {'title': "Second title"})

        backup = tmp_path / PROJECT / "memories" / f"pain-{record.id}.md.backup"
        assert backup.exists()
        assert record.title in backup.read_text(encoding='utf-8')


@pytest.mark.integration
class TestMemoryStoreCorruption:

    def _memories_dir(self, tmp_path):
        directory = tmp_path / PROJECT / "memories"
        directory.mkdir(parents=True)
        return directory

    def test_missing_frontmatter(self, store, tmp_path):
        bad = self._memories_dir(tmp_path) / "pain-deadbeef.md"
        bad.write_text("just some text", encoding='utf-8')

        with pytest.raises(MemoryCorruptionError) as excinfo:
            store.list_all()
        assert excinfo.value.path == bad

    def test_invalid_fields(self, store, tmp_path):
        bad = self._memories_dir(tmp_path) / "pain-deadbeef.md"
        bad.write_text(
            f"---\nid: deadbeef\nproject_id: {PROJECT}\ntype: pain\nseverity: low\n---\n\nbody",
            encoding='utf-8',
        )

        with pytest.raises(MemoryCorruptionError, match="title"):
            store.get_by_id('deadbeef')

    def test_invalid_yaml(self, store, tmp_path):
        bad = self._memories_dir(tmp_path) / "pain-deadbeef.md"
        bad.write_text("---\ntitle: [unclosed\n---\n\nbody", encoding='utf-8')

        with pytest.raises(MemoryCorruptionError):
            store.list_all()


@pytest.mark.integration
class TestCaptureAndTags:

    def test_capture_infers_tags_and_severity(self, store):
        record = store.capture('pain', "Stripe webhook timeout", content="Payment retries piled up")

        assert {'stripe', 'payments'} <= set(record.tags)
        assert record.severity == 'low'
        assert record.synaptic_strength == 1.0
        assert store.get_by_id(record.id) == record

    def test_capture_keeps_explicit_tags(self, store):
        record = store.capture('fact', "CI runs on Node 20", tags=['ci', 'node'], severity='low')
        assert record.tags == ['ci', 'node']

    def test_capture_returns_existing_duplicate(self, store):
        first = store.capture('pain', "Stripe webhook timeout", content="Payment retries piled up")
        again = store.capture('pain', "Stripe webhook timeout!", content="Payment retries piled up.")

        assert again == first
        assert len(store.list_all()) == 1

    def test_capture_dedupe_can_be_disabled(self, store):
        store.capture('fact', "CI runs on Node 20", tags=['ci', 'node'])
        store.capture('fact', "CI runs on Node 20", tags=['ci', 'node'], dedupe=False)
        assert len(store.list_all()) == 2

    def test_capture_distinct_memories_both_stored(self, store):
        store.capture('fact', "CI runs on Node 20", tags=['ci', 'node'])
        store.capture('fact', "Docker images use Alpine", tags=['docker'])
        assert len(store.list_all()) == 2

    def test_find_by_tag_and_list_tags(self, store, make_record):
        store.create(make_record(tags=['git', 'ci']))
        store.create(make_record(tags=['git']))
        store.create(make_record(tags=['docker']))

        assert len(store.find_by_tag('GIT')) == 2
        assert store.list_tags() == {'git': 2, 'ci': 1, 'docker': 1}
        assert next(iter(store.list_tags())) == 'git'

    def test_sync_traces(self, store, make_record, now):
        tracked = make_record()
        untracked = make_record()
        store.create(tracked)
        store.create(untracked)
        state = BrainState(
            session_start=now.isoformat(),
            memory_traces={tracked.id: MemoryTrace(count=3, last_accessed=now.isoformat(), synaptic_strength=1.3)},
        )

        assert store.sync_traces(state) == 1
        assert store.sync_traces(state) == 0

        synced = store.get_by_id(tracked.id)
        assert (synced.access_count, synced.last_accessed, synced.synaptic_strength) == (3, now.isoformat(), 1.3)
        assert store.get_by_id(untracked.id) == untracked


@pytest.mark.integration
class TestBrainStateStore:

    def test_absent_state(self, state_store):
        assert state_store.load() is None
        assert state_store.recovered is False

    def test_round_trip(self, state_store, now):
        stamp = now.isoformat()
        state = BrainState(
            session_start=stamp,
            message_count=7,
            synaptic_activity={'git': TagActivity(count=3, last_hit=stamp)},
            firing_frequency={'git': 2},
            memory_traces={'abc': MemoryTrace(count=2, last_accessed=stamp, synaptic_strength=1.25)},
            active_traces=['abc'],
        )

        state_store.save(state)

        assert state_store.load() == state

    def test_corrupt_file_falls_back_to_backup(self, state_store, now):
        first = BrainState(session_start=now.isoformat(), message_count=1)
        state_store.save(first)
        state_store.save(replace(first, message_count=2))
        state_store.path.write_text("{not json", encoding='utf-8')

        assert state_store.load() == first
        assert state_store.recovered is True

    def test_corrupt_without_backup_degrades_to_none(self, state_store):
        state_store.path.parent.mkdir(parents=True)
        state_store.path.write_text('{"session_start": "yesterday"}', encoding='utf-8')

        assert state_store.load() is None
        assert state_store.recovered is True

    def test_dangling_active_trace_is_corruption(self, state_store, now):
        state_store.path.parent.mkdir(parents=True)
        state_store.path.write_text(
            f'{{"session_start": "{now.isoformat()}", "active_traces": ["ghost"]}}',
            encoding='utf-8',
        )

        assert state_store.load() is None
        assert state_store.recovered is True

    @pytest.mark.parametrize("field_name, value", [
        ('synaptic_activity', []),
        ('memory_traces', "oops"),
        ('firing_frequency', [1]),
        ('memory_traces', {'abc': 3}),
        ('synaptic_activity', {'git': "hot"}),
        ('expectations', []),
        ('expectations', {'frequencies': []}),
        ('expectations', {'frequencies': {'error::X': "often"}}),
    ])
    def test_wrongly_shaped_state_is_corruption(self, state_store, now, field_name, value):
        data = BrainState(session_start=now.isoformat()).to_dict()
        data[field_name] = value
        state_store.path.parent.mkdir(parents=True)
        state_store.path.write_text(json.dumps(data), encoding='utf-8')

        assert state_store.load() is None
        assert state_store.recovered is True

    def test_recovered_resets_on_next_load(self, state_store, now):
        state_store.path.parent.mkdir(parents=True)
        state_store.path.write_text("{not json", encoding='utf-8')
        assert state_store.load() is None
        assert state_store.recovered is True

        state = BrainState(session_start=now.isoformat())
        state_store.save(state)

        assert state_store.load() == state
        assert state_store.recovered is False
