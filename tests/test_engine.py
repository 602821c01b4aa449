"""Tests for retrieval ranking, the attention budget and severity inference."""

import pytest

from brain_memory.config import EngineConfig
from brain_memory.engine import format_injection, infer_severity, retrieve_memories, run_attention_filter
from brain_memory.memory_types import BrainState, MemoryTrace
from brain_memory.tokenizer import build_tag_index


@pytest.mark.unit
class TestRetrieveMemories:

    @pytest.mark.parametrize("query", ["", "anything at all", "deploy to production"])
    def test_empty_record_set(self, query, now):
        result = retrieve_memories(query, ['git'], [], now=now)
        assert result.ranked == []
        assert result.truncated is False

    def test_matches_by_tag(self, make_record, now):
        stripe = make_record(title="Webhooks retry", tags=['stripe'])
        docker = make_record(title="Image size", tags=['docker'])

        result = retrieve_memories("stripe webhook failing", [], [stripe, docker], now=now)

        assert result.memory_ids == [stripe.id]
        assert result.ranked[0].source == 'direct'
        assert result.ranked[0].matched_tags == ['stripe']
        assert result.ranked[0].score == 1.0

    def test_matches_by_text_token(self, make_record, now):
        record = make_record(title="Stripe webhook retries")
        result = retrieve_memories("webhook failing", [], [record], now=now)
        assert result.memory_ids == [record.id]
        assert result.ranked[0].score == 0.25

    def test_short_query_still_matches_recent_tags(self, make_record, now):
        docker = make_record(title="Image size", tags=['docker'])
        other = make_record(title="Unrelated", tags=['git'])

        result = retrieve_memories("the", ['Docker'], [docker, other], now=now)

        assert result.memory_ids == [docker.id]
        assert result.ranked[0].score == 0.5

    def test_no_match(self, make_record, now):
        result = retrieve_memories("completely unrelated words", [], [make_record(tags=['git'])], now=now)
        assert result.ranked == []
        assert result.truncated is False

    def test_fuzzy_fallback_when_nothing_tagged(self, make_record, now):
        title_hit = make_record(title="Sidebar overflow clipped", tags=['layout'])
        rule_hit = make_record(rule="Use grid, not floats")
        content_hit = make_record(content="Panel heights are recomputed on resize")
        miss = make_record(title="Release checklist")

        result = retrieve_memories(
            "weird flow float recompute", [], [title_hit, rule_hit, content_hit, miss], now=now,
        )

        assert result.memory_ids == [title_hit.id, rule_hit.id, content_hit.id]
        assert [sm.score for sm in result.ranked] == [1.0, 0.8, 0.5]
        assert {sm.source for sm in result.ranked} == {'fuzzy'}
        assert result.matched_tags == ['layout']

    def test_fuzzy_skips_short_words(self, make_record, now):
        record = make_record(title="Sidebar overflow clipped", content="The flow breaks")
        assert retrieve_memories("odd low flo", [], [record], now=now).ranked == []

    def test_no_fuzzy_when_a_tag_matches(self, make_record, now):
        tagged = make_record(tags=['git'])
        untagged = make_record(title="Sidebar overflow clipped")

        result = retrieve_memories("git flow trouble", [], [tagged, untagged], now=now)

        assert result.memory_ids == [tagged.id]
        assert result.ranked[0].source == 'direct'

    def test_wins_surface_alongside_pain(self, make_record, now):
        pain = make_record(type='pain', tags=['deploy'], severity='high')
        win = make_record(type='win', tags=['deploy'])

        result = retrieve_memories("", ['deploy'], [pain, win], now=now)

        assert result.memory_ids == [pain.id, win.id]
        assert f"- [WIN] #{win.id}: {win.title}" in result.injection_text

    def test_severity_outranks(self, make_record, now):
        low = make_record(tags=['git'], severity='low')
        high = make_record(tags=['git'], severity='high')
        medium = make_record(tags=['git'], severity='medium')

        result = retrieve_memories("", ['git'], [low, high, medium], now=now)

        assert result.memory_ids == [high.id, medium.id, low.id]

    def test_ties_prefer_newer(self, make_record, now, days_ago):
        old = make_record(tags=['git'], created_at=days_ago(10), last_accessed=now.isoformat())
        new = make_record(tags=['git'], created_at=days_ago(1), last_accessed=now.isoformat())

        result = retrieve_memories("", ['git'], [old, new], now=now)

        assert result.ranked[0].score == result.ranked[1].score
        assert result.memory_ids == [new.id, old.id]

    def test_stale_memories_score_lower(self, make_record, now, days_ago):
        stale = make_record(tags=['git'], created_at=days_ago(30))
        fresh = make_record(tags=['git'], created_at=days_ago(30), last_accessed=now.isoformat())

        result = retrieve_memories("", ['git'], [stale, fresh], config=EngineConfig(decay_threshold_days=30), now=now)

        assert result.memory_ids == [fresh.id, stale.id]
        assert result.ranked[1].score == pytest.approx(0.5 * 0.75)

    def test_synaptic_strength_from_brain_state(self, make_record, now):
        a = make_record(tags=['git'])
        b = make_record(tags=['git'])
        state = BrainState(
            session_start=now.isoformat(),
            memory_traces={b.id: MemoryTrace(count=4, last_accessed=now.isoformat(), synaptic_strength=1.5)},
        )

        result = retrieve_memories("", ['git'], [a, b], brain_state=state, now=now)

        assert result.memory_ids == [b.id, a.id]
        assert result.ranked[0].score == pytest.approx(0.75)

    def test_associative_chaining(self, make_record, now):
        direct = make_record(title="Refund flow", tags=['stripe', 'webhooks'])
        neighbour = make_record(title="Signature check", tags=['webhooks'])

        result = retrieve_memories("stripe refund broke", [], [direct, neighbour], now=now)

        sources = {sm.memory.id: sm.source for sm in result.ranked}
        assert sources == {direct.id: 'direct', neighbour.id: 'associative'}
        assert 'webhooks' in result.matched_tags

    def test_attention_budget_truncates(self, make_record, now):
        records = [make_record(tags=['git']) for _ in range(7)]

        early = retrieve_memories("", ['git'], records, now=now)
        assert len(early.ranked) == 5
        assert early.truncated is True
        assert early.context_phase == 'early'

        late_state = BrainState(session_start=now.isoformat(), message_count=45, context_phase='late')
        late = retrieve_memories("", ['git'], records, brain_state=late_state, now=now)
        assert len(late.ranked) == 2
        assert late.context_phase == 'late'

    def test_budget_not_hit(self, make_record, now):
        result = retrieve_memories("", ['git'], [make_record(tags=['git'])], now=now)
        assert result.truncated is False

    def test_relevance_gate(self, make_record, now, days_ago):
        ancient = make_record(type='fact', tags=['git'], created_at=days_ago(400))
        recent = make_record(type='fact', tags=['git'])

        gated = retrieve_memories("", ['git'], [ancient, recent], config=EngineConfig(min_relevance=0.3), now=now)
        ungated = retrieve_memories("", ['git'], [ancient, recent], now=now)

        assert gated.memory_ids == [recent.id]
        assert len(ungated.ranked) == 2

    def test_stale_index_entries_ignored(self, make_record, now):
        kept = make_record(tags=['git'])
        gone = make_record(tags=['git'])
        index = build_tag_index([kept, gone])

        result = retrieve_memories("", ['git'], [kept], tag_index=index, now=now)

        assert result.memory_ids == [kept.id]

    def test_hot_tags(self, make_record, now):
        record = make_record(tags=['stripe'])
        state = BrainState(session_start=now.isoformat(), firing_frequency={'stripe': 2})

        result = retrieve_memories("", ['stripe'], [record], brain_state=state, now=now)

        assert result.hot_tags == ['stripe']
        assert "PATTERN DETECTED" in result.injection_text

    def test_injection_text(self, make_record, now):
        record = make_record(title="Never force-push main", rule="Open a PR instead", tags=['git'])

        result = retrieve_memories("deploy after the merge", [], [record], now=now)

        lines = result.injection_text.splitlines()
        assert lines[0] == "WARNING: DEPLOYMENT detected - check deployment memories"
        assert f"- [PAIN] #{record.id}: Never force-push main" in lines
        assert "  -> Open a PR instead" in lines


@pytest.mark.unit
class TestHelpers:

    def test_attention_filter_first_match(self):
        patterns = {'deploy': 'deploying', 'production': 'prod'}
        assert run_attention_filter("Deploy to production", patterns) == {'type': 'deploy', 'message': 'deploying'}
        assert run_attention_filter("refactor tests", patterns) is None

    def test_format_empty_result(self, now):
        assert format_injection(retrieve_memories("", [], [], now=now)) == ''

    @pytest.mark.parametrize("content, rule, expected", [
        ("This broke production for hours", "", 'high'),
        ("Rotate the secret", "", 'high'),
        ("A subtle gotcha in the parser", "", 'medium'),
        ("Renamed a variable", "be careful", 'medium'),
        ("Renamed a variable", "", 'low'),
        ("Welcome to neverland, brokers", "", 'low'),
        ("Risk of data loss on rollback", "", 'high'),
    ])
    def test_infer_severity(self, content, rule, expected):
        assert infer_severity(content, rule) == expected
