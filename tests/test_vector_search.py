"""Tests for vector search ranking, thresholds and metadata filters."""

from datetime import datetime, timezone

import pytest

from conftest import unit_vector

from callinsights.enrichment.hashing import ContentType, hash_content
from callinsights.errors import DimensionMismatchError
from callinsights.search.vector_search import VectorSearchEngine, build_search_metadata, matches_filters
from callinsights.server.models import CacheEntry, Call, SearchFilters

QUERY = [1.0, 0.0]


def _store(cache, entity_id, vector, model="fake-embedding", **metadata):
    cache.upsert(
        CacheEntry(
            entity_id=entity_id,
            content_type=ContentType.TRANSCRIPT_FOR_EMBEDDING,
            model=model,
            model_version=str(len(vector)),
            content_hash=hash_content(entity_id, ContentType.TRANSCRIPT_FOR_EMBEDDING),
            artifact=vector,
            metadata=metadata,
        )
    )


@pytest.fixture
def engine(cache):
    return VectorSearchEngine(cache)


@pytest.fixture
def ranked(cache):
    _store(cache, "call-b", unit_vector(0.71))
    _store(cache, "call-a", unit_vector(0.92))
    _store(cache, "call-c", unit_vector(0.40))
    return ["call-a", "call-b", "call-c"]


class TestRanking:
    def test_threshold_and_limit(self, engine, ranked):
        matches = engine.search(QUERY, ranked, limit=2, threshold=0.7)

        assert [m.entity_id for m in matches] == ["call-a", "call-b"]
        assert matches[0].similarity == pytest.approx(0.92)
        assert matches[1].similarity == pytest.approx(0.71)

    def test_below_threshold_excluded(self, engine, ranked):
        matches = engine.search(QUERY, ranked, limit=10, threshold=0.7)

        assert "call-c" not in [m.entity_id for m in matches]

    def test_low_threshold_returns_all_in_order(self, engine, ranked):
        matches = engine.search(QUERY, ranked, limit=10, threshold=0.0)

        assert [m.entity_id for m in matches] == ["call-a", "call-b", "call-c"]

    def test_only_accessible_calls(self, engine, ranked):
        matches = engine.search(QUERY, ["call-b", "call-c"], threshold=0.0)

        assert [m.entity_id for m in matches] == ["call-b", "call-c"]

    def test_limit_capped(self, cache, ranked):
        engine = VectorSearchEngine(cache, max_limit=1)

        assert len(engine.search(QUERY, ranked, limit=50, threshold=0.0)) == 1

    def test_other_models_ignored(self, engine, cache, ranked):
        _store(cache, "call-d", [1.0, 0.0, 0.0], model="other-model")

        matches = engine.search(QUERY, ranked + ["call-d"], threshold=0.0, model="fake-embedding")
        assert len(matches) == 3

    def test_zero_vector_is_dissimilar(self, engine, cache):
        _store(cache, "call-z", [0.0, 0.0])

        assert engine.search(QUERY, ["call-z"], threshold=0.0)[0].similarity == 0.0
        assert engine.search(QUERY, ["call-z"], threshold=0.1) == []


class TestEdgeCases:
    def test_no_candidates(self, engine):
        assert engine.search(QUERY, ["call-a"]) == []

    def test_no_candidates_even_with_other_dimension(self, engine):
        assert engine.search([1.0, 0.0, 0.0], []) == []

    def test_dimension_mismatch(self, engine, ranked):
        with pytest.raises(DimensionMismatchError) as exc_info:
            engine.search([1.0, 0.0, 0.0], ranked)

        assert exc_info.value.expected == 2
        assert exc_info.value.actual == 3


class TestFilters:
    @pytest.fixture
    def tagged(self, cache):
        _store(cache, "neg-flagged", unit_vector(0.95), sentiment="negative", has_red_flags=True, outcome="escalated")
        _store(cache, "neg-clean", unit_vector(0.94), sentiment="negative", has_red_flags=False, outcome="resolved")
        _store(cache, "pos-flagged", unit_vector(0.93), sentiment="positive", has_red_flags=True, outcome="resolved")
        return ["neg-flagged", "neg-clean", "pos-flagged"]

    def test_filters_are_conjunctive(self, engine, tagged):
        filters = SearchFilters(sentiment=["negative"], has_red_flags=True)

        matches = engine.search(QUERY, tagged, filters=filters, threshold=0.5)
        assert [m.entity_id for m in matches] == ["neg-flagged"]

    def test_set_membership(self, engine, tagged):
        filters = SearchFilters(outcome=["resolved", "escalated"], has_red_flags=True)

        matches = engine.search(QUERY, tagged, filters=filters, threshold=0.5)
        assert [m.entity_id for m in matches] == ["neg-flagged", "pos-flagged"]

    def test_empty_filters_match_everything(self, engine, tagged):
        assert len(engine.search(QUERY, tagged, filters=SearchFilters(), threshold=0.5)) == 3

    def test_date_and_duration_ranges(self):
        metadata = {"call_time": "2024-03-10T09:30:00", "duration_seconds": 120}

        assert matches_filters(metadata, SearchFilters(date_from=datetime(2024, 3, 1), date_to=datetime(2024, 3, 31)))
        assert not matches_filters(metadata, SearchFilters(date_from=datetime(2024, 4, 1)))
        assert matches_filters(metadata, SearchFilters(min_duration=60, max_duration=180))
        assert not matches_filters(metadata, SearchFilters(max_duration=90))
        # Missing values never satisfy a range
        assert not matches_filters({}, SearchFilters(min_duration=1))

    def test_offset_aware_filter_dates(self):
        metadata = {"call_time": "2024-05-01T10:00:00"}

        assert matches_filters(metadata, SearchFilters.from_dict({"date_from": "2024-01-01T00:00:00+00:00"}))
        assert not matches_filters(metadata, SearchFilters.from_dict({"date_to": "2024-01-01T00:00:00+00:00"}))

    def test_offset_aware_call_time(self):
        metadata = {"call_time": "2024-05-01T10:00:00+02:00"}

        assert matches_filters(metadata, SearchFilters(date_from=datetime(2024, 4, 1), date_to=datetime(2024, 6, 1)))
        assert not matches_filters(metadata, SearchFilters(date_from=datetime(2024, 6, 1)))

    def test_aware_dates_become_naive_local_time(self):
        filters = SearchFilters.from_dict({"date_from": "2024-01-01T12:00:00+00:00"})
        expected = datetime(2024, 1, 1, 12, tzinfo=timezone.utc).astimezone().replace(tzinfo=None)

        assert filters.date_from.tzinfo is None
        assert filters.date_from == expected

    @pytest.mark.parametrize("value", ["false", 0, "yes"])
    def test_flag_filters_must_be_booleans(self, value):
        with pytest.raises(ValueError):
            SearchFilters.from_dict({"has_red_flags": value})

    def test_language_and_action_items(self):
        metadata = {"language": "es", "has_action_items": False}

        assert matches_filters(metadata, SearchFilters(language=["es", "en"]))
        assert not matches_filters(metadata, SearchFilters(language=["en"]))
        assert not matches_filters(metadata, SearchFilters(has_action_items=True))

    def test_filters_from_request_dict(self):
        filters = SearchFilters.from_dict({"sentiment": ["negative"], "date_from": "2024-01-01", "has_red_flags": True})

        assert filters.sentiment == ["negative"]
        assert filters.date_from == datetime(2024, 1, 1)
        assert filters.has_red_flags is True
        assert filters.outcome == []


def test_build_search_metadata():
    call = Call(
        id="call-1",
        owner_id="user-1",
        created_at=datetime(2024, 3, 10, 9, 0),
        call_time=datetime(2024, 3, 10, 9, 0),
        duration_seconds=75.0,
        language="en",
    )
    insights = {
        "summary": {"outcome": "callback_needed"},
        "sentiment": {"overall": "neutral"},
        "red_flags": ["Mentioned a lawyer"],
        "action_items": [],
    }

    metadata = build_search_metadata(call, insights)

    assert metadata == {
        "sentiment": "neutral",
        "outcome": "callback_needed",
        "has_red_flags": True,
        "has_action_items": False,
        "duration_seconds": 75.0,
        "call_time": "2024-03-10T09:00:00",
        "language": "en",
    }
    assert build_search_metadata(call)["sentiment"] is None
