"""Tests for field conflict resolution."""

from dataclasses import replace
from datetime import UTC, datetime

import pytest

from eventdedup.models.event import EventRecord
from eventdedup.models.results import ConflictRule, ConflictStrategy, DataSource
from eventdedup.resolver import (
    ConflictResolver,
    FieldCandidate,
    RuleBook,
    SourceRegistry,
    completeness,
    is_empty,
    is_valid_url,
    value_quality,
)


@pytest.fixture
def resolver():
    return ConflictResolver()


def candidates(*pairs):
    """Build candidates from (value, source) pairs."""
    return [FieldCandidate(value, None, source) for value, source in pairs]


class TestHelpers:
    """Tests for value helpers."""

    def test_is_empty(self):
        assert is_empty(None)
        assert is_empty("   ")
        assert is_empty(float("nan"))
        assert is_empty([])
        assert not is_empty(0)
        assert not is_empty("x")

    def test_is_valid_url(self):
        assert is_valid_url("https://opera-marseille.com/concert")
        assert not is_valid_url("opera-marseille")
        assert not is_valid_url(None)

    def test_value_quality_strings(self):
        assert value_quality("Jazz Night at Blue Note", "title") == 1.0
        assert value_quality("test", "title") == pytest.approx(0.54)
        assert value_quality("https://x.com", "website_url") == 1.0
        assert value_quality("not a url", "website_url") == pytest.approx(0.59)

    def test_value_quality_numbers(self):
        assert value_quality(43.3, "latitude") == 1.0
        assert value_quality(120.0, "latitude") == pytest.approx(0.8)
        assert value_quality(-5.0, "price_min") == pytest.approx(0.8)

    def test_value_quality_other_types(self):
        assert value_quality(["a", "b"], "tags") == pytest.approx(0.7)
        assert value_quality(datetime(2025, 3, 1), "start_time") == 0.8
        assert value_quality(None, "title") == 0.0

    def test_completeness(self):
        assert completeness("x" * 50) == 0.5
        assert completeness(["a"] * 20) == 1.0
        assert completeness(0) == 0.0
        assert completeness(25.0) == 0.8


class TestSourceRegistry:
    """Tests for SourceRegistry."""

    def test_builtin_sources(self):
        registry = SourceRegistry()
        assert registry.get("eventbrite").reliability == 0.88
        assert "google_places" in registry

    def test_unknown_source_is_neutral(self):
        source = SourceRegistry().get("shotgun")
        assert source.reliability == 0.5
        assert source.data_quality == 0.5

    def test_register_and_update(self):
        registry = SourceRegistry(include_builtin=False)
        registry.register(DataSource(name="shotgun", reliability=0.6))
        updated = registry.update("shotgun", reliability=0.9)
        assert updated.reliability == 0.9
        assert registry.get("shotgun").reliability == 0.9

    def test_update_unknown_raises(self):
        with pytest.raises(KeyError):
            SourceRegistry().update("nowhere", reliability=0.9)

    def test_by_reliability(self):
        assert SourceRegistry().by_reliability()[0] == "manual"


class TestRuleBook:
    """Tests for RuleBook."""

    def test_builtin_rule(self):
        rule = RuleBook().get("title")
        assert rule.strategy is ConflictStrategy.HIGHEST_QUALITY
        assert rule.priority == 10

    def test_default_rule(self):
        rule = RuleBook().get("currency")
        assert rule.strategy is ConflictStrategy.PRIMARY_WINS
        assert rule.priority == 5

    def test_update_accepts_strategy_name(self):
        rules = RuleBook()
        rule = rules.update("category", strategy="most_complete", priority=3)
        assert rule.strategy is ConflictStrategy.MOST_COMPLETE
        assert rules.get("category").priority == 3


class TestResolveField:
    """Tests for ConflictResolver.resolve_field."""

    def test_all_empty(self, resolver):
        resolution = resolver.resolve_field("price_min", candidates((None, "primary"), ("", "x")))
        assert resolution.resolved_value is None
        assert resolution.confidence == 0.0
        assert resolution.needs_manual_review is False

    def test_single_value_blue_note_price(self, resolver, blue_note_a, blue_note_b):
        resolution = resolver.resolve_field(
            "price_min",
            [
                FieldCandidate(blue_note_a.price_min, blue_note_a, "primary"),
                FieldCandidate(blue_note_b.price_min, blue_note_b, "eventbrite"),
            ],
        )
        assert resolution.resolved_value == 25.0
        assert resolution.strategy is ConflictStrategy.MOST_COMPLETE
        expected = resolver.value_confidence(25.0, "price_min", resolver.sources.get("eventbrite"))
        assert resolution.confidence == pytest.approx(expected)
        assert resolution.confidence == pytest.approx(0.88 * 0.7 + 1.0 * 0.3)
        assert resolution.needs_manual_review is False

    def test_single_low_confidence_value_needs_review(self, resolver):
        resolution = resolver.resolve_field("title", candidates(("test", "unknown-site")))
        assert resolution.resolved_value == "test"
        assert resolution.needs_manual_review is True

    def test_skips_nan(self, resolver):
        resolution = resolver.resolve_field(
            "latitude", candidates((float("nan"), "primary"), (43.3, "google_places"))
        )
        assert resolution.resolved_value == 43.3
        assert len(resolution.values) == 1

    def test_primary_wins(self, resolver):
        resolution = resolver.resolve_field(
            "status", candidates(("confirmed", "eventbrite"), ("cancelled", "primary"))
        )
        assert resolution.resolved_value == "cancelled"

    def test_latest_wins(self, resolver):
        older = EventRecord(id="a", updated_at=datetime(2025, 1, 1, tzinfo=UTC))
        newer = EventRecord(id="b", updated_at=datetime(2025, 2, 1))
        resolution = resolver.resolve_field(
            "start_time",
            [
                FieldCandidate(datetime(2025, 3, 1, 20), older, "primary"),
                FieldCandidate(datetime(2025, 3, 1, 21), newer, "eventbrite"),
            ],
        )
        assert resolution.resolved_value == datetime(2025, 3, 1, 21)

    def test_latest_wins_without_timestamps_keeps_first(self, resolver):
        resolution = resolver.resolve_field(
            "start_time",
            candidates((datetime(2025, 3, 1, 20), "primary"), (datetime(2025, 3, 1, 21), "x")),
        )
        assert resolution.resolved_value == datetime(2025, 3, 1, 20)

    def test_most_complete(self, resolver):
        resolution = resolver.resolve_field(
            "venue_name", candidates(("Blue Note", "primary"), ("Blue Note Jazz Club", "yelp"))
        )
        assert resolution.resolved_value == "Blue Note Jazz Club"

    def test_highest_quality_prefers_listed_source(self, resolver):
        resolution = resolver.resolve_field(
            "latitude", candidates((40.7001, "primary"), (40.7002, "google_places"))
        )
        assert resolution.resolved_value == 40.7002

    def test_highest_quality_tie_keeps_first(self, resolver):
        rule = ConflictRule(field="title", strategy=ConflictStrategy.HIGHEST_QUALITY)
        resolution = resolver.resolve_field(
            "title",
            candidates(("Jazz Night at Blue Note", "a"), ("Jazz Nite at the Blue Note", "b")),
            rule,
        )
        assert resolution.resolved_value == "Jazz Night at Blue Note"

    def test_disagreeing_high_quality_values_need_review(self, resolver):
        resolution = resolver.resolve_field(
            "title",
            candidates(
                ("Jazz Night at Blue Note", "primary"), ("Soirée Jazz au Blue Note", "yelp")
            ),
        )
        assert resolution.needs_manual_review is True

    def test_merge_values_tags(self, resolver):
        resolution = resolver.resolve_field(
            "tags", candidates((["Jazz", "live"], "primary"), (["jazz", "NYC"], "eventbrite"))
        )
        assert resolution.resolved_value == ["Jazz", "live", "NYC"]
        assert resolution.confidence <= 0.9

    def test_merge_values_counter(self, resolver):
        offered = candidates((10, "primary"), (5, "meetup"))
        resolution = resolver.resolve_field("view_count", offered)
        assert resolution.resolved_value == 15

    def test_manual_review_strategy(self, resolver):
        rule = ConflictRule(field="category", strategy=ConflictStrategy.MANUAL_REVIEW)
        resolution = resolver.resolve_field(
            "category", candidates(("music", "primary"), ("concert", "yelp")), rule
        )
        assert resolution.needs_manual_review is True

    def test_deterministic(self, resolver):
        offered = candidates(("Blue Note", "primary"), ("The Blue Note NYC", "yelp"))
        first = resolver.resolve_field("venue_name", offered)
        second = resolver.resolve_field("venue_name", offered)
        assert first.resolved_value == second.resolved_value
        assert first.confidence == second.confidence

    def test_records_history(self, resolver):
        resolver.resolve_field("title", candidates(("Jazz Night", "primary")))
        resolver.resolve_field("title", candidates(("Jazz Night", "primary")))
        assert len(resolver.history.get("title")) == 2

    def test_source_timestamp_from_registry(self):
        registry = SourceRegistry()
        registry.update("eventbrite", last_updated=datetime(2025, 5, 1, tzinfo=UTC))
        resolver = ConflictResolver(sources=registry)
        resolution = resolver.resolve_field(
            "start_time",
            candidates(
                (datetime(2025, 3, 1, 20), "primary"), (datetime(2025, 3, 1, 21), "eventbrite")
            ),
        )
        assert resolution.resolved_value == datetime(2025, 3, 1, 21)


class TestResolveBatch:
    """Tests for resolve_batch and statistics."""

    def test_resolves_fields_with_several_values(self, resolver, blue_note_a, blue_note_b):
        resolutions = resolver.resolve_batch(
            [blue_note_a, blue_note_b], ["title", "venue_name", "price_min"]
        )
        assert set(resolutions) == {"title", "venue_name"}

    def test_resolution_stats(self, resolver, blue_note_a, blue_note_b):
        resolver.resolve_batch([blue_note_a, blue_note_b], ["title", "venue_name"])
        stats = resolver.get_resolution_stats()
        assert stats["total_resolutions"] == 2
        assert stats["strategy_counts"] == {"highest_quality": 1, "most_complete": 1}
        assert set(stats["field_stats"]) == {"title", "venue_name"}

    def test_empty_stats(self, resolver):
        stats = resolver.get_resolution_stats()
        assert stats["total_resolutions"] == 0
        assert stats["manual_review_rate"] == 0.0

    def test_clear_history(self, resolver, concert):
        resolver.resolve_batch([concert, replace(concert, id="x")], ["title"])
        resolver.clear_history()
        assert resolver.get_resolution_stats()["total_resolutions"] == 0
