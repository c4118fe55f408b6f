"""Tests for merge planning and execution."""

import threading
from dataclasses import replace
from datetime import UTC, datetime

import pytest

from eventdedup.config import DedupConfig, Quality
from eventdedup.merger import (
    MergeExecutor,
    MergePlanner,
    completeness_score,
    mergeable_fields,
    validate_merge_decision,
)
from eventdedup.models.event import EventRecord
from eventdedup.models.results import (
    ChangeSource,
    ConflictResolution,
    ConflictStrategy,
    MergeDecision,
    MergeStrategy,
)


@pytest.fixture
def planner(clock):
    return MergePlanner(clock=clock)


@pytest.fixture
def decision(planner, blue_note_a, blue_note_b):
    return planner.create_merge_decision(blue_note_a, [blue_note_b])


def resolution(field_name, value, confidence=0.9, review=False):
    return ConflictResolution(
        field=field_name,
        values=(),
        resolved_value=value,
        strategy=ConflictStrategy.PRIMARY_WINS,
        confidence=confidence,
        needs_manual_review=review,
    )


class TestCompleteness:
    """Tests for completeness_score."""

    def test_empty_record(self):
        assert completeness_score(EventRecord(id="x")) == 0.0
        assert completeness_score(None) == 0.0

    def test_weighted_share(self, concert):
        assert completeness_score(concert) == pytest.approx(79 / 97)

    def test_mergeable_fields_exclude_identity(self):
        fields = mergeable_fields()
        assert "id" not in fields
        assert "metadata" not in fields
        assert "title" in fields


class TestCreateMergeDecision:
    """Tests for MergePlanner.create_merge_decision."""

    def test_requires_duplicates(self, planner, blue_note_a):
        with pytest.raises(ValueError):
            planner.create_merge_decision(blue_note_a, [])

    def test_blue_note_merge(self, decision, clock):
        assert decision.primary_id == "a"
        assert decision.duplicate_ids == ("b",)
        assert decision.strategy is MergeStrategy.ENHANCE_PRIMARY
        assert decision.created_at == clock.now
        assert decision.preview.price_min == 25.0
        assert decision.preview.title == "Jazz Night at Blue Note"
        assert decision.preview.venue_name == "The Blue Note"

    def test_price_resolution_uses_most_complete(self, decision):
        price = decision.resolution_for("price_min")
        assert price.strategy is ConflictStrategy.MOST_COMPLETE
        assert price.resolved_value == 25.0
        assert price.confidence == pytest.approx(0.88 * 0.7 + 0.3)

    def test_fields_empty_everywhere_are_skipped(self, decision):
        assert decision.resolution_for("description") is None

    def test_preview_metadata(self, decision):
        metadata = decision.preview.metadata
        assert metadata["merged_from"] == ["b"]
        assert metadata["source_ids"] == {"primary": "a", "eventbrite": "b"}
        assert metadata["alternate_sources"] == ["eventbrite"]

    def test_inputs_untouched(self, planner, blue_note_a, blue_note_b):
        before_a, before_b = blue_note_a.to_dict(), blue_note_b.to_dict()
        planner.create_merge_decision(blue_note_a, [blue_note_b])
        assert blue_note_a.to_dict() == before_a
        assert blue_note_b.to_dict() == before_b

    def test_confidence_formula(self):
        resolutions = [
            resolution("title", 1, 1.0),
            resolution("start_time", 1, 0.8),
            resolution("description", 1, 0.3),
        ]
        average = (1.0 + 0.8 + 0.3) / 3
        important = (1.0 + 0.8) / 2
        assert MergePlanner.merge_confidence(resolutions) == pytest.approx(
            average * 0.6 + important * 0.4
        )
        assert MergePlanner.merge_confidence([]) == 0.0

    def test_reasons(self, decision):
        assert any("more complete data" in r for r in decision.reasons)


class TestMergeStrategies:
    """Tests for overall merge strategies."""

    def test_keep_primary(self, planner, blue_note_a, blue_note_b):
        decision = planner.create_merge_decision(
            blue_note_a, [blue_note_b], MergeStrategy.KEEP_PRIMARY
        )
        assert decision.preview.venue_name == "Blue Note"
        assert all(r.strategy is ConflictStrategy.PRIMARY_WINS for r in decision.resolutions)
        # A value only the duplicate has is still kept
        assert decision.preview.price_min == 25.0

    def test_merge_fields_unions_lists(self, planner, concert):
        other = replace(concert, id="c2", tags=["Jazz", "quartet"], source="eventbrite")
        decision = planner.create_merge_decision(concert, [other], MergeStrategy.MERGE_FIELDS)
        assert decision.preview.tags == ["jazz", "concert", "quartet"]

    def test_temporal_priority(self, planner, concert):
        newer = replace(
            concert,
            id="c2",
            category="jazz",
            source="eventbrite",
            updated_at=datetime(2026, 1, 20, tzinfo=UTC),
        )
        decision = planner.create_merge_decision(
            concert, [newer], MergeStrategy.TEMPORAL_PRIORITY
        )
        assert decision.preview.category == "jazz"

    def test_source_priority(self, planner, concert):
        other = replace(concert, id="c2", category="jazz", source="manual")
        decision = planner.create_merge_decision(concert, [other], MergeStrategy.SOURCE_PRIORITY)
        assert decision.preview.category == "jazz"


class TestValidateMergeDecision:
    """Tests for validate_merge_decision."""

    def test_valid(self, decision):
        result = validate_merge_decision(decision, DedupConfig())
        assert result.is_valid is True
        assert result.errors == []

    def test_no_duplicates(self, decision):
        result = validate_merge_decision(replace(decision, duplicate_ids=()), DedupConfig())
        assert result.is_valid is False
        assert "Merge decision has no duplicate events" in result.errors

    def test_empty_preview(self, decision):
        result = validate_merge_decision(
            replace(decision, preview=EventRecord(id="a")), DedupConfig()
        )
        assert result.is_valid is False
        assert "Merge preview is empty" in result.errors

    def test_warnings(self, decision):
        config = DedupConfig(quality=Quality(require_manual_review=True))
        flagged = replace(
            decision,
            confidence=0.2,
            resolutions=(resolution("title", "X", review=True),),
            preview=replace(decision.preview, start_time=None),
        )
        result = validate_merge_decision(flagged, config)
        assert result.is_valid is True
        assert len(result.warnings) == 3
        assert any("manual review" in w for w in result.warnings)
        assert any("start_time" in w for w in result.warnings)


class TestMergeExecutor:
    """Tests for MergeExecutor.execute_merge."""

    def test_successful_merge(self, decision):
        result = MergeExecutor().execute_merge(decision)
        assert result.success is True
        assert result.merged_record.id == "a"
        assert result.merged_record.price_min == 25.0
        assert result.merged_record.metadata["merged_from"] == ["b"]

        price = next(c for c in result.changes if c.field == "price_min")
        assert price.before is None
        assert price.after == 25.0
        assert price.source is ChangeSource.DUPLICATE

        title = next(c for c in result.changes if c.field == "title")
        assert title.source is ChangeSource.PRIMARY
        assert title.changed is False

    def test_rejects_invalid_decision(self, decision):
        result = MergeExecutor().execute_merge(replace(decision, duplicate_ids=()))
        assert result.success is False
        assert result.merged_record is None
        assert result.errors

    def test_out_of_range_coordinates(self, decision, blue_note_a):
        bad = replace(decision, resolutions=(resolution("latitude", 200.0),))
        result = MergeExecutor().execute_merge(bad)
        assert result.success is False
        assert "Latitude out of range" in result.errors[0]
        assert blue_note_a.latitude == 40.7

    def test_unknown_field_fails_without_raising(self, decision):
        bad = replace(decision, resolutions=(resolution("no_such_field", "x"),))
        result = MergeExecutor().execute_merge(bad)
        assert result.success is False
        assert "Merge execution failed" in result.errors[0]

    def test_serializes_merges_per_primary(self, decision):
        executor = MergeExecutor()
        results = []

        def run():
            results.append(executor.execute_merge(decision))

        threads = [threading.Thread(target=run) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert all(r.success for r in results)
        assert all(r.merged_record == results[0].merged_record for r in results)

    def test_change_source_merged(self):
        merged = ConflictResolution(
            field="tags",
            values=(),
            resolved_value=["a", "b"],
            strategy=ConflictStrategy.MERGE_VALUES,
            confidence=0.8,
            needs_manual_review=False,
        )
        assert MergeExecutor.change_source(merged, ["a"], ["a", "b"]) is ChangeSource.MERGED


class TestMergeDecisionModel:
    def test_review_fields(self):
        decision = MergeDecision(
            primary_id="a",
            duplicate_ids=("b",),
            strategy=MergeStrategy.ENHANCE_PRIMARY,
            resolutions=(resolution("title", "x", review=True), resolution("venue_name", "y")),
            confidence=0.8,
        )
        assert decision.needs_manual_review is True
        assert decision.review_fields == ["title"]
