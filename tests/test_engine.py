"""Tests for the deduplication engine facade."""

import json
from dataclasses import replace

import pytest

from eventdedup.batch import ProcessingMode
from eventdedup.config import ConfigurationError, DedupConfig, Performance
from eventdedup.engine import DeduplicationEngine
from eventdedup.ledger import HistoryFilter
from eventdedup.models.results import ConflictStrategy, DataSource, MergeStrategy


@pytest.fixture
def engine(clock):
    return DeduplicationEngine(clock=clock)


class TestDetection:
    def test_check_for_duplicates(self, engine, blue_note_a, blue_note_b):
        result = engine.check_for_duplicates(blue_note_a, [blue_note_b])
        assert result.is_duplicate is True
        assert result.duplicate_event_ids == ["b"]

    def test_find_matches_skips_target(self, engine, blue_note_a):
        assert engine.find_matches(blue_note_a, [blue_note_a]) == []


class TestMerging:
    """Tests for planning and executing merges through the engine."""

    def test_execute_merge_records_history(self, engine, blue_note_a, blue_note_b, clock):
        decision = engine.create_merge_decision(blue_note_a, [blue_note_b])
        result = engine.execute_merge(decision, operator="curator")

        assert result.success is True
        assert result.merged_record.price_min == 25.0

        entry = engine.ledger.get(result.history_id)
        assert entry.merged_by == "curator"
        assert entry.merged_at == clock.now
        assert entry.quality_improvement > 0
        assert any(c.field == "price_min" and c.changed for c in entry.field_changes)
        assert engine.get_event_history("b")[0].id == result.history_id

    def test_failed_merge_is_not_recorded(self, engine, blue_note_a, blue_note_b):
        decision = engine.create_merge_decision(blue_note_a, [blue_note_b])
        decision = replace(decision, duplicate_ids=())
        result = engine.execute_merge(decision)

        assert result.success is False
        assert result.history_id is None
        assert len(engine.ledger) == 0

    def test_validate_merge_decision(self, engine, blue_note_a, blue_note_b):
        decision = engine.create_merge_decision(blue_note_a, [blue_note_b])
        assert engine.validate_merge_decision(decision).is_valid is True

    def test_resolve_conflicts(self, engine, blue_note_a, blue_note_b):
        resolutions = engine.resolve_conflicts([blue_note_a, blue_note_b], ["venue_name"])
        assert resolutions["venue_name"].resolved_value == "The Blue Note"

    def test_process_events_executes(self, engine, blue_note_a, blue_note_b, concert):
        result = engine.process_events(
            [blue_note_a, blue_note_b, concert], execute=True, operator="batch"
        )
        assert result.merges_completed == 1
        assert len(engine.ledger) == 1
        assert engine.ledger.entries()[0].merged_by == "batch"

    def test_process_events_plans_only(self, engine, blue_note_a, blue_note_b):
        result = engine.process_events(
            [blue_note_a, blue_note_b], ProcessingMode.REALTIME, strategy=MergeStrategy.KEEP_PRIMARY
        )
        assert result.decisions[0].strategy is MergeStrategy.KEEP_PRIMARY
        assert len(engine.ledger) == 0


class TestAudit:
    def test_generate_report(self, engine, blue_note_a, blue_note_b):
        engine.execute_merge(engine.create_merge_decision(blue_note_a, [blue_note_b]))
        report = engine.generate_report()
        assert report["summary"]["total_merges"] == 1
        assert report["resolution_stats"]["total_resolutions"] > 0

    def test_export_and_import(self, engine, blue_note_a, blue_note_b, clock):
        engine.execute_merge(engine.create_merge_decision(blue_note_a, [blue_note_b]))
        exported = json.loads(engine.export_data("json", HistoryFilter(primary_id="a")))
        assert len(exported["merge_history"]) == 1
        assert exported["configuration"]["thresholds"]["overall"] == 0.80
        assert exported["performance"]["ledger"]["total_merges"] == 1

        other = DeduplicationEngine(clock=clock)
        assert other.import_data(json.dumps(exported)).imported == 1
        assert other.ledger.merged_into("b") == "a"

    def test_import_carries_configuration(self, engine, clock):
        engine.update_configuration({"thresholds": {"overall": 0.7}})
        engine.update_conflict_rule("category", strategy="latest_wins")

        other = DeduplicationEngine(clock=clock)
        result = other.import_data(engine.export_data("json"))
        assert result.errors == []
        assert other.config.thresholds.overall == 0.7
        assert other.detector.config.thresholds.overall == 0.7
        assert other.rules.get("category").strategy is ConflictStrategy.LATEST_WINS

    def test_invalid_configuration_is_reported(self, engine, blue_note_a, blue_note_b, clock):
        engine.execute_merge(engine.create_merge_decision(blue_note_a, [blue_note_b]))
        exported = json.loads(engine.export_data("json"))
        exported["configuration"]["thresholds"]["overall"] = 1.5

        other = DeduplicationEngine(clock=clock)
        result = other.import_data(json.dumps(exported))
        assert result.imported == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Configuration:")
        assert other.config.thresholds.overall == 0.80

    def test_import_bare_history(self, engine, blue_note_a, blue_note_b, clock):
        engine.execute_merge(engine.create_merge_decision(blue_note_a, [blue_note_b]))
        other = DeduplicationEngine(clock=clock)
        assert other.import_data(engine.ledger.export_history("json")).imported == 1
        assert other.import_data(engine.export_data("csv"), "csv").errors != []

    def test_import_unparseable(self, engine):
        result = engine.import_data("{not json")
        assert result.imported == 0
        assert result.errors[0].startswith("Failed to parse import data")


class TestConfiguration:
    """Tests for runtime configuration changes."""

    def test_update_thresholds(self, engine):
        config = engine.update_configuration({"thresholds": {"overall": 0.6}})
        assert config.thresholds.overall == 0.6
        assert engine.config.thresholds.overall == 0.6
        assert engine.detector.config.thresholds.overall == 0.6
        # Untouched sections keep their values
        assert config.weights.title == 0.35

    def test_invalid_update_keeps_config(self, engine):
        with pytest.raises(ConfigurationError):
            engine.update_configuration({"thresholds": {"overall": 1.5}})
        assert engine.config.thresholds.overall == 0.80

    def test_cache_size_update(self, engine):
        engine.update_configuration({"performance": {"cache_size": 10}})
        assert engine.scorer.cache.max_size == 10
        assert engine.detector.fingerprint_cache.max_size == 10

    def test_history_size_update(self, engine):
        for _ in range(3):
            engine.resolver.history.append("title", object())
        engine.update_configuration({"performance": {"history_size": 2}})
        assert engine.resolver.history.capacity == 2
        assert len(engine.resolver.history.get("title")) == 2

    def test_sources_and_rules_from_update(self, engine):
        engine.update_configuration(
            {
                "sources": {"shotgun": {"reliability": 0.7}},
                "rules": {"category": {"strategy": "most_complete"}},
            }
        )
        assert engine.sources.get("shotgun").reliability == 0.7
        assert engine.rules.get("category").strategy is ConflictStrategy.MOST_COMPLETE

    def test_get_configuration_lists_registries(self, engine):
        engine.register_data_source(DataSource(name="shotgun", reliability=0.6))
        engine.update_conflict_rule("category", strategy="latest_wins")
        engine.update_data_source("shotgun", data_quality=0.8)

        config = engine.get_configuration()
        assert config["sources"]["shotgun"]["data_quality"] == 0.8
        assert "eventbrite" in config["sources"]
        assert config["rules"]["category"]["strategy"] == "latest_wins"


class TestOperations:
    """Tests for health checks, metrics and cleanup."""

    def test_healthy_engine(self, engine):
        report = engine.health_check()
        assert report.status == "healthy"
        assert set(report.components) == {"resolver", "cache", "ledger"}

    def test_cache_near_capacity(self, clock, concert, blue_note_a):
        engine = DeduplicationEngine(
            DedupConfig(performance=Performance(cache_size=1)), clock=clock
        )
        engine.detector.fingerprint(concert)
        engine.detector.fingerprint(blue_note_a)
        engine.check_for_duplicates(concert, [blue_note_a])

        report = engine.health_check()
        assert report.components["cache"]["status"] == "warning"
        assert report.status == "warning"
        assert report.recommendations

    def test_failing_component_is_error(self, engine, monkeypatch):
        def broken():
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(engine.ledger, "identify_quality_issues", broken)
        report = engine.health_check()
        assert report.status == "error"
        assert report.components["ledger"]["error"] == "ledger unavailable"

    def test_performance_metrics(self, engine, blue_note_a, blue_note_b):
        engine.process_events([blue_note_a, blue_note_b])
        metrics = engine.get_performance_metrics()
        assert metrics["batch"]["batches"] == 1
        assert metrics["ledger"]["total_merges"] == 0

    def test_cleanup(self, engine, blue_note_a, blue_note_b, clock):
        engine.execute_merge(engine.create_merge_decision(blue_note_a, [blue_note_b]))
        assert engine.cleanup() == {"cleared": 0, "retained": 1}
        assert len(engine.scorer.cache) == 0

        clock.advance(days=31)
        assert engine.cleanup(retention_days=30) == {"cleared": 1, "retained": 0}
