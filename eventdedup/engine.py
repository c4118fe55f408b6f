"""
Deduplication engine facade.

Wires the detector, resolver, planner, executor, ledger and batch
coordinator together around one configuration. Shared state (registries,
caches, ledger) is created here and injected into each component.
"""

import json
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .batch import BatchCoordinator, BatchResult, ProcessingMode
from .config import ConfigurationError, DedupConfig, merge_config
from .detector import DuplicateDetector
from .ledger import HistoryFilter, ImportResult, MergeLedger
from .logger import get_logger
from .merger import (
    MergeExecutor,
    MergePlanner,
    ValidationResult,
    completeness_score,
    mergeable_fields,
)
from .models.event import EventRecord
from .models.results import (
    ConflictResolution,
    ConflictRule,
    DataSource,
    DuplicationResult,
    MatchResult,
    MergeDecision,
    MergeHistory,
    MergeStrategy,
)
from .resolver import ConflictResolver, RuleBook, SourceRegistry
from .similarity import SimilarityScorer
from .utils.cache import BoundedHistory, LRUCache

logger = get_logger(__name__)

MANUAL_REVIEW_WARNING_RATE = 0.3
CACHE_WARNING_UTILIZATION = 0.9

HEALTHY = "healthy"
WARNING = "warning"
ERROR = "error"


@dataclass
class MergeResult:
    """Outcome of executing and recording one merge."""

    success: bool
    merged_record: EventRecord | None = None
    history_id: str | None = None
    errors: list[str] = field(default_factory=list)


@dataclass
class HealthReport:
    status: str
    components: dict[str, dict[str, Any]] = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "components": self.components,
            "recommendations": list(self.recommendations),
        }


class DeduplicationEngine:
    """
    Single entry point for detecting, merging and auditing duplicate events.

    Example:
        engine = DeduplicationEngine(load_config(path))
        result = engine.check_for_duplicates(record, existing)
        if result.is_duplicate:
            decision = engine.create_merge_decision(primary, [record])
            engine.execute_merge(decision, operator="curator")
    """

    def __init__(
        self,
        config: DedupConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config or DedupConfig()
        self.clock = clock or (lambda: datetime.now(UTC))
        performance = self.config.performance

        self.sources = SourceRegistry(self.config.sources)
        self.rules = RuleBook(self.config.rules)
        self.resolver = ConflictResolver(
            self.sources, self.rules, BoundedHistory(performance.history_size)
        )
        self.scorer = SimilarityScorer(self.config, LRUCache(performance.cache_size))
        self.detector = DuplicateDetector(
            self.config, self.scorer, fingerprint_cache=LRUCache(performance.cache_size)
        )
        self.planner = MergePlanner(self.config, self.resolver, self.clock)
        self.executor = MergeExecutor(self.config)
        self.ledger = MergeLedger(self.clock)
        self.batch = BatchCoordinator(self.config, self.detector, self.planner)

    # -- detection -----------------------------------------------------------

    def check_for_duplicates(
        self, target: EventRecord, candidates: Iterable[EventRecord]
    ) -> DuplicationResult:
        return self.detector.check_for_duplicates(target, candidates)

    def find_matches(
        self, target: EventRecord, candidates: Iterable[EventRecord]
    ) -> list[MatchResult]:
        return self.detector.find_matches(target, candidates)

    def process_events(
        self,
        events: Iterable[EventRecord],
        mode: ProcessingMode = ProcessingMode.BATCH,
        *,
        execute: bool = False,
        operator: str = "system",
        strategy: MergeStrategy = MergeStrategy.ENHANCE_PRIMARY,
    ) -> BatchResult:
        """
        Deduplicate a collection of records.

        Args:
            events: Records to process
            mode: Processing mode
            execute: Execute and record the planned merges
            operator: Recorded as ``merged_by`` for executed merges
            strategy: Overall merge strategy for planned decisions
        """
        def execute_and_record(decision: MergeDecision) -> MergeResult:
            return self.execute_merge(decision, operator)

        callback = execute_and_record if execute else None
        return self.batch.process_events(events, mode, callback, strategy)

    # -- merging -------------------------------------------------------------

    def create_merge_decision(
        self,
        primary: EventRecord,
        duplicates: Sequence[EventRecord],
        strategy: MergeStrategy = MergeStrategy.ENHANCE_PRIMARY,
    ) -> MergeDecision:
        return self.planner.create_merge_decision(primary, duplicates, strategy)

    def validate_merge_decision(self, decision: MergeDecision) -> ValidationResult:
        return self.planner.validate_merge_decision(decision)

    def execute_merge(self, decision: MergeDecision, operator: str = "system") -> MergeResult:
        """
        Execute a merge decision and record it in the ledger.

        Failures leave the input records untouched and come back with
        ``success=False``; nothing is recorded for them.
        """
        start = time.perf_counter()
        execution = self.executor.execute_merge(decision)
        if not execution.success:
            return MergeResult(success=False, errors=list(execution.errors))

        before = decision.primary_record or decision.preview
        merged = execution.merged_record
        quality_improvement = completeness_score(merged) - completeness_score(before)
        processing_time_ms = (time.perf_counter() - start) * 1000

        history_id = self.ledger.record_merge(
            decision,
            before,
            merged,
            operator=operator,
            processing_time_ms=processing_time_ms,
            quality_improvement=quality_improvement,
            changes=execution.changes,
        )
        return MergeResult(success=True, merged_record=merged, history_id=history_id)

    def resolve_conflicts(
        self, records: Sequence[EventRecord], fields: Iterable[str] | None = None
    ) -> dict[str, ConflictResolution]:
        """Resolve disagreeing fields across records, the first acting as primary."""
        return self.resolver.resolve_batch(records, fields or mergeable_fields())

    # -- audit ---------------------------------------------------------------

    def get_event_history(self, event_id: str) -> list[MergeHistory]:
        return self.ledger.get_event_history(event_id)

    def generate_report(self, history_filter: HistoryFilter | None = None) -> dict:
        report = self.ledger.generate_audit_report(history_filter)
        report["resolution_stats"] = self.resolver.get_resolution_stats()
        return report

    def export_data(
        self, format: str = "json", history_filter: HistoryFilter | None = None
    ) -> str:
        """
        Export merge history together with configuration and performance metrics.

        JSON carries all three in one document; CSV carries the merge
        history table only.

        Raises:
            ValueError: If the format is not supported
        """
        if format != "json":
            return self.ledger.export_history(format, history_filter)

        document = {
            "exported_at": self.clock().isoformat(),
            "merge_history": [e.to_dict() for e in self.ledger.entries(history_filter)],
            "configuration": self.get_configuration(),
            "performance": self.get_performance_metrics(),
        }
        return json.dumps(document, indent=2, ensure_ascii=False, default=str)

    def import_data(self, data: str, format: str = "json") -> ImportResult:
        """
        Import an exported document, or a bare merge history list or CSV table.

        The configuration is applied through update_configuration; an invalid
        one is reported in ``errors`` and the merge history is still imported.
        """
        if format != "json":
            return self.ledger.import_history(data, format)

        try:
            document = json.loads(data)
        except json.JSONDecodeError as e:
            return ImportResult(errors=[f"Failed to parse import data: {e}"])
        if not isinstance(document, dict):
            return self.ledger.import_history(data, format)

        errors = []
        configuration = document.get("configuration")
        if configuration:
            try:
                self.update_configuration(configuration)
            except ConfigurationError as e:
                logger.warning(f"Skipping imported configuration: {e}")
                errors.append(f"Configuration: {e}")

        history = document.get("merge_history") or []
        result = self.ledger.import_history(json.dumps(history), format)
        result.errors[:0] = errors
        return result

    # -- configuration -------------------------------------------------------

    def update_configuration(self, partial: dict) -> DedupConfig:
        """
        Merge a partial configuration over the current one and apply it.

        Raises:
            ConfigurationError: If the result is invalid; the current
                configuration is kept
        """
        new_config = merge_config(self.config, partial)

        for name in (partial.get("sources") or {}):
            self.sources.register(new_config.sources[name])
        for name in (partial.get("rules") or {}):
            self.rules.set(new_config.rules[name])

        cache_size = new_config.performance.cache_size
        self.scorer.cache.max_size = cache_size
        self.detector.fingerprint_cache.max_size = cache_size
        self.resolver.history.resize(new_config.performance.history_size)

        self.config = new_config
        self.batch.update_config(new_config)
        self.executor.config = new_config
        logger.info(f"Configuration updated: {', '.join(sorted(partial))}")
        return new_config

    def get_configuration(self) -> dict:
        """Effective configuration, including every registered source and rule."""
        config = self.config.to_dict()
        config["sources"] = {name: s.to_dict() for name, s in self.sources.snapshot().items()}
        config["rules"] = {name: r.to_dict() for name, r in self.rules.snapshot().items()}
        return config

    def register_data_source(self, source: DataSource) -> None:
        self.sources.register(source)

    def update_data_source(self, name: str, **changes) -> DataSource:
        return self.sources.update(name, **changes)

    def update_conflict_rule(self, field_name: str, **changes) -> ConflictRule:
        return self.rules.update(field_name, **changes)

    # -- operations ----------------------------------------------------------

    def get_performance_metrics(self) -> dict:
        return {
            "similarity_cache": self.scorer.cache_stats(),
            "fingerprint_cache": self.detector.fingerprint_cache.stats(),
            "batch": self.batch.get_performance_stats(),
            "resolution": self.resolver.get_resolution_stats(),
            "ledger": self.ledger.get_statistics(),
        }

    def _resolver_health(self) -> tuple[dict, list[str]]:
        stats = self.resolver.get_resolution_stats()
        rate = stats["manual_review_rate"]
        component = {
            "status": HEALTHY,
            "total_resolutions": stats["total_resolutions"],
            "manual_review_rate": rate,
        }
        recommendations = []
        if rate > MANUAL_REVIEW_WARNING_RATE:
            component["status"] = WARNING
            recommendations.append(
                f"High manual review rate ({rate:.0%}) - review conflict resolution rules"
            )
        return component, recommendations

    def _cache_health(self) -> tuple[dict, list[str]]:
        caches = (self.scorer.cache, self.detector.fingerprint_cache)
        entries = sum(len(c) for c in caches)
        capacity = sum(c.max_size for c in caches)
        utilization = entries / capacity if capacity else 0.0
        component = {
            "status": HEALTHY,
            "entries": entries,
            "capacity": capacity,
            "utilization": utilization,
            "similarity_hit_rate": self.scorer.cache.hit_rate,
        }
        recommendations = []
        if utilization > CACHE_WARNING_UTILIZATION:
            component["status"] = WARNING
            recommendations.append(
                "Caches near capacity - raise performance.cache_size or run cleanup"
            )
        return component, recommendations

    def _ledger_health(self) -> tuple[dict, list[str]]:
        issues = self.ledger.identify_quality_issues()
        component = {
            "status": HEALTHY,
            "total_merges": len(self.ledger),
            "quality_issues": len(issues),
        }
        recommendations = []
        if any(issue.severity == "high" for issue in issues):
            component["status"] = WARNING
        for issue in issues:
            recommendations.extend(issue.recommendations)
        return component, recommendations

    def health_check(self) -> HealthReport:
        """Check each component; any error makes the engine unhealthy."""
        report = HealthReport(status=HEALTHY)
        checks = {
            "resolver": self._resolver_health,
            "cache": self._cache_health,
            "ledger": self._ledger_health,
        }

        for name, check in checks.items():
            try:
                component, recommendations = check()
            except Exception as e:
                logger.error(f"Health check failed for {name}: {e}")
                component, recommendations = {"status": ERROR, "error": str(e)}, []
            report.components[name] = component
            report.recommendations.extend(
                r for r in recommendations if r not in report.recommendations
            )

        statuses = {c["status"] for c in report.components.values()}
        if ERROR in statuses:
            report.status = ERROR
        elif WARNING in statuses:
            report.status = WARNING

        logger.debug(f"Health check: {report.status}")
        return report

    def cleanup(self, retention_days: int | None = None) -> dict:
        """
        Clear caches and resolution history; prune the ledger when a retention is given.
        """
        self.batch.clear_caches()
        self.resolver.clear_history()
        summary: dict[str, int] = {"cleared": 0, "retained": len(self.ledger)}
        if retention_days is not None:
            summary = self.ledger.prune(retention_days)
        logger.info(
            f"Cleanup done: caches cleared, {summary['cleared']} ledger entries pruned"
        )
        return summary
