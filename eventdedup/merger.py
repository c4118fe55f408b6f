"""Plan, validate and execute merges of duplicate event records."""

import statistics
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from .config import DedupConfig
from .logger import get_logger
from .models.event import EventRecord
from .models.results import (
    ChangeSource,
    ConflictResolution,
    ConflictRule,
    ConflictStrategy,
    FieldChange,
    MergeDecision,
    MergeStrategy,
)
from .resolver import ConflictResolver, FieldCandidate, is_empty

logger = get_logger(__name__)

# Fields never resolved: identity and provenance bookkeeping
UNMERGED_FIELDS = frozenset({"id", "metadata"})

IMPORTANT_FIELDS = ("title", "start_time", "venue_name")
HIGH_CONFIDENCE_FIELD = 0.8

# Relative importance of fields in the completeness score
COMPLETENESS_WEIGHTS = {
    "title": 10,
    "start_time": 10,
    "venue_name": 9,
    "description": 8,
    "ticket_url": 8,
    "price_min": 7,
    "price_max": 7,
    "latitude": 7,
    "longitude": 7,
    "end_time": 6,
    "category": 6,
    "website_url": 5,
    "image_url": 4,
    "tags": 3,
}

REASON_TEMPLATES = {
    ConflictStrategy.PRIMARY_WINS: "Kept {} fields from primary event",
    ConflictStrategy.MOST_COMPLETE: "Enhanced {} fields with more complete data",
    ConflictStrategy.LATEST_WINS: "Updated {} fields with latest information",
    ConflictStrategy.HIGHEST_QUALITY: "Improved {} fields with higher quality data",
    ConflictStrategy.MERGE_VALUES: "Combined {} fields from multiple sources",
    ConflictStrategy.MANUAL_REVIEW: "Flagged {} fields for manual review",
}

# Strategy forced on every field by the overall merge strategies that override rules
FORCED_STRATEGIES = {
    MergeStrategy.KEEP_PRIMARY: ConflictStrategy.PRIMARY_WINS,
    MergeStrategy.QUALITY_BASED: ConflictStrategy.HIGHEST_QUALITY,
    MergeStrategy.TEMPORAL_PRIORITY: ConflictStrategy.LATEST_WINS,
}


def mergeable_fields() -> list[str]:
    return [name for name in EventRecord.field_names() if name not in UNMERGED_FIELDS]


def completeness_score(record: EventRecord | None) -> float:
    """Importance-weighted share of populated fields, in [0, 1]."""
    if record is None:
        return 0.0
    total = sum(COMPLETENESS_WEIGHTS.values())
    score = sum(
        weight
        for name, weight in COMPLETENESS_WEIGHTS.items()
        if not is_empty(getattr(record, name, None))
    )
    return score / total


@dataclass
class ValidationResult:
    """Outcome of validating a merge decision before execution."""

    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass
class ExecutionResult:
    """Outcome of executing a merge decision."""

    success: bool
    merged_record: EventRecord | None = None
    changes: list[FieldChange] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def validate_merge_decision(decision: MergeDecision, config: DedupConfig) -> ValidationResult:
    """
    Check a decision before it is executed.

    Errors (decision is rejected): no duplicates, no preview or an empty
    preview. Warnings: low confidence, fields awaiting manual review when
    review is required, and a preview without title or start time.
    """
    errors = []
    warnings = []

    if not decision.duplicate_ids:
        errors.append("Merge decision has no duplicate events")

    preview = decision.preview
    if preview is None:
        errors.append("Merge decision has no preview record")
    elif all(is_empty(getattr(preview, name)) for name in mergeable_fields()):
        errors.append("Merge preview is empty")

    if decision.confidence < config.quality.minimum_quality_score:
        warnings.append(
            f"Merge confidence ({decision.confidence * 100:.1f}%) below minimum threshold"
        )

    review_fields = decision.review_fields
    if review_fields and config.quality.require_manual_review:
        warnings.append(
            f"{len(review_fields)} fields require manual review: {', '.join(review_fields)}"
        )

    if preview is not None:
        missing = [name for name in ("title", "start_time") if is_empty(getattr(preview, name))]
        if missing:
            warnings.append(f"Missing key fields after merge: {', '.join(missing)}")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


class MergePlanner:
    """
    Build merge decisions from a primary record and its duplicates.

    Every mergeable field carrying at least one value is resolved by the
    ConflictResolver. The primary's values are offered first, under the
    ``primary`` source (or ``manual`` for curated records).
    """

    def __init__(
        self,
        config: DedupConfig | None = None,
        resolver: ConflictResolver | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.config = config or DedupConfig()
        self.resolver = resolver or ConflictResolver()
        self.clock = clock or (lambda: datetime.now(UTC))

    def _rule_for(
        self, field_name: str, strategy: MergeStrategy, value_is_list: bool
    ) -> ConflictRule:
        rule = self.resolver.rules.get(field_name)

        forced = FORCED_STRATEGIES.get(strategy)
        if forced is not None:
            return replace(rule, strategy=forced, source_preference=[])

        if strategy is MergeStrategy.MERGE_FIELDS and value_is_list:
            return replace(rule, strategy=ConflictStrategy.MERGE_VALUES)

        if strategy is MergeStrategy.SOURCE_PRIORITY:
            return replace(
                rule,
                strategy=ConflictStrategy.HIGHEST_QUALITY,
                source_preference=self.resolver.sources.by_reliability(),
                quality_threshold=0.0,
            )

        return rule

    @staticmethod
    def _primary_source(primary: EventRecord) -> str:
        return "manual" if primary.source == "manual" else "primary"

    def resolve_fields(
        self,
        primary: EventRecord,
        duplicates: Sequence[EventRecord],
        strategy: MergeStrategy = MergeStrategy.ENHANCE_PRIMARY,
    ) -> list[ConflictResolution]:
        primary_source = self._primary_source(primary)
        resolutions = []

        for name in mergeable_fields():
            candidates = [FieldCandidate(getattr(primary, name), primary, primary_source)]
            candidates.extend(FieldCandidate(getattr(d, name), d, d.source) for d in duplicates)
            present = [c.value for c in candidates if not is_empty(c.value)]
            if not present:
                continue

            value_is_list = isinstance(present[0], (list, tuple))
            rule = self._rule_for(name, strategy, value_is_list)
            resolutions.append(self.resolver.resolve_field(name, candidates, rule))

        return resolutions

    def build_preview(
        self,
        primary: EventRecord,
        duplicates: Sequence[EventRecord],
        resolutions: Sequence[ConflictResolution],
    ) -> EventRecord:
        updates = {r.field: r.resolved_value for r in resolutions if r.resolved_value is not None}

        metadata = dict(primary.metadata)
        metadata["merged_from"] = [d.id for d in duplicates]
        metadata["source_ids"] = {
            r.source_name: r.external_id or r.id for r in (primary, *duplicates)
        }
        metadata["alternate_sources"] = sorted(
            {d.source_name for d in duplicates} - {primary.source_name}
        )
        return replace(primary, metadata=metadata, **updates)

    @staticmethod
    def merge_confidence(resolutions: Sequence[ConflictResolution]) -> float:
        if not resolutions:
            return 0.0
        average = statistics.fmean(r.confidence for r in resolutions)
        important = [r.confidence for r in resolutions if r.field in IMPORTANT_FIELDS]
        if not important:
            return average
        return average * 0.6 + statistics.fmean(important) * 0.4

    @staticmethod
    def merge_reasons(resolutions: Sequence[ConflictResolution]) -> list[str]:
        counts: dict[ConflictStrategy, int] = {}
        for resolution in resolutions:
            counts[resolution.strategy] = counts.get(resolution.strategy, 0) + 1

        reasons = [REASON_TEMPLATES[strategy].format(count) for strategy, count in counts.items()]

        high_confidence = sum(1 for r in resolutions if r.confidence > HIGH_CONFIDENCE_FIELD)
        if high_confidence:
            reasons.append(f"{high_confidence} high-confidence field merges")

        review = sum(1 for r in resolutions if r.needs_manual_review)
        if review:
            reasons.append(f"{review} fields need manual review")

        return reasons

    def create_merge_decision(
        self,
        primary: EventRecord,
        duplicates: Sequence[EventRecord],
        strategy: MergeStrategy = MergeStrategy.ENHANCE_PRIMARY,
    ) -> MergeDecision:
        """
        Plan the merge of duplicates into primary.

        Raises:
            ValueError: If no duplicates are given
        """
        if not duplicates:
            raise ValueError(f"Cannot plan a merge for {primary.id} without duplicates")

        strategy = MergeStrategy(strategy)
        resolutions = self.resolve_fields(primary, duplicates, strategy)
        preview = self.build_preview(primary, duplicates, resolutions)
        confidence = self.merge_confidence(resolutions)

        decision = MergeDecision(
            primary_id=primary.id,
            duplicate_ids=tuple(d.id for d in duplicates),
            strategy=strategy,
            resolutions=tuple(resolutions),
            confidence=confidence,
            reasons=tuple(self.merge_reasons(resolutions)),
            preview=preview,
            primary_record=primary,
            created_at=self.clock(),
        )
        logger.debug(
            f"Planned merge of {len(duplicates)} duplicate(s) into {primary.id} "
            f"({strategy.value}, confidence {confidence:.2f})"
        )
        return decision

    def validate_merge_decision(self, decision: MergeDecision) -> ValidationResult:
        return validate_merge_decision(decision, self.config)


class MergeExecutor:
    """
    Materialize merged records from validated decisions.

    Never raises for a bad decision: failures come back as an
    ExecutionResult with ``success=False``. Only one merge per primary id
    runs at a time.
    """

    def __init__(self, config: DedupConfig | None = None):
        self.config = config or DedupConfig()
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, primary_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(primary_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[primary_id] = lock
            return lock

    @staticmethod
    def change_source(resolution: ConflictResolution, before, after) -> ChangeSource:
        if before == after:
            return ChangeSource.PRIMARY
        offered = [v.value for v in resolution.values]
        if resolution.strategy is ConflictStrategy.MERGE_VALUES and after not in offered:
            return ChangeSource.MERGED
        if after in offered:
            return ChangeSource.DUPLICATE
        return ChangeSource.ENHANCED

    @staticmethod
    def _check_ranges(record: EventRecord) -> list[str]:
        errors = []
        if record.latitude is not None and not -90 <= record.latitude <= 90:
            errors.append(f"Latitude out of range: {record.latitude}")
        if record.longitude is not None and not -180 <= record.longitude <= 180:
            errors.append(f"Longitude out of range: {record.longitude}")
        return errors

    def execute_merge(self, decision: MergeDecision) -> ExecutionResult:
        validation = validate_merge_decision(decision, self.config)
        if not validation.is_valid:
            logger.warning(
                f"Rejected merge for {decision.primary_id}: {'; '.join(validation.errors)}"
            )
            return ExecutionResult(success=False, errors=list(validation.errors))

        with self._lock_for(decision.primary_id):
            return self._execute(decision)

    def _execute(self, decision: MergeDecision) -> ExecutionResult:
        base = decision.primary_record or decision.preview
        changes = []
        updates = {}

        try:
            for resolution in decision.resolutions:
                if resolution.resolved_value is None:
                    continue
                before = getattr(base, resolution.field)
                after = resolution.resolved_value
                updates[resolution.field] = after
                changes.append(
                    FieldChange(
                        field=resolution.field,
                        before=before,
                        after=after,
                        source=self.change_source(resolution, before, after),
                        confidence=resolution.confidence,
                    )
                )
            merged = replace(base, metadata=dict(decision.preview.metadata), **updates)
        except (AttributeError, TypeError, ValueError) as e:
            logger.error(f"Merge execution failed for {decision.primary_id}: {e}")
            return ExecutionResult(success=False, errors=[f"Merge execution failed: {e}"])

        range_errors = self._check_ranges(merged)
        if range_errors:
            logger.error(f"Merged record {decision.primary_id} invalid: {'; '.join(range_errors)}")
            return ExecutionResult(success=False, changes=changes, errors=range_errors)

        changed = sum(1 for c in changes if c.changed)
        logger.info(
            f"Merged {len(decision.duplicate_ids)} duplicate(s) into {decision.primary_id}: "
            f"{changed} field(s) changed"
        )
        return ExecutionResult(success=True, merged_record=merged, changes=changes)
