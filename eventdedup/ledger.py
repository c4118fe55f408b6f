"""
Append-only audit ledger of executed merges, with analytics.

Every executed merge becomes one immutable MergeHistory entry. Two indexes
answer "what was merged into X" and "what did Y get merged into". Analytics
are computed on demand from a snapshot of the entries:

- merge frequency per day
- per-strategy effectiveness (a merge counts as a success above 0.8 confidence)
- per-field impact (change frequency, improvement rate, conflict rate)
- daily trends
- quality issues over the trailing 7 days
"""

import csv
import io
import json
import statistics
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from .logger import get_logger
from .models.event import EventRecord
from .models.results import (
    ChangeSource,
    FieldChange,
    MergeDecision,
    MergeHistory,
    MergeStrategy,
)

logger = get_logger(__name__)

SUCCESS_CONFIDENCE = 0.8
LOW_CONFIDENCE = 0.6
IMPROVEMENT_CONFIDENCE = 0.7
QUALITY_WINDOW = timedelta(days=7)
LOW_CONFIDENCE_SHARE = 0.2
STRATEGY_MIN_USES = 5
STRATEGY_MIN_SUCCESS = 0.7
SLOW_MERGE_MS = 1000
RECENT_ACTIVITY_LIMIT = 10

CSV_COLUMNS = [
    "id",
    "primary_id",
    "duplicate_ids",
    "merged_at",
    "merged_by",
    "strategy",
    "confidence",
    "processing_time_ms",
    "quality_improvement",
]

REQUIRED_FIELDS = ("id", "primary_id", "duplicate_ids", "strategy", "confidence", "merged_at")


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _day(entry: MergeHistory) -> str:
    return entry.merged_at.astimezone(UTC).date().isoformat()


@dataclass
class HistoryFilter:
    """Criteria selecting ledger entries; unset criteria match everything."""

    start: datetime | None = None
    end: datetime | None = None
    strategy: MergeStrategy | None = None
    primary_id: str | None = None
    min_confidence: float | None = None
    merged_by: str | None = None

    def matches(self, entry: MergeHistory) -> bool:
        if self.start is not None and entry.merged_at < _as_aware(self.start):
            return False
        if self.end is not None and entry.merged_at > _as_aware(self.end):
            return False
        if self.strategy is not None and entry.strategy != MergeStrategy(self.strategy):
            return False
        if self.primary_id is not None and entry.primary_id != self.primary_id:
            return False
        if self.min_confidence is not None and entry.confidence < self.min_confidence:
            return False
        if self.merged_by is not None and entry.merged_by != self.merged_by:
            return False
        return True


@dataclass
class QualityIssue:
    """A pattern in recent merges that deserves attention."""

    type: str
    description: str
    severity: str
    affected_merges: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "description": self.description,
            "severity": self.severity,
            "affected_merges": list(self.affected_merges),
            "recommendations": list(self.recommendations),
        }


@dataclass
class ImportResult:
    """Outcome of importing ledger entries."""

    imported: int = 0
    errors: list[str] = field(default_factory=list)


class MergeLedger:
    """
    Append-only store of MergeHistory entries.

    Appends are atomic under a lock; readers work on point-in-time
    snapshots. Entries leave the ledger only through ``prune`` or ``clear``.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None):
        self.clock = clock or (lambda: datetime.now(UTC))
        self._entries: list[MergeHistory] = []
        self._ids: set[str] = set()
        self._by_primary: dict[str, list[str]] = {}
        self._by_duplicate: dict[str, str] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    # -- writing --------------------------------------------------------------

    def _new_id(self, now: datetime) -> str:
        while True:
            history_id = f"merge_{int(now.timestamp() * 1000)}_{uuid.uuid4().hex[:9]}"
            if history_id not in self._ids:
                return history_id

    def _index(self, entry: MergeHistory) -> None:
        self._by_primary.setdefault(entry.primary_id, []).extend(entry.duplicate_ids)
        for duplicate_id in entry.duplicate_ids:
            self._by_duplicate[duplicate_id] = entry.primary_id

    def _append(self, entry: MergeHistory) -> None:
        with self._lock:
            if entry.id in self._ids:
                raise ValueError(f"Ledger entry {entry.id} already exists")
            self._entries.append(entry)
            self._ids.add(entry.id)
            self._index(entry)

    def record_merge(
        self,
        decision: MergeDecision,
        before: EventRecord,
        after: EventRecord,
        operator: str = "system",
        processing_time_ms: float = 0.0,
        quality_improvement: float = 0.0,
        changes: Iterable[FieldChange] | None = None,
    ) -> str:
        """
        Append an entry for an executed merge.

        Args:
            decision: The executed decision
            before: Primary record before the merge
            after: Merged record
            operator: Who or what executed the merge
            processing_time_ms: Time spent planning and executing
            quality_improvement: Completeness of ``after`` minus ``before``
            changes: Field changes reported by the executor; derived from
                the decision's resolutions when omitted

        Returns:
            The new entry's id
        """
        if changes is None:
            changes = [
                FieldChange(
                    field=r.field,
                    before=getattr(before, r.field, None),
                    after=r.resolved_value,
                    source=ChangeSource.PRIMARY
                    if getattr(before, r.field, None) == r.resolved_value
                    else ChangeSource.ENHANCED,
                    confidence=r.confidence,
                )
                for r in decision.resolutions
            ]

        now = self.clock()
        with self._lock:
            history_id = self._new_id(now)

        entry = MergeHistory(
            id=history_id,
            primary_id=decision.primary_id,
            duplicate_ids=tuple(decision.duplicate_ids),
            merged_at=_as_aware(now),
            merged_by=operator,
            strategy=decision.strategy,
            confidence=decision.confidence,
            field_changes=tuple(changes),
            quality_improvement=quality_improvement,
            processing_time_ms=processing_time_ms,
            before=before.to_dict() if before is not None else None,
            after=after.to_dict() if after is not None else None,
        )
        self._append(entry)
        logger.info(
            f"Recorded merge {history_id}: {decision.primary_id} <- "
            f"{', '.join(decision.duplicate_ids)} by {operator}",
            extra={"history_id": history_id, "primary_id": decision.primary_id},
        )
        return history_id

    # -- reading --------------------------------------------------------------

    def entries(self, history_filter: HistoryFilter | None = None) -> list[MergeHistory]:
        """Snapshot of entries in insertion order, optionally filtered."""
        with self._lock:
            snapshot = list(self._entries)
        if history_filter is None:
            return snapshot
        return [e for e in snapshot if history_filter.matches(e)]

    def get(self, history_id: str) -> MergeHistory | None:
        for entry in self.entries():
            if entry.id == history_id:
                return entry
        return None

    def get_event_history(self, event_id: str) -> list[MergeHistory]:
        """Entries where the event was primary or duplicate, newest first."""
        related = [
            e for e in self.entries() if e.primary_id == event_id or event_id in e.duplicate_ids
        ]
        return sorted(related, key=lambda e: e.merged_at, reverse=True)

    def merged_into(self, duplicate_id: str) -> str | None:
        with self._lock:
            return self._by_duplicate.get(duplicate_id)

    def merged_duplicates(self, primary_id: str) -> list[str]:
        with self._lock:
            return list(self._by_primary.get(primary_id, []))

    # -- analytics ------------------------------------------------------------

    @staticmethod
    def merge_frequency(history: list[MergeHistory]) -> dict[str, int]:
        frequency: dict[str, int] = {}
        for entry in history:
            day = _day(entry)
            frequency[day] = frequency.get(day, 0) + 1
        return dict(sorted(frequency.items()))

    @staticmethod
    def strategy_effectiveness(history: list[MergeHistory]) -> dict[str, dict]:
        grouped: dict[str, list[MergeHistory]] = {}
        for entry in history:
            grouped.setdefault(entry.strategy.value, []).append(entry)

        return {
            strategy: {
                "count": len(entries),
                "avg_confidence": statistics.fmean(e.confidence for e in entries),
                "avg_quality_improvement": statistics.fmean(
                    e.quality_improvement for e in entries
                ),
                "success_rate": sum(1 for e in entries if e.confidence > SUCCESS_CONFIDENCE)
                / len(entries),
            }
            for strategy, entries in grouped.items()
        }

    @staticmethod
    def field_impact(history: list[MergeHistory]) -> dict[str, dict]:
        stats: dict[str, dict[str, int]] = {}
        for entry in history:
            for change in entry.field_changes:
                s = stats.setdefault(
                    change.field, {"merges": 0, "changes": 0, "improvements": 0, "conflicts": 0}
                )
                s["merges"] += 1
                if not change.changed:
                    continue
                s["changes"] += 1
                if change.confidence > IMPROVEMENT_CONFIDENCE:
                    s["improvements"] += 1
                if change.confidence < LOW_CONFIDENCE:
                    s["conflicts"] += 1

        return {
            field_name: {
                "change_frequency": s["changes"] / s["merges"],
                "quality_improvement_rate": s["improvements"] / max(1, s["changes"]),
                "conflict_rate": s["conflicts"] / max(1, s["changes"]),
            }
            for field_name, s in stats.items()
        }

    @staticmethod
    def temporal_trends(history: list[MergeHistory]) -> list[dict]:
        grouped: dict[str, list[MergeHistory]] = {}
        for entry in history:
            grouped.setdefault(_day(entry), []).append(entry)

        return [
            {
                "date": day,
                "merge_count": len(entries),
                "avg_confidence": statistics.fmean(e.confidence for e in entries),
                "quality_score": statistics.fmean(e.quality_improvement for e in entries),
            }
            for day, entries in sorted(grouped.items())
        ]

    def get_analytics(self, history_filter: HistoryFilter | None = None) -> dict:
        history = self.entries(history_filter)
        return {
            "merge_frequency": self.merge_frequency(history),
            "strategy_effectiveness": self.strategy_effectiveness(history),
            "field_impact": self.field_impact(history),
            "temporal_trends": self.temporal_trends(history),
        }

    def identify_quality_issues(self) -> list[QualityIssue]:
        """Flag problems among merges of the trailing 7 days."""
        cutoff = _as_aware(self.clock()) - QUALITY_WINDOW
        recent = [e for e in self.entries() if e.merged_at > cutoff]
        issues = []

        low_confidence = [e for e in recent if e.confidence < LOW_CONFIDENCE]
        if recent and len(low_confidence) > len(recent) * LOW_CONFIDENCE_SHARE:
            issues.append(
                QualityIssue(
                    type="low_confidence",
                    description=(
                        f"{len(low_confidence)} merges in the last 7 days had confidence "
                        f"below {LOW_CONFIDENCE:.0%}"
                    ),
                    severity="high",
                    affected_merges=[e.id for e in low_confidence],
                    recommendations=[
                        "Review merge thresholds and algorithms",
                        "Improve data quality at source",
                        "Consider manual review for complex cases",
                    ],
                )
            )

        degraded = [e for e in recent if e.quality_improvement < 0]
        if degraded:
            issues.append(
                QualityIssue(
                    type="quality_degradation",
                    description=f"{len(degraded)} merges resulted in quality degradation",
                    severity="high",
                    affected_merges=[e.id for e in degraded],
                    recommendations=[
                        "Review merge strategies and field resolution rules",
                        "Add pre-merge quality validation",
                    ],
                )
            )

        for strategy, stats in self.strategy_effectiveness(recent).items():
            if stats["count"] >= STRATEGY_MIN_USES and stats["success_rate"] < STRATEGY_MIN_SUCCESS:
                issues.append(
                    QualityIssue(
                        type="strategy_ineffectiveness",
                        description=(
                            f"{strategy} strategy has low success rate "
                            f"({stats['success_rate'] * 100:.1f}%)"
                        ),
                        severity="medium",
                        affected_merges=[e.id for e in recent if e.strategy.value == strategy],
                        recommendations=[
                            f"Review and tune {strategy} strategy parameters",
                            "Consider alternative strategies for similar cases",
                        ],
                    )
                )

        return issues

    def _recommendations(
        self, analytics: dict, issues: list[QualityIssue], history: list[MergeHistory]
    ) -> list[str]:
        recommendations = []

        for strategy, stats in analytics["strategy_effectiveness"].items():
            if stats["avg_confidence"] < IMPROVEMENT_CONFIDENCE:
                recommendations.append(
                    f"Improve {strategy} strategy - current average confidence is "
                    f"{stats['avg_confidence'] * 100:.1f}%"
                )
            if stats["avg_quality_improvement"] < 0.1:
                recommendations.append(
                    f"{strategy} strategy shows minimal quality improvement - "
                    "consider alternative approaches"
                )

        for field_name, stats in analytics["field_impact"].items():
            if stats["conflict_rate"] > 0.3:
                recommendations.append(
                    f"High conflict rate for {field_name} field "
                    f"({stats['conflict_rate'] * 100:.1f}%) - review resolution rules"
                )

        if issues:
            recommendations.append(
                f"{len(issues)} quality issues identified - review detailed analysis "
                "for specific actions"
            )

        recent = history[-100:]
        if recent and statistics.fmean(e.processing_time_ms for e in recent) > SLOW_MERGE_MS:
            recommendations.append(
                "High processing times detected - consider performance optimization"
            )

        return recommendations

    def generate_audit_report(self, history_filter: HistoryFilter | None = None) -> dict:
        """Summary, analytics, quality issues and recommendations for the selected entries."""
        history = self.entries(history_filter)
        if not history:
            return {
                "summary": {
                    "total_merges": 0,
                    "date_range": None,
                    "avg_confidence": 0.0,
                    "avg_quality_improvement": 0.0,
                },
                "analytics": self.get_analytics(history_filter),
                "quality_issues": [],
                "recommendations": [],
                "recent_activity": [],
            }

        analytics = self.get_analytics(history_filter)
        issues = self.identify_quality_issues()
        recent = sorted(history, key=lambda e: e.merged_at, reverse=True)[:RECENT_ACTIVITY_LIMIT]

        return {
            "summary": {
                "total_merges": len(history),
                "date_range": {
                    "start": min(e.merged_at for e in history).isoformat(),
                    "end": max(e.merged_at for e in history).isoformat(),
                },
                "avg_confidence": statistics.fmean(e.confidence for e in history),
                "avg_quality_improvement": statistics.fmean(
                    e.quality_improvement for e in history
                ),
            },
            "analytics": analytics,
            "quality_issues": [i.to_dict() for i in issues],
            "recommendations": self._recommendations(analytics, issues, history),
            "recent_activity": [
                {
                    "id": e.id,
                    "primary_id": e.primary_id,
                    "duplicate_ids": list(e.duplicate_ids),
                    "merged_at": e.merged_at.isoformat(),
                    "strategy": e.strategy.value,
                    "confidence": e.confidence,
                }
                for e in recent
            ],
        }

    def get_statistics(self) -> dict:
        history = self.entries()
        if not history:
            return {
                "total_merges": 0,
                "total_events_merged": 0,
                "avg_confidence": 0.0,
                "avg_processing_time_ms": 0.0,
                "top_strategies": [],
                "recent_activity": 0,
            }

        effectiveness = self.strategy_effectiveness(history)
        top = sorted(effectiveness.items(), key=lambda item: item[1]["count"], reverse=True)[:5]
        day_ago = _as_aware(self.clock()) - timedelta(days=1)

        return {
            "total_merges": len(history),
            "total_events_merged": sum(len(e.duplicate_ids) for e in history),
            "avg_confidence": statistics.fmean(e.confidence for e in history),
            "avg_processing_time_ms": statistics.fmean(e.processing_time_ms for e in history),
            "top_strategies": [
                {"strategy": name, "count": s["count"], "success_rate": s["success_rate"]}
                for name, s in top
            ],
            "recent_activity": sum(1 for e in history if e.merged_at > day_ago),
        }

    # -- retention ------------------------------------------------------------

    def prune(self, retention_days: int) -> dict[str, int]:
        """Drop entries older than ``retention_days`` and rebuild the indexes."""
        cutoff = _as_aware(self.clock()) - timedelta(days=retention_days)
        with self._lock:
            kept = [e for e in self._entries if e.merged_at >= cutoff]
            cleared = len(self._entries) - len(kept)
            self._entries = kept
            self._ids = {e.id for e in kept}
            self._by_primary = {}
            self._by_duplicate = {}
            for entry in kept:
                self._index(entry)
        if cleared:
            logger.info(f"Pruned {cleared} ledger entries older than {retention_days} days")
        return {"cleared": cleared, "retained": len(kept)}

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._entries)
            self._entries = []
            self._ids = set()
            self._by_primary = {}
            self._by_duplicate = {}
        return cleared

    # -- export / import ------------------------------------------------------

    def export_history(
        self, format: str = "json", history_filter: HistoryFilter | None = None
    ) -> str:
        """
        Serialize entries as a JSON document or CSV table.

        Raises:
            ValueError: If the format is not supported
        """
        history = self.entries(history_filter)

        if format == "json":
            return json.dumps([e.to_dict() for e in history], indent=2, ensure_ascii=False)

        if format == "csv":
            buffer = io.StringIO()
            writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, lineterminator="\n")
            writer.writeheader()
            for entry in history:
                writer.writerow(
                    {
                        "id": entry.id,
                        "primary_id": entry.primary_id,
                        "duplicate_ids": ";".join(entry.duplicate_ids),
                        "merged_at": entry.merged_at.isoformat(),
                        "merged_by": entry.merged_by,
                        "strategy": entry.strategy.value,
                        "confidence": repr(entry.confidence),
                        "processing_time_ms": repr(entry.processing_time_ms),
                        "quality_improvement": repr(entry.quality_improvement),
                    }
                )
            return buffer.getvalue()

        raise ValueError(f"Unsupported export format: {format}")

    def _parse_import(self, data: str, format: str) -> list[dict]:
        if format == "json":
            parsed = json.loads(data)
            if not isinstance(parsed, list):
                raise ValueError("expected a JSON list of merge entries")
            return parsed
        if format == "csv":
            rows = []
            for row in csv.DictReader(io.StringIO(data)):
                row = dict(row)
                raw_ids = row.get("duplicate_ids") or ""
                row["duplicate_ids"] = [d for d in raw_ids.split(";") if d]
                rows.append(row)
            return rows
        raise ValueError(f"Unsupported import format: {format}")

    def import_history(self, data: str, format: str = "json") -> ImportResult:
        """
        Import exported entries, validating each one independently.

        Invalid entries and ids already in the ledger are reported in
        ``errors``; every valid entry is still imported.
        """
        result = ImportResult()

        try:
            raw_entries = self._parse_import(data, format)
        except (json.JSONDecodeError, csv.Error, ValueError) as e:
            result.errors.append(f"Failed to parse import data: {e}")
            logger.warning(result.errors[-1])
            return result

        for index, raw in enumerate(raw_entries):
            if not isinstance(raw, dict):
                result.errors.append(f"Entry {index}: not an object")
                continue

            missing = [name for name in REQUIRED_FIELDS if raw.get(name) in (None, "", [])]
            if missing:
                result.errors.append(
                    f"Entry {index}: missing required fields: {', '.join(missing)}"
                )
                continue

            try:
                entry = MergeHistory.from_dict(raw)
                self._append(entry)
            except (KeyError, TypeError, ValueError) as e:
                result.errors.append(f"Entry {index} ({raw.get('id')}): {e}")
                continue

            result.imported += 1

        if result.errors:
            logger.warning(
                f"Imported {result.imported} ledger entries with {len(result.errors)} error(s)"
            )
        else:
            logger.info(f"Imported {result.imported} ledger entries")
        return result
