"""Derived and audit data produced while matching and merging events."""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from .event import EventRecord, parse_datetime


class ConflictStrategy(str, Enum):
    """How disagreeing values of one field are resolved."""

    PRIMARY_WINS = "primary_wins"
    LATEST_WINS = "latest_wins"
    MOST_COMPLETE = "most_complete"
    HIGHEST_QUALITY = "highest_quality"
    MERGE_VALUES = "merge_values"
    MANUAL_REVIEW = "manual_review"


class MergeStrategy(str, Enum):
    """Overall policy applied when planning a merge."""

    ENHANCE_PRIMARY = "enhance_primary"
    MERGE_FIELDS = "merge_fields"
    KEEP_PRIMARY = "keep_primary"
    QUALITY_BASED = "quality_based"
    TEMPORAL_PRIORITY = "temporal_priority"
    SOURCE_PRIORITY = "source_priority"


class ChangeSource(str, Enum):
    """Where the post-merge value of a field came from."""

    PRIMARY = "primary"
    DUPLICATE = "duplicate"
    MERGED = "merged"
    ENHANCED = "enhanced"


def to_jsonable(value: Any) -> Any:
    """Convert a field value into something json.dumps accepts."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, EventRecord):
        return value.to_dict()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


@dataclass(frozen=True)
class EventFingerprint:
    """Comparable summary of one EventRecord, rebuilt whenever it is needed."""

    id: str
    title_tokens: tuple[str, ...] = ()
    venue_normalized: str = ""
    location_key: str = "unknown"
    coordinates: tuple[float, float] | None = None
    date_key: str = ""
    time_bucket: str = "unknown"
    content_hash: str = ""
    semantic_hash: str = ""
    category_normalized: str = "other"
    price_range: tuple[float, float] | None = None

    @property
    def title_text(self) -> str:
        return " ".join(self.title_tokens)


@dataclass(frozen=True)
class SimilarityScore:
    """
    Per-dimension similarity of two fingerprints, each in [0, 1].

    Build instances with ``combine`` so ``overall`` is always the weighted
    sum of the five dimensions.
    """

    title: float
    venue: float
    date: float
    location: float
    semantic: float
    overall: float

    DIMENSIONS = ("title", "venue", "date", "location", "semantic")

    @classmethod
    def combine(
        cls,
        weights: dict[str, float],
        *,
        title: float,
        venue: float,
        date: float,
        location: float,
        semantic: float,
    ) -> "SimilarityScore":
        dims = {
            "title": title,
            "venue": venue,
            "date": date,
            "location": location,
            "semantic": semantic,
        }
        overall = sum(dims[name] * weights.get(name, 0.0) for name in cls.DIMENSIONS)
        return cls(overall=overall, **dims)

    def dimension(self, name: str) -> float:
        return getattr(self, name)

    def to_dict(self) -> dict[str, float]:
        return {
            "title": self.title,
            "venue": self.venue,
            "date": self.date,
            "location": self.location,
            "semantic": self.semantic,
            "overall": self.overall,
        }


@dataclass
class MatchResult:
    """One candidate duplicate of a target record."""

    event_id: str
    event: EventRecord
    score: SimilarityScore
    confidence: float
    reasons: list[str] = field(default_factory=list)
    risk_factors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "title": self.event.title,
            "source": self.event.source,
            "score": self.score.to_dict(),
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "risk_factors": list(self.risk_factors),
        }


@dataclass
class DuplicationResult:
    """Verdict of a duplicate check for one target record."""

    is_duplicate: bool
    primary_event_id: str | None
    duplicate_event_ids: list[str]
    matches: list[MatchResult]
    confidence: float
    recommendations: list[str] = field(default_factory=list)
    processing_time_ms: float = 0.0
    algorithms_used: list[str] = field(default_factory=list)
    threshold: float = 0.0

    def to_dict(self) -> dict:
        return {
            "is_duplicate": self.is_duplicate,
            "primary_event_id": self.primary_event_id,
            "duplicate_event_ids": list(self.duplicate_event_ids),
            "matches": [m.to_dict() for m in self.matches],
            "confidence": self.confidence,
            "recommendations": list(self.recommendations),
            "processing_time_ms": self.processing_time_ms,
            "algorithms_used": list(self.algorithms_used),
            "threshold": self.threshold,
        }


@dataclass
class DataSource:
    """Registry entry describing how far a data origin can be trusted."""

    name: str
    reliability: float = 0.5
    last_updated: datetime | None = None
    data_quality: float = 0.5

    def __post_init__(self):
        for attr in ("reliability", "data_quality"):
            value = getattr(self, attr)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{attr} for source '{self.name}' must be in [0, 1], got {value}")

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "DataSource":
        return cls(
            name=name,
            reliability=float(data.get("reliability", 0.5)),
            last_updated=parse_datetime(data.get("last_updated")),
            data_quality=float(data.get("data_quality", 0.5)),
        )

    def to_dict(self) -> dict:
        return {
            "reliability": self.reliability,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "data_quality": self.data_quality,
        }


@dataclass
class ConflictRule:
    """Per-field resolution policy."""

    field: str
    strategy: ConflictStrategy = ConflictStrategy.PRIMARY_WINS
    priority: int = 5
    source_preference: list[str] = field(default_factory=list)
    quality_threshold: float | None = None
    recency_weight: float | None = None
    completeness_weight: float | None = None

    @classmethod
    def from_dict(cls, field_name: str, data: dict) -> "ConflictRule":
        return cls(
            field=field_name,
            strategy=ConflictStrategy(data.get("strategy", ConflictStrategy.PRIMARY_WINS.value)),
            priority=int(data.get("priority", 5)),
            source_preference=list(data.get("source_preference", [])),
            quality_threshold=data.get("quality_threshold"),
            recency_weight=data.get("recency_weight"),
            completeness_weight=data.get("completeness_weight"),
        )

    def to_dict(self) -> dict:
        d: dict[str, Any] = {"strategy": self.strategy.value, "priority": self.priority}
        if self.source_preference:
            d["source_preference"] = list(self.source_preference)
        if self.quality_threshold is not None:
            d["quality_threshold"] = self.quality_threshold
        if self.recency_weight is not None:
            d["recency_weight"] = self.recency_weight
        if self.completeness_weight is not None:
            d["completeness_weight"] = self.completeness_weight
        return d


@dataclass(frozen=True)
class FieldValue:
    """One competing value of a field, scored for resolution."""

    value: Any
    source: str
    confidence: float
    quality: float
    last_updated: datetime

    def to_dict(self) -> dict:
        return {
            "value": to_jsonable(self.value),
            "source": self.source,
            "confidence": self.confidence,
            "quality": self.quality,
            "last_updated": self.last_updated.isoformat(),
        }


@dataclass(frozen=True)
class ConflictResolution:
    """Outcome of resolving one field across a cluster of records."""

    field: str
    values: tuple[FieldValue, ...]
    resolved_value: Any
    strategy: ConflictStrategy
    confidence: float
    needs_manual_review: bool = False

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "values": [v.to_dict() for v in self.values],
            "resolved_value": to_jsonable(self.resolved_value),
            "strategy": self.strategy.value,
            "confidence": self.confidence,
            "needs_manual_review": self.needs_manual_review,
        }


@dataclass(frozen=True)
class MergeDecision:
    """
    Proposed, not yet executed, merge of a primary record with its duplicates.

    ``primary_record`` is the snapshot of the primary taken when the decision
    was planned; execution materializes the merged record from it.
    """

    primary_id: str
    duplicate_ids: tuple[str, ...]
    strategy: MergeStrategy
    resolutions: tuple[ConflictResolution, ...]
    confidence: float
    reasons: tuple[str, ...] = ()
    preview: EventRecord | None = None
    primary_record: EventRecord | None = None
    created_at: datetime | None = None

    @property
    def needs_manual_review(self) -> bool:
        return any(r.needs_manual_review for r in self.resolutions)

    @property
    def review_fields(self) -> list[str]:
        return [r.field for r in self.resolutions if r.needs_manual_review]

    def resolution_for(self, field_name: str) -> ConflictResolution | None:
        for resolution in self.resolutions:
            if resolution.field == field_name:
                return resolution
        return None

    def to_dict(self) -> dict:
        return {
            "primary_id": self.primary_id,
            "duplicate_ids": list(self.duplicate_ids),
            "strategy": self.strategy.value,
            "confidence": self.confidence,
            "reasons": list(self.reasons),
            "needs_manual_review": self.needs_manual_review,
            "resolutions": [r.to_dict() for r in self.resolutions],
            "preview": self.preview.to_dict() if self.preview else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class FieldChange:
    """Before/after value of one field in an executed merge."""

    field: str
    before: Any
    after: Any
    source: ChangeSource
    confidence: float

    @property
    def changed(self) -> bool:
        return self.before != self.after

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "before": to_jsonable(self.before),
            "after": to_jsonable(self.after),
            "source": self.source.value,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FieldChange":
        return cls(
            field=data["field"],
            before=data.get("before"),
            after=data.get("after"),
            source=ChangeSource(data.get("source", ChangeSource.PRIMARY.value)),
            confidence=float(data.get("confidence", 0.0)),
        )


@dataclass(frozen=True)
class MergeHistory:
    """
    Immutable audit entry for one executed merge.

    ``before`` and ``after`` hold JSON-safe snapshots of the primary record
    and the merged record.
    """

    id: str
    primary_id: str
    duplicate_ids: tuple[str, ...]
    merged_at: datetime
    merged_by: str
    strategy: MergeStrategy
    confidence: float
    field_changes: tuple[FieldChange, ...] = ()
    quality_improvement: float = 0.0
    processing_time_ms: float = 0.0
    before: dict | None = None
    after: dict | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "primary_id": self.primary_id,
            "duplicate_ids": list(self.duplicate_ids),
            "merged_at": self.merged_at.isoformat(),
            "merged_by": self.merged_by,
            "strategy": self.strategy.value,
            "confidence": self.confidence,
            "field_changes": [c.to_dict() for c in self.field_changes],
            "quality_improvement": self.quality_improvement,
            "processing_time_ms": self.processing_time_ms,
            "before": self.before,
            "after": self.after,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MergeHistory":
        """Rebuild an entry from its exported form. Raises ValueError on bad input."""
        merged_at = parse_datetime(data.get("merged_at"))
        if merged_at is None:
            raise ValueError(f"invalid merged_at: {data.get('merged_at')!r}")
        if merged_at.tzinfo is None:
            merged_at = merged_at.replace(tzinfo=UTC)
        return cls(
            id=str(data["id"]),
            primary_id=str(data["primary_id"]),
            duplicate_ids=tuple(str(d) for d in data["duplicate_ids"]),
            merged_at=merged_at,
            merged_by=str(data.get("merged_by") or "system"),
            strategy=MergeStrategy(data["strategy"]),
            confidence=float(data["confidence"]),
            field_changes=tuple(FieldChange.from_dict(c) for c in data.get("field_changes") or []),
            quality_improvement=float(data.get("quality_improvement") or 0.0),
            processing_time_ms=float(data.get("processing_time_ms") or 0.0),
            before=data.get("before"),
            after=data.get("after"),
        )
