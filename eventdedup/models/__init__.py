"""Data models for event records and deduplication results."""

from .event import EventRecord, parse_datetime
from .results import (
    ChangeSource,
    ConflictResolution,
    ConflictRule,
    ConflictStrategy,
    DataSource,
    DuplicationResult,
    EventFingerprint,
    FieldChange,
    FieldValue,
    MatchResult,
    MergeDecision,
    MergeHistory,
    MergeStrategy,
    SimilarityScore,
)

__all__ = [
    "ChangeSource",
    "ConflictResolution",
    "ConflictRule",
    "ConflictStrategy",
    "DataSource",
    "DuplicationResult",
    "EventFingerprint",
    "EventRecord",
    "FieldChange",
    "FieldValue",
    "MatchResult",
    "MergeDecision",
    "MergeHistory",
    "MergeStrategy",
    "SimilarityScore",
    "parse_datetime",
]
