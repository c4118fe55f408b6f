"""
Field-level conflict resolution across a cluster of duplicate records.

Each field is resolved independently:
1. Empty values (None, blank strings, NaN, empty collections) are dropped
2. Every remaining value is scored for confidence (source reliability and
   value quality) and stamped with the time its source last updated it
3. The field's ConflictRule strategy picks the resolved value
4. Low-confidence or contested outcomes are flagged for manual review
"""

import json
import math
import statistics
import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse

from .logger import get_logger
from .models.event import EventRecord, parse_datetime
from .models.results import (
    ConflictResolution,
    ConflictRule,
    ConflictStrategy,
    DataSource,
    FieldValue,
    to_jsonable,
)
from .utils.cache import BoundedHistory

logger = get_logger(__name__)

UNKNOWN_SOURCE = "unknown"
PRIMARY_SOURCES = ("primary", "manual")

# Resolutions below this confidence always go to manual review
REVIEW_CONFIDENCE = 0.6
HIGH_PRIORITY = 8
QUALITY_SPREAD_LIMIT = 0.3
HIGH_QUALITY = 0.8
MERGED_CONFIDENCE_CAP = 0.9
DEFAULT_QUALITY_THRESHOLD = 0.7

URL_FIELDS = frozenset({"website_url", "ticket_url", "image_url"})
PRICE_FIELDS = frozenset({"price_min", "price_max"})
COUNTER_FIELDS = frozenset({"view_count"})
PLACEHOLDER_PREFIXES = ("test", "sample", "placeholder")

EPOCH = datetime.min.replace(tzinfo=UTC)

BUILTIN_SOURCES = {
    "primary": (0.95, 0.90),
    "manual": (0.98, 0.95),
    "eventbrite": (0.88, 0.85),
    "ticketmaster": (0.85, 0.82),
    "meetup": (0.78, 0.75),
    "facebook": (0.72, 0.70),
    "google_places": (0.92, 0.90),
    "foursquare": (0.85, 0.80),
    "yelp": (0.80, 0.78),
}

BUILTIN_RULES = {
    "title": {
        "strategy": "highest_quality",
        "priority": 10,
        "quality_threshold": 0.8,
        "completeness_weight": 0.7,
    },
    "start_time": {
        "strategy": "latest_wins",
        "priority": 9,
        "recency_weight": 0.9,
        "source_preference": ["primary", "ticketmaster", "eventbrite"],
    },
    "venue_name": {
        "strategy": "most_complete",
        "priority": 8,
        "completeness_weight": 0.8,
        "quality_threshold": 0.7,
    },
    "latitude": {
        "strategy": "highest_quality",
        "priority": 9,
        "quality_threshold": 0.9,
        "source_preference": ["google_places", "foursquare", "primary"],
    },
    "longitude": {
        "strategy": "highest_quality",
        "priority": 9,
        "quality_threshold": 0.9,
        "source_preference": ["google_places", "foursquare", "primary"],
    },
    "price_min": {"strategy": "most_complete", "priority": 7, "completeness_weight": 0.8},
    "price_max": {"strategy": "most_complete", "priority": 7, "completeness_weight": 0.8},
    "website_url": {"strategy": "highest_quality", "priority": 6, "quality_threshold": 0.9},
    "ticket_url": {
        "strategy": "highest_quality",
        "priority": 8,
        "quality_threshold": 0.9,
        "source_preference": ["ticketmaster", "eventbrite", "primary"],
    },
    "description": {
        "strategy": "most_complete",
        "priority": 6,
        "completeness_weight": 0.9,
        "quality_threshold": 0.6,
    },
    "tags": {"strategy": "merge_values", "priority": 5},
    "status": {"strategy": "primary_wins", "priority": 8},
    "view_count": {"strategy": "merge_values", "priority": 4},
}


def is_empty(value: Any) -> bool:
    """True for values that carry no information for resolution."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, float):
        return math.isnan(value)
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def is_valid_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return bool(parsed.scheme and parsed.netloc)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def value_quality(value: Any, field_name: str) -> float:
    """Intrinsic quality of a value in [0, 1], independent of its source."""
    if is_empty(value):
        return 0.0

    quality = 0.5

    if isinstance(value, str):
        text = value.strip()
        quality += min(0.3, len(text) / 100)
        if field_name == "title":
            if len(text) > 10:
                quality += 0.2
            if not text.lower().startswith(PLACEHOLDER_PREFIXES):
                quality += 0.1
        elif field_name == "description":
            if len(text) > 50:
                quality += 0.2
            if len(text.split()) > 10:
                quality += 0.1
        elif field_name in URL_FIELDS:
            if is_valid_url(text):
                quality += 0.4
    elif _is_number(value):
        if math.isfinite(value):
            quality += 0.3
        if field_name == "latitude" and -90 <= value <= 90:
            quality += 0.2
        elif field_name == "longitude" and -180 <= value <= 180:
            quality += 0.2
        elif field_name in PRICE_FIELDS and value >= 0:
            quality += 0.2
    elif isinstance(value, datetime):
        quality = 0.8
    elif isinstance(value, (list, tuple, set, dict)):
        quality += min(0.3, len(value) / 10)

    return min(1.0, quality)


def completeness(value: Any) -> float:
    """How much information a value carries, normalized to [0, 1]."""
    if is_empty(value):
        return 0.0
    if isinstance(value, str):
        return min(1.0, len(value.strip()) / 100)
    if isinstance(value, (list, tuple, set)):
        return min(1.0, len(value) / 10)
    if isinstance(value, dict):
        populated = [k for k, v in value.items() if v is not None]
        return min(1.0, len(populated) / 5)
    if _is_number(value) and value == 0:
        return 0.0
    return 0.8


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _canonical(value: Any) -> str:
    return json.dumps(to_jsonable(value), sort_keys=True, default=str)


@dataclass(frozen=True)
class FieldCandidate:
    """One value offered for a field, with the record and source it came from."""

    value: Any
    record: EventRecord | None = None
    source_name: str | None = None

    @property
    def source(self) -> str:
        if self.source_name:
            return self.source_name
        if self.record is not None and self.record.source:
            return self.record.source
        return UNKNOWN_SOURCE


class SourceRegistry:
    """
    Reliability registry of data sources.

    Unknown sources resolve to a neutral entry (reliability and quality 0.5).
    """

    def __init__(self, sources: dict[str, DataSource] | None = None, include_builtin: bool = True):
        self._sources: dict[str, DataSource] = {}
        self._lock = threading.Lock()
        if include_builtin:
            for name, (reliability, quality) in BUILTIN_SOURCES.items():
                self._sources[name] = DataSource(
                    name=name, reliability=reliability, data_quality=quality
                )
        for name, source in (sources or {}).items():
            self._sources[name] = source

    def get(self, name: str) -> DataSource:
        with self._lock:
            source = self._sources.get(name)
        return source or DataSource(name=name)

    def __contains__(self, name: str) -> bool:
        return name in self._sources

    def register(self, source: DataSource) -> None:
        with self._lock:
            self._sources[source.name] = source
        logger.info(f"Registered data source {source.name} (reliability {source.reliability:.2f})")

    def update(self, name: str, **changes) -> DataSource:
        """
        Update fields of a registered source.

        Raises:
            KeyError: If the source is not registered
        """
        with self._lock:
            existing = self._sources.get(name)
            if existing is None:
                raise KeyError(f"Unknown data source: {name}")
            updated = replace(existing, **changes)
            self._sources[name] = updated
        logger.debug(f"Updated data source {name}: {changes}")
        return updated

    def by_reliability(self) -> list[str]:
        """Registered source names, most reliable first."""
        with self._lock:
            sources = list(self._sources.values())
        return [s.name for s in sorted(sources, key=lambda s: s.reliability, reverse=True)]

    def snapshot(self) -> dict[str, DataSource]:
        with self._lock:
            return dict(self._sources)


class RuleBook:
    """Per-field conflict rules with a primary_wins fallback."""

    DEFAULT_STRATEGY = ConflictStrategy.PRIMARY_WINS
    DEFAULT_PRIORITY = 5

    def __init__(self, rules: dict[str, ConflictRule] | None = None, include_builtin: bool = True):
        self._rules: dict[str, ConflictRule] = {}
        self._lock = threading.Lock()
        if include_builtin:
            for field_name, data in BUILTIN_RULES.items():
                self._rules[field_name] = ConflictRule.from_dict(field_name, data)
        for field_name, rule in (rules or {}).items():
            self._rules[field_name] = rule

    def get(self, field_name: str) -> ConflictRule:
        with self._lock:
            rule = self._rules.get(field_name)
        if rule is not None:
            return rule
        return ConflictRule(
            field=field_name, strategy=self.DEFAULT_STRATEGY, priority=self.DEFAULT_PRIORITY
        )

    def set(self, rule: ConflictRule) -> None:
        with self._lock:
            self._rules[rule.field] = rule

    def update(self, field_name: str, **changes) -> ConflictRule:
        """Merge changes over the field's current (or default) rule."""
        if "strategy" in changes:
            changes["strategy"] = ConflictStrategy(changes["strategy"])
        updated = replace(self.get(field_name), **changes)
        self.set(updated)
        logger.debug(f"Updated conflict rule for {field_name}: {changes}")
        return updated

    def snapshot(self) -> dict[str, ConflictRule]:
        with self._lock:
            return dict(self._rules)


class ConflictResolver:
    """
    Resolve disagreeing field values using per-field rules and source reliability.

    Resolution is deterministic: value timestamps come from the records'
    ``updated_at`` or the registry, never from the wall clock.
    """

    def __init__(
        self,
        sources: SourceRegistry | None = None,
        rules: RuleBook | None = None,
        history: BoundedHistory | None = None,
    ):
        self.sources = sources or SourceRegistry()
        self.rules = rules or RuleBook()
        self.history = history if history is not None else BoundedHistory(100)
        self._strategies: dict[
            ConflictStrategy, Callable[[str, list[FieldValue], ConflictRule], tuple[Any, float]]
        ] = {
            ConflictStrategy.PRIMARY_WINS: self._primary_wins,
            ConflictStrategy.LATEST_WINS: self._latest_wins,
            ConflictStrategy.MOST_COMPLETE: self._most_complete,
            ConflictStrategy.HIGHEST_QUALITY: self._highest_quality,
            ConflictStrategy.MERGE_VALUES: self._merge_values,
            ConflictStrategy.MANUAL_REVIEW: self._manual_review,
        }

    # -- scoring --------------------------------------------------------------

    def value_confidence(self, value: Any, field_name: str, source: DataSource) -> float:
        confidence = source.reliability * 0.7 + value_quality(value, field_name) * 0.3

        if field_name == "title" and isinstance(value, str) and len(value) > 5:
            confidence += 0.1
        elif field_name in ("latitude", "longitude") and _is_number(value) and math.isfinite(value):
            confidence += 0.15
        elif field_name == "start_time" and parse_datetime(value) is not None:
            confidence += 0.1

        return min(1.0, confidence)

    def _timestamp(self, candidate: FieldCandidate, source: DataSource) -> datetime:
        if candidate.record is not None and candidate.record.updated_at is not None:
            return _as_aware(candidate.record.updated_at)
        if source.last_updated is not None:
            return _as_aware(source.last_updated)
        return EPOCH

    def score_candidates(
        self, field_name: str, candidates: Iterable[FieldCandidate]
    ) -> list[FieldValue]:
        """Turn non-empty candidates into scored FieldValues, preserving order."""
        values = []
        for candidate in candidates:
            if is_empty(candidate.value):
                continue
            source = self.sources.get(candidate.source)
            values.append(
                FieldValue(
                    value=candidate.value,
                    source=source.name,
                    confidence=self.value_confidence(candidate.value, field_name, source),
                    quality=value_quality(candidate.value, field_name),
                    last_updated=self._timestamp(candidate, source),
                )
            )
        return values

    # -- resolution -----------------------------------------------------------

    def resolve_field(
        self,
        field_name: str,
        candidates: Sequence[FieldCandidate],
        rule: ConflictRule | None = None,
    ) -> ConflictResolution:
        """
        Resolve one field across competing candidates.

        Args:
            field_name: EventRecord field being resolved
            candidates: Offered values in preference order (primary first)
            rule: Rule overriding the configured one for this call

        Returns:
            ConflictResolution; ``resolved_value`` is None only when every
            candidate was empty
        """
        rule = rule or self.rules.get(field_name)
        values = self.score_candidates(field_name, candidates)

        if not values:
            resolution = ConflictResolution(
                field=field_name,
                values=(),
                resolved_value=None,
                strategy=rule.strategy,
                confidence=0.0,
                needs_manual_review=False,
            )
        elif len(values) == 1:
            only = values[0]
            resolution = ConflictResolution(
                field=field_name,
                values=tuple(values),
                resolved_value=only.value,
                strategy=rule.strategy,
                confidence=only.confidence,
                needs_manual_review=only.confidence < REVIEW_CONFIDENCE,
            )
        else:
            resolved, confidence = self._strategies[rule.strategy](field_name, values, rule)
            review = rule.strategy is ConflictStrategy.MANUAL_REVIEW or self._needs_review(
                values, rule, confidence
            )
            resolution = ConflictResolution(
                field=field_name,
                values=tuple(values),
                resolved_value=resolved,
                strategy=rule.strategy,
                confidence=confidence,
                needs_manual_review=review,
            )

        self.history.append(field_name, resolution)
        logger.debug(
            f"Resolved {field_name} via {rule.strategy.value} from {len(values)} value(s): "
            f"confidence={resolution.confidence:.2f}, review={resolution.needs_manual_review}"
        )
        return resolution

    def _needs_review(
        self, values: list[FieldValue], rule: ConflictRule, confidence: float
    ) -> bool:
        if confidence < REVIEW_CONFIDENCE:
            return True

        if rule.priority >= HIGH_PRIORITY and len(values) > 2:
            if statistics.pstdev(v.quality for v in values) > QUALITY_SPREAD_LIMIT:
                return True

        high_quality = [v for v in values if v.quality > HIGH_QUALITY]
        if len(high_quality) > 1 and len({_canonical(v.value) for v in high_quality}) > 1:
            return True

        return False

    def _primary_wins(self, field_name, values, rule):
        for value in values:
            if value.source in PRIMARY_SOURCES:
                return value.value, value.confidence
        best = max(values, key=lambda v: v.confidence)
        return best.value, best.confidence

    def _latest_wins(self, field_name, values, rule):
        latest = values[0]
        for value in values[1:]:
            if value.last_updated > latest.last_updated:
                latest = value
        return latest.value, latest.confidence

    def _most_complete(self, field_name, values, rule):
        best = max(values, key=lambda v: completeness(v.value))
        return best.value, best.confidence

    def _highest_quality(self, field_name, values, rule):
        # First preferred source clearing the threshold wins, in preference order
        threshold = rule.quality_threshold
        if threshold is None:
            threshold = DEFAULT_QUALITY_THRESHOLD
        for preferred in rule.source_preference:
            for value in values:
                if value.source == preferred and value.quality >= threshold:
                    return value.value, value.confidence
        best = max(values, key=lambda v: v.quality)
        return best.value, best.confidence

    def _merge_values(self, field_name, values, rule):
        confidence = min(statistics.fmean(v.confidence for v in values), MERGED_CONFIDENCE_CAP)
        raw = [v.value for v in values]

        if field_name in COUNTER_FIELDS:
            merged = sum(v for v in raw if _is_number(v))
        elif field_name == "description":
            texts = [v for v in raw if isinstance(v, str)]
            merged = max(texts, key=lambda s: len(s.strip()), default=None)
        elif all(isinstance(v, (list, tuple, set)) for v in raw):
            merged = self._union(raw)
        else:
            merged = max(values, key=lambda v: v.quality).value

        return merged, confidence

    @staticmethod
    def _union(collections: list) -> list:
        seen: set[str] = set()
        merged = []
        for collection in collections:
            for item in collection:
                if isinstance(item, str):
                    item = item.strip()
                    if not item:
                        continue
                    key = item.casefold()
                else:
                    key = _canonical(item)
                if key in seen:
                    continue
                seen.add(key)
                merged.append(item)
        return merged

    def _manual_review(self, field_name, values, rule):
        best = max(values, key=lambda v: v.confidence)
        return best.value, best.confidence

    # -- batch and statistics -------------------------------------------------

    def resolve_batch(
        self, records: Sequence[EventRecord], fields: Iterable[str]
    ) -> dict[str, ConflictResolution]:
        """
        Resolve each field where at least two records carry a value.

        Records are offered in order, so the first record acts as primary
        for preference-ordered strategies.
        """
        resolutions = {}
        for field_name in fields:
            candidates = [
                FieldCandidate(getattr(record, field_name, None), record, record.source)
                for record in records
            ]
            if sum(1 for c in candidates if not is_empty(c.value)) > 1:
                resolutions[field_name] = self.resolve_field(field_name, candidates)
        return resolutions

    def get_resolution_stats(self) -> dict:
        snapshot = self.history.snapshot()
        resolutions = [r for items in snapshot.values() for r in items]
        total = len(resolutions)

        if total == 0:
            return {
                "total_resolutions": 0,
                "strategy_counts": {},
                "manual_review_rate": 0.0,
                "avg_confidence": 0.0,
                "field_stats": {},
            }

        strategy_counts: dict[str, int] = {}
        for resolution in resolutions:
            key = resolution.strategy.value
            strategy_counts[key] = strategy_counts.get(key, 0) + 1

        return {
            "total_resolutions": total,
            "strategy_counts": strategy_counts,
            "manual_review_rate": sum(1 for r in resolutions if r.needs_manual_review) / total,
            "avg_confidence": statistics.fmean(r.confidence for r in resolutions),
            "field_stats": {
                field_name: {
                    "count": len(items),
                    "avg_confidence": statistics.fmean(r.confidence for r in items),
                }
                for field_name, items in snapshot.items()
                if items
            },
        }

    def clear_history(self) -> None:
        self.history.clear()
