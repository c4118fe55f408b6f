"""Duplicate detection: score a target record against a candidate pool."""

import time
from collections.abc import Iterable

from .config import DedupConfig
from .fingerprint import FingerprintBuilder
from .logger import get_logger
from .models.event import EventRecord
from .models.results import DuplicationResult, EventFingerprint, MatchResult, SimilarityScore
from .similarity import SimilarityScorer
from .utils.cache import LRUCache

logger = get_logger(__name__)

# Gap between the lowest prices of two records that argues against a merge
PRICE_GAP_RISK = 50.0

REASON_TEMPLATES = {
    "title": "High title similarity ({:.1f}%)",
    "venue": "Same or similar venue ({:.1f}%)",
    "date": "Same or similar date ({:.1f}%)",
    "location": "Same location ({:.1f}%)",
    "semantic": "Similar content and category ({:.1f}%)",
}


class DuplicateDetector:
    """
    Find and rank likely duplicates of an event.

    Uses the similarity scorer for raw scores, then applies the configured
    thresholds:
    1. Candidates below the overall threshold are dropped
    2. Confidence is the fraction of per-dimension thresholds passed, plus
       twice the margin by which the overall score clears its threshold
    3. Matches at or above the auto-merge threshold make the target a duplicate
    """

    def __init__(
        self,
        config: DedupConfig | None = None,
        scorer: SimilarityScorer | None = None,
        builder: FingerprintBuilder | None = None,
        fingerprint_cache: LRUCache | None = None,
    ):
        self.config = config or DedupConfig()
        self.scorer = scorer or SimilarityScorer(self.config)
        self.builder = builder or FingerprintBuilder()
        self.fingerprint_cache = (
            fingerprint_cache
            if fingerprint_cache is not None
            else LRUCache(self.config.performance.cache_size)
        )

    def update_config(self, config: DedupConfig) -> None:
        self.config = config
        self.scorer.update_config(config)

    def fingerprint(self, record: EventRecord) -> EventFingerprint:
        """Fingerprint a record, reusing a cached one when the record is unchanged."""
        if not self.config.performance.enable_caching:
            return self.builder.build(record)

        cached = self.fingerprint_cache.get(record.id)
        if cached is not None and cached[0] == record:
            return cached[1]

        fp = self.builder.build(record)
        self.fingerprint_cache.set(record.id, (record, fp))
        return fp

    def calculate_confidence(self, score: SimilarityScore) -> float:
        thresholds = self.config.thresholds_dict()
        dimensions = SimilarityScore.DIMENSIONS
        passed = sum(1 for name in dimensions if score.dimension(name) >= thresholds[name])
        base = passed / len(dimensions)
        overall_bonus = max(0.0, score.overall - thresholds["overall"]) * 2
        return min(1.0, base + overall_bonus)

    def match_reasons(self, score: SimilarityScore) -> list[str]:
        thresholds = self.config.thresholds_dict()
        return [
            REASON_TEMPLATES[name].format(score.dimension(name) * 100)
            for name in SimilarityScore.DIMENSIONS
            if score.dimension(name) >= thresholds[name]
        ]

    def risk_factors(self, fp_a: EventFingerprint, fp_b: EventFingerprint) -> list[str]:
        risks = []

        same_date = bool(fp_a.date_key) and fp_a.date_key == fp_b.date_key
        if same_date and fp_a.time_bucket != fp_b.time_bucket:
            risks.append("Different time windows on same date")

        if fp_a.price_range and fp_b.price_range:
            if abs(fp_a.price_range[0] - fp_b.price_range[0]) > PRICE_GAP_RISK:
                risks.append("Significant price difference")

        if fp_a.category_normalized != fp_b.category_normalized:
            risks.append("Different event categories")

        return risks

    def find_matches(
        self, target: EventRecord, candidates: Iterable[EventRecord]
    ) -> list[MatchResult]:
        """
        Score candidates against a target and return those above the overall threshold.

        Args:
            target: Record to check
            candidates: Pool of records; the target itself is skipped

        Returns:
            The best ``performance.max_candidates`` MatchResults, sorted by
            descending confidence
        """
        target_fp = self.fingerprint(target)
        overall_threshold = self.config.thresholds.overall

        results: list[MatchResult] = []
        for candidate in candidates:
            if candidate.id == target.id:
                continue

            candidate_fp = self.fingerprint(candidate)
            score = self.scorer.score(target_fp, candidate_fp)
            if score.overall < overall_threshold:
                continue

            results.append(
                MatchResult(
                    event_id=candidate.id,
                    event=candidate,
                    score=score,
                    confidence=self.calculate_confidence(score),
                    reasons=self.match_reasons(score),
                    risk_factors=self.risk_factors(target_fp, candidate_fp),
                )
            )

        results.sort(key=lambda m: m.confidence, reverse=True)
        max_candidates = self.config.performance.max_candidates
        if len(results) > max_candidates:
            logger.debug(
                f"Keeping the best {max_candidates} of {len(results)} matches for {target.id}"
            )
            del results[max_candidates:]
        return results

    def check_for_duplicates(
        self, target: EventRecord, candidates: Iterable[EventRecord]
    ) -> DuplicationResult:
        """
        Decide whether the target duplicates any candidate.

        Returns:
            DuplicationResult; ``primary_event_id`` is the best
            high-confidence match when the target is a duplicate
        """
        start = time.perf_counter()
        matches = self.find_matches(target, candidates)

        auto_merge = self.config.quality.auto_merge_threshold
        high_confidence = [m for m in matches if m.confidence >= auto_merge]
        is_duplicate = bool(high_confidence)

        recommendations = []
        if is_duplicate:
            if len(high_confidence) == 1:
                recommendations.append(
                    "Single high-confidence match found - safe to merge automatically"
                )
            else:
                recommendations.append(
                    "Multiple high-confidence matches - review cluster for best merge strategy"
                )
            logger.info(
                f"Duplicate detected: {target.id} matches {len(high_confidence)} event(s), "
                f"best {high_confidence[0].event_id} ({high_confidence[0].confidence:.0%})"
            )
        elif matches:
            recommendations.append(
                "Potential matches found but confidence too low - consider manual review"
            )
            logger.info(
                f"Near-duplicate: {target.id} ~ {matches[0].event_id} "
                f"({matches[0].confidence:.0%}) - needs review"
            )

        algorithms = [
            self.config.algorithms.string_matching,
            "location_proximity",
            "temporal_proximity",
        ]
        if self.config.algorithms.semantic_matching:
            algorithms.append("semantic_tokens")

        return DuplicationResult(
            is_duplicate=is_duplicate,
            primary_event_id=high_confidence[0].event_id if is_duplicate else None,
            duplicate_event_ids=[m.event_id for m in high_confidence],
            matches=matches,
            confidence=max((m.confidence for m in high_confidence), default=0.0),
            recommendations=recommendations,
            processing_time_ms=(time.perf_counter() - start) * 1000,
            algorithms_used=algorithms,
            threshold=self.config.thresholds.overall,
        )
