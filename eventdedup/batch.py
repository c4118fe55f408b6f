"""
Batch deduplication: blocking, pairwise comparison, clustering and merging.

Records are compared only with earlier records that share a block:
- the same date key (or a neighbouring day when fuzzy dates are enabled)
- the same location key

Pairs whose confidence reaches the auto-merge threshold are unioned into
clusters. The most complete record of each cluster becomes its primary.
"""

import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any

from .config import DedupConfig
from .detector import DuplicateDetector
from .logger import get_logger
from .merger import MergePlanner, completeness_score
from .models.event import EventRecord
from .models.results import EventFingerprint, MergeDecision, MergeStrategy

logger = get_logger(__name__)

UNKNOWN_LOCATION = "unknown"

# Called with a planned decision; returns an object with ``success``,
# ``merged_record`` and ``errors`` attributes
MergeCallback = Callable[[MergeDecision], Any]


class ProcessingMode(str, Enum):
    REALTIME = "realtime"
    BATCH = "batch"
    INCREMENTAL = "incremental"
    FULL_SCAN = "full_scan"


@dataclass
class BatchResult:
    """Outcome of one process_events call."""

    processed_count: int = 0
    duplicates_found: int = 0
    merges_completed: int = 0
    clusters: list[list[str]] = field(default_factory=list)
    decisions: list[MergeDecision] = field(default_factory=list)
    merged_records: list[EventRecord] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "processed_count": self.processed_count,
            "duplicates_found": self.duplicates_found,
            "merges_completed": self.merges_completed,
            "clusters": [list(c) for c in self.clusters],
            "decisions": [d.to_dict() for d in self.decisions],
            "merged_records": [r.to_dict() for r in self.merged_records],
            "errors": dict(self.errors),
            "metrics": dict(self.metrics),
        }


class _DisjointSet:
    def __init__(self):
        self.parent: dict[str, str] = {}

    def find(self, item: str) -> str:
        self.parent.setdefault(item, item)
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self.parent[root_b] = root_a


def _neighbour_days(date_key: str, fuzzy: bool) -> list[str]:
    if not date_key:
        return []
    if not fuzzy:
        return [date_key]
    day = date.fromisoformat(date_key)
    return [(day + timedelta(days=offset)).isoformat() for offset in (-1, 0, 1)]


class BatchCoordinator:
    """
    Deduplicate collections of records.

    In ``incremental`` mode the coordinator keeps every record it has seen
    (merged records replace their cluster) and compares new records against
    that index on later calls.
    """

    def __init__(
        self,
        config: DedupConfig | None = None,
        detector: DuplicateDetector | None = None,
        planner: MergePlanner | None = None,
        merge_callback: MergeCallback | None = None,
    ):
        self.config = config or DedupConfig()
        self.detector = detector or DuplicateDetector(self.config)
        self.planner = planner or MergePlanner(self.config)
        self.merge_callback = merge_callback

        self._index: dict[str, EventRecord] = {}
        self._lock = threading.Lock()
        self._stats = {
            "batches": 0,
            "events_processed": 0,
            "comparisons": 0,
            "clusters": 0,
            "merges": 0,
            "errors": 0,
            "processing_time_ms": 0.0,
        }

    def update_config(self, config: DedupConfig) -> None:
        self.config = config
        self.detector.update_config(config)
        self.planner.config = config

    # -- blocking ------------------------------------------------------------

    def _block_index(
        self, pool: Sequence[EventRecord], fingerprints: dict[str, EventFingerprint]
    ) -> tuple[dict[str, list[int]], dict[str, list[int]]]:
        by_date: dict[str, list[int]] = {}
        by_location: dict[str, list[int]] = {}
        for position, record in enumerate(pool):
            fp = fingerprints[record.id]
            if fp.date_key:
                by_date.setdefault(fp.date_key, []).append(position)
            if fp.location_key != UNKNOWN_LOCATION:
                by_location.setdefault(fp.location_key, []).append(position)
        return by_date, by_location

    def candidates_for(
        self,
        position: int,
        pool: Sequence[EventRecord],
        fingerprints: dict[str, EventFingerprint],
        blocks: tuple[dict[str, list[int]], dict[str, list[int]]] | None,
    ) -> list[EventRecord]:
        """Earlier records of the pool that may duplicate ``pool[position]``."""
        if blocks is None:
            return list(pool[:position])

        by_date, by_location = blocks
        fp = fingerprints[pool[position].id]
        positions: set[int] = set()
        for day in _neighbour_days(fp.date_key, self.config.algorithms.fuzzy_date):
            positions.update(by_date.get(day, ()))
        if fp.location_key != UNKNOWN_LOCATION:
            positions.update(by_location.get(fp.location_key, ()))

        return [pool[p] for p in sorted(positions) if p < position]

    # -- comparison ----------------------------------------------------------

    def _compare(
        self, target: EventRecord, candidates: list[EventRecord]
    ) -> list[tuple[str, str, float]]:
        auto_merge = self.config.quality.auto_merge_threshold
        matches = self.detector.find_matches(target, candidates)
        return [
            (target.id, m.event_id, m.confidence) for m in matches if m.confidence >= auto_merge
        ]

    def _run_comparisons(
        self,
        jobs: list[tuple[EventRecord, list[EventRecord]]],
        parallel: bool,
        result: BatchResult,
    ) -> list[tuple[str, str, float]]:
        pairs: list[tuple[str, str, float]] = []
        if not parallel:
            for target, candidates in jobs:
                try:
                    pairs.extend(self._compare(target, candidates))
                except Exception as e:
                    logger.error(f"Comparison failed for {target.id}: {e}")
                    result.errors[target.id] = str(e)
            return pairs

        batch_size = self.config.performance.batch_size
        with ThreadPoolExecutor(max_workers=self.config.performance.max_concurrency) as executor:
            for offset in range(0, len(jobs), batch_size):
                chunk = jobs[offset : offset + batch_size]
                future_to_id = {
                    executor.submit(self._compare, target, candidates): target.id
                    for target, candidates in chunk
                }
                for future in as_completed(future_to_id):
                    event_id = future_to_id[future]
                    try:
                        pairs.extend(future.result())
                    except Exception as e:
                        logger.error(f"Comparison failed for {event_id}: {e}")
                        result.errors[event_id] = str(e)

        # Completion order varies between runs
        pairs.sort()
        return pairs

    # -- clustering ----------------------------------------------------------

    @staticmethod
    def build_clusters(
        pool: Sequence[EventRecord], pairs: Iterable[tuple[str, str, float]]
    ) -> list[list[str]]:
        """Group ids linked by accepted pairs; singletons are left out."""
        disjoint = _DisjointSet()
        for a, b, _ in pairs:
            disjoint.union(a, b)

        groups: dict[str, list[str]] = {}
        for record in pool:
            if record.id in disjoint.parent:
                groups.setdefault(disjoint.find(record.id), []).append(record.id)
        return [members for members in groups.values() if len(members) > 1]

    @staticmethod
    def choose_primary(records: Sequence[EventRecord]) -> EventRecord:
        """The most complete record; earliest wins ties."""
        best = records[0]
        best_score = completeness_score(best)
        for record in records[1:]:
            score = completeness_score(record)
            if score > best_score:
                best, best_score = record, score
        return best

    # -- processing ----------------------------------------------------------

    def process_events(
        self,
        events: Iterable[EventRecord],
        mode: ProcessingMode = ProcessingMode.BATCH,
        merge_callback: MergeCallback | None = None,
        strategy: MergeStrategy = MergeStrategy.ENHANCE_PRIMARY,
    ) -> BatchResult:
        """
        Find duplicate clusters among events and plan (optionally execute) their merges.

        Args:
            events: Records to process
            mode: Processing mode
            merge_callback: Executes each planned decision; overrides the
                coordinator's callback. Without one, decisions are only planned.
            strategy: Overall merge strategy for planned decisions

        Returns:
            BatchResult; failures are collected per event id
        """
        start = time.perf_counter()
        mode = ProcessingMode(mode)
        callback = merge_callback or self.merge_callback
        events = list(events)
        result = BatchResult(processed_count=len(events))

        new_records: dict[str, EventRecord] = {}
        for record in events:
            if record.id in new_records:
                logger.warning(f"Duplicate record id {record.id} in input; keeping the last one")
            new_records[record.id] = record

        if mode is ProcessingMode.INCREMENTAL:
            with self._lock:
                known = [r for r in self._index.values() if r.id not in new_records]
            pool = known + list(new_records.values())
        else:
            pool = list(new_records.values())

        fingerprints: dict[str, EventFingerprint] = {}
        for record in pool:
            try:
                fingerprints[record.id] = self.detector.fingerprint(record)
            except Exception as e:
                logger.error(f"Fingerprinting failed for {record.id}: {e}")
                result.errors[record.id] = str(e)
        pool = [r for r in pool if r.id in fingerprints]
        first_target = sum(1 for r in pool if r.id not in new_records)

        blocks = None
        if mode is not ProcessingMode.FULL_SCAN:
            blocks = self._block_index(pool, fingerprints)
        jobs = []
        for position in range(first_target, len(pool)):
            candidates = self.candidates_for(position, pool, fingerprints, blocks)
            if candidates:
                jobs.append((pool[position], candidates))

        comparisons = sum(len(c) for _, c in jobs)
        parallel = (
            mode in (ProcessingMode.BATCH, ProcessingMode.FULL_SCAN)
            and self.config.performance.parallel_processing
            and self.config.performance.max_concurrency > 1
        )
        pairs = self._run_comparisons(jobs, parallel, result)

        by_id = {r.id: r for r in pool}
        result.clusters = self.build_clusters(pool, pairs)
        result.duplicates_found = sum(len(c) - 1 for c in result.clusters)

        merged_away: set[str] = set()
        replacements: dict[str, EventRecord] = {}
        for cluster in result.clusters:
            members = [by_id[event_id] for event_id in cluster]
            primary = self.choose_primary(members)
            duplicates = [m for m in members if m.id != primary.id]

            try:
                decision = self.planner.create_merge_decision(primary, duplicates, strategy)
            except (ValueError, TypeError) as e:
                logger.error(f"Planning failed for cluster {cluster}: {e}")
                result.errors[primary.id] = str(e)
                continue
            result.decisions.append(decision)

            if callback is None:
                continue

            try:
                outcome = callback(decision)
            except Exception as e:
                logger.error(f"Merge failed for cluster {cluster}: {e}")
                result.errors[primary.id] = str(e)
                continue

            if outcome.success:
                result.merges_completed += 1
                result.merged_records.append(outcome.merged_record)
                merged_away.update(d.id for d in duplicates)
                replacements[primary.id] = outcome.merged_record
            else:
                result.errors[primary.id] = "; ".join(outcome.errors) or "merge failed"

        if mode is ProcessingMode.INCREMENTAL:
            with self._lock:
                self._index.update(new_records)
                self._index.update(replacements)
                for event_id in merged_away:
                    self._index.pop(event_id, None)

        elapsed_ms = (time.perf_counter() - start) * 1000
        result.metrics = {
            "mode": mode.value,
            "comparisons": comparisons,
            "accepted_pairs": len(pairs),
            "clusters": len(result.clusters),
            "processing_time_ms": elapsed_ms,
            "similarity_cache": self.detector.scorer.cache_stats(),
            "fingerprint_cache": self.detector.fingerprint_cache.stats(),
        }

        with self._lock:
            self._stats["batches"] += 1
            self._stats["events_processed"] += len(events)
            self._stats["comparisons"] += comparisons
            self._stats["clusters"] += len(result.clusters)
            self._stats["merges"] += result.merges_completed
            self._stats["errors"] += len(result.errors)
            self._stats["processing_time_ms"] += elapsed_ms

        logger.info(
            f"Processed {len(events)} events ({mode.value}): {len(result.clusters)} cluster(s), "
            f"{result.duplicates_found} duplicate(s), {result.merges_completed} merge(s), "
            f"{len(result.errors)} error(s) in {elapsed_ms:.0f}ms"
        )
        return result

    @property
    def index_size(self) -> int:
        return len(self._index)

    def clear_caches(self) -> None:
        self.detector.scorer.clear_cache()
        self.detector.fingerprint_cache.clear()
        logger.debug("Cleared similarity and fingerprint caches")

    def reset_index(self) -> None:
        with self._lock:
            self._index.clear()

    def get_performance_stats(self) -> dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
        batches = stats["batches"]
        stats["avg_processing_time_ms"] = stats["processing_time_ms"] / batches if batches else 0.0
        stats["index_size"] = self.index_size
        stats["similarity_cache"] = self.detector.scorer.cache_stats()
        stats["fingerprint_cache"] = self.detector.fingerprint_cache.stats()
        return stats
