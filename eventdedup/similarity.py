"""
String, geographic and temporal similarity between event fingerprints.

String metrics:
- levenshtein: 1 - edit distance / longer length
- jaro_winkler: Jaro similarity with the standard 4-character prefix bonus
- cosine: cosine of token count vectors
- hybrid: 0.4 levenshtein + 0.4 jaro_winkler + 0.2 cosine

All metrics return values in [0, 1] and are symmetric in their arguments.
"""

import math
from collections import Counter
from collections.abc import Callable
from datetime import date

from .config import DedupConfig
from .logger import get_logger
from .models.results import EventFingerprint, SimilarityScore
from .utils.cache import LRUCache
from .utils.text import tokenize

logger = get_logger(__name__)

EARTH_RADIUS_M = 6_371_000

# (max distance in metres, score), checked in order
DISTANCE_BANDS = (
    (100, 1.0),
    (500, 0.8),
    (1_000, 0.6),
    (5_000, 0.3),
)

TOKEN_BONUS_WEIGHT = 0.2
JARO_PREFIX_LENGTH = 4
JARO_PREFIX_SCALE = 0.1


def levenshtein_distance(s1: str, s2: str) -> int:
    """Minimum number of single-character edits turning s1 into s2."""
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if len(s2) == 0:
        return len(s1)

    previous_row = list(range(len(s2) + 1))

    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def levenshtein(a: str, b: str) -> float:
    """Normalized edit-distance similarity."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / max(len(a), len(b))


def _jaro_winkler(a: str, b: str) -> float:
    a_len, b_len = len(a), len(b)
    match_window = max(a_len, b_len) // 2 - 1
    if match_window < 0:
        return 0.0

    a_matches = [False] * a_len
    b_matches = [False] * b_len
    matches = 0

    for i in range(a_len):
        start = max(0, i - match_window)
        end = min(i + match_window + 1, b_len)
        for j in range(start, end):
            if b_matches[j] or a[i] != b[j]:
                continue
            a_matches[i] = b_matches[j] = True
            matches += 1
            break

    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i in range(a_len):
        if not a_matches[i]:
            continue
        while not b_matches[k]:
            k += 1
        if a[i] != b[k]:
            transpositions += 1
        k += 1

    jaro = (matches / a_len + matches / b_len + (matches - transpositions / 2) / matches) / 3

    prefix = 0
    for i in range(min(JARO_PREFIX_LENGTH, a_len, b_len)):
        if a[i] != b[i]:
            break
        prefix += 1

    return jaro + JARO_PREFIX_SCALE * prefix * (1 - jaro)


def jaro_winkler(a: str, b: str) -> float:
    """
    Jaro-Winkler similarity.

    Greedy matching can differ by argument order, so the pair is evaluated
    in sorted order to keep the metric symmetric.
    """
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0
    first, second = sorted((a, b))
    return _jaro_winkler(first, second)


def cosine(a: str, b: str) -> float:
    """Cosine similarity of token count vectors."""
    if not a or not b:
        return 0.0
    if a == b:
        return 1.0

    a_counts = Counter(tokenize(a))
    b_counts = Counter(tokenize(b))
    dot = sum(count * b_counts[token] for token, count in a_counts.items())
    a_mag = math.sqrt(sum(c * c for c in a_counts.values()))
    b_mag = math.sqrt(sum(c * c for c in b_counts.values()))
    if not a_mag or not b_mag:
        return 0.0
    return dot / (a_mag * b_mag)


def hybrid(a: str, b: str) -> float:
    return levenshtein(a, b) * 0.4 + jaro_winkler(a, b) * 0.4 + cosine(a, b) * 0.2


STRING_METRICS: dict[str, Callable[[str, str], float]] = {
    "levenshtein": levenshtein,
    "jaro_winkler": jaro_winkler,
    "cosine": cosine,
    "hybrid": hybrid,
}


def haversine_m(coord1: tuple[float, float], coord2: tuple[float, float]) -> float:
    """Great-circle distance in metres between two (lat, lng) pairs."""
    lat1, lng1 = coord1
    lat2, lng2 = coord2
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_score(meters: float) -> float:
    for limit, score in DISTANCE_BANDS:
        if meters <= limit:
            return score
    return 0.0


class SimilarityScorer:
    """
    Score pairs of fingerprints on five dimensions.

    Scores are raw: thresholds gate acceptance in the detector, not here.
    An optional LRU cache keyed by the unordered pair of (record id,
    content hash) avoids rescoring the same pair within a batch.
    """

    def __init__(self, config: DedupConfig | None = None, cache: LRUCache | None = None):
        self.config = config or DedupConfig()
        self.cache = cache if cache is not None else LRUCache(self.config.performance.cache_size)

    def update_config(self, config: DedupConfig) -> None:
        """Swap in a new configuration, dropping cached scores if scoring inputs changed."""
        old = self.config
        self.config = config
        if (
            old.weights != config.weights
            or old.thresholds != config.thresholds
            or old.algorithms != config.algorithms
        ):
            self.clear_cache()
            logger.debug("Similarity cache cleared after configuration change")

    def clear_cache(self) -> None:
        self.cache.clear()

    def cache_stats(self) -> dict[str, float]:
        return self.cache.stats()

    @property
    def string_metric(self) -> Callable[[str, str], float]:
        return STRING_METRICS[self.config.algorithms.string_matching]

    def score(self, fp_a: EventFingerprint, fp_b: EventFingerprint) -> SimilarityScore:
        if not self.config.performance.enable_caching:
            return self._score(fp_a, fp_b)

        key = tuple(sorted(((fp_a.id, fp_a.content_hash), (fp_b.id, fp_b.content_hash))))
        return self.cache.get_or_compute(key, lambda: self._score(fp_a, fp_b))

    def _score(self, fp_a: EventFingerprint, fp_b: EventFingerprint) -> SimilarityScore:
        if fp_a == fp_b:
            # A record compared with itself matches on every dimension, even empty ones
            return SimilarityScore.combine(
                self.config.weights_dict(),
                title=1.0,
                venue=1.0,
                date=1.0,
                location=1.0,
                semantic=1.0,
            )

        score = SimilarityScore.combine(
            self.config.weights_dict(),
            title=self.title_similarity(fp_a, fp_b),
            venue=self.venue_similarity(fp_a, fp_b),
            date=self.date_similarity(fp_a, fp_b),
            location=self.location_similarity(fp_a, fp_b),
            semantic=self.semantic_similarity(fp_a, fp_b),
        )
        logger.debug(
            f"Scored {fp_a.id} vs {fp_b.id}: overall={score.overall:.3f} "
            f"(title={score.title:.2f}, venue={score.venue:.2f}, date={score.date:.2f}, "
            f"location={score.location:.2f}, semantic={score.semantic:.2f})"
        )
        return score

    def title_similarity(self, fp_a: EventFingerprint, fp_b: EventFingerprint) -> float:
        title_a = fp_a.title_text
        title_b = fp_b.title_text
        if not title_a or not title_b:
            return 0.0
        if title_a == title_b:
            return 1.0

        string_sim = self.string_metric(title_a, title_b)

        tokens_a = set(fp_a.title_tokens)
        tokens_b = set(fp_b.title_tokens)
        shared = len(tokens_a & tokens_b)
        token_bonus = shared / max(len(tokens_a), len(tokens_b)) * TOKEN_BONUS_WEIGHT

        return min(1.0, string_sim + token_bonus)

    def venue_similarity(self, fp_a: EventFingerprint, fp_b: EventFingerprint) -> float:
        if not fp_a.venue_normalized or not fp_b.venue_normalized:
            return 0.0
        if fp_a.venue_normalized == fp_b.venue_normalized:
            return 1.0
        return self.string_metric(fp_a.venue_normalized, fp_b.venue_normalized)

    def date_similarity(self, fp_a: EventFingerprint, fp_b: EventFingerprint) -> float:
        if not fp_a.date_key or not fp_b.date_key:
            return 0.0
        if fp_a.date_key == fp_b.date_key:
            return 1.0
        if not self.config.algorithms.fuzzy_date:
            return 0.0

        day_a = date.fromisoformat(fp_a.date_key)
        day_b = date.fromisoformat(fp_b.date_key)
        diff_days = abs((day_a - day_b).days)
        if diff_days <= 1:
            return 0.9 if fp_a.time_bucket == fp_b.time_bucket else 0.7
        return 0.3 if diff_days <= 7 else 0.0

    def location_similarity(self, fp_a: EventFingerprint, fp_b: EventFingerprint) -> float:
        if not fp_a.location_key or not fp_b.location_key:
            return 0.0
        if fp_a.location_key == fp_b.location_key:
            return 1.0

        mode = self.config.algorithms.location_matching
        if mode != "address" and fp_a.coordinates and fp_b.coordinates:
            return distance_score(haversine_m(fp_a.coordinates, fp_b.coordinates))
        if mode == "coordinates":
            return 0.0
        return hybrid(fp_a.location_key, fp_b.location_key)

    def semantic_similarity(self, fp_a: EventFingerprint, fp_b: EventFingerprint) -> float:
        if not self.config.algorithms.semantic_matching:
            return 0.0

        category_sim = 1.0 if fp_a.category_normalized == fp_b.category_normalized else 0.0
        content_sim = 1.0 if fp_a.content_hash == fp_b.content_hash else 0.0
        semantic_sim = cosine(fp_a.semantic_hash, fp_b.semantic_hash)

        return category_sim * 0.3 + content_sim * 0.4 + semantic_sim * 0.3
