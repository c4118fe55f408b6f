"""Build comparable fingerprints from event records."""

from datetime import datetime

from slugify import slugify

from .models.event import EventRecord
from .models.results import EventFingerprint
from .utils.text import (
    MIN_TOKEN_LENGTH,
    normalize_address,
    normalize_text,
    normalize_venue,
    tokenize,
)

# Rounding of coordinates in location keys (3 decimals is about 100 m)
COORDINATE_PRECISION = 3

CONTENT_DESCRIPTION_CHARS = 200
SEMANTIC_DESCRIPTION_CHARS = 100

DEFAULT_CATEGORY = "other"


def time_bucket(start: datetime | None) -> str:
    """Coarse time-of-day bucket from the local hour of a start time."""
    if start is None:
        return "unknown"
    hour = start.hour
    if hour < 6:
        return "late-night"
    if hour < 12:
        return "morning"
    if hour < 17:
        return "afternoon"
    if hour < 22:
        return "evening"
    return "night"


def rolling_hash(text: str) -> str:
    """
    32-bit ``h * 31 + c`` rolling hash rendered as hex.

    Only an equality short-circuit; collisions are possible.
    """
    h = 0
    for char in text:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return format(abs(h), "x")


def location_key(record: EventRecord) -> str:
    """
    Key grouping records at the same place.

    Rounded coordinates first, then the normalized street address, then a
    slug of the city, else ``unknown``.
    """
    coords = record.coordinates
    if coords is not None:
        lat = round(coords[0], COORDINATE_PRECISION)
        lng = round(coords[1], COORDINATE_PRECISION)
        return f"{lat:g},{lng:g}"

    address = normalize_address(record.address)
    if address:
        return address

    if record.city:
        city = slugify(record.city)
        if city:
            return city

    return "unknown"


def content_hash(record: EventRecord) -> str:
    start = record.start_time.isoformat() if record.start_time else ""
    content = "|".join(
        [
            record.title or "",
            record.venue_name or "",
            (record.description or "")[:CONTENT_DESCRIPTION_CHARS],
            start,
        ]
    ).lower()
    return rolling_hash(content)


def semantic_hash(record: EventRecord) -> str:
    """Sorted key tokens of title, category and the start of the description."""
    features = tokenize(record.title)
    category = normalize_text(record.category)
    if len(category) >= MIN_TOKEN_LENGTH:
        features.append(category)
    features.extend(tokenize((record.description or "")[:SEMANTIC_DESCRIPTION_CHARS]))
    return "|".join(sorted(features))


def price_range(record: EventRecord) -> tuple[float, float] | None:
    low = record.price_min if record.price_min is not None else record.price_max
    high = record.price_max if record.price_max is not None else record.price_min
    if low is None or (low == 0 and high == 0):
        return None
    return (low, high)


class FingerprintBuilder:
    """
    Derive an EventFingerprint from an EventRecord.

    Pure and deterministic; missing fields produce empty or sentinel values
    rather than errors.
    """

    def build(self, record: EventRecord) -> EventFingerprint:
        start = record.start_time
        return EventFingerprint(
            id=record.id,
            title_tokens=tuple(tokenize(record.title)),
            venue_normalized=normalize_venue(record.venue_name),
            location_key=location_key(record),
            coordinates=record.coordinates,
            date_key=start.date().isoformat() if start else "",
            time_bucket=time_bucket(start),
            content_hash=content_hash(record),
            semantic_hash=semantic_hash(record),
            category_normalized=normalize_text(record.category) or DEFAULT_CATEGORY,
            price_range=price_range(record),
        )

    __call__ = build
