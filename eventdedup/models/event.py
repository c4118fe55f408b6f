"""Event record exchanged between the ingestion pipeline and the engine."""

import math
from dataclasses import dataclass, field, fields
from datetime import date, datetime
from typing import Any

# Alternate keys accepted by EventRecord.from_dict, mapped to field names
FIELD_ALIASES = {
    "name": "title",
    "venue": "venue_name",
    "lat": "latitude",
    "lng": "longitude",
    "lon": "longitude",
    "date": "start_time",
    "event_date": "start_time",
    "start_datetime": "start_time",
    "event_url": "website_url",
    "image": "image_url",
    "price_currency": "currency",
    "provider": "source",
    "city_name": "city",
}

DATETIME_FIELDS = ("start_time", "end_time", "updated_at")
FLOAT_FIELDS = ("latitude", "longitude", "price_min", "price_max")


def parse_datetime(value: Any) -> datetime | None:
    """
    Parse an ISO-8601 string, date or datetime into a datetime.

    Returns None for empty or unparseable values instead of raising, so a
    malformed timestamp only removes that field from matching.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None
    return None


def _parse_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


@dataclass(frozen=True)
class EventRecord:
    """
    One event as scraped from a single source.

    Records are immutable inside the engine: merging produces a new
    record and leaves its inputs untouched. Every field except ``id`` is
    optional; absent values are ``None`` (or empty for collections).
    """

    id: str
    title: str | None = None
    description: str | None = None
    venue_name: str | None = None
    address: str | None = None
    city: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    price_min: float | None = None
    price_max: float | None = None
    currency: str | None = None
    category: str | None = None
    tags: list[str] = field(default_factory=list)
    external_id: str | None = None
    source: str | None = None
    image_url: str | None = None
    website_url: str | None = None
    ticket_url: str | None = None
    status: str | None = None
    view_count: int | None = None
    updated_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def coordinates(self) -> tuple[float, float] | None:
        """(latitude, longitude) when both are known."""
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)

    @property
    def source_name(self) -> str:
        return self.source or "unknown"

    @classmethod
    def field_names(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_dict(cls, data: dict) -> "EventRecord":
        """
        Build a record from a loosely-shaped dictionary (parser or file output).

        Aliased keys (``name``, ``venue``, ``lat``/``lng``, ``date`` ...) are
        mapped onto field names, a nested ``venue`` object contributes its
        name, address and coordinates, and unknown keys land in ``metadata``.
        """
        if not data.get("id"):
            raise ValueError("Event record requires an 'id'")

        known = set(cls.field_names())
        values: dict[str, Any] = {}
        extra: dict[str, Any] = dict(data.get("metadata") or {})

        for key, value in data.items():
            if key == "metadata":
                continue
            if key == "venue" and isinstance(value, dict):
                values.setdefault("venue_name", value.get("name"))
                values.setdefault("address", value.get("address"))
                values.setdefault("latitude", value.get("latitude"))
                values.setdefault("longitude", value.get("longitude"))
                continue
            if key == "price" and value is not None:
                values.setdefault("price_min", value)
                values.setdefault("price_max", value)
                continue

            target = FIELD_ALIASES.get(key, key)
            if target in known:
                if values.get(target) is None:
                    values[target] = value
            else:
                extra[key] = value

        for name in DATETIME_FIELDS:
            if name in values:
                values[name] = parse_datetime(values[name])
        for name in FLOAT_FIELDS:
            if name in values:
                values[name] = _parse_float(values[name])
        if values.get("view_count") is not None:
            try:
                values["view_count"] = int(values["view_count"])
            except (TypeError, ValueError):
                values["view_count"] = None

        tags = values.get("tags")
        if tags is None:
            values["tags"] = []
        elif isinstance(tags, str):
            values["tags"] = [t.strip() for t in tags.split(",") if t.strip()]
        else:
            values["tags"] = list(tags)

        values["id"] = str(values["id"])
        values["metadata"] = extra
        return cls(**values)

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe dictionary of every field (datetimes as ISO strings)."""
        result: dict[str, Any] = {}
        for name in self.field_names():
            value = getattr(self, name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, list):
                value = list(value)
            elif isinstance(value, dict):
                value = dict(value)
            result[name] = value
        return result
