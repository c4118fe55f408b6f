"""Shared fixtures for engine tests."""

from datetime import UTC, datetime, timedelta

import pytest

from eventdedup.models.event import EventRecord


class FakeClock:
    """Deterministic clock advancing only when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 10, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def blue_note_a():
    return EventRecord(
        id="a",
        title="Jazz Night at Blue Note",
        venue_name="Blue Note",
        start_time=datetime(2025, 3, 1),
        latitude=40.7,
        longitude=-74.0,
        source="primary",
    )


@pytest.fixture
def blue_note_b():
    return EventRecord(
        id="b",
        title="Jazz Nite @ Blue Note NYC",
        venue_name="The Blue Note",
        start_time=datetime(2025, 3, 1),
        latitude=40.7001,
        longitude=-74.0001,
        price_min=25.0,
        source="eventbrite",
    )


@pytest.fixture
def concert():
    return EventRecord(
        id="concert-1",
        title="Concert Jazz à l'Opéra",
        description="Un concert de jazz exceptionnel avec le quartet de la ville",
        venue_name="Opéra de Marseille",
        address="2 Rue Molière",
        city="Marseille",
        latitude=43.2951,
        longitude=5.3753,
        start_time=datetime(2026, 1, 27, 20, 0),
        price_min=15.0,
        price_max=40.0,
        category="music",
        tags=["jazz", "concert"],
        source="primary",
        website_url="https://opera-marseille.com/concert-jazz",
    )
