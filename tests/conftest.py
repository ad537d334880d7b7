from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from hotel_tv_core.cache import TtlCache
from hotel_tv_core.db import apply_migrations
from hotel_tv_core.store import HotelStore

START = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingHub:
    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any], Optional[str]]] = []

    def broadcast(self, event_type: str, data: Dict[str, Any], topic: Optional[str] = None) -> int:
        self.events.append((event_type, data, topic))
        return 0

    def types(self) -> List[str]:
        return [event[0] for event in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hub() -> RecordingHub:
    return RecordingHub()


@pytest.fixture
def store(tmp_path) -> HotelStore:
    db_path = tmp_path / "hotel.sqlite3"
    apply_migrations(db_path)
    return HotelStore(db_path, integrity_check_interval=0)


@pytest.fixture
def cache(store: HotelStore, clock: FakeClock) -> TtlCache:
    return TtlCache(store.db, clock=clock)
