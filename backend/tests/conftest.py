"""
Shared fixtures: in-memory SQLite, an in-memory Redis double, a frozen clock
and fully wired services.
"""
import fnmatch
from datetime import datetime, timedelta

import pytest
import redis
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from arena import models  # noqa: F401
from arena.bootstrap import build_services
from arena.cache import CacheManager
from arena.config import Settings
from arena.database import Base
from arena.models import Event

# Test database setup
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# A Wednesday, so next week's Monday is 2026-03-09
FROZEN_NOW = datetime(2026, 3, 4, 12, 0, 0)


class InMemoryRedis:
    """The subset of the redis client used by CacheManager. TTLs are recorded, not enforced."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("redis unavailable")

    def get(self, key):
        self._check()
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        self._check()
        deleted = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.ttls.pop(key, None)
                deleted += 1
        return deleted

    def scan_iter(self, match="*", count=None):
        self._check()
        return [key for key in list(self.store) if fnmatch.fnmatchcase(key, match)]

    def ping(self):
        self._check()
        return True


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, user_id, message):
        self.sent.append((user_id, message))

    def of_type(self, message_type):
        return [(user_id, m) for user_id, m in self.sent if m["type"] == message_type]


@pytest.fixture(autouse=True)
def setup_database():
    """Create and tear down test database for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_db():
    """Get test database session."""
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def clock():
    return FrozenClock(FROZEN_NOW)


@pytest.fixture
def redis_client():
    return InMemoryRedis()


@pytest.fixture
def cache(redis_client):
    return CacheManager(redis_client=redis_client)


@pytest.fixture
def settings():
    return Settings(
        database_url=SQLALCHEMY_DATABASE_URL,
        scheduler_enabled=False,
        new_relic_license_key="",
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(cache, settings, clock, notifier):
    """All services wired against the test database, cache and clock."""
    return build_services(
        session_factory=TestingSessionLocal,
        cache=cache,
        settings=settings,
        clock=clock,
        notifier=notifier,
    )


@pytest.fixture
def add_event(test_db):
    """Factory appending a game_ended event to the log."""
    def _add(user_id, score, received_at, game_mode="endless", duration_seconds=300,
             event_type="game_ended", **payload):
        event = Event(
            event_type=event_type,
            user_id=user_id,
            payload={
                "game_mode": game_mode,
                "score": score,
                "duration_seconds": duration_seconds,
                **payload,
            },
            received_at=received_at,
            processing_attempts=0,
        )
        test_db.add(event)
        test_db.commit()
        return event.id

    return _add
