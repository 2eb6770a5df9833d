"""Shared fixtures: in-memory tenant databases and an in-memory Redis stand-in."""

from collections import defaultdict
from datetime import datetime, timezone

import pytest

from schedule_engine.db.session import TenantDatabaseManager
from schedule_engine.services.queue import ScheduleQueue
from schedule_engine.services.schedule_service import ScheduleService


class FakeRedis:
    """Just the redis-py commands the schedule queue issues."""

    def __init__(self):
        self.strings = {}
        self.sets = defaultdict(set)
        self.lists = defaultdict(list)

    def ping(self):
        return True

    def get(self, key):
        return self.strings.get(key)

    def set(self, key, value):
        self.strings[key] = value
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.strings, self.sets, self.lists):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    def sadd(self, key, *members):
        before = len(self.sets[key])
        self.sets[key].update(members)
        return len(self.sets[key]) - before

    def srem(self, key, *members):
        before = len(self.sets[key])
        self.sets[key].difference_update(members)
        return before - len(self.sets[key])

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def lpush(self, key, *values):
        for value in values:
            self.lists[key].insert(0, value)
        return len(self.lists[key])

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        end = len(items) if end == -1 else end + 1
        return list(items[start:end])

    def ltrim(self, key, start, end):
        items = self.lists.get(key, [])
        end = len(items) if end == -1 else end + 1
        self.lists[key] = items[start:end]
        return True

    def lrem(self, key, count, value):
        items = self.lists.get(key, [])
        kept = [item for item in items if item != value]
        self.lists[key] = kept
        return len(items) - len(kept)


class RecordingSender:
    def __init__(self):
        self.calls = []

    def __call__(self, task_name, **kwargs):
        self.calls.append((task_name, kwargs))


class RecordingRevoker:
    def __init__(self):
        self.revoked = []

    def __call__(self, task_id):
        self.revoked.append(task_id)


TENANTS = ("acme", "globex")


@pytest.fixture
def now():
    return datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def databases(monkeypatch):
    """Platform + two tenant databases, each its own in-memory SQLite."""
    manager = TenantDatabaseManager(platform_url="sqlite://", tenant_url_template="sqlite://")
    manager.init_schema(None)
    for tenant_id in TENANTS:
        manager.init_schema(tenant_id)
    monkeypatch.setattr("schedule_engine.db.session.database_manager", manager)
    monkeypatch.setattr("schedule_engine.api.schedules.database_manager", manager)
    yield manager
    manager.dispose()


@pytest.fixture
def db(databases):
    session = databases.session(None)
    yield session
    session.close()


@pytest.fixture
def service():
    return ScheduleService()


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def sender():
    return RecordingSender()


@pytest.fixture
def revoker():
    return RecordingRevoker()


@pytest.fixture
def queue(redis_client, sender, revoker):
    return ScheduleQueue(
        name="schedule-test",
        prefix="test",
        client=redis_client,
        sender=sender,
        revoker=revoker,
    )


@pytest.fixture(autouse=True)
def _isolate_global_service():
    from schedule_engine.services.schedule_service import schedule_service

    hooks = list(schedule_service._write_hooks)
    yield
    schedule_service._write_hooks[:] = hooks
