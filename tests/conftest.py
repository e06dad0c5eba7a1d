"""
Pytest configuration and fixtures for relations service tests.

This module provides:
- An in-memory relation repository emulating the PostgreSQL constraints
- Component fixtures wired over that repository
- Stubs for the profile/auth client
"""

import itertools
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence
from unittest.mock import AsyncMock

import pytest

from relations_service.blocking import BlockingGuard
from relations_service.cache import RedisCache
from relations_service.counts import CountAggregator
from relations_service.domain.models import Collection, Profile, ResendPolicy
from relations_service.domain.repositories import IRelationRepository, Row
from relations_service.errors import DuplicateIgnored, InvalidTarget
from relations_service.lifecycle import RequestLifecycle
from relations_service.notifier import ChangeNotifier
from relations_service.reconciler import AcceptanceReconciler
from relations_service.service import SocialGraphService
from relations_service.service_client import ServiceClient
from relations_service.store import RelationStore


# Unique key of every collection; the two columns must also differ
KEYS = {
    Collection.FOLLOWS: ("follower_id", "following_id"),
    Collection.FRIEND_REQUESTS: ("from_user", "to_user"),
    Collection.FRIENDSHIPS: ("requester_id", "receiver_id"),
    Collection.BLOCKED_USERS: ("blocker_id", "blocked_id"),
}


@dataclass
class InjectedFailure:
    collection: Collection
    op: str
    error: Exception
    when: Optional[Callable[[Row, Optional[str]], bool]] = None
    times: Optional[int] = None


def _matches(row: Row, match: Row) -> bool:
    return all(row.get(column) == value for column, value in match.items())


class InMemoryRelationRepository(IRelationRepository):
    """Dict-backed repository with unique keys, self checks and failure injection"""

    def __init__(self):
        self.tables: Dict[Collection, List[Row]] = {c: [] for c in Collection}
        self.follow_counts: Dict[str, Row] = {}
        self.failures: List[InjectedFailure] = []
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def fail(
        self,
        collection: Collection,
        op: str,
        error: Exception,
        when: Optional[Callable[[Row, Optional[str]], bool]] = None,
        times: Optional[int] = None,
    ):
        """Make ``op`` on ``collection`` raise ``error`` (optionally only ``when``)"""
        self.failures.append(InjectedFailure(collection, op, error, when, times))

    def rows(self, collection: Collection, **match) -> List[Row]:
        return [dict(r) for r in self.tables[collection] if _matches(r, match)]

    def _check(self, collection: Collection, op: str, values: Row, actor_id: Optional[str]):
        for failure in self.failures:
            if failure.collection != collection or failure.op != op:
                continue
            if failure.when is not None and not failure.when(values, actor_id):
                continue
            if failure.times is not None:
                if failure.times <= 0:
                    continue
                failure.times -= 1
            raise failure.error

    def _now(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _find(self, collection: Collection, values: Row, keys: Sequence[str]) -> Optional[Row]:
        for row in self.tables[collection]:
            if all(row.get(k) == values.get(k) for k in keys):
                return row
        return None

    def _new_row(self, collection: Collection, values: Row) -> Row:
        first, second = KEYS[collection]
        if values.get(first) == values.get(second):
            raise InvalidTarget(f"{collection.value}: {first} must differ from {second}")

        row = dict(values)
        row["created_at"] = self._now()
        if collection == Collection.FRIEND_REQUESTS:
            row["id"] = next(self._ids)
        self.tables[collection].append(row)
        return row

    async def insert(self, collection, values, *, actor_id=None):
        self._check(collection, "insert", values, actor_id)
        if self._find(collection, values, KEYS[collection]) is not None:
            raise DuplicateIgnored(f"duplicate key in {collection.value}")
        return dict(self._new_row(collection, values))

    async def upsert(self, collection, values, on_conflict, *, actor_id=None):
        self._check(collection, "upsert", values, actor_id)
        existing = self._find(collection, values, on_conflict)
        if existing is None:
            return dict(self._new_row(collection, values))

        for column, value in values.items():
            if column not in on_conflict:
                existing[column] = value
        return dict(existing)

    async def update(self, collection, values, match, *, actor_id=None):
        self._check(collection, "update", values, actor_id)
        updated = []
        for row in self.tables[collection]:
            if _matches(row, match):
                row.update(values)
                updated.append(dict(row))
        return updated

    async def delete(self, collection, match, *, actor_id=None):
        self._check(collection, "delete", match, actor_id)
        kept = [r for r in self.tables[collection] if not _matches(r, match)]
        deleted = len(self.tables[collection]) - len(kept)
        self.tables[collection] = kept
        return deleted

    async def select_one(self, collection, match):
        self._check(collection, "select", match, None)
        for row in self.tables[collection]:
            if _matches(row, match):
                return dict(row)
        return None

    async def select_many(self, collection, match, *, limit=None, offset=0):
        self._check(collection, "select", match, None)
        rows = sorted(
            (dict(r) for r in self.tables[collection] if _matches(r, match)),
            key=lambda r: r["created_at"],
            reverse=True,
        )
        end = None if limit is None else offset + limit
        return rows[offset:end]

    async def count(self, collection, match):
        self._check(collection, "count", match, None)
        return sum(1 for r in self.tables[collection] if _matches(r, match))

    async def get_follow_counts(self, profile_id):
        self._check(Collection.FOLLOWS, "view", {"profile_id": profile_id}, None)
        row = self.follow_counts.get(profile_id)
        return dict(row) if row is not None else None


def requester_only(values: Row, actor_id: Optional[str]) -> bool:
    """Row policy of the hosted backend: users may only write their own friendship rows"""
    return values.get("requester_id") != actor_id


# ============ Component Fixtures ============

@pytest.fixture
def repo():
    return InMemoryRelationRepository()


@pytest.fixture
def store(repo):
    return RelationStore(repo)


@pytest.fixture
def reconciler(store):
    return AcceptanceReconciler(store)


@pytest.fixture
def lifecycle(store, reconciler):
    return RequestLifecycle(store, reconciler, ResendPolicy.REOPEN)


@pytest.fixture
def counts(repo):
    return CountAggregator(repo)


@pytest.fixture
def blocking(store, reconciler):
    return BlockingGuard(store, reconciler)


@pytest.fixture
def notifier():
    return ChangeNotifier()


@pytest.fixture
def cache():
    """Cache without a Redis connection: every read misses"""
    return RedisCache()


@pytest.fixture
def profiles():
    """Profile/auth client stub"""
    client = AsyncMock(spec=ServiceClient)
    client.get_profiles.return_value = {}
    client.resolve_username.return_value = None
    return client


@pytest.fixture
def service(repo, cache, notifier, profiles):
    return SocialGraphService(repo, cache, notifier, profiles)


@pytest.fixture
def alice_profile():
    return Profile(id="alice", username="alice", full_name="Alice Liddell", avatar_url=None)


@pytest.fixture
def bob_profile():
    return Profile(id="bob", username="bob", full_name="Bob Dylan", avatar_url="https://cdn/bob.png")


@pytest.fixture
def sample_user_data() -> Dict[str, Any]:
    """User payload as returned by the auth service"""
    return {"id": "alice", "username": "alice", "email": "alice@example.com", "is_active": True}
