from datetime import datetime, timedelta, timezone

import pytest

from betstream.models import (
    EventStatus,
    MarketStatus,
    MarketType,
    OutcomeResult,
    User,
    Event,
    UserStatus,
    from_document,
)
from betstream.seeder import build_events, build_users, seed

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class _FakeCollection:
    def __init__(self):
        self.docs = []
        self.dropped = False

    def insert_one(self, doc):
        self.docs.append(doc)

    def drop(self):
        self.docs.clear()
        self.dropped = True


class _FakeDb:
    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        return self.collections.setdefault(name, _FakeCollection())

    def get_collection(self, name):
        return self[name]


class _FakeRedis:
    def __init__(self):
        self.values = {}
        self.sets = {}

    def set(self, name, value, ex=None, px=None, nx=False, xx=False, **kwargs):
        self.values[name] = value
        return True

    def sadd(self, name, *values):
        self.sets.setdefault(name, set()).update(values)
        return len(values)


def test_build_users_names_and_balances():
    users = build_users(NOW)
    assert [(u.username, u.balance) for u in users] == [("william", 1000.00), ("testuser", 500.00)]
    assert all(u.status == UserStatus.ACTIVE for u in users)
    assert all(u.created_at == NOW and u.updated_at == NOW for u in users)
    assert len({u.id for u in users}) == 2


def test_build_events_shape():
    events = build_events(NOW)
    assert [e.name for e in events] == [
        "Flamengo vs Palmeiras",
        "Barcelona vs Real Madrid",
        "Lakers vs Celtics",
    ]
    assert [e.sport for e in events] == ["football", "football", "basketball"]
    assert [NOW - e.start_time for e in events] == [
        timedelta(minutes=30),
        timedelta(minutes=15),
        timedelta(minutes=10),
    ]
    assert all(e.status == EventStatus.LIVE for e in events)
    for event in events:
        assert [m.type for m in event.markets] == [MarketType.MATCH_WINNER, MarketType.OVER_UNDER]
        for market in event.markets:
            assert market.status == MarketStatus.OPEN
            assert all(o.result == OutcomeResult.PENDING for o in market.outcomes)


def test_build_events_outcomes_and_unique_ids():
    events = build_events(NOW)
    counts = [[len(m.outcomes) for m in e.markets] for e in events]
    assert counts == [[3, 2], [3, 2], [2, 2]]
    first = events[0].markets[0].outcomes[0]
    assert (first.name, first.initial_odds) == ("Flamengo Win", 1.85)
    ids = [o.outcome_id for e in events for m in e.markets for o in m.outcomes]
    ids += [m.market_id for e in events for m in e.markets]
    ids += [e.id for e in events]
    assert len(ids) == len(set(ids))


def test_seed_drops_and_inserts():
    db = _FakeDb()
    db["bets"].insert_one({"_id": "old"})
    db["transactions"].insert_one({"_id": "old"})
    users, events = seed(db, _FakeRedis(), NOW)
    assert db["bets"].docs == [] and db["bets"].dropped
    assert db["transactions"].docs == [] and db["transactions"].dropped
    stored_users = [from_document(User, d) for d in db["users"].docs]
    stored_events = [from_document(Event, d) for d in db["events"].docs]
    assert [u.username for u in stored_users] == [u.username for u in users]
    assert [e.id for e in stored_events] == [e.id for e in events]


def test_seed_caches_initial_odds():
    redis_client = _FakeRedis()
    _, events = seed(_FakeDb(), redis_client, NOW)
    flamengo_win = events[0].markets[0].outcomes[0]
    assert redis_client.values["odds:" + flamengo_win.outcome_id] == "1.85"
    for event in events:
        expected = {o.outcome_id for m in event.markets for o in m.outcomes}
        assert redis_client.sets["event_odds:" + event.id] == expected
        for outcome_id in expected:
            assert "odds:" + outcome_id in redis_client.values


def test_seed_raises_when_insert_fails():
    class _Broken(_FakeDb):
        def __getitem__(self, name):
            collection = super().__getitem__(name)
            if name == "users":
                def fail(doc):
                    raise RuntimeError("write refused")
                collection.insert_one = fail
            return collection

    with pytest.raises(RuntimeError, match="write refused"):
        seed(_Broken(), _FakeRedis(), NOW)