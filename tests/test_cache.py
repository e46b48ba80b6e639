from datetime import datetime, timedelta, timezone

import pytest

from betstream.cache import (
    RedisFraudWindow,
    RedisIdempotencyCache,
    RedisMarketSuspensionCache,
    RedisOddsCache,
)
from betstream.models import Bet, BetStatus


def _to_bytes(value):
    if isinstance(value, bytes):
        return value
    return str(value).encode("utf-8")


def _seconds(value):
    if value is None:
        return None
    if isinstance(value, timedelta):
        return int(value.total_seconds())
    return int(value)


class FakePipeline:
    def __init__(self, client):
        self._client = client
        self._calls = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._calls.append((name, args, kwargs))
            return self

        return queue

    def execute(self):
        results = [getattr(self._client, name)(*a, **kw) for name, a, kw in self._calls]
        self._calls = []
        return results


class FakeRedis:
    def __init__(self):
        self.strings = {}
        self.sets = {}
        self.lists = {}
        self.zsets = {}
        self.ttls = {}

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def _exists(self, key):
        return key in self.strings or key in self.sets or key in self.lists or key in self.zsets

    def get(self, key):
        return self.strings.get(key)

    def set(self, key, value, ex=None, nx=False):
        if nx and self._exists(key):
            return None
        self.strings[key] = _to_bytes(value)
        if ex is not None:
            self.ttls[key] = _seconds(ex)
        return True

    def exists(self, *keys):
        return sum(1 for key in keys if self._exists(key))

    def expire(self, key, time):
        self.ttls[key] = _seconds(time)
        return True

    def sadd(self, key, *members):
        self.sets.setdefault(key, set()).update(_to_bytes(m) for m in members)

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def lpush(self, key, *values):
        items = self.lists.setdefault(key, [])
        for value in values:
            items.insert(0, _to_bytes(value))

    def ltrim(self, key, start, end):
        self.lists[key] = self.lists.get(key, [])[start : end + 1]

    def lrange(self, key, start, end):
        return list(self.lists.get(key, [])[start : end + 1])

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update({_to_bytes(m): s for m, s in mapping.items()})

    def zrangebyscore(self, key, low, high):
        low, high = float(low), float(high)
        members = self.zsets.get(key, {})
        ordered = sorted(members.items(), key=lambda item: item[1])
        return [member for member, score in ordered if low <= score <= high]


NOW = datetime(2024, 5, 1, 12, 0, 0, 250000, tzinfo=timezone.utc)


def _bet(bet_id, placed_at):
    return Bet(
        id=bet_id,
        user_id="u1",
        event_id="e1",
        market_id="m1",
        outcome_id="o1",
        stake=10.0,
        odds_at_placement=1.85,
        potential_payout=18.5,
        status=BetStatus.PENDING,
        correlation_id="c-" + bet_id,
        placed_at=placed_at,
    )


@pytest.fixture
def client():
    return FakeRedis()


def test_fraud_window_round_trip(client):
    window = RedisFraudWindow(client, clock=lambda: NOW)
    first = _bet("b1", NOW - timedelta(seconds=30))
    second = _bet("b2", NOW - timedelta(seconds=10))
    window.add_bet("u1", second)
    window.add_bet("u1", first)
    assert window.get_recent_bets("u1", timedelta(minutes=5)) == [first, second]


def test_fraud_window_excludes_old_bets(client):
    window = RedisFraudWindow(client, clock=lambda: NOW)
    recent = _bet("new", NOW - timedelta(minutes=1))
    window.add_bet("u1", _bet("old", NOW - timedelta(minutes=6)))
    window.add_bet("u1", recent)
    assert window.get_recent_bets("u1", timedelta(minutes=5)) == [recent]


def test_fraud_window_sets_expiry_and_key(client):
    window = RedisFraudWindow(client, clock=lambda: NOW)
    window.add_bet("u1", _bet("b1", NOW))
    assert list(client.zsets) == ["user_bets:u1"]
    assert client.ttls["user_bets:u1"] == int(timedelta(minutes=10).total_seconds())


def test_fraud_window_skips_malformed_entries(client):
    window = RedisFraudWindow(client, clock=lambda: NOW)
    good = _bet("b1", NOW - timedelta(seconds=5))
    window.add_bet("u1", good)
    client.zadd("user_bets:u1", {"not json": float(NOW.timestamp() * 1000) - 1})
    assert window.get_recent_bets("u1", timedelta(minutes=5)) == [good]


def test_fraud_window_empty_for_unknown_user(client):
    window = RedisFraudWindow(client, clock=lambda: NOW)
    assert window.get_recent_bets("nobody", timedelta(minutes=5)) == []


def test_idempotency_first_new_then_duplicate(client):
    cache = RedisIdempotencyCache(client)
    assert cache.check("k1") is False
    assert cache.check("k1") is True
    assert cache.check("k2") is False


def test_idempotency_key_layout(client):
    RedisIdempotencyCache(client).check("abc")
    assert client.strings["idempotency:abc"] == b"processed"
    assert client.ttls["idempotency:abc"] == 60


def test_market_suspension(client):
    cache = RedisMarketSuspensionCache(client)
    assert cache.is_suspended("m1") is False
    cache.suspend("m1", timedelta(seconds=30))
    assert cache.is_suspended("m1") is True
    assert cache.is_suspended("m2") is False
    assert client.ttls["market_suspended:m1"] == 30


def test_get_odds_missing_is_zero(client):
    assert RedisOddsCache(client).get_odds("o1") == 0.0


def test_set_and_get_odds(client):
    cache = RedisOddsCache(client)
    cache.set_odds("o1", 1.85)
    assert cache.get_odds("o1") == 1.85
    assert client.ttls["odds:o1"] == int(timedelta(minutes=5).total_seconds())


def test_set_odds_rounds_to_two_places(client):
    cache = RedisOddsCache(client)
    cache.set_odds("o1", 2.0 / 3.0)
    assert cache.get_odds("o1") == 0.67


def test_get_odds_invalid_value_raises(client):
    client.strings["odds:o1"] = b"abc"
    with pytest.raises(ValueError):
        RedisOddsCache(client).get_odds("o1")


def test_get_event_odds_skips_missing_zero_and_bad(client):
    cache = RedisOddsCache(client)
    client.sadd("event_odds:e1", "o1", "o2", "o3", "o4")
    cache.set_odds("o1", 1.85)
    cache.set_odds("o2", 0.0)
    client.strings["odds:o4"] = b"oops"
    assert cache.get_event_odds("e1") == {"o1": 1.85}


def test_get_event_odds_unknown_event(client):
    assert RedisOddsCache(client).get_event_odds("none") == {}


def test_history_is_trimmed_to_ten(client):
    cache = RedisOddsCache(client)
    for change in range(15):
        cache.push_odds_history("o1", float(change))
    history = client.lists["odds_history:o1"]
    assert len(history) == 10
    assert float(history[0]) == 14.0


def test_velocity_is_mean_absolute_change(client):
    cache = RedisOddsCache(client)
    for change in (5.0, -5.0) * 6:
        cache.push_odds_history("o1", change)
    assert cache.get_odds_velocity("o1") == pytest.approx(5.0)


def test_velocity_empty_history(client):
    assert RedisOddsCache(client).get_odds_velocity("o1") == 0.0


def test_velocity_counts_unparsable_entries_as_zero(client):
    cache = RedisOddsCache(client)
    cache.push_odds_history("o1", 8.0)
    client.lpush("odds_history:o1", "junk")
    assert cache.get_odds_velocity("o1") == pytest.approx(8.0 / 2)