"""Redis-backed caches: live odds, idempotency keys, market suspensions and fraud windows."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any, Union

from redis.exceptions import RedisError

from betstream.models import Bet, dumps, loads

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_FRAUD_WINDOW_TTL = timedelta(minutes=10)
_IDEMPOTENCY_TTL = timedelta(seconds=60)
_ODDS_TTL = timedelta(minutes=5)
_HISTORY_LENGTH = 10


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _text(value: Union[bytes, str]) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


def _unix_ms(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // timedelta(milliseconds=1)


def _fraud_window_key(user_id: str) -> str:
    return "user_bets:" + user_id


def _odds_key(outcome_id: str) -> str:
    return "odds:" + outcome_id


def _odds_history_key(outcome_id: str) -> str:
    return "odds_history:" + outcome_id


def _event_odds_set_key(event_id: str) -> str:
    return "event_odds:" + event_id


class RedisFraudWindow:
    """Sorted set of a user's recent bets, scored by placement time in milliseconds."""

    def __init__(self, client: Any, clock: Callable[[], datetime] = _utcnow) -> None:
        self._client = client
        self._clock = clock

    def add_bet(self, user_id: str, bet: Bet) -> None:
        key = _fraud_window_key(user_id)
        member = dumps(bet).decode("utf-8")
        pipe = self._client.pipeline(transaction=False)
        pipe.zadd(key, {member: float(_unix_ms(bet.placed_at))})
        pipe.expire(key, _FRAUD_WINDOW_TTL)
        pipe.execute()

    def get_recent_bets(self, user_id: str, window: timedelta) -> list[Bet]:
        """Bets placed within ``window`` of now; unreadable entries are skipped."""
        now = self._clock()
        low = str(_unix_ms(now - window))
        high = str(_unix_ms(now))
        bets = []
        for raw in self._client.zrangebyscore(_fraud_window_key(user_id), low, high):
            try:
                bets.append(loads(Bet, raw))
            except ValueError:
                continue
        return bets


class RedisIdempotencyCache:
    """Marks keys as processed for a short while."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def check(self, key: str) -> bool:
        """Return True if ``key`` was already processed, marking it otherwise."""
        created = self._client.set("idempotency:" + key, "processed", ex=_IDEMPOTENCY_TTL, nx=True)
        return not created


class RedisMarketSuspensionCache:
    """Temporary suspension flags for markets."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def is_suspended(self, market_id: str) -> bool:
        return self._client.exists("market_suspended:" + market_id) > 0

    def suspend(self, market_id: str, duration: timedelta) -> None:
        expiry = duration if duration > timedelta(0) else None
        self._client.set("market_suspended:" + market_id, "1", ex=expiry)


class RedisOddsCache:
    """Current odds per outcome, plus a short history of percentage changes."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def get_odds(self, outcome_id: str) -> float:
        """Cached odds, or 0.0 when none are stored."""
        value = self._client.get(_odds_key(outcome_id))
        if value is None:
            return 0.0
        return float(_text(value))

    def set_odds(self, outcome_id: str, odds: float) -> None:
        self._client.set(_odds_key(outcome_id), f"{odds:.2f}", ex=_ODDS_TTL)

    def get_event_odds(self, event_id: str) -> dict[str, float]:
        """Positive cached odds of every outcome registered for the event."""
        result: dict[str, float] = {}
        for member in self._client.smembers(_event_odds_set_key(event_id)):
            outcome_id = _text(member)
            try:
                odds = self.get_odds(outcome_id)
            except (RedisError, ValueError):
                continue
            if odds > 0:
                result[outcome_id] = odds
        return result

    def push_odds_history(self, outcome_id: str, change_percent: float) -> None:
        key = _odds_history_key(outcome_id)
        pipe = self._client.pipeline(transaction=False)
        pipe.lpush(key, f"{change_percent:.2f}")
        pipe.ltrim(key, 0, _HISTORY_LENGTH - 1)
        pipe.execute()

    def get_odds_velocity(self, outcome_id: str) -> float:
        """Mean absolute change over the recorded history, 0.0 when empty."""
        values = self._client.lrange(_odds_history_key(outcome_id), 0, _HISTORY_LENGTH - 1)
        if not values:
            return 0.0
        total = 0.0
        for raw in values:
            try:
                total += abs(float(_text(raw)))
            except ValueError:
                pass
        return total / len(values)