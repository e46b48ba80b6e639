"""Populates the database and odds cache with demo users and live events."""

from __future__ import annotations

import argparse
import logging
import os
import uuid
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from betstream.cache import RedisOddsCache
from betstream.config import load_config
from betstream.models import (
    Event,
    EventStatus,
    Market,
    MarketStatus,
    MarketType,
    Outcome,
    OutcomeResult,
    User,
    UserStatus,
    to_document,
)

logger = logging.getLogger(__name__)

DATABASE_NAME = "betting"
COLLECTIONS = ("users", "events", "bets", "transactions")

_USER_SPECS: tuple[tuple[str, float], ...] = (
    ("william", 1000.00),
    ("testuser", 500.00),
)

# name, sport, minutes since kick-off, markets as (type, outcomes as (name, odds))
_EVENT_SPECS: tuple[tuple[str, str, int, tuple[tuple[MarketType, tuple[tuple[str, float], ...]], ...]], ...] = (
    (
        "Flamengo vs Palmeiras",
        "football",
        30,
        (
            (
                MarketType.MATCH_WINNER,
                (("Flamengo Win", 1.85), ("Draw", 3.40), ("Palmeiras Win", 2.10)),
            ),
            (MarketType.OVER_UNDER, (("Over 2.5 Goals", 1.90), ("Under 2.5 Goals", 1.95))),
        ),
    ),
    (
        "Barcelona vs Real Madrid",
        "football",
        15,
        (
            (
                MarketType.MATCH_WINNER,
                (("Barcelona Win", 2.20), ("Draw", 3.25), ("Real Madrid Win", 2.80)),
            ),
            (MarketType.OVER_UNDER, (("Over 2.5 Goals", 1.75), ("Under 2.5 Goals", 2.10))),
        ),
    ),
    (
        "Lakers vs Celtics",
        "basketball",
        10,
        (
            (MarketType.MATCH_WINNER, (("Lakers Win", 1.95), ("Celtics Win", 1.85))),
            (
                MarketType.OVER_UNDER,
                (("Over 210.5 Points", 1.90), ("Under 210.5 Points", 1.90)),
            ),
        ),
    ),
)


def _new_id() -> str:
    return str(uuid.uuid4())


def build_users(now: datetime) -> list[User]:
    """The demo users, active and funded."""
    return [
        User(
            id=_new_id(),
            username=username,
            balance=balance,
            status=UserStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        for username, balance in _USER_SPECS
    ]


def build_events(now: datetime) -> list[Event]:
    """The demo events, live, with open markets and pending outcomes."""
    return [
        Event(
            id=_new_id(),
            name=name,
            sport=sport,
            status=EventStatus.LIVE,
            start_time=now - timedelta(minutes=minutes_ago),
            markets=[
                Market(
                    market_id=_new_id(),
                    type=market_type,
                    status=MarketStatus.OPEN,
                    outcomes=[
                        Outcome(
                            outcome_id=_new_id(),
                            name=outcome_name,
                            initial_odds=odds,
                            result=OutcomeResult.PENDING,
                        )
                        for outcome_name, odds in outcomes
                    ],
                )
                for market_type, outcomes in markets
            ],
        )
        for name, sport, minutes_ago, markets in _EVENT_SPECS
    ]


def seed(
    db: Any, redis_client: Any, now: Optional[datetime] = None
) -> tuple[list[User], list[Event]]:
    """Replace the collections with demo data and cache the initial odds.

    Failing to store a user or an event is raised; cache failures are only logged.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    for name in COLLECTIONS:
        db[name].drop()

    odds_cache = RedisOddsCache(redis_client)

    users = build_users(now)
    for user in users:
        db["users"].insert_one(to_document(user))
        logger.info(
            "user_seeded id=%s username=%s balance=%s", user.id, user.username, user.balance
        )

    events = build_events(now)
    for event in events:
        db["events"].insert_one(to_document(event))
        for market in event.markets:
            for outcome in market.outcomes:
                try:
                    odds_cache.set_odds(outcome.outcome_id, outcome.initial_odds)
                except Exception as exc:
                    logger.error(
                        "odds_cache_seed_failed outcome_id=%s error=%s", outcome.outcome_id, exc
                    )
                try:
                    redis_client.sadd("event_odds:" + event.id, outcome.outcome_id)
                except Exception as exc:
                    logger.debug(
                        "event_odds_register_failed outcome_id=%s error=%s",
                        outcome.outcome_id,
                        exc,
                    )
        logger.info(
            "event_seeded id=%s name=%s status=%s markets=%d",
            event.id,
            event.name,
            event.status.value,
            len(event.markets),
        )

    logger.info("seed_complete users=%d events=%d", len(users), len(events))
    return users, events


def _redis_endpoint(addr: str) -> tuple[str, int]:
    host, _, port = addr.rpartition(":")
    if not host:
        return addr or "localhost", 6379
    return host, int(port)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Seed the configured database and cache; returns the exit status."""
    parser = argparse.ArgumentParser(
        prog="betstream-seed", description="Load demo users, events and odds."
    )
    parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    import pymongo
    import redis

    cfg = load_config(os.environ)
    mongo_client = pymongo.MongoClient(cfg.mongo_uri, serverSelectionTimeoutMS=30000)
    host, port = _redis_endpoint(cfg.redis_addr)
    redis_client = redis.Redis(host=host, port=port)
    try:
        seed(mongo_client[DATABASE_NAME], redis_client)
    except Exception as exc:
        logger.error("seed_failed error=%s", exc)
        return 1
    finally:
        redis_client.close()
        mongo_client.close()
    return 0