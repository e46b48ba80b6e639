"""Runtime settings read from the environment, and the message topic names."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Topic(str, Enum):
    GAME_EVENTS = "game.events"
    ODDS_UPDATED = "odds.updated"
    BETS_PLACED = "bets.placed"
    BETS_SETTLED = "bets.settled"
    MARKETS_SUSPENDED = "markets.suspended"
    FRAUD_ALERTS = "fraud.alerts"
    WALLET_TRANSACTIONS = "wallet.transactions"


@dataclass(frozen=True)
class Config:
    kafka_brokers: str = "localhost:9092"
    redis_addr: str = "localhost:6379"
    mongo_uri: str = "mongodb://localhost:27017/betting"
    http_port: str = "8080"
    metrics_port: str = "9100"


def load_config(env: Optional[Mapping[str, str]] = None) -> Config:
    """Build a Config from ``env`` (the process environment by default); empty values fall back."""
    source = os.environ if env is None else env
    defaults = Config()

    def pick(key: str, fallback: str) -> str:
        return source.get(key) or fallback

    return Config(
        kafka_brokers=pick("KAFKA_BROKERS", defaults.kafka_brokers),
        redis_addr=pick("REDIS_ADDR", defaults.redis_addr),
        mongo_uri=pick("MONGO_URI", defaults.mongo_uri),
        http_port=pick("HTTP_PORT", defaults.http_port),
        metrics_port=pick("METRICS_PORT", defaults.metrics_port),
    )