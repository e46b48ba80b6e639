"""Publishing domain records to topics and consuming messages with a handler."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Union, runtime_checkable

from betstream import metrics
from betstream.config import Topic
from betstream.models import (
    Bet,
    BetPlacedMessage,
    BetSettledMessage,
    FraudAlert,
    GameEvent,
    MarketSuspendedMessage,
    OddsUpdatedMessage,
    Transaction,
    dumps,
)

logger = logging.getLogger(__name__)

_SUSPENSION_REASON = "ODDS_VELOCITY"
_SUSPENSION_SECONDS = 30


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Message:
    """A keyed record on a topic, with headers and its position in the log."""

    topic: str
    value: bytes = b""
    key: bytes = b""
    headers: tuple[tuple[str, bytes], ...] = ()
    partition: int = 0
    offset: int = 0


@runtime_checkable
class MessageWriter(Protocol):
    def write_messages(self, *messages: Message) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class MessageReader(Protocol):
    def fetch_message(self, timeout: float) -> Optional[Message]:
        """Next message, or None if none arrived within ``timeout`` seconds."""
        ...

    def commit_messages(self, *messages: Message) -> None: ...

    def close(self) -> None: ...


class Producer:
    """Publishes domain records as JSON, keyed for partitioning and tagged with correlation ids."""

    def __init__(self, writer: MessageWriter, clock: Callable[[], datetime] = _utcnow) -> None:
        self._writer = writer
        self._clock = clock

    def _publish(self, topic: Topic, key: str, record: Any, correlation_id: str) -> None:
        message = Message(
            topic=topic.value,
            key=key.encode("utf-8"),
            value=dumps(record),
            headers=(("correlation_id", correlation_id.encode("utf-8")),),
        )
        self._writer.write_messages(message)
        metrics.KAFKA_MESSAGES_PRODUCED.labels(topic.value).inc()

    def publish_bet_placed(self, bet: Bet) -> None:
        record = BetPlacedMessage(
            bet_id=bet.id,
            user_id=bet.user_id,
            event_id=bet.event_id,
            market_id=bet.market_id,
            outcome_id=bet.outcome_id,
            stake=bet.stake,
            odds_at_placement=bet.odds_at_placement,
            potential_payout=bet.potential_payout,
            idempotency_key=bet.idempotency_key,
            correlation_id=bet.correlation_id,
            timestamp=bet.placed_at,
        )
        self._publish(Topic.BETS_PLACED, bet.user_id, record, bet.correlation_id)

    def publish_bet_settled(
        self, event_id: str, market_id: str, winning_outcome_id: str, correlation_id: str
    ) -> None:
        record = BetSettledMessage(
            event_id=event_id,
            market_id=market_id,
            winning_outcome_id=winning_outcome_id,
            correlation_id=correlation_id,
            timestamp=self._clock(),
        )
        self._publish(Topic.BETS_SETTLED, market_id, record, correlation_id)

    def publish_odds_updated(
        self,
        event_id: str,
        market_id: str,
        outcome_id: str,
        old_odds: float,
        new_odds: float,
        trigger: str,
        correlation_id: str,
    ) -> None:
        change_percent = (new_odds - old_odds) / old_odds * 100 if old_odds > 0 else 0.0
        record = OddsUpdatedMessage(
            event_id=event_id,
            market_id=market_id,
            outcome_id=outcome_id,
            old_odds=old_odds,
            new_odds=new_odds,
            change_percent=change_percent,
            trigger=trigger,
            correlation_id=correlation_id,
            timestamp=self._clock(),
        )
        self._publish(Topic.ODDS_UPDATED, outcome_id, record, correlation_id)

    def publish_game_event(self, event: GameEvent) -> None:
        self._publish(Topic.GAME_EVENTS, event.event_id, event, event.correlation_id)

    def publish_market_suspended(
        self, event_id: str, market_id: str, avg_change: float, correlation_id: str
    ) -> None:
        record = MarketSuspendedMessage(
            event_id=event_id,
            market_id=market_id,
            reason=_SUSPENSION_REASON,
            avg_change_percent=avg_change,
            duration_seconds=_SUSPENSION_SECONDS,
            correlation_id=correlation_id,
            timestamp=self._clock(),
        )
        self._publish(Topic.MARKETS_SUSPENDED, market_id, record, correlation_id)

    def publish_fraud_alert(self, alert: FraudAlert) -> None:
        self._publish(Topic.FRAUD_ALERTS, alert.user_id, alert, alert.correlation_id)

    def publish_wallet_transaction(self, tx: Transaction) -> None:
        self._publish(Topic.WALLET_TRANSACTIONS, tx.user_id, tx, tx.correlation_id)

    def close(self) -> None:
        self._writer.close()


class Consumer:
    """Feeds messages from a reader to a handler, committing each one handled without error."""

    def __init__(
        self,
        reader: MessageReader,
        topic: Union[Topic, str],
        group_id: str,
        handler: Callable[[Message], None],
        poll_interval: float = 1.0,
    ) -> None:
        self._reader = reader
        self._topic = topic.value if isinstance(topic, Topic) else topic
        self._group_id = group_id
        self._handler = handler
        self._poll_interval = poll_interval

    def run(self, stop: threading.Event) -> None:
        """Consume until ``stop`` is set, then close the reader."""
        tag = f"topic={self._topic} consumer_group={self._group_id}"
        logger.info("consumer_started %s", tag)
        while not stop.is_set():
            try:
                message = self._reader.fetch_message(self._poll_interval)
            except Exception as exc:
                if stop.is_set():
                    break
                logger.error("message_fetch_failed %s error=%s", tag, exc)
                continue
            if message is None:
                continue

            started = time.perf_counter()
            try:
                self._handler(message)
            except Exception as exc:
                metrics.KAFKA_PROCESSING_ERRORS.labels(self._topic, self._group_id).inc()
                logger.error(
                    "message_processing_failed %s partition=%d offset=%d error=%s",
                    tag,
                    message.partition,
                    message.offset,
                    exc,
                )
                continue
            elapsed = time.perf_counter() - started
            metrics.KAFKA_MESSAGES_CONSUMED.labels(self._topic, self._group_id).inc()
            metrics.KAFKA_PROCESSING_DURATION.labels(self._topic, self._group_id).observe(elapsed)

            try:
                self._reader.commit_messages(message)
            except Exception as exc:
                logger.error("offset_commit_failed %s error=%s", tag, exc)
        logger.info("consumer_stopped %s", tag)
        self._reader.close()