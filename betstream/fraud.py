"""Fraud rules applied to each placed bet against the user's recent bets."""

from __future__ import annotations

import logging
import math
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta, timezone
from typing import Optional

from betstream import metrics
from betstream.messaging import Message
from betstream.models import (
    Bet,
    BetPlacedMessage,
    FraudAlert,
    FraudAlertType,
    FraudSeverity,
    loads,
)
from betstream.ports import EventPublisher, FraudWindow

logger = logging.getLogger(__name__)

RATE_LIMIT_WINDOW = timedelta(seconds=60)
RATE_LIMIT_MAX_BETS = 5
RECENT_BETS_WINDOW = timedelta(minutes=5)
SUSPICIOUS_MIN_HISTORY = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class FraudRule(ABC):
    """A check that may raise an alert for a bet given the user's recent bets."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock

    def _alert(
        self, bet: Bet, alert_type: FraudAlertType, severity: FraudSeverity, details: str
    ) -> FraudAlert:
        return FraudAlert(
            alert_id=str(uuid.uuid4()),
            user_id=bet.user_id,
            alert_type=alert_type,
            details=details,
            correlation_id=bet.correlation_id,
            severity=severity,
            timestamp=self._clock(),
        )

    @abstractmethod
    def check(self, bet: Bet, recent_bets: Sequence[Bet]) -> Optional[FraudAlert]:
        """Return an alert if the rule fires, else None."""


class RateLimitRule(FraudRule):
    """Fires when more than five recent bets fall within the last minute."""

    def check(self, bet: Bet, recent_bets: Sequence[Bet]) -> Optional[FraudAlert]:
        cutoff = _aware(self._clock()) - RATE_LIMIT_WINDOW
        placed = sum(1 for b in recent_bets if _aware(b.placed_at) > cutoff)
        if placed <= RATE_LIMIT_MAX_BETS:
            return None
        return self._alert(
            bet,
            FraudAlertType.RATE_LIMIT,
            FraudSeverity.MEDIUM,
            f"User placed {placed} bets in last 60 seconds",
        )


class OppositeBetsRule(FraudRule):
    """Fires when a recent bet backs a different outcome of the same event."""

    def check(self, bet: Bet, recent_bets: Sequence[Bet]) -> Optional[FraudAlert]:
        if not any(
            b.event_id == bet.event_id and b.outcome_id != bet.outcome_id for b in recent_bets
        ):
            return None
        return self._alert(
            bet,
            FraudAlertType.OPPOSITE_BETS,
            FraudSeverity.HIGH,
            f"User placed bets on different outcomes of event {bet.event_id} within 5 minutes",
        )


class SuspiciousAmountRule(FraudRule):
    """Fires when a stake exceeds ``threshold`` times the user's recent average."""

    def __init__(self, threshold: float = 10, clock: Callable[[], datetime] = _utcnow) -> None:
        super().__init__(clock)
        self.threshold = threshold

    def check(self, bet: Bet, recent_bets: Sequence[Bet]) -> Optional[FraudAlert]:
        if len(recent_bets) < SUSPICIOUS_MIN_HISTORY:
            return None
        average = sum(b.stake for b in recent_bets) / len(recent_bets)
        if not bet.stake > average * self.threshold:
            return None
        ratio = bet.stake / average if average else math.inf
        ratio_text = f"{ratio:.1f}" if math.isfinite(ratio) else "+Inf"
        return self._alert(
            bet,
            FraudAlertType.SUSPICIOUS_AMOUNT,
            FraudSeverity.HIGH,
            f"Bet stake {bet.stake:.2f} is {ratio_text}x the user average of {average:.2f}",
        )


class FraudProcessor:
    """Runs every rule over each placed bet and publishes the alerts raised."""

    def __init__(
        self,
        window: FraudWindow,
        pub: EventPublisher,
        rules: Optional[Sequence[FraudRule]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._window = window
        self._pub = pub
        self.rules = list(rules) if rules is not None else [
            RateLimitRule(clock),
            OppositeBetsRule(clock),
            SuspiciousAmountRule(10, clock),
        ]

    def handle_bet_placed(self, msg: Message) -> None:
        try:
            m = loads(BetPlacedMessage, msg.value)
        except ValueError as exc:
            logger.error("message_parse_failed error=%s", exc)
            return
        tag = f"correlation_id={m.correlation_id} user_id={m.user_id} bet_id={m.bet_id}"

        bet = Bet(
            id=m.bet_id,
            user_id=m.user_id,
            event_id=m.event_id,
            market_id=m.market_id,
            outcome_id=m.outcome_id,
            stake=m.stake,
            odds_at_placement=m.odds_at_placement,
            potential_payout=m.potential_payout,
            correlation_id=m.correlation_id,
            placed_at=m.timestamp,
        )

        recent = self._window.get_recent_bets(m.user_id, RECENT_BETS_WINDOW)

        for rule in self.rules:
            alert = rule.check(bet, recent)
            if alert is None:
                continue
            kind = alert.alert_type.value if alert.alert_type else ""
            try:
                self._pub.publish_fraud_alert(alert)
            except Exception as exc:
                logger.error("fraud_alert_publish_failed %s alert_type=%s error=%s", tag, kind, exc)
                continue
            metrics.FRAUD_ALERTS_TOTAL.labels(kind).inc()
            logger.warning(
                "fraud_alert_triggered %s alert_type=%s severity=%s details=%s",
                tag,
                kind,
                alert.severity.value if alert.severity else "",
                alert.details,
            )

        try:
            self._window.add_bet(m.user_id, bet)
        except Exception as exc:
            logger.error("fraud_window_add_failed %s error=%s", tag, exc)

        logger.info(
            "fraud_check_complete %s recent_bets=%d partition=%d offset=%d",
            tag,
            len(recent),
            msg.partition,
            msg.offset,
        )