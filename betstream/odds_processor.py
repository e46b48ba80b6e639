"""Caches incoming odds updates and suspends markets whose odds move too fast."""

from __future__ import annotations

import logging
from datetime import timedelta

from betstream import metrics
from betstream.messaging import Message
from betstream.models import OddsUpdatedMessage, loads
from betstream.ports import EventPublisher, MarketSuspensionCache, OddsCache

logger = logging.getLogger(__name__)

VELOCITY_THRESHOLD = 20.0
SUSPENSION_DURATION = timedelta(seconds=30)


class OddsProcessor:
    """Stores new odds, records their change and watches the change velocity."""

    def __init__(
        self,
        odds: OddsCache,
        suspended: MarketSuspensionCache,
        pub: EventPublisher,
    ) -> None:
        self._odds = odds
        self._suspended = suspended
        self._pub = pub

    def handle_odds_updated(self, msg: Message) -> None:
        """Process one odds update; a failure to cache the odds is raised."""
        try:
            m = loads(OddsUpdatedMessage, msg.value)
        except ValueError as exc:
            logger.error("odds_parse_failed error=%s", exc)
            return
        tag = f"correlation_id={m.correlation_id} outcome_id={m.outcome_id}"

        self._odds.set_odds(m.outcome_id, m.new_odds)
        metrics.ODDS_UPDATES_TOTAL.inc()
        metrics.ODDS_CHANGE_PERCENT.observe(abs(m.change_percent))

        try:
            self._odds.push_odds_history(m.outcome_id, m.change_percent)
        except Exception as exc:
            logger.error("odds_history_push_failed %s error=%s", tag, exc)

        try:
            velocity = self._odds.get_odds_velocity(m.outcome_id)
        except Exception as exc:
            logger.error("odds_velocity_check_failed %s error=%s", tag, exc)
        else:
            if abs(velocity) > VELOCITY_THRESHOLD:
                self._suspend(m, velocity, tag)

        logger.info(
            "odds_cached %s new_odds=%s change_percent=%s partition=%d offset=%d",
            tag,
            m.new_odds,
            m.change_percent,
            msg.partition,
            msg.offset,
        )

    def _suspend(self, m: OddsUpdatedMessage, velocity: float, tag: str) -> None:
        try:
            self._suspended.suspend(m.market_id, SUSPENSION_DURATION)
        except Exception as exc:
            logger.error("market_suspend_failed %s error=%s", tag, exc)
        try:
            self._pub.publish_market_suspended(
                m.event_id, m.market_id, velocity, m.correlation_id
            )
        except Exception as exc:
            logger.debug("market_suspended_publish_failed %s error=%s", tag, exc)
        metrics.MARKET_SUSPENSIONS_TOTAL.inc()
        logger.warning("market_suspended %s market_id=%s velocity=%s", tag, m.market_id, velocity)