"""Recalculates outcome odds in reaction to live game events."""

from __future__ import annotations

import logging
import math
import random
from typing import Any, Optional

from betstream.messaging import Message
from betstream.models import GameEvent, GameEventType, MarketStatus, MarketType, loads
from betstream.ports import EventPublisher, EventRepository, OddsCache

logger = logging.getLogger(__name__)

MIN_ODDS = 1.01


def contains(s: str, *args: str) -> bool:
    """True if every given substring occurs in ``s``."""
    return all(sub in s for sub in args)


def goal_impact(team: str, outcome_name: str) -> float:
    """Odds factor for a match-winner outcome after ``team`` scores."""
    is_home = team == "home"
    if is_home and contains(outcome_name, "Home", "Win") and not contains(outcome_name, "Away"):
        return 0.70
    if not is_home and contains(outcome_name, "Away", "Win") and not contains(outcome_name, "Home"):
        return 0.70
    if contains(outcome_name, "Draw"):
        return 1.30
    return 1.35


def red_card_impact(team: str, outcome_name: str) -> float:
    """Odds factor for a match-winner outcome after ``team`` receives a red card."""
    is_home = team == "home"
    if is_home and contains(outcome_name, "Home", "Win") and not contains(outcome_name, "Away"):
        return 1.20
    if not is_home and contains(outcome_name, "Away", "Win") and not contains(outcome_name, "Home"):
        return 1.20
    return 0.90


def _round_cents(value: float) -> float:
    return math.copysign(math.floor(abs(value) * 100 + 0.5), value) / 100


class OddsEngine:
    """Publishes new odds for every open market of the event a game event belongs to."""

    def __init__(
        self,
        odds: OddsCache,
        events: EventRepository,
        pub: EventPublisher,
        rng: Optional[Any] = None,
    ) -> None:
        self._odds = odds
        self._events = events
        self._pub = pub
        self._rng = rng if rng is not None else random.Random()

    def handle_game_event(self, msg: Message) -> None:
        try:
            ge = loads(GameEvent, msg.value)
        except ValueError as exc:
            logger.error("game_event_parse_failed error=%s", exc)
            return
        trigger = ge.type.value if ge.type else ""
        tag = f"correlation_id={ge.correlation_id} event_id={ge.event_id} type={trigger}"

        try:
            event = self._events.find_by_id(ge.event_id)
        except Exception as exc:
            logger.error("event_not_found %s error=%s", tag, exc)
            return
        if event is None:
            logger.error("event_not_found %s", tag)
            return

        for market in event.markets:
            if market.status != MarketStatus.OPEN:
                continue
            for outcome in market.outcomes:
                try:
                    old_odds = self._odds.get_odds(outcome.outcome_id)
                except Exception:
                    old_odds = 0.0
                if old_odds == 0:
                    old_odds = outcome.initial_odds

                new_odds = _round_cents(self.recalculate(old_odds, ge, market.type, outcome.name))
                new_odds = max(new_odds, MIN_ODDS)

                try:
                    self._pub.publish_odds_updated(
                        ge.event_id,
                        market.market_id,
                        outcome.outcome_id,
                        old_odds,
                        new_odds,
                        trigger,
                        ge.correlation_id,
                    )
                except Exception as exc:
                    logger.error(
                        "odds_publish_failed %s outcome_id=%s error=%s",
                        tag,
                        outcome.outcome_id,
                        exc,
                    )

        logger.info("odds_recalculated %s minute=%d", tag, ge.minute)

    def recalculate(
        self,
        current_odds: float,
        game_event: GameEvent,
        market_type: Optional[MarketType],
        outcome_name: str,
    ) -> float:
        """New odds for one outcome, with up to two percent of random noise."""
        factor = 1.0
        jitter = (self._rng.random() - 0.5) * 0.04
        kind = game_event.type

        if kind == GameEventType.GOAL:
            if market_type == MarketType.MATCH_WINNER:
                factor = goal_impact(game_event.team, outcome_name)
            else:
                factor = 0.80 if contains(outcome_name, "Over") else 1.25
        elif kind == GameEventType.RED_CARD:
            if market_type == MarketType.MATCH_WINNER:
                factor = red_card_impact(game_event.team, outcome_name)
        elif kind == GameEventType.YELLOW_CARD:
            factor = 1.0 + jitter
        elif kind in (GameEventType.HALFTIME, GameEventType.SECOND_HALF):
            factor = 1.0 + jitter * 0.5
        elif kind == GameEventType.FULL_TIME:
            return current_odds

        return current_odds * (factor + jitter)