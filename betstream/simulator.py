"""Simulated live data feed producing game events for live matches."""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from betstream import metrics
from betstream.models import EventStatus, GameEvent, GameEventType, Score
from betstream.ports import EventPublisher, EventRepository

logger = logging.getLogger(__name__)

PLAYERS: dict[str, tuple[str, ...]] = {
    "home": ("Player A", "Player B", "Player C", "Player D", "Player E"),
    "away": ("Player F", "Player G", "Player H", "Player I", "Player J"),
}

FINAL_MINUTE = 90


@dataclass
class GameState:
    """Clock and score of one simulated match."""

    minute: int = 1
    score: Score = field(default_factory=lambda: Score(home=0, away=0))


def generate_game_event(event_id: str, state: GameState, rng: Any) -> GameEvent:
    """Draw the next game event for a match, updating its score on a goal."""
    team = "away" if rng.random() > 0.5 else "home"
    r = rng.random()

    if state.minute == 45:
        kind = GameEventType.HALFTIME
    elif state.minute == 46:
        kind = GameEventType.SECOND_HALF
    elif state.minute >= FINAL_MINUTE:
        kind = GameEventType.FULL_TIME
    elif r < 0.15:
        kind = GameEventType.GOAL
        if team == "home":
            state.score = Score(home=state.score.home + 1, away=state.score.away)
        else:
            state.score = Score(home=state.score.home, away=state.score.away + 1)
    elif r < 0.30:
        kind = GameEventType.YELLOW_CARD
    elif r < 0.35:
        kind = GameEventType.RED_CARD
    else:
        kind = GameEventType.YELLOW_CARD

    return GameEvent(
        event_id=event_id,
        type=kind,
        team=team,
        player=rng.choice(PLAYERS[team]),
        minute=state.minute,
        score=Score(home=state.score.home, away=state.score.away),
        correlation_id=str(uuid.uuid4()),
        timestamp=datetime.now(timezone.utc),
    )


class FeedSimulator:
    """Publishes a random game event for a random live match every few seconds."""

    def __init__(
        self,
        events: EventRepository,
        publisher: EventPublisher,
        rng: Optional[Any] = None,
    ) -> None:
        self._events = events
        self._publisher = publisher
        self._rng = rng if rng is not None else random.Random()
        self.states: dict[str, GameState] = {}

    def step(self) -> Optional[GameEvent]:
        """Advance one live match and publish its event; None if nothing was published."""
        try:
            live = self._events.find_by_status(EventStatus.LIVE)
        except Exception as exc:
            logger.debug("live_events_lookup_failed error=%s", exc)
            return None
        if not live:
            return None

        event = live[self._rng.randrange(len(live))]
        state = self.states.setdefault(event.id, GameState())
        state.minute = min(state.minute + self._rng.randint(1, 5), FINAL_MINUTE)

        game_event = generate_game_event(event.id, state, self._rng)
        try:
            self._publisher.publish_game_event(game_event)
        except Exception as exc:
            logger.error("game_event_publish_failed error=%s", exc)
            return None
        metrics.GAME_EVENTS_TOTAL.labels(game_event.type.value).inc()
        logger.info(
            "game_event_published event_id=%s event_name=%s type=%s minute=%d score=%d-%d",
            event.id,
            event.name,
            game_event.type.value,
            game_event.minute,
            game_event.score.home,
            game_event.score.away,
        )
        return game_event

    def run(self, stop: Any) -> None:
        """Step every five to ten seconds until ``stop`` is set."""
        logger.info("data_feed_simulator_started")
        while not stop.is_set():
            delay = 5 + self._rng.randrange(6)
            if stop.wait(delay):
                break
            self.step()
        logger.info("data_feed_simulator_stopped")