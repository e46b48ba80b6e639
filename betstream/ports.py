"""Interfaces the processors and handlers depend on."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol, runtime_checkable

from betstream.models import (
    Bet,
    BetStatus,
    Event,
    EventStatus,
    FraudAlert,
    GameEvent,
    MarketStatus,
    OutcomeResult,
    Transaction,
    User,
)


class InsufficientBalanceError(Exception):
    """Raised when a debit would overdraw a balance or the user does not exist."""

    def __init__(self, message: str = "insufficient balance or user not found") -> None:
        super().__init__(message)


@runtime_checkable
class UserRepository(Protocol):
    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def update_balance(self, user_id: str, amount: float) -> User: ...

    def save(self, user: User) -> None: ...

    def find_all(self) -> list[User]: ...


@runtime_checkable
class EventRepository(Protocol):
    def find_by_id(self, event_id: str) -> Optional[Event]: ...

    def find_all(self) -> list[Event]: ...

    def find_by_status(self, status: EventStatus) -> list[Event]: ...

    def save(self, event: Event) -> None: ...

    def update_status(self, event_id: str, status: EventStatus) -> None: ...

    def update_market_status(self, event_id: str, market_id: str, status: MarketStatus) -> None: ...

    def update_outcome_result(
        self, event_id: str, market_id: str, outcome_id: str, result: OutcomeResult
    ) -> None: ...


@runtime_checkable
class BetRepository(Protocol):
    def save(self, bet: Bet) -> None: ...

    def find_by_id(self, bet_id: str) -> Optional[Bet]: ...

    def find_by_user(self, user_id: str) -> list[Bet]: ...

    def find_by_market(self, market_id: str) -> list[Bet]: ...

    def update_status(self, bet_id: str, status: BetStatus, settled_at: datetime) -> None: ...


@runtime_checkable
class TransactionRepository(Protocol):
    def save(self, tx: Transaction) -> None: ...

    def find_by_user(self, user_id: str) -> list[Transaction]: ...


@runtime_checkable
class OddsCache(Protocol):
    def get_odds(self, outcome_id: str) -> float: ...

    def set_odds(self, outcome_id: str, odds: float) -> None: ...

    def get_event_odds(self, event_id: str) -> dict[str, float]: ...

    def push_odds_history(self, outcome_id: str, change_percent: float) -> None: ...

    def get_odds_velocity(self, outcome_id: str) -> float: ...


@runtime_checkable
class IdempotencyCache(Protocol):
    def check(self, key: str) -> bool:
        """Return True if ``key`` was already processed."""
        ...


@runtime_checkable
class MarketSuspensionCache(Protocol):
    def is_suspended(self, market_id: str) -> bool: ...

    def suspend(self, market_id: str, duration: timedelta) -> None: ...


@runtime_checkable
class FraudWindow(Protocol):
    def add_bet(self, user_id: str, bet: Bet) -> None: ...

    def get_recent_bets(self, user_id: str, window: timedelta) -> list[Bet]: ...


@runtime_checkable
class EventPublisher(Protocol):
    def publish_bet_placed(self, bet: Bet) -> None: ...

    def publish_bet_settled(
        self, event_id: str, market_id: str, winning_outcome_id: str, correlation_id: str
    ) -> None: ...

    def publish_odds_updated(
        self,
        event_id: str,
        market_id: str,
        outcome_id: str,
        old_odds: float,
        new_odds: float,
        trigger: str,
        correlation_id: str,
    ) -> None: ...

    def publish_game_event(self, event: GameEvent) -> None: ...

    def publish_market_suspended(
        self, event_id: str, market_id: str, avg_change: float, correlation_id: str
    ) -> None: ...

    def publish_fraud_alert(self, alert: FraudAlert) -> None: ...

    def publish_wallet_transaction(self, tx: Transaction) -> None: ...

    def close(self) -> None: ...