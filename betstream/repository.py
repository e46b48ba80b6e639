"""MongoDB-backed repositories for bets, events, transactions and users."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from betstream.models import (
    Bet,
    BetStatus,
    Event,
    EventStatus,
    MarketStatus,
    OutcomeResult,
    Transaction,
    User,
    from_document,
    to_document,
)
from betstream.ports import InsufficientBalanceError

_TRANSACTION_PAGE = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _raw(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def array_filters(*args: Mapping[str, Any]) -> list[dict[str, Any]]:
    """Collect filter documents into the list form an update's array_filters takes."""
    return [dict(f) for f in args]


class MongoBetRepo:
    def __init__(self, db: Any) -> None:
        self._col = db["bets"]

    def save(self, bet: Bet) -> None:
        self._col.insert_one(to_document(bet))

    def find_by_id(self, bet_id: str) -> Optional[Bet]:
        doc = self._col.find_one({"_id": bet_id})
        return None if doc is None else from_document(Bet, doc)

    def find_by_user(self, user_id: str) -> list[Bet]:
        return [from_document(Bet, doc) for doc in self._col.find({"user_id": user_id})]

    def find_by_market(self, market_id: str) -> list[Bet]:
        """Pending bets on the market."""
        query = {"market_id": market_id, "status": BetStatus.PENDING.value}
        return [from_document(Bet, doc) for doc in self._col.find(query)]

    def update_status(self, bet_id: str, status: BetStatus, settled_at: datetime) -> None:
        self._col.update_one(
            {"_id": bet_id},
            {"$set": {"status": _raw(status), "settled_at": settled_at}},
        )


class MongoEventRepo:
    def __init__(self, db: Any) -> None:
        self._col = db["events"]

    def find_by_id(self, event_id: str) -> Optional[Event]:
        doc = self._col.find_one({"_id": event_id})
        return None if doc is None else from_document(Event, doc)

    def find_all(self) -> list[Event]:
        return [from_document(Event, doc) for doc in self._col.find({})]

    def find_by_status(self, status: EventStatus) -> list[Event]:
        return [from_document(Event, doc) for doc in self._col.find({"status": _raw(status)})]

    def save(self, event: Event) -> None:
        self._col.insert_one(to_document(event))

    def update_status(self, event_id: str, status: EventStatus) -> None:
        self._col.update_one({"_id": event_id}, {"$set": {"status": _raw(status)}})

    def update_market_status(self, event_id: str, market_id: str, status: MarketStatus) -> None:
        self._col.update_one(
            {"_id": event_id, "markets.market_id": market_id},
            {"$set": {"markets.$.status": _raw(status)}},
        )

    def update_outcome_result(
        self, event_id: str, market_id: str, outcome_id: str, result: OutcomeResult
    ) -> None:
        self._col.update_one(
            {"_id": event_id},
            {"$set": {"markets.$[m].outcomes.$[o].result": _raw(result)}},
            array_filters=array_filters({"m.market_id": market_id}, {"o.outcome_id": outcome_id}),
        )


class MongoTransactionRepo:
    def __init__(self, db: Any) -> None:
        self._col = db["transactions"]

    def save(self, tx: Transaction) -> None:
        self._col.insert_one(to_document(tx))

    def find_by_user(self, user_id: str) -> list[Transaction]:
        """The user's latest transactions, newest first."""
        cursor = self._col.find(
            {"user_id": user_id}, sort=[("created_at", -1)], limit=_TRANSACTION_PAGE
        )
        return [from_document(Transaction, doc) for doc in cursor]


class MongoUserRepo:
    def __init__(self, db: Any, clock: Callable[[], datetime] = _utcnow) -> None:
        self._col = db["users"]
        self._clock = clock

    def find_by_id(self, user_id: str) -> Optional[User]:
        doc = self._col.find_one({"_id": user_id})
        return None if doc is None else from_document(User, doc)

    def update_balance(self, user_id: str, amount: float) -> User:
        """Atomically add ``amount``; a debit never takes the balance below zero."""
        query: dict[str, Any] = {"_id": user_id}
        if amount < 0:
            query["balance"] = {"$gte": -amount}
        now = self._clock()
        doc = self._col.find_one_and_update(
            query, {"$inc": {"balance": amount}, "$set": {"updated_at": now}}
        )
        if doc is None:
            raise InsufficientBalanceError()
        user = from_document(User, doc)
        user.balance += amount
        user.updated_at = now
        return user

    def save(self, user: User) -> None:
        self._col.insert_one(to_document(user))

    def find_all(self) -> list[User]:
        return [from_document(User, doc) for doc in self._col.find({})]