from datetime import datetime, timezone
from itertools import count
from types import SimpleNamespace

import pytest

from betstream import metrics
from betstream.bet_processor import BetProcessor
from betstream.messaging import Message
from betstream.models import (
    Bet,
    BetPlacedMessage,
    BetSettledMessage,
    BetStatus,
    TransactionType,
    User,
    dumps,
)
from betstream.ports import InsufficientBalanceError

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
PLACED_AT = datetime(2024, 5, 1, 11, 59, tzinfo=timezone.utc)
START_BALANCE = 1000.0
STAKE = 100.0


class FakeUsers:
    def __init__(self, balances):
        self.balances = dict(balances)

    def update_balance(self, user_id, amount):
        if user_id not in self.balances:
            raise InsufficientBalanceError()
        if amount < 0 and self.balances[user_id] < -amount:
            raise InsufficientBalanceError()
        self.balances[user_id] += amount
        return User(id=user_id, balance=self.balances[user_id])


class FakeBets:
    def __init__(self):
        self.saved = {}

    def save(self, bet):
        self.saved[bet.id] = bet

    def find_by_market(self, market_id):
        return [
            b for b in self.saved.values()
            if b.market_id == market_id and b.status == BetStatus.PENDING
        ]

    def update_status(self, bet_id, status, settled_at):
        bet = self.saved[bet_id]
        bet.status = status
        bet.settled_at = settled_at


class FailingMarketBets(FakeBets):
    def find_by_market(self, market_id):
        raise RuntimeError("database down")


class FakeTxs:
    def __init__(self):
        self.saved = []

    def save(self, tx):
        self.saved.append(tx)


class FakeOdds:
    def __init__(self, values):
        self.values = dict(values)

    def get_odds(self, outcome_id):
        return self.values.get(outcome_id, 0.0)


class FakeIdempotency:
    def __init__(self):
        self.seen = set()

    def check(self, key):
        if key in self.seen:
            return True
        self.seen.add(key)
        return False


class BrokenIdempotency:
    def check(self, key):
        raise RuntimeError("cache down")


class FakeSuspension:
    def __init__(self, suspended):
        self.suspended = set(suspended)

    def is_suspended(self, market_id):
        return market_id in self.suspended


class FakePublisher:
    def __init__(self):
        self.transactions = []

    def publish_wallet_transaction(self, tx):
        self.transactions.append(tx)


def build(odds=(), suspended=(), bets=None, idempotency=None):
    ids = count(1)
    env = SimpleNamespace(
        bets=bets if bets is not None else FakeBets(),
        users=FakeUsers({"user-1": START_BALANCE}),
        txs=FakeTxs(),
        odds=FakeOdds(dict(odds)),
        idem=idempotency if idempotency is not None else FakeIdempotency(),
        susp=FakeSuspension(suspended),
        pub=FakePublisher(),
    )
    env.processor = BetProcessor(
        env.bets, env.users, env.txs, env.odds, env.idem, env.susp, env.pub,
        clock=lambda: NOW, new_id=lambda: f"tx-{next(ids)}",
    )
    return env


def placed(bet_id="bet-1", user_id="user-1", stake=STAKE, odds=2.0, key="key-1"):
    record = BetPlacedMessage(
        bet_id=bet_id,
        user_id=user_id,
        event_id="evt-1",
        market_id="mkt-1",
        outcome_id="out-1",
        stake=stake,
        odds_at_placement=odds,
        potential_payout=stake * odds,
        idempotency_key=key,
        correlation_id="corr-1",
        timestamp=PLACED_AT,
    )
    return Message(topic="bets.placed", value=dumps(record), partition=0, offset=7)


def test_accepted_bet_is_saved_debited_and_recorded():
    env = build()
    placed_before = metrics.BETS_PLACED_TOTAL.value()
    env.processor.handle_bet_placed(placed())

    bet = env.bets.saved["bet-1"]
    assert bet.status == BetStatus.PENDING
    assert bet.placed_at == PLACED_AT
    assert bet.idempotency_key == "key-1"
    assert env.users.balances["user-1"] == START_BALANCE - STAKE

    (tx,) = env.txs.saved
    assert tx.type == TransactionType.BET_PLACED
    assert tx.amount == -STAKE
    assert tx.balance_after == env.users.balances["user-1"]
    assert tx.reference_id == "bet-1"
    assert tx.created_at == NOW
    assert env.pub.transactions == [tx]
    assert metrics.BETS_PLACED_TOTAL.value() == placed_before + 1


def test_duplicate_idempotency_key_is_skipped():
    env = build()
    before = metrics.BETS_REJECTED_TOTAL.value("duplicate")
    env.processor.handle_bet_placed(placed(bet_id="bet-1"))
    env.processor.handle_bet_placed(placed(bet_id="bet-2"))
    assert list(env.bets.saved) == ["bet-1"]
    assert env.users.balances["user-1"] == START_BALANCE - STAKE
    assert metrics.BETS_REJECTED_TOTAL.value("duplicate") == before + 1


def test_suspended_market_rejects_bet():
    env = build(suspended={"mkt-1"})
    before = metrics.BETS_REJECTED_TOTAL.value("market_suspended")
    env.processor.handle_bet_placed(placed())
    assert env.bets.saved == {}
    assert env.users.balances["user-1"] == START_BALANCE
    assert metrics.BETS_REJECTED_TOTAL.value("market_suspended") == before + 1


def test_large_odds_drift_rejects_bet():
    env = build(odds={"out-1": 2.2})
    before = metrics.BETS_REJECTED_TOTAL.value("odds_changed")
    env.processor.handle_bet_placed(placed(odds=2.0))
    assert env.bets.saved == {}
    assert env.txs.saved == []
    assert metrics.BETS_REJECTED_TOTAL.value("odds_changed") == before + 1


@pytest.mark.parametrize("cached", [2.05, 0.0])
def test_small_drift_or_missing_odds_accepts_bet(cached):
    env = build(odds={"out-1": cached})
    env.processor.handle_bet_placed(placed(odds=2.0))
    assert list(env.bets.saved) == ["bet-1"]


def test_insufficient_balance_rejects_bet():
    env = build()
    before = metrics.BETS_REJECTED_TOTAL.value("insufficient_balance")
    env.processor.handle_bet_placed(placed(stake=START_BALANCE + 1))
    assert env.bets.saved == {}
    assert env.users.balances["user-1"] == START_BALANCE
    assert metrics.BETS_REJECTED_TOTAL.value("insufficient_balance") == before + 1


def test_malformed_message_is_dropped():
    env = build()
    assert env.processor.handle_bet_placed(Message(topic="bets.placed", value=b"{oops")) is None
    assert env.bets.saved == {}
    assert env.idem.seen == set()


def test_idempotency_failure_propagates():
    env = build(idempotency=BrokenIdempotency())
    with pytest.raises(RuntimeError):
        env.processor.handle_bet_placed(placed())


def seed_bet(env, bet_id, outcome_id, payout):
    env.bets.save(Bet(
        id=bet_id, user_id="user-1", market_id="mkt-1", outcome_id=outcome_id,
        stake=STAKE, potential_payout=payout, status=BetStatus.PENDING,
    ))


def settled(winner):
    record = BetSettledMessage(
        event_id="evt-1", market_id="mkt-1", winning_outcome_id=winner,
        correlation_id="corr-settle", timestamp=NOW,
    )
    return Message(topic="bets.settled", value=dumps(record))


def test_settlement_pays_winner_and_marks_loser():
    env = build()
    payout = 250.0
    seed_bet(env, "bet-win", "out-win", payout)
    seed_bet(env, "bet-lose", "out-lose", 300.0)
    won_before = metrics.BETS_SETTLED_TOTAL.value("won")
    lost_before = metrics.BETS_SETTLED_TOTAL.value("lost")

    env.processor.handle_bet_settled(settled("out-win"))

    assert env.bets.saved["bet-win"].status == BetStatus.WON
    assert env.bets.saved["bet-lose"].status == BetStatus.LOST
    assert env.bets.saved["bet-win"].settled_at == NOW
    assert env.users.balances["user-1"] == START_BALANCE + payout
    (tx,) = env.txs.saved
    assert tx.type == TransactionType.BET_WON
    assert tx.amount == payout
    assert tx.reference_id == "bet-win"
    assert tx.correlation_id == "corr-settle"
    assert metrics.BETS_SETTLED_TOTAL.value("won") == won_before + 1
    assert metrics.BETS_SETTLED_TOTAL.value("lost") == lost_before + 1


def test_settlement_skips_already_settled_bets():
    env = build()
    seed_bet(env, "bet-win", "out-win", 250.0)
    env.processor.handle_bet_settled(settled("out-win"))
    env.processor.handle_bet_settled(settled("out-win"))
    assert len(env.txs.saved) == 1


def test_settlement_lookup_failure_propagates():
    env = build(bets=FailingMarketBets())
    with pytest.raises(RuntimeError):
        env.processor.handle_bet_settled(settled("out-win"))