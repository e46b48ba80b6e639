"""Validates placed bets against caches and balances, and settles markets."""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from betstream import metrics
from betstream.messaging import Message
from betstream.models import (
    Bet,
    BetPlacedMessage,
    BetSettledMessage,
    BetStatus,
    Transaction,
    TransactionType,
    loads,
)
from betstream.ports import (
    BetRepository,
    EventPublisher,
    IdempotencyCache,
    MarketSuspensionCache,
    OddsCache,
    TransactionRepository,
    UserRepository,
)

logger = logging.getLogger(__name__)

ODDS_TOLERANCE = 0.05  # accepted relative drift between requested and current odds


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class BetProcessor:
    """Accepts or rejects placed bets and pays out settled markets."""

    def __init__(
        self,
        bets: BetRepository,
        users: UserRepository,
        txs: TransactionRepository,
        odds: OddsCache,
        idempotent: IdempotencyCache,
        suspended: MarketSuspensionCache,
        events: EventPublisher,
        clock: Callable[[], datetime] = _utcnow,
        new_id: Callable[[], str] = _new_id,
    ) -> None:
        self._bets = bets
        self._users = users
        self._txs = txs
        self._odds = odds
        self._idempotent = idempotent
        self._suspended = suspended
        self._events = events
        self._clock = clock
        self._new_id = new_id

    def _record(self, tx: Transaction, tag: str) -> None:
        try:
            self._txs.save(tx)
        except Exception as exc:
            logger.error("transaction_save_failed %s error=%s", tag, exc)
        try:
            self._events.publish_wallet_transaction(tx)
        except Exception as exc:
            logger.debug("wallet_transaction_publish_failed %s error=%s", tag, exc)

    def handle_bet_placed(self, msg: Message) -> None:
        """Process one placed bet; rejections are logged and counted, not raised."""
        try:
            m = loads(BetPlacedMessage, msg.value)
        except ValueError as exc:
            logger.error("message_parse_failed error=%s", exc)
            return
        tag = f"correlation_id={m.correlation_id} bet_id={m.bet_id} user_id={m.user_id}"

        if self._idempotent.check(m.idempotency_key):
            logger.info("bet_duplicate_skipped %s", tag)
            metrics.BETS_REJECTED_TOTAL.labels("duplicate").inc()
            return

        if self._suspended.is_suspended(m.market_id):
            logger.warning("bet_rejected_market_suspended %s market_id=%s", tag, m.market_id)
            metrics.BETS_REJECTED_TOTAL.labels("market_suspended").inc()
            return

        current = self._odds.get_odds(m.outcome_id)
        if current > 0:
            requested = m.odds_at_placement
            drift = abs(current - requested) / requested if requested else math.inf
            if drift > ODDS_TOLERANCE:
                logger.warning(
                    "bet_rejected_odds_changed %s requested_odds=%s current_odds=%s drift=%s",
                    tag,
                    requested,
                    current,
                    drift,
                )
                metrics.BETS_REJECTED_TOTAL.labels("odds_changed").inc()
                return

        try:
            user = self._users.update_balance(m.user_id, -m.stake)
        except Exception as exc:
            logger.warning(
                "bet_rejected_insufficient_balance %s stake=%s error=%s", tag, m.stake, exc
            )
            metrics.BETS_REJECTED_TOTAL.labels("insufficient_balance").inc()
            return

        bet = Bet(
            id=m.bet_id,
            user_id=m.user_id,
            event_id=m.event_id,
            market_id=m.market_id,
            outcome_id=m.outcome_id,
            stake=m.stake,
            odds_at_placement=m.odds_at_placement,
            potential_payout=m.potential_payout,
            status=BetStatus.PENDING,
            idempotency_key=m.idempotency_key,
            correlation_id=m.correlation_id,
            placed_at=m.timestamp,
        )
        self._bets.save(bet)

        tx = Transaction(
            id=self._new_id(),
            user_id=m.user_id,
            type=TransactionType.BET_PLACED,
            amount=-m.stake,
            balance_after=user.balance,
            reference_id=m.bet_id,
            correlation_id=m.correlation_id,
            created_at=self._clock(),
        )
        self._record(tx, tag)

        metrics.BETS_PLACED_TOTAL.inc()
        logger.info(
            "bet_processed %s stake=%s odds=%s partition=%d offset=%d",
            tag,
            m.stake,
            m.odds_at_placement,
            msg.partition,
            msg.offset,
        )

    def handle_bet_settled(self, msg: Message) -> None:
        """Mark every pending bet on the market won or lost and credit winners."""
        try:
            m = loads(BetSettledMessage, msg.value)
        except ValueError as exc:
            logger.error("settlement_parse_failed error=%s", exc)
            return
        tag = f"correlation_id={m.correlation_id} market_id={m.market_id}"

        bets = self._bets.find_by_market(m.market_id)
        now = self._clock()
        for bet in bets:
            won = bet.outcome_id == m.winning_outcome_id
            status = BetStatus.WON if won else BetStatus.LOST
            try:
                self._bets.update_status(bet.id, status, now)
            except Exception as exc:
                logger.error("bet_status_update_failed %s bet_id=%s error=%s", tag, bet.id, exc)
                continue

            if not won:
                metrics.BETS_SETTLED_TOTAL.labels("lost").inc()
                logger.info("bet_settled_lost %s bet_id=%s", tag, bet.id)
                continue

            payout = bet.potential_payout
            try:
                user = self._users.update_balance(bet.user_id, payout)
            except Exception as exc:
                logger.error("payout_credit_failed %s bet_id=%s error=%s", tag, bet.id, exc)
                continue
            tx = Transaction(
                id=self._new_id(),
                user_id=bet.user_id,
                type=TransactionType.BET_WON,
                amount=payout,
                balance_after=user.balance,
                reference_id=bet.id,
                correlation_id=m.correlation_id,
                created_at=now,
            )
            self._record(tx, tag)
            metrics.BETS_SETTLED_TOTAL.labels("won").inc()
            logger.info("bet_settled_won %s bet_id=%s payout=%s", tag, bet.id, payout)

        logger.info("market_settlement_complete %s total_bets=%d", tag, len(bets))