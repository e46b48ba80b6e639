"""HTTP API for placing bets, browsing events and odds, wallets and administration."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable

from flask import Flask, Response, request

from betstream.metrics import MetricsMiddleware, metrics_app
from betstream.models import Bet, EventStatus, MarketStatus, to_dict
from betstream.ports import (
    BetRepository,
    EventPublisher,
    EventRepository,
    OddsCache,
    TransactionRepository,
    UserRepository,
)

logger = logging.getLogger(__name__)

_STRING = "string"
_NUMBER = "number"


class _BadRequest(Exception):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _json(status: int, payload: Any) -> Response:
    text = json.dumps(payload, separators=(",", ":"))
    text = text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")
    return Response(text + "\n", status=status, mimetype="application/json")


def _error(status: int, message: str) -> Response:
    return _json(status, {"error": message})


def _decode_body(spec: Mapping[str, str]) -> dict[str, Any]:
    """Decode the first JSON value of the body into the fields named by ``spec``."""
    text = request.get_data(as_text=True).lstrip()
    try:
        data, _ = json.JSONDecoder().raw_decode(text)
    except ValueError as exc:
        raise _BadRequest(str(exc)) from exc
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise _BadRequest("expected an object")
    values: dict[str, Any] = {}
    for name, kind in spec.items():
        value = data.get(name)
        if kind == _STRING:
            if value is None:
                value = ""
            elif not isinstance(value, str):
                raise _BadRequest(f"{name} must be a string")
        else:
            if value is None:
                value = 0.0
            elif isinstance(value, bool) or not isinstance(value, (int, float)):
                raise _BadRequest(f"{name} must be a number")
            value = float(value)
        values[name] = value
    return values


def _enrich_event(event: Any, live_odds: Mapping[str, float]) -> dict[str, Any]:
    result = to_dict(event)
    markets = []
    for market in event.markets:
        outcomes = []
        for outcome in market.outcomes:
            encoded = to_dict(outcome)
            odds = live_odds.get(outcome.outcome_id, 0.0)
            if odds:
                encoded["live_odds"] = odds
            outcomes.append(encoded)
        markets.append(
            {
                "market_id": market.market_id,
                "type": market.type.value if market.type else "",
                "status": market.status.value if market.status else "",
                "outcomes": outcomes,
            }
        )
    result["markets"] = markets
    return result


def _with_metrics_endpoint(app: Callable[..., Any]) -> Callable[..., Any]:
    def dispatch(environ: dict, start_response: Callable[..., Any]) -> Any:
        if environ.get("PATH_INFO") == "/metrics":
            return metrics_app(environ, start_response)
        return app(environ, start_response)

    return dispatch


def create_app(
    bets: BetRepository,
    events: EventRepository,
    users: UserRepository,
    transactions: TransactionRepository,
    odds: OddsCache,
    publisher: EventPublisher,
) -> Flask:
    """Build the WSGI application with every route and request metrics."""
    app = Flask(__name__)

    @app.post("/api/v1/bets")
    def place_bet() -> Response:
        try:
            req = _decode_body(
                {
                    "user_id": _STRING,
                    "event_id": _STRING,
                    "market_id": _STRING,
                    "outcome_id": _STRING,
                    "stake": _NUMBER,
                    "odds": _NUMBER,
                }
            )
        except _BadRequest:
            return _error(400, "invalid request")
        required = (req["user_id"], req["event_id"], req["market_id"], req["outcome_id"])
        if not all(required) or req["stake"] <= 0 or req["odds"] <= 0:
            return _error(400, "missing required fields")

        bet = Bet(
            id=_new_id(),
            user_id=req["user_id"],
            event_id=req["event_id"],
            market_id=req["market_id"],
            outcome_id=req["outcome_id"],
            stake=req["stake"],
            odds_at_placement=req["odds"],
            potential_payout=req["stake"] * req["odds"],
            idempotency_key=_new_id(),
            correlation_id=_new_id(),
            placed_at=datetime.now(timezone.utc),
        )
        try:
            publisher.publish_bet_placed(bet)
        except Exception as exc:
            logger.error("bet_publish_failed error=%s", exc)
            return _error(500, "failed to place bet")
        return _json(
            202,
            {"bet_id": bet.id, "correlation_id": bet.correlation_id, "status": "ACCEPTED"},
        )

    @app.get("/api/v1/bets")
    def get_bets() -> Response:
        user_id = request.args.get("user_id", "")
        if not user_id:
            return _error(400, "user_id required")
        try:
            found = bets.find_by_user(user_id)
        except Exception:
            return _error(500, "internal error")
        return _json(200, to_dict(list(found or [])))

    @app.get("/api/v1/bets/<bet_id>")
    def get_bet_by_id(bet_id: str) -> Response:
        try:
            bet = bets.find_by_id(bet_id)
        except Exception:
            return _error(500, "internal error")
        if bet is None:
            return _error(404, "bet not found")
        return _json(200, to_dict(bet))

    @app.get("/api/v1/events")
    def list_events() -> Response:
        try:
            found = events.find_all()
        except Exception:
            return _error(500, "internal error")
        return _json(200, to_dict(list(found or [])))

    @app.get("/api/v1/events/<event_id>")
    def get_event(event_id: str) -> Response:
        try:
            event = events.find_by_id(event_id)
        except Exception:
            return _error(500, "internal error")
        if event is None:
            return _error(404, "event not found")
        try:
            live_odds = odds.get_event_odds(event.id) or {}
        except Exception:
            live_odds = {}
        return _json(200, _enrich_event(event, live_odds))

    @app.get("/api/v1/events/<event_id>/odds")
    def get_event_odds(event_id: str) -> Response:
        try:
            found = odds.get_event_odds(event_id)
        except Exception:
            return _error(500, "internal error")
        return _json(200, dict(sorted((found or {}).items())))

    @app.get("/api/v1/wallet")
    def get_wallet() -> Response:
        user_id = request.args.get("user_id", "")
        if not user_id:
            return _error(400, "user_id required")
        try:
            user = users.find_by_id(user_id)
        except Exception:
            return _error(500, "internal error")
        if user is None:
            return _error(404, "user not found")
        try:
            txs = transactions.find_by_user(user_id)
        except Exception:
            return _error(500, "internal error")
        return _json(
            200,
            {
                "balance": user.balance,
                "transactions": to_dict(list(txs or [])),
                "user_id": user.id,
                "username": user.username,
            },
        )

    @app.post("/api/v1/admin/settle")
    def settle_market() -> Response:
        try:
            req = _decode_body(
                {"event_id": _STRING, "market_id": _STRING, "winning_outcome_id": _STRING}
            )
        except _BadRequest:
            return _error(400, "invalid request")
        if not (req["event_id"] and req["market_id"] and req["winning_outcome_id"]):
            return _error(400, "missing required fields")

        correlation_id = _new_id()
        try:
            publisher.publish_bet_settled(
                req["event_id"], req["market_id"], req["winning_outcome_id"], correlation_id
            )
        except Exception as exc:
            logger.error("settlement_publish_failed error=%s", exc)
            return _error(500, "failed to settle")
        try:
            events.update_market_status(req["event_id"], req["market_id"], MarketStatus.SETTLED)
        except Exception as exc:
            logger.debug("market_status_update_failed error=%s", exc)
        return _json(202, {"correlation_id": correlation_id, "status": "SETTLEMENT_QUEUED"})

    @app.post("/api/v1/admin/event-status")
    def update_event_status() -> Response:
        try:
            req = _decode_body({"event_id": _STRING, "status": _STRING})
        except _BadRequest:
            return _error(400, "invalid request")
        raw_status = req["status"]
        try:
            status: Any = EventStatus(raw_status)
        except ValueError:
            status = raw_status
        try:
            events.update_status(req["event_id"], status)
        except Exception:
            return _error(500, "failed to update")
        return _json(200, {"event_id": req["event_id"], "status": raw_status})

    app.wsgi_app = MetricsMiddleware(_with_metrics_endpoint(app.wsgi_app))  # type: ignore[method-assign]
    return app