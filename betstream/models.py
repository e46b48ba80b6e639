"""Domain records of the betting system and their JSON and document encodings."""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional, Union, get_args, get_origin


class EventStatus(str, Enum):
    UPCOMING = "UPCOMING"
    LIVE = "LIVE"
    FINISHED = "FINISHED"


class MarketStatus(str, Enum):
    OPEN = "OPEN"
    SUSPENDED = "SUSPENDED"
    CLOSED = "CLOSED"
    SETTLED = "SETTLED"


class MarketType(str, Enum):
    MATCH_WINNER = "MATCH_WINNER"
    OVER_UNDER = "OVER_UNDER"


class OutcomeResult(str, Enum):
    PENDING = "PENDING"
    WON = "WON"
    LOST = "LOST"


class BetStatus(str, Enum):
    PENDING = "PENDING"
    WON = "WON"
    LOST = "LOST"
    CANCELLED = "CANCELLED"


class UserStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SUSPENDED = "SUSPENDED"


class TransactionType(str, Enum):
    BET_PLACED = "BET_PLACED"
    BET_WON = "BET_WON"
    BET_LOST = "BET_LOST"
    REFUND = "REFUND"


class GameEventType(str, Enum):
    GOAL = "GOAL"
    YELLOW_CARD = "YELLOW_CARD"
    RED_CARD = "RED_CARD"
    HALFTIME = "HALFTIME"
    SECOND_HALF = "SECOND_HALF"
    FULL_TIME = "FULL_TIME"


class FraudAlertType(str, Enum):
    OPPOSITE_BETS = "OPPOSITE_BETS"
    RATE_LIMIT = "RATE_LIMIT"
    SUSPICIOUS_AMOUNT = "SUSPICIOUS_PATTERN"


class FraudSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


_ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)
_DOC_ID = {"document": "_id"}
_OMIT_EMPTY = {"omitempty": True}


@dataclass
class Bet:
    id: str = field(default="", metadata=_DOC_ID)
    user_id: str = ""
    event_id: str = ""
    market_id: str = ""
    outcome_id: str = ""
    stake: float = 0.0
    odds_at_placement: float = 0.0
    potential_payout: float = 0.0
    status: Optional[BetStatus] = None
    idempotency_key: str = ""
    correlation_id: str = ""
    placed_at: datetime = _ZERO_TIME
    settled_at: Optional[datetime] = field(default=None, metadata=_OMIT_EMPTY)


@dataclass
class Outcome:
    outcome_id: str = ""
    name: str = ""
    initial_odds: float = 0.0
    result: Optional[OutcomeResult] = None


@dataclass
class Market:
    market_id: str = ""
    type: Optional[MarketType] = None
    status: Optional[MarketStatus] = None
    outcomes: list[Outcome] = field(default_factory=list)


@dataclass
class Event:
    id: str = field(default="", metadata=_DOC_ID)
    name: str = ""
    sport: str = ""
    status: Optional[EventStatus] = None
    start_time: datetime = _ZERO_TIME
    markets: list[Market] = field(default_factory=list)


@dataclass
class Score:
    home: int = 0
    away: int = 0


@dataclass
class GameEvent:
    event_id: str = ""
    type: Optional[GameEventType] = None
    team: str = ""
    player: str = ""
    minute: int = 0
    score: Score = field(default_factory=Score)
    correlation_id: str = ""
    timestamp: datetime = _ZERO_TIME


@dataclass
class Transaction:
    id: str = field(default="", metadata=_DOC_ID)
    user_id: str = ""
    type: Optional[TransactionType] = None
    amount: float = 0.0
    balance_after: float = 0.0
    reference_id: str = ""
    correlation_id: str = ""
    created_at: datetime = _ZERO_TIME


@dataclass
class User:
    id: str = field(default="", metadata=_DOC_ID)
    username: str = ""
    balance: float = 0.0
    status: Optional[UserStatus] = None
    created_at: datetime = _ZERO_TIME
    updated_at: datetime = _ZERO_TIME


@dataclass
class FraudAlert:
    alert_id: str = ""
    user_id: str = ""
    alert_type: Optional[FraudAlertType] = None
    details: str = ""
    correlation_id: str = ""
    severity: Optional[FraudSeverity] = None
    timestamp: datetime = _ZERO_TIME


@dataclass
class OddsUpdatedMessage:
    event_id: str = ""
    market_id: str = ""
    outcome_id: str = ""
    old_odds: float = 0.0
    new_odds: float = 0.0
    change_percent: float = 0.0
    trigger: str = ""
    correlation_id: str = ""
    timestamp: datetime = _ZERO_TIME


@dataclass
class BetPlacedMessage:
    bet_id: str = ""
    user_id: str = ""
    event_id: str = ""
    market_id: str = ""
    outcome_id: str = ""
    stake: float = 0.0
    odds_at_placement: float = 0.0
    potential_payout: float = 0.0
    idempotency_key: str = ""
    correlation_id: str = ""
    timestamp: datetime = _ZERO_TIME


@dataclass
class BetSettledMessage:
    event_id: str = ""
    market_id: str = ""
    winning_outcome_id: str = ""
    correlation_id: str = ""
    timestamp: datetime = _ZERO_TIME


@dataclass
class MarketSuspendedMessage:
    event_id: str = ""
    market_id: str = ""
    reason: str = ""
    avg_change_percent: float = 0.0
    duration_seconds: int = 0
    correlation_id: str = ""
    timestamp: datetime = _ZERO_TIME


# --- time encoding ---

_TIME_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?(Z|z|[+-]\d{2}:\d{2})$"
)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _format_time(value: datetime) -> str:
    value = _as_aware(value)
    text = (
        f"{value.year:04d}-{value.month:02d}-{value.day:02d}"
        f"T{value.hour:02d}:{value.minute:02d}:{value.second:02d}"
    )
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or timedelta(0)
    if not offset:
        return text + "Z"
    sign = "-" if offset < timedelta(0) else "+"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _parse_time(text: str) -> datetime:
    match = _TIME_RE.match(text)
    if match is None:
        raise ValueError(f"invalid timestamp: {text!r}")
    year, month, day, hour, minute, second, fraction, zone = match.groups()
    micro = int((fraction or "").ljust(6, "0")[:6] or 0)
    if zone in ("Z", "z"):
        tz = timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        tz = timezone(sign * timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6])))
    return datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tzinfo=tz
    )


# --- generic encoding ---

def _key(f: Any, document: bool) -> str:
    if document:
        return f.metadata.get("document", f.name)
    return f.name


def _encode(value: Any, document: bool) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        out: dict[str, Any] = {}
        for f in fields(value):
            item = getattr(value, f.name)
            if item is None:
                if f.metadata.get("omitempty"):
                    continue
                out[_key(f, document)] = ""
                continue
            out[_key(f, document)] = _encode(item, document)
        return out
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _as_aware(value) if document else _format_time(value)
    if isinstance(value, (list, tuple)):
        return [_encode(item, document) for item in value]
    if isinstance(value, Mapping):
        return {key: _encode(item, document) for key, item in value.items()}
    return value


def _decode(tp: Any, value: Any, document: bool) -> Any:
    origin = get_origin(tp)
    if origin is Union:
        inner = next(arg for arg in get_args(tp) if arg is not type(None))
        if value is None:
            return None
        if isinstance(inner, type) and issubclass(inner, Enum) and value == "":
            return None
        return _decode(inner, value, document)
    if origin is list:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError(f"expected a list, got {type(value).__name__}")
        (item_type,) = get_args(tp)
        return [_decode(item_type, item, document) for item in value]
    if is_dataclass(tp):
        return _build(tp, value, document)
    if tp is datetime:
        if document and isinstance(value, datetime):
            return _as_aware(value)
        if isinstance(value, str):
            return _parse_time(value)
        raise ValueError(f"expected a timestamp, got {type(value).__name__}")
    if tp is float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"expected a number, got {type(value).__name__}")
        return float(value)
    if tp is int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"expected an integer, got {type(value).__name__}")
        return value
    if tp is str:
        if not isinstance(value, str):
            raise ValueError(f"expected a string, got {type(value).__name__}")
        return value
    if isinstance(tp, type) and issubclass(tp, Enum):
        if not isinstance(value, str):
            raise ValueError(f"expected a string, got {type(value).__name__}")
        return tp(value)
    raise ValueError(f"unsupported field type {tp!r}")


def _build(kind: type, data: Any, document: bool) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError(f"expected an object for {kind.__name__}, got {type(data).__name__}")
    kwargs = {}
    for f in fields(kind):
        key = _key(f, document)
        if data.get(key) is None:
            continue
        kwargs[f.name] = _decode(f.type, data[key], document)
    return kind(**kwargs)


def to_dict(obj: Any) -> Any:
    """Encode a record (or list of records) into its JSON-ready form."""
    return _encode(obj, document=False)


def from_dict(kind: type, data: Any) -> Any:
    """Build a record of type ``kind`` from its JSON form; raise ValueError on bad input."""
    return _build(kind, data, document=False)


def to_document(obj: Any) -> Any:
    """Encode a record into its database document form."""
    return _encode(obj, document=True)


def from_document(kind: type, doc: Any) -> Any:
    """Build a record of type ``kind`` from a database document."""
    return _build(kind, doc, document=True)


def dumps(obj: Any) -> bytes:
    """Serialise a record to compact JSON bytes."""
    return json.dumps(to_dict(obj), separators=(",", ":")).encode("utf-8")


def loads(kind: type, raw: Union[bytes, str]) -> Any:
    """Parse JSON text into a record of type ``kind``; raise ValueError on bad input."""
    data = json.loads(raw)
    if data is None:
        return kind()
    return from_dict(kind, data)