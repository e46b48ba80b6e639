"""In-process metrics: counters, histograms, text exposition and HTTP serving."""

from __future__ import annotations

import bisect
import logging
import math
import re
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from typing import Any, Optional
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

logger = logging.getLogger(__name__)

DEFAULT_BUCKETS: tuple[float, ...] = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

WSGIApp = Callable[[dict, Callable[..., Any]], Iterable[bytes]]


def _fmt(value: float) -> str:
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(float(value))


def _escape_label(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _escape_help(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n")


def _labels_text(pairs: Sequence[tuple[str, str]]) -> str:
    if not pairs:
        return ""
    return "{" + ",".join(f'{name}="{_escape_label(value)}"' for name, value in pairs) + "}"


class _CounterChild:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.value = 0.0

    def inc(self, amount: float = 1.0) -> None:
        if amount < 0:
            raise ValueError("counters can only increase")
        with self._lock:
            self.value += amount


class _HistogramChild:
    def __init__(self, bounds: tuple[float, ...]) -> None:
        self._lock = threading.Lock()
        self.bounds = bounds
        self.bucket_counts = [0] * len(bounds)
        self.sum = 0.0
        self.count = 0

    def observe(self, value: float) -> None:
        index = bisect.bisect_left(self.bounds, value)
        with self._lock:
            if index < len(self.bounds):
                self.bucket_counts[index] += 1
            self.sum += value
            self.count += 1


class _Metric:
    kind = ""

    def __init__(
        self,
        name: str,
        help: str,
        labelnames: Sequence[str] = (),
        registry: Optional["Registry"] = None,
    ) -> None:
        if not _NAME_RE.match(name):
            raise ValueError(f"invalid metric name: {name!r}")
        for label in labelnames:
            if not _LABEL_RE.match(label) or label == "le":
                raise ValueError(f"invalid label name: {label!r}")
        self.name = name
        self.help = help
        self.labelnames = tuple(labelnames)
        self._lock = threading.Lock()
        self._children: dict[tuple[str, ...], Any] = {}
        if not self.labelnames:
            self._children[()] = self._new_child()
        if registry is not None:
            registry.register(self)

    def _new_child(self) -> Any:
        raise NotImplementedError

    def _key(self, values: Sequence[Any]) -> tuple[str, ...]:
        if len(values) != len(self.labelnames):
            raise ValueError(
                f"{self.name} expects {len(self.labelnames)} label values, got {len(values)}"
            )
        return tuple(str(v) for v in values)

    def _child(self, values: Sequence[Any]) -> Any:
        key = self._key(values)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._children[key] = self._new_child()
        return child

    def _existing(self, values: Sequence[Any]) -> Any:
        key = self._key(values)
        with self._lock:
            return self._children.get(key)

    def _unlabeled(self) -> Any:
        if self.labelnames:
            raise ValueError(f"{self.name} has labels; select them with labels() first")
        return self._children[()]

    def _snapshot(self) -> list[tuple[tuple[str, ...], Any]]:
        with self._lock:
            return sorted(self._children.items())

    def _header(self) -> list[str]:
        return [f"# HELP {self.name} {_escape_help(self.help)}", f"# TYPE {self.name} {self.kind}"]

    def _exposition(self) -> list[str]:
        raise NotImplementedError


class Counter(_Metric):
    """A monotonically increasing value, optionally split by labels."""

    kind = "counter"

    def _new_child(self) -> _CounterChild:
        return _CounterChild()

    def labels(self, *args: Any) -> _CounterChild:
        return self._child(args)

    def inc(self, amount: float = 1.0) -> None:
        self._unlabeled().inc(amount)

    def value(self, *args: Any) -> float:
        child = self._existing(args)
        return 0.0 if child is None else child.value

    def _exposition(self) -> list[str]:
        children = self._snapshot()
        if not children:
            return []
        lines = self._header()
        for key, child in children:
            pairs = list(zip(self.labelnames, key))
            lines.append(f"{self.name}{_labels_text(pairs)} {_fmt(child.value)}")
        return lines


class Histogram(_Metric):
    """Observations counted into cumulative buckets, optionally split by labels."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        help: str,
        labelnames: Sequence[str] = (),
        buckets: Sequence[float] = DEFAULT_BUCKETS,
        registry: Optional["Registry"] = None,
    ) -> None:
        bounds = tuple(float(b) for b in buckets if not math.isinf(b))
        if any(later <= earlier for earlier, later in zip(bounds, bounds[1:])):
            raise ValueError("histogram buckets must be strictly increasing")
        self.buckets = bounds
        super().__init__(name, help, labelnames, registry)

    def _new_child(self) -> _HistogramChild:
        return _HistogramChild(self.buckets)

    def labels(self, *args: Any) -> _HistogramChild:
        return self._child(args)

    def observe(self, value: float) -> None:
        self._unlabeled().observe(value)

    def count(self, *args: Any) -> int:
        child = self._existing(args)
        return 0 if child is None else child.count

    def _exposition(self) -> list[str]:
        children = self._snapshot()
        if not children:
            return []
        lines = self._header()
        for key, child in children:
            pairs = list(zip(self.labelnames, key))
            with child._lock:
                counts = list(child.bucket_counts)
                total, count = child.sum, child.count
            cumulative = 0
            for bound, bucket_count in zip(self.buckets, counts):
                cumulative += bucket_count
                labels = _labels_text(pairs + [("le", _fmt(bound))])
                lines.append(f"{self.name}_bucket{labels} {cumulative}")
            labels = _labels_text(pairs + [("le", "+Inf")])
            lines.append(f"{self.name}_bucket{labels} {count}")
            lines.append(f"{self.name}_sum{_labels_text(pairs)} {_fmt(total)}")
            lines.append(f"{self.name}_count{_labels_text(pairs)} {count}")
        return lines


class Registry:
    """A named collection of metrics rendered together in text exposition format."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: dict[str, _Metric] = {}

    def register(self, metric: _Metric) -> _Metric:
        with self._lock:
            if metric.name in self._metrics:
                raise ValueError(f"metric already registered: {metric.name}")
            self._metrics[metric.name] = metric
        return metric

    def render(self) -> str:
        with self._lock:
            metrics = sorted(self._metrics.values(), key=lambda m: m.name)
        return "".join(line + "\n" for metric in metrics for line in metric._exposition())


REGISTRY = Registry()

# Message bus metrics
KAFKA_MESSAGES_PRODUCED = Counter(
    "kafka_messages_produced_total", "Total Kafka messages produced", ("topic",), registry=REGISTRY
)
KAFKA_MESSAGES_CONSUMED = Counter(
    "kafka_messages_consumed_total",
    "Total Kafka messages consumed",
    ("topic", "consumer_group"),
    registry=REGISTRY,
)
KAFKA_PROCESSING_DURATION = Histogram(
    "kafka_message_processing_seconds",
    "Kafka message processing duration",
    ("topic", "consumer_group"),
    registry=REGISTRY,
)
KAFKA_PROCESSING_ERRORS = Counter(
    "kafka_message_processing_errors_total",
    "Total Kafka message processing errors",
    ("topic", "consumer_group"),
    registry=REGISTRY,
)

# Business metrics
BETS_PLACED_TOTAL = Counter("bets_placed_total", "Total bets placed", registry=REGISTRY)
BETS_REJECTED_TOTAL = Counter(
    "bets_rejected_total", "Total bets rejected", ("reason",), registry=REGISTRY
)
BETS_SETTLED_TOTAL = Counter(
    "bets_settled_total", "Total bets settled", ("result",), registry=REGISTRY
)
ODDS_UPDATES_TOTAL = Counter("odds_updates_total", "Total odds updates processed", registry=REGISTRY)
ODDS_CHANGE_PERCENT = Histogram(
    "odds_change_percent",
    "Odds change percentage distribution",
    buckets=(1, 2, 5, 10, 20, 50),
    registry=REGISTRY,
)
FRAUD_ALERTS_TOTAL = Counter(
    "fraud_alerts_total", "Total fraud alerts triggered", ("alert_type",), registry=REGISTRY
)
MARKET_SUSPENSIONS_TOTAL = Counter(
    "market_suspensions_total", "Total market suspensions", registry=REGISTRY
)
GAME_EVENTS_TOTAL = Counter(
    "game_events_total", "Total game events produced", ("type",), registry=REGISTRY
)

# API metrics
HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    ("method", "path", "status"),
    registry=REGISTRY,
)
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total", "Total HTTP requests", ("method", "path", "status"), registry=REGISTRY
)


class MetricsMiddleware:
    """WSGI middleware counting requests and timing them by method, path and status."""

    def __init__(
        self,
        app: WSGIApp,
        request_duration: Optional[Histogram] = None,
        requests_total: Optional[Counter] = None,
    ) -> None:
        self._app = app
        self._duration = HTTP_REQUEST_DURATION if request_duration is None else request_duration
        self._total = HTTP_REQUESTS_TOTAL if requests_total is None else requests_total

    def __call__(self, environ: dict, start_response: Callable[..., Any]) -> list[bytes]:
        started = time.perf_counter()
        status = [200]

        def recording_start_response(status_line: str, headers: list, exc_info: Any = None) -> Any:
            try:
                status[0] = int(status_line.split(" ", 1)[0])
            except ValueError:
                pass
            return start_response(status_line, headers, exc_info)

        result = self._app(environ, recording_start_response)
        try:
            body = list(result)
        finally:
            close = getattr(result, "close", None)
            if close is not None:
                close()
        elapsed = time.perf_counter() - started
        method = environ.get("REQUEST_METHOD", "GET")
        path = environ.get("PATH_INFO", "/")
        code = str(status[0])
        self._duration.labels(method, path, code).observe(elapsed)
        self._total.labels(method, path, code).inc()
        return body


def metrics_app(environ: dict, start_response: Callable[..., Any]) -> list[bytes]:
    """WSGI application serving the default registry in text exposition format."""
    body = REGISTRY.render().encode("utf-8")
    start_response(
        "200 OK", [("Content-Type", CONTENT_TYPE), ("Content-Length", str(len(body)))]
    )
    return [body]


def _metrics_router(environ: dict, start_response: Callable[..., Any]) -> list[bytes]:
    if environ.get("PATH_INFO") == "/metrics":
        return metrics_app(environ, start_response)
    body = b"404 page not found\n"
    start_response(
        "404 Not Found",
        [("Content-Type", "text/plain; charset=utf-8"), ("Content-Length", str(len(body)))],
    )
    return [body]


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        logger.debug("metrics_request " + format, *args)


def start_metrics_server(port: str) -> Optional[WSGIServer]:
    """Serve /metrics on ``port`` from a background thread; None if it cannot listen."""
    try:
        server = make_server("", int(port), _metrics_router, handler_class=_QuietHandler)
    except (OSError, ValueError) as exc:
        logger.error("metrics_server_failed error=%s", exc)
        return None
    thread = threading.Thread(target=server.serve_forever, name="metrics-server", daemon=True)
    thread.start()
    logger.info("metrics_server_started port=%s", server.server_port)
    return server