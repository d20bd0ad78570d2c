"""
Observability for the resolver: logging, metrics, health.

Log records carry the request ID of the HTTP call that triggered them and
any keyword fields passed to the logger, e.g.

    logger = get_logger(__name__)
    logger.info("Walk finished", did=did, steps=4)

Environment:
- DIDCHAIN_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- DIDCHAIN_LOG_FORMAT: json or text (default: json when DIDCHAIN_PRODUCTION is set)
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Deque, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Loggers that drown out resolver output at INFO
NOISY_LOGGERS = ("uvicorn.access", "httpx", "urllib3", "web3")


# ============================================================
# LOGGING
# ============================================================

@dataclass(frozen=True)
class LoggingSettings:
    level: int = logging.INFO
    json_output: bool = False

    @classmethod
    def from_env(cls) -> "LoggingSettings":
        level = logging.getLevelName(os.environ.get("DIDCHAIN_LOG_LEVEL", "INFO").upper())
        if not isinstance(level, int):
            level = logging.INFO

        fmt = os.environ.get("DIDCHAIN_LOG_FORMAT", "").lower()
        if fmt in ("json", "text"):
            json_output = fmt == "json"
        else:
            json_output = os.environ.get("DIDCHAIN_PRODUCTION", "").lower() in ("1", "true", "yes")

        return cls(level=level, json_output=json_output)


# Attributes every LogRecord has; anything else came in through `extra`
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in vars(record).items()
        if key not in _STANDARD_ATTRS and not key.startswith("_")
    }


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    {"timestamp": "...", "level": "INFO", "logger": "didchain.core.resolver",
     "message": "Resolved DID", "request_id": "3f9a1c2e", "did": "did:ethr:0x..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if request_id_var.get():
            entry["request_id"] = request_id_var.get()
        entry.update(_record_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Single-line output for local development; fields trail the message."""

    def format(self, record: logging.LogRecord) -> str:
        request_id = request_id_var.get()
        parts = [
            _record_time(record).strftime("%H:%M:%S.%f")[:-3],
            f"{record.levelname:<7}",
            f"[{request_id}]" if request_id else "",
            f"{record.name}: {record.getMessage()}",
        ]
        fields = _record_fields(record)
        if fields:
            parts.append(" ".join(f"{k}={v}" for k, v in fields.items()))

        line = " ".join(p for p in parts if p)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """Accepts structured fields as keyword arguments."""

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg, kwargs):
        fields = dict(self.extra or {})
        fields.update(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            fields[key] = kwargs.pop(key)
        kwargs["extra"] = fields
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging(settings: Optional[LoggingSettings] = None) -> None:
    """Install a single stdout handler on the root logger."""
    settings = settings or LoggingSettings.from_env()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if settings.json_output else TextFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(settings.level, logging.WARNING))


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an ID (taken from X-Request-ID or generated),
    logs its outcome and feeds the request metrics.
    """

    logger = get_logger("didchain.request")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token = request_id_var.set(request_id)
        started = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception:
            self.logger.exception("Unhandled error", path=request.url.path)
            raise
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self.logger.log(
                logging.INFO if status_code < 400 else logging.WARNING,
                f"{request.method} {request.url.path} {status_code}",
                status_code=status_code,
                duration_ms=round(elapsed_ms, 2),
            )
            get_metrics().record_request(elapsed_ms, status_code < 500)
            request_id_var.reset(token)


# ============================================================
# METRICS
# ============================================================

MAX_SAMPLES = 1000


class LatencyWindow:
    """The most recent MAX_SAMPLES latencies."""

    def __init__(self, size: int = MAX_SAMPLES):
        self._samples: Deque[float] = deque(maxlen=size)

    def add(self, value_ms: float) -> None:
        self._samples.append(value_ms)

    def clear(self) -> None:
        self._samples.clear()

    def percentile(self, p: float) -> Optional[float]:
        if not self._samples:
            return None
        ordered = sorted(self._samples)
        return round(ordered[min(int(len(ordered) * p), len(ordered) - 1)], 2)


_COUNTERS = (
    "resolutions_total",
    "resolutions_failed",
    "cache_hits",
    "blocks_walked",
    "ledger_retries",
    "requests_total",
    "requests_failed",
)


class MetricsCollector:
    """
    Process-wide resolution and request counters.

    Updated from resolver worker threads as well as request handlers.
    """

    def __init__(self):
        self._lock = Lock()
        self._counters: Dict[str, int] = dict.fromkeys(_COUNTERS, 0)
        self._resolution_latency = LatencyWindow()
        self._request_latency = LatencyWindow()

    def _bump(self, **deltas: int) -> None:
        for name, delta in deltas.items():
            self._counters[name] += delta

    def record_resolution(
        self,
        latency_ms: float,
        success: bool,
        blocks: int = 0,
        cache_hit: bool = False,
    ) -> None:
        with self._lock:
            self._bump(
                resolutions_total=1,
                resolutions_failed=int(not success),
                cache_hits=int(cache_hit),
                blocks_walked=blocks,
            )
            self._resolution_latency.add(latency_ms)

    def record_retry(self) -> None:
        with self._lock:
            self._bump(ledger_retries=1)

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self._bump(requests_total=1, requests_failed=int(not success))
            self._request_latency.add(latency_ms)

    def reset(self) -> None:
        with self._lock:
            self._counters = dict.fromkeys(_COUNTERS, 0)
            self._resolution_latency.clear()
            self._request_latency.clear()

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            summary: Dict[str, Any] = dict(self._counters)
            for p in (50, 95, 99):
                summary[f"resolution_latency_p{p}_ms"] = self._resolution_latency.percentile(p / 100)
            for p in (50, 95):
                summary[f"request_latency_p{p}_ms"] = self._request_latency.percentile(p / 100)
            return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    duration_ms: float = 0.0


def _probe(describe) -> Dict[str, Any]:
    try:
        return {"status": "healthy", **describe()}
    except Exception as e:
        return {"status": "unhealthy", "error": str(e)}


def check_health(ledger=None, store=None) -> HealthStatus:
    """
    Probe the ledger node and the log cache.

    Either dependency may be omitted; only the ones passed are checked.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if ledger is not None:
        checks["ledger"] = _probe(lambda: {
            "reader": type(ledger).__name__,
            "registry": ledger.registry_address,
            "latest_block": ledger.latest_block(),
        })

    if store is not None:
        checks["log_store"] = _probe(lambda: {
            "store": type(store).__name__,
            "cached_documents": store.count(),
        })

    return HealthStatus(
        healthy=all(c["status"] == "healthy" for c in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
