"""
Observability - logging, metrics and health for both services

Environment:
- SENTINELCHAIN_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- SENTINELCHAIN_LOG_FORMAT: json or text (default: json in production)
- SENTINELCHAIN_PRODUCTION: production mode

Keyword arguments to a ContextLogger call become structured fields:

    logger = get_logger(__name__)
    logger.info("Alert committed", tx_hash=receipt.tx_hash, block_number=7)

Avoid the field names `level` and `msg`; they collide with the
LoggerAdapter.log signature.
"""

import json
import logging
import os
import sys
import threading
import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Tuple

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
log_id_var: ContextVar[str] = ContextVar("log_id", default="")

LATENCY_WINDOW = 1000


def is_production() -> bool:
    return os.environ.get("SENTINELCHAIN_PRODUCTION", "").lower() in ("1", "true", "yes")


def _configured_level() -> int:
    name = os.environ.get("SENTINELCHAIN_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _wants_json() -> bool:
    choice = os.environ.get("SENTINELCHAIN_LOG_FORMAT", "").lower()
    if choice in ("json", "text"):
        return choice == "json"
    return is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

# Attributes every LogRecord carries; anything else came from a ContextLogger call
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}


def _structured_fields(record: logging.LogRecord) -> Iterator[Tuple[str, Any]]:
    for key, value in vars(record).items():
        if key not in _RECORD_ATTRS and not key.startswith("_"):
            yield key, value


def _context_fields() -> Dict[str, str]:
    fields = {}
    if request_id_var.get():
        fields["request_id"] = request_id_var.get()
    if log_id_var.get():
        fields["log_id"] = log_id_var.get()
    return fields


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "sentinelchain.services.ingestion",
         "message": "Alert committed", "request_id": "3f2a9c1e", "log_id": "1700000000.1234",
         "tx_hash": "0x...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_fields(),
        }
        for key, value in _structured_fields(record):
            entry[key] = value
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """key=value lines for local development."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        context = _context_fields()
        tag = f"[{context['request_id'][:8]}] " if "request_id" in context else ""

        line = f"{stamp} {record.levelname:<8} {tag}{record.name}: {record.getMessage()}"
        pairs = " ".join(f"{key}={value}" for key, value in _structured_fields(record))
        if pairs:
            line = f"{line} {pairs}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class ContextLogger(logging.LoggerAdapter):
    """LoggerAdapter that moves keyword arguments into `extra`."""

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            extra[key] = kwargs.pop(key)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Install a single stdout handler on the root logger.

    Call once per process, before the service starts handling requests.
    """
    level = _configured_level()
    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter() if _wants_json() else ConsoleFormatter())
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Tags every log line emitted while serving a request with its
    request ID, logs the outcome with timing and counts it.

    An incoming X-Request-ID header is reused and echoed back.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request_token = request_id_var.set(request_id)
        log_token = log_id_var.set("")

        logger = get_logger("sentinelchain.request")
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            response = await call_next(request)

            elapsed = (time.perf_counter() - started) * 1000
            get_metrics().record_request(elapsed, success=response.status_code < 500)
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                f"{route} -> {response.status_code}",
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(elapsed, 2),
            )

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            elapsed = (time.perf_counter() - started) * 1000
            get_metrics().record_request(elapsed, success=False)
            logger.exception(f"{route} -> 500", path=request.url.path, duration_ms=round(elapsed, 2), error=str(e))
            raise

        finally:
            request_id_var.reset(request_token)
            log_id_var.reset(log_token)


# ============================================================
# METRICS
# ============================================================

def _percentile(samples, fraction: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return ordered[min(int(len(ordered) * fraction), len(ordered) - 1)]


class MetricsCollector:
    """
    Process-local counters and latency windows.

    Written from request handlers, subscription threads and the
    reconnect thread, so every update takes the lock.
    """

    COUNTERS = (
        "commits_total",
        "commits_failed",
        "ingest_rejected",
        "events_folded",
        "events_discarded",
        "hash_fallbacks",
        "subscription_restarts",
        "verifications_total",
        "verification_mismatches",
        "requests_total",
        "requests_failed",
    )

    def __init__(self, window: int = LATENCY_WINDOW):
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = dict.fromkeys(self.COUNTERS, 0)
        self._commit_ms: deque = deque(maxlen=window)
        self._request_ms: deque = deque(maxlen=window)

    def incr(self, name: str, by: int = 1) -> None:
        if name not in self._counts:
            raise KeyError(f"unknown counter: {name}")
        with self._lock:
            self._counts[name] += by

    def count(self, name: str) -> int:
        with self._lock:
            return self._counts[name]

    def record_commit(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self._counts["commits_total"] += 1
            if not success:
                self._counts["commits_failed"] += 1
            self._commit_ms.append(latency_ms)

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self._counts["requests_total"] += 1
            if not success:
                self._counts["requests_failed"] += 1
            self._request_ms.append(latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            summary: Dict[str, Any] = dict(self._counts)
            commit_ms = list(self._commit_ms)
            request_ms = list(self._request_ms)

        for fraction in (0.5, 0.95, 0.99):
            summary[f"commit_latency_p{int(fraction * 100)}_ms"] = _percentile(commit_ms, fraction)
        for fraction in (0.5, 0.95):
            summary[f"request_latency_p{int(fraction * 100)}_ms"] = _percentile(request_ms, fraction)
        return summary


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    return _metrics


def reset_metrics() -> None:
    """Start from zero. Tests only."""
    global _metrics
    _metrics = MetricsCollector()


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def _ledger_check(ledger) -> Dict[str, Any]:
    try:
        head = ledger.get_head_block()
    except Exception as e:
        return {"status": "unhealthy", "client": type(ledger).__name__, "error": str(e)}
    return {"status": "healthy", "client": type(ledger).__name__, "head_block": head}


def _indexer_check(indexer) -> Dict[str, Any]:
    status = indexer.status()
    healthy = status["ready"] and status["live"]
    return {"status": "healthy" if healthy else "unhealthy", **status}


def check_health(ledger=None, indexer=None) -> HealthStatus:
    """
    Check whichever components this service runs.

    The ledger is healthy when its head block can be read; the indexer
    when it has finished replay and all subscriptions are live.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if ledger is not None:
        checks["ledger"] = _ledger_check(ledger)
    if indexer is not None:
        checks["indexer"] = _indexer_check(indexer)

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
