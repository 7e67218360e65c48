"""
Structured JSON logging for the opt-out service.

Every record goes to stdout as one JSON object carrying the request id of
the request being served. Records from the service's own loggers are also
kept in a bounded in-memory buffer that backs /api/logs.
"""

import logging
import sys
import time
import uuid
from collections import deque
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from optout_gate.metrics import record_http_request

LOGGER_PREFIX = "optout_gate"

# Polled by dashboards; neither logged nor counted
QUIET_PATHS = ("/metrics", "/api/logs")

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

request_logger = logging.getLogger(f"{LOGGER_PREFIX}.requests")


def _iso_millis(moment: datetime) -> str:
    return moment.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 `ts`, the level name and the request id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        log_record.setdefault('ts', _iso_millis(datetime.fromtimestamp(record.created, timezone.utc)))
        log_record['level'] = record.levelname

        req_id = request_id_ctx.get()
        if req_id and 'request_id' not in log_record:
            log_record['request_id'] = req_id


class RecentLogBuffer(logging.Handler):
    """
    Keeps the most recent log records in memory for the /api/logs endpoint.

    Only records from the service's own loggers are kept; the buffer is
    bounded and drops the oldest entries first.
    """

    def __init__(self, capacity: int = 500):
        super().__init__()
        self._records: deque = deque(maxlen=capacity)
        self.addFilter(lambda record: record.name.startswith(LOGGER_PREFIX))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._records.append({
                "timestamp": _iso_millis(datetime.fromtimestamp(record.created, timezone.utc)),
                "level": record.levelname.lower(),
                "message": record.getMessage(),
            })
        except Exception:
            self.handleError(record)

    def entries(self) -> list[dict]:
        return list(self._records)

    def clear(self) -> None:
        self._records.clear()


def setup_logging(log_level: str = "INFO", buffer: Optional[RecentLogBuffer] = None):
    """
    Route the root logger and uvicorn's loggers to JSON on stdout.

    Calling it again replaces the handlers installed by the previous call,
    so each application instance can bring its own buffer.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        buffer: Optional in-memory buffer to attach alongside stdout
    """
    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [stdout_handler] if buffer is None else [stdout_handler, buffer]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [stdout_handler]
        uvicorn_logger.propagate = False

    # Request lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line and one metrics sample per request.

    Log keys: ts, level, request_id, method, path, status, latency_ms.
    Inbound webhook requests add number, action and result (see
    log_inbound_data).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            path = request.url.path
            if path in QUIET_PATHS:
                return response

            elapsed = time.perf_counter() - started
            record_http_request(request.method, path, response.status_code, elapsed)

            fields = {
                "request_id": request_id,
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
                **getattr(request.state, "inbound_log_data", {}),
            }
            request_logger.log(_level_for(response.status_code), "Request completed", extra=fields)
            return response
        finally:
            request_id_ctx.reset(token)


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def log_inbound_data(request: Request, number: Optional[str] = None, action: Optional[str] = None,
                     result: Optional[str] = None):
    """
    Attach the inbound webhook outcome to the request so the middleware
    logs it with the request line. Empty values are left out.
    """
    values = {"number": number, "action": action, "result": result}
    request.state.inbound_log_data = {k: v for k, v in values.items() if v}
