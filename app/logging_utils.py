"""
Structured JSON logging.

Every record carries ts, level, logger name and, inside a request, the
request id. The request middleware writes one summary line per request and
merges in whatever fields the route attached with attach_log_fields().
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from app.metrics import record_http_request


REQUEST_ID_HEADER = "X-Request-ID"

# Correlates every log line emitted while serving one request
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds an ISO-8601 UTC ``ts``, the level name and the request id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            moment = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record['ts'] = moment.strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        request_id = log_record.get('request_id') or request_id_ctx.get()
        if request_id:
            log_record['request_id'] = request_id


def setup_logging(log_level: str = "INFO"):
    """
    Route the root logger and uvicorn's loggers through one JSON handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [json_handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [json_handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware already writes one line per request
    logging.getLogger("uvicorn.access").disabled = True

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one "Request completed" line per request and records HTTP metrics.

    Log keys: request_id, method, path, status, latency_ms, plus route fields
    such as event, dedup_id, dup, result and conversation_id.

    An incoming X-Request-ID is reused so a provider's retries can be
    correlated; otherwise a fresh id is generated. Either way it is echoed
    back in the response header.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.log_fields = {}

        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id

            latency_seconds = time.perf_counter() - started
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
                **request.state.log_fields,
            }
            logging.getLogger("app.requests").log(
                _level_for(response.status_code), "Request completed", extra=log_data
            )
            return response
        finally:
            request_id_ctx.reset(token)


def attach_log_fields(request: Request, **fields) -> None:
    """
    Add route-specific fields to the request's summary log line.

    None values are dropped; booleans such as ``dup`` are kept.
    """
    log_fields = getattr(request.state, "log_fields", None)
    if log_fields is None:
        log_fields = request.state.log_fields = {}
    log_fields.update({key: value for key, value in fields.items() if value is not None})
