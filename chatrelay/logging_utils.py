import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger.json import JsonFormatter

from chatrelay.metrics import record_http_request


# Request id of the HTTP request being handled, if any
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def utc_timestamp() -> str:
    """Current time as ISO-8601 UTC with millisecond precision and Z suffix."""
    return datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'


class CustomJsonFormatter(JsonFormatter):
    """JSON lines with a ts/level pair and the current request id."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = utc_timestamp()
        log_record['level'] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and 'request_id' not in log_record:
            log_record['request_id'] = request_id


def setup_logging(log_level: str = "INFO"):
    """
    Send every log record, uvicorn's included, to stdout as JSON.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
    """
    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [json_handler]

    for name in UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [json_handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware writes the access log
    logging.getLogger("uvicorn.access").disabled = True

    return root


request_logger = logging.getLogger("chatrelay.requests")
connection_logger = logging.getLogger("chatrelay.connections")


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one structured line per HTTP request and records its metrics.

    Log keys: ts, level, request_id, method, path, status, latency_ms,
    plus channel_id, seq and result for message posts (see log_post_data).
    WebSocket sessions bypass this middleware and are logged with
    log_connection_event instead.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = uuid.uuid4().hex
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            latency_seconds = time.perf_counter() - start_time

            # /metrics scrapes are not counted
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "post_log_data", {}))
            request_logger.log(_level_for_status(response.status_code), "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_post_data(request: Request, channel_id: str, seq: int = None, result: str = None):
    """
    Attach message-post fields to the request so the middleware includes
    them in the request log line.

    Args:
        request: FastAPI request object
        channel_id: Channel the message was posted to
        seq: Sequence number assigned by the store, when created
        result: created, or the error code (unauthorized, not_found, ...)
    """
    post_data = {"channel_id": channel_id}
    if seq is not None:
        post_data["seq"] = seq
    if result is not None:
        post_data["result"] = result
    request.state.post_log_data = post_data


def log_connection_event(message: str, connection_id: str, user_id: str, level: int = logging.INFO, **fields):
    """Log a WebSocket lifecycle event tagged with the connection and user."""
    log_data = {"connection_id": connection_id, "user_id": user_id}
    log_data.update(fields)
    connection_logger.log(level, message, extra=log_data)
