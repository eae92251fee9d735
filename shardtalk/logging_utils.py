"""
Structured JSON logging shared by the API and the sync command.

Every record carries ts, level and logger name. Records emitted while an API
request is being handled also carry its request_id, so a single request can
be followed across the route, the service layer and storage.
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

from shardtalk.metrics import record_http_request


REQUEST_ID_HEADER = "X-Request-ID"

# Libraries that log every call at INFO; the client and sync log their own outcomes
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "web3")

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class JsonLogFormatter(jsonlogger.JsonFormatter):

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        # The format string pre-fills ts with None
        if not log_record.get("ts"):
            log_record["ts"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        req_id = request_id_ctx.get()
        if req_id and "request_id" not in log_record:
            log_record["request_id"] = req_id


def setup_logging(log_level: str = "INFO"):
    """Route the root and uvicorn loggers to one JSON handler on stdout."""
    root = logging.getLogger()
    root.setLevel(log_level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLogFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # Request lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One log line and one metrics sample per request.

    The request id is taken from an incoming X-Request-ID header (so a client
    can correlate its own logs) or generated, and echoed on the response.
    POST /messages adds message_id and result via log_ingest_data().
    A route that raises is logged with its traceback and counted as a 500.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            self._finish(request, request_id, 500, time.perf_counter() - start, exc_info=True)
            raise
        else:
            response.headers[REQUEST_ID_HEADER] = request_id
            self._finish(request, request_id, response.status_code, time.perf_counter() - start)
            return response
        finally:
            request_id_ctx.reset(token)

    @staticmethod
    def _finish(request: Request, request_id: str, status: int, latency_seconds: float, exc_info=False) -> None:
        path = request.url.path
        if path != "/metrics":
            record_http_request(
                method=request.method, path=path, status=status, latency_seconds=latency_seconds
            )

        log_data = {
            "request_id": request_id,
            "method": request.method,
            "path": path,
            "status": status,
            "latency_ms": round(latency_seconds * 1000, 2),
        }
        log_data.update(getattr(request.state, "ingest_log_data", {}))

        logger = logging.getLogger("shardtalk.requests")
        if status >= 500:
            logger.error("Request completed", extra=log_data, exc_info=exc_info)
        elif status >= 400:
            logger.warning("Request completed", extra=log_data)
        else:
            logger.info("Request completed", extra=log_data)


def log_ingest_data(request: Request, message_id: Optional[int] = None, result: Optional[str] = None):
    """
    Record the outcome of a POST /messages call for the request log line.

    result is one of inserted, updated, unchanged, validation_error,
    unavailable or conflict.
    """
    ingest_data = {}
    if message_id is not None:
        ingest_data["message_id"] = message_id
    if result is not None:
        ingest_data["result"] = result
    request.state.ingest_log_data = ingest_data
