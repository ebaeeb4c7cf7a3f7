import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from whatsapp_inbound.metrics import record_http_request


# Fields bound to every log record of the current request or webhook event
log_context_var: ContextVar[Optional[dict]] = ContextVar("log_context", default=None)


@contextmanager
def log_context(**fields) -> Iterator[None]:
    """
    Bind fields (request_id, phone_number_id, wamid, ...) to all log records
    emitted inside the block. Nested blocks extend the outer fields.
    """
    merged = dict(log_context_var.get() or {})
    merged.update({key: value for key, value in fields.items() if value is not None})
    token = log_context_var.set(merged)
    try:
        yield
    finally:
        log_context_var.reset(token)


def mask_phone(wa_id: Optional[str]) -> str:
    """Sender number for log lines, e.g. 41791234567 -> 4179*****67."""
    if not wa_id:
        return ""
    if len(wa_id) <= 6:
        return "*" * len(wa_id)
    return f"{wa_id[:4]}{'*' * (len(wa_id) - 6)}{wa_id[-2:]}"


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding an ISO-8601 `ts`, `level` and the bound log context."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        if not log_record.get('ts'):
            log_record['ts'] = datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%S.%f')[:-3] + 'Z'
        log_record['level'] = record.levelname

        for key, value in (log_context_var.get() or {}).items():
            log_record.setdefault(key, value)


def setup_logging(log_level: str = "INFO"):
    """
    Setup structured JSON logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger()
    logger.setLevel(log_level.upper())
    logger.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))
    logger.addHandler(json_handler)

    # Uvicorn logs through the same JSON handler
    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = []
        uvicorn_logger.addHandler(json_handler)
        uvicorn_logger.propagate = False

    # Access lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    # httpx INFO lines contain signed media download URLs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)

    return logger


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one JSON line per HTTP request and records HTTP metrics.

    Log keys: ts, level, request_id, method, path, status, latency_ms.

    /webhook requests add:
    - result: received, invalid_signature, invalid_payload, verified, verification_failed
    - object: the payload's object field (when decoded)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        with log_context(request_id=request_id):
            start_time = time.time()
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time

            # /metrics scrapes would otherwise dominate the HTTP counters
            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "webhook_log_data", {}))

            logger = logging.getLogger("whatsapp_inbound.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response


def log_webhook_data(request: Request, result: str, payload_object: Optional[str] = None):
    """Attach the webhook outcome to the request log line written by the middleware."""
    webhook_data = {"result": result}

    if payload_object is not None:
        webhook_data["object"] = payload_object

    request.state.webhook_log_data = webhook_data
