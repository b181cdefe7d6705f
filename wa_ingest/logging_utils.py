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

from wa_ingest.metrics import record_http_request, route_label


# Request id of the request being served, picked up by every log line
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

REQUEST_ID_HEADER = "X-Request-ID"

# Servers whose handlers are replaced by ours
SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# Chatty libraries held at WARNING unless the app runs at DEBUG
QUIET_LOGGERS = ("sqlalchemy.engine", "sqlalchemy.pool", "multipart")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON lines with a millisecond UTC `ts`, `level` and the current request_id."""

    def add_fields(self, log_record, record, message_dict):
        super(CustomJsonFormatter, self).add_fields(log_record, record, message_dict)
        log_record.setdefault('ts', format_log_time(record.created))
        log_record['level'] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and 'request_id' not in log_record:
            log_record['request_id'] = request_id


def format_log_time(created: float) -> str:
    moment = datetime.fromtimestamp(created, tz=timezone.utc)
    return moment.strftime('%Y-%m-%dT%H:%M:%S.') + f"{moment.microsecond // 1000:03d}Z"


def setup_logging(log_level: str = "INFO"):
    """
    Route all application and server logs through one JSON handler on stdout.

    Args:
        log_level: Root level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = log_level.upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter('%(ts)s %(level)s %(name)s %(message)s'))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    for name in SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    # Access lines come from RequestLoggingMiddleware instead
    logging.getLogger("uvicorn.access").disabled = True

    if level != "DEBUG":
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line per HTTP request.

    Fields: request_id, method, path, status, latency_ms. Webhook calls add
    `result` and the ingestion counts attached by log_webhook_data().

    An inbound X-Request-ID is reused so a relay's id carries through;
    otherwise a fresh uuid4 is issued. Either way it is echoed back.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)

        started = time.perf_counter()
        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers[REQUEST_ID_HEADER] = request_id

            path = request.url.path
            if path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=route_label(request),
                    status=response.status_code,
                    latency_seconds=elapsed
                )

            fields = {
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "webhook_log_data", {}))

            logger = logging.getLogger("wa_ingest.requests")
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(level, "Request completed", extra=fields)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, result: str, summary: Optional[dict] = None):
    """
    Stash the webhook outcome on the request so the access line carries it.

    Args:
        request: FastAPI request object
        result: accepted, invalid_signature, validation_error or invalid_object
        summary: IngestSummary.as_dict(), when the notification was processed
    """
    webhook_data = {"result": result}
    if summary:
        webhook_data.update(summary)
    request.state.webhook_log_data = webhook_data
