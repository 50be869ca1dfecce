import logging
import json
import re
import sys
import time
import traceback
import uuid
from contextvars import ContextVar
from datetime import datetime
from typing import Callable, Optional
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

# Sensitive headers to mask
SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key", "stripe-signature"}

# Extra record attributes copied into the JSON payload when present
EXTRA_FIELDS = (
    "request_id",
    "client_ip",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "headers",
    "payment_intent_id",
    "order_number",
    "order_id",
    "event_type",
    "source",
)

EMAIL_IN_TEXT = re.compile(r"([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+)")

# Set per request by RequestLoggingMiddleware, read by RequestContextFilter
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def mask_email(text: str) -> str:
    """ada@example.com -> a***@example.com"""
    return EMAIL_IN_TEXT.sub(r"\1***@\2", text)


class RequestContextFilter(logging.Filter):
    """Stamps every record emitted while a request is in flight with its ID."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            request_id = request_id_var.get()
            if request_id:
                record.request_id = request_id
        return True


class JSONFormatter(logging.Formatter):
    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "timestamp": datetime.utcnow().isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "message": mask_email(record.getMessage()),
            "logger": record.name,
            "line": record.lineno,
        }
        log_obj.update({f: getattr(record, f) for f in EXTRA_FIELDS if hasattr(record, f)})

        if record.exc_info:
            log_obj["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(log_obj, default=str)


def setup_logging(service_name: str) -> logging.Logger:
    root = logging.getLogger()
    root.setLevel(logging.INFO)
    root.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(service_name))
    handler.addFilter(RequestContextFilter())
    root.addHandler(handler)

    # Stripe's client logs every request at INFO
    logging.getLogger("stripe").setLevel(logging.WARNING)

    return logging.getLogger(service_name)


def masked_headers(request: Request) -> dict:
    return {
        k: "***" if k.lower() in SENSITIVE_HEADERS else v
        for k, v in request.headers.items()
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, service_name: str):
        super().__init__(app)
        self.logger = logging.getLogger(service_name)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        # Correlation ID, echoed back and attached to every log line of this request
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)

        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self.log_request(request, 500, start, exc_info=sys.exc_info())
            raise
        finally:
            request_id_var.reset(token)

        self.log_request(request, response.status_code, start, request_id=request_id)
        response.headers["X-Request-ID"] = request_id
        return response

    def log_request(self, request: Request, status_code: int, start: float, request_id: str = None, exc_info=None):
        extra = {
            "request_id": request_id or request.state.request_id,
            "client_ip": request.client.host if request.client else None,
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            "headers": masked_headers(request),
        }

        if status_code >= 500:
            self.logger.error("Request failed", extra=extra, exc_info=exc_info)
        elif status_code == 429:
            self.logger.warning("Request throttled", extra=extra)
        elif status_code >= 400:
            self.logger.warning("Request rejected", extra=extra)
        else:
            self.logger.info("Request processed", extra=extra)
