from fastapi import Request, FastAPI, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from decimal import Decimal
import logging
import math
import re
import time

from shared.utils import settings, AppException, ErrorResponse

logger = logging.getLogger(__name__)

# --- Rate Limiting ---
def get_client_ip(request: Request) -> str:
    """
    Resolve the caller's IP address for rate-limit keys.
    Proxies set X-Real-IP or X-Forwarded-For; the first forwarded
    entry is the original client.
    """
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()

    return get_remote_address(request)

# Counters live in RATE_LIMIT_STORAGE_URI: in-process memory by default,
# a shared store such as redis:// when several instances run.
limiter = Limiter(key_func=get_client_ip, storage_uri=settings.RATE_LIMIT_STORAGE_URI)

class RateLimited(AppException):
    def __init__(self, retry_after: int):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Please try again later.",
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after

def _retry_after(request: Request, exc: RateLimitExceeded) -> int:
    view_limit = getattr(request.state, "view_rate_limit", None)
    if view_limit is not None:
        limit_item, args = view_limit
        reset_time, _ = request.app.state.limiter.limiter.get_window_stats(limit_item, *args)
        return max(1, int(math.ceil(reset_time - time.time())))
    return exc.limit.limit.get_expiry()

def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    error = RateLimited(_retry_after(request, exc))
    logger.warning(
        "Rate limit exceeded",
        extra={"client_ip": get_client_ip(request), "path": request.url.path},
    )
    return JSONResponse(
        status_code=error.status_code,
        content=ErrorResponse(error=error.detail, details={"retryAfter": error.retry_after}).model_dump(),
        headers=error.headers,
    )

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # Security Headers
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'; img-src 'self' data:; object-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response

# --- Input Sanitization ---
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
SCRIPT_BLOCK = re.compile(r"<script\b[^<]*(?:(?!</script>)<[^<]*)*</script>", re.IGNORECASE)
EVENT_HANDLER = re.compile(r"\bon\w+\s*=", re.IGNORECASE)
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_FORMATTING = re.compile(r"[\s\-().+]")
PHONE_DISALLOWED = re.compile(r"[^\d+\-()\s.]")

MAX_AMOUNT = Decimal("100000")

def sanitize_input(text: str, max_length: int = 500) -> str:
    """
    Sanitize free text:
    - Strip whitespace and truncate to max_length
    - Remove control characters (tab, newline and CR survive)
    - Remove <script> blocks and on*= event handler attributes
    """
    if not isinstance(text, str):
        return ""

    clean_text = text.strip()[:max_length]
    clean_text = CONTROL_CHARS.sub("", clean_text)
    clean_text = SCRIPT_BLOCK.sub("", clean_text)
    clean_text = EVENT_HANDLER.sub("", clean_text)

    return clean_text

def is_valid_email(email: str) -> bool:
    if not isinstance(email, str):
        return False
    return bool(EMAIL_PATTERN.match(email)) and len(email) <= 254

def sanitize_phone(phone: str) -> str:
    if not isinstance(phone, str):
        return ""
    return PHONE_DISALLOWED.sub("", phone)[:20]

def is_valid_phone(phone: str) -> bool:
    """10-15 digits once formatting characters are removed."""
    if not isinstance(phone, str):
        return False
    digits = PHONE_FORMATTING.sub("", phone)
    return bool(re.fullmatch(r"\d{10,15}", digits))

def normalize_phone(phone: str) -> str:
    return PHONE_FORMATTING.sub("", phone)

def is_valid_amount(amount) -> bool:
    if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
        return False
    try:
        value = Decimal(str(amount))
    except ArithmeticError:
        return False
    return value.is_finite() and Decimal(0) <= value <= MAX_AMOUNT
