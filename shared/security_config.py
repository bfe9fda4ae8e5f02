from fastapi import Request, FastAPI
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import re

from shared.utils import settings

# --- Rate Limiting ---
limiter = Limiter(key_func=get_remote_address, enabled=settings.RATE_LIMIT_ENABLED)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'self'; object-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"

        return response

# --- Input Validation ---
# Buyer, product, address and cart ids are opaque keys; they are matched
# byte for byte, so they are validated rather than escaped.
ID_PATTERN = r"^[A-Za-z0-9_\-]{1,64}$"
_ID_RE = re.compile(ID_PATTERN)

def validate_identifier(text: str) -> str:
    """
    Validate an id field:
    - Strip whitespace
    - Allow letters, digits, underscore and hyphen only
    """
    if not isinstance(text, str):
        return text

    clean_text = text.strip()
    if not _ID_RE.match(clean_text):
        raise ValueError("Invalid identifier")

    return clean_text
