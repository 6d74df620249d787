from fastapi import Request, FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
import html

from shared.utils import ErrorResponse, UnauthorizedException, verify_token

# --- Rate Limiting ---
def actor_or_address(request: Request) -> str:
    """Limit per signed-in user; anonymous callers (webhooks) per address."""
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            sub = verify_token(token).get("sub")
        except UnauthorizedException:
            sub = None
        if sub:
            return f"user:{sub}"
    return get_remote_address(request)

limiter = Limiter(key_func=actor_or_address)

async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    body = ErrorResponse(error="RATE_LIMITED", details=f"Rate limit exceeded: {exc.detail}", retryable=True)
    response = JSONResponse(status_code=429, content=body.model_dump())
    return request.app.state.limiter._inject_headers(response, request.state.view_rate_limit)

def setup_rate_limiting(app: FastAPI):
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# --- Security Headers Middleware ---
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # JSON only; nothing here is meant to be framed or sniffed
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none';"
        response.headers["Referrer-Policy"] = "no-referrer"
        # Order, payment and notification payloads are per-user
        response.headers["Cache-Control"] = "no-store"

        return response

# --- Input Sanitization ---
def sanitize_input(text: str) -> str:
    """Trim and HTML-escape free text (addresses, names) before it is stored
    and echoed back into notification messages."""
    if not isinstance(text, str):
        return text
    return html.escape(text.strip())
