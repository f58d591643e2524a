import logging

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.trustedhost import TrustedHostMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from chatapp.chat.exceptions import ChatError

logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    logger.warning(f"{request.method} {request.url.path} failed: {exc.reason} ({exc.status_code})")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.message, "reason": exc.reason},
    )


def setup_middleware(app: FastAPI, frontend_url: str, allowed_hosts: list[str] | None = None):
    """Configure all middleware for the FastAPI app."""

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Model / configuration failures -> {error, reason}
    app.add_exception_handler(ChatError, chat_error_handler)

    # CORS: explicit origins only, never ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[frontend_url, "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Conversation-Id"],
    )

    # Trusted hosts
    if allowed_hosts:
        app.add_middleware(
            TrustedHostMiddleware,
            allowed_hosts=allowed_hosts,
        )

    # GZip compression for responses > 1KB
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Security headers
    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = (
            "max-age=31536000; includeSubDomains"
        )
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none'"
        )
        return response
