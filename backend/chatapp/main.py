import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from chatapp.config import get_settings, get_supabase_client
from chatapp.middleware import setup_middleware
from chatapp.chat.router import router as chat_router
from chatapp.auth.router import router as auth_router

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    required = ["gemini_api_key", "supabase_url", "supabase_service_key"]
    missing = [k for k in required if not getattr(settings, k)]
    if missing:
        logger.warning(f"Missing env vars: {missing}. Some features unavailable.")

    # Builds the client once so a bad key shows up in the boot log
    get_supabase_client()

    yield


app = FastAPI(
    title="AI Chatbot API",
    version="1.0.0",
    docs_url="/docs" if settings.debug else None,
    lifespan=lifespan,
)

setup_middleware(app, settings.frontend_url)

app.include_router(chat_router, prefix="/api")
app.include_router(auth_router, prefix="/api/auth")


@app.get("/")
async def root():
    return {"status": "alive", "service": "ai-chatbot-api"}


@app.get("/health")
async def health():
    return {"status": "healthy", "service": "ai-chatbot-api"}


@app.get("/health/detailed")
async def health_detailed():
    checks = {"api": "healthy"}
    if settings.gemini_api_key:
        checks["gemini"] = "configured"
    else:
        checks["gemini"] = "missing"
    if settings.supabase_url and settings.supabase_service_key:
        checks["supabase"] = "configured"
    else:
        checks["supabase"] = "missing"
    overall = "healthy" if all(v != "missing" for v in checks.values()) else "degraded"
    return {"status": overall, "checks": checks}
