from pydantic_settings import BaseSettings
from functools import lru_cache
import logging

logger = logging.getLogger(__name__)

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"


class Settings(BaseSettings):
    # API Keys
    gemini_api_key: str = ""
    supabase_url: str = ""
    supabase_service_key: str = ""

    # Model
    gemini_model: str = "gemini-2.5-flash"
    gemini_base_url: str = GEMINI_OPENAI_BASE_URL
    request_timeout_seconds: float = 60.0
    context_window_turns: int = 10

    # Quota
    free_daily_prompts: int = 5
    guest_prompt_limit: int = 2
    enforce_guest_quota: bool = True
    record_truncated_streams: bool = False
    admin_emails: str = ""  # comma-separated
    chat_rate_limit: str = "20/minute"

    # App
    frontend_url: str = "http://localhost:3000"
    debug: bool = False

    @property
    def admin_email_list(self) -> list[str]:
        return [e.strip().lower() for e in self.admin_emails.split(",") if e.strip()]

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()


_supabase_client = None
_supabase_attempted = False


def get_supabase_client():
    """Get Supabase admin client. Returns None if not configured or keys are invalid."""
    global _supabase_client, _supabase_attempted

    if _supabase_attempted:
        return _supabase_client

    _supabase_attempted = True
    s = get_settings()

    if not s.supabase_url or not s.supabase_service_key:
        logger.warning("Supabase URL or service key not configured. DB features disabled.")
        return None

    try:
        from supabase import create_client
        _supabase_client = create_client(s.supabase_url, s.supabase_service_key)
        logger.info("Supabase client initialized successfully.")
        return _supabase_client
    except Exception as e:
        logger.error(
            f"Failed to initialize Supabase client: {e}. "
            "DB features (history, profiles, quotas) will be disabled. "
            "Check that SUPABASE_URL and SUPABASE_SERVICE_KEY are correct."
        )
        return None
