"""
Application Configuration
Centralized configuration management using environment variables
"""
import os
from typing import List, Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()


class Settings:
    """Application settings loaded from environment variables"""

    # Server
    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "4000"))

    # CORS Configuration
    CORS_ORIGINS: List[str] = [
        o.strip() for o in os.getenv("CORS_ORIGIN", "*").split(",") if o.strip()
    ]

    # Supabase Configuration
    SUPABASE_URL: str = os.getenv("SUPABASE_URL", "")
    SUPABASE_SERVICE_KEY: str = os.getenv("SUPABASE_SERVICE_KEY") or os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")

    # Google AI (Gemini) Configuration
    GOOGLE_API_KEY: str = os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY", "")
    GEMINI_BASE_URL: str = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
    GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")
    GEMINI_EMBED_MODEL: str = os.getenv("GEMINI_EMBED_MODEL", "text-embedding-004")
    SYSTEM_INSTRUCTION: str = os.getenv(
        "SYSTEM_INSTRUCTION",
        "You are a helpful customer support assistant for this business. "
        "Use the provided knowledge base snippets as the main source of truth. "
        "If the answer is not clearly in the snippets, you can answer from general "
        "knowledge but keep it relevant to the business."
    )

    # WhatsApp API Configuration (whatsapp-web.js REST wrapper)
    WHATSAPP_API_URL: str = os.getenv("WHATSAPP_API_URL", "http://localhost:3000")
    WHATSAPP_API_KEY: Optional[str] = os.getenv("WHATSAPP_API_KEY")

    # Optional comma separated list of account ids to run. Empty = first account found.
    WA_ACCOUNT_IDS: List[str] = [
        a.strip() for a in os.getenv("WA_ACCOUNT_IDS", "").split(",") if a.strip()
    ]

    # On-disk session state shared with the WhatsApp API container
    SESSION_AUTH_DIR: str = os.getenv("SESSION_AUTH_DIR", "./sessions")
    SESSION_CACHE_DIR: str = os.getenv("SESSION_CACHE_DIR", "./.wwebjs_cache")

    # Logout teardown delays (seconds)
    LOGOUT_GRACE_DELAY: float = float(os.getenv("LOGOUT_GRACE_DELAY", "5"))
    REINIT_DELAY: float = float(os.getenv("REINIT_DELAY", "2"))

    # Cleanup retry policy
    CLEANUP_ATTEMPTS: int = int(os.getenv("CLEANUP_ATTEMPTS", "3"))
    CLEANUP_BACKOFF: float = float(os.getenv("CLEANUP_BACKOFF", "0.5"))

    # Knowledge base retrieval
    KB_TOP_K: int = int(os.getenv("KB_TOP_K", "3"))
    KB_FALLBACK_SCAN_LIMIT: int = int(os.getenv("KB_FALLBACK_SCAN_LIMIT", "500"))

    # Timeouts (seconds)
    HTTP_TIMEOUT: float = float(os.getenv("HTTP_TIMEOUT", "30"))
    KB_SEARCH_TIMEOUT: float = float(os.getenv("KB_SEARCH_TIMEOUT", "15"))

    # Dispatcher
    HEALTHCHECK_TOKEN: str = os.getenv("HEALTHCHECK_TOKEN", "ping")

    # Seconds shutdown waits for pending message writes
    SHUTDOWN_DRAIN_TIMEOUT: float = float(os.getenv("SHUTDOWN_DRAIN_TIMEOUT", "10"))

    # Webhook Configuration (callbacks may also carry WHATSAPP_API_KEY, the API service's own key)
    WEBHOOK_SECRET_KEY: str = os.getenv("WEBHOOK_SECRET_KEY", "")

    # WebSocket Configuration
    WEBSOCKET_ENABLED: bool = os.getenv("WEBSOCKET_ENABLED", "true").lower() == "true"

    @property
    def is_supabase_configured(self) -> bool:
        """Check if Supabase configuration is present"""
        return bool(self.SUPABASE_URL and self.SUPABASE_SERVICE_KEY)

    @property
    def is_gemini_configured(self) -> bool:
        """Check if Gemini configuration is present"""
        return bool(self.GOOGLE_API_KEY)


# Global settings instance
settings = Settings()
