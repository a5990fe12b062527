"""
Supabase Client
Shared service-role client for the worker
"""
import logging
from typing import Optional

from supabase import Client, create_client

from app.config import settings

logger = logging.getLogger(__name__)

_supabase: Optional[Client] = None


def get_supabase_client() -> Optional[Client]:
    """
    Get or create the Supabase client.

    Returns:
        Client instance, or None when Supabase is not configured
    """
    global _supabase
    if _supabase is None:
        if not settings.is_supabase_configured:
            logger.warning("⚠️ Supabase not configured (SUPABASE_URL / SUPABASE_SERVICE_KEY missing)")
            return None
        _supabase = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_KEY)
        logger.info("✅ Supabase client created")
    return _supabase
