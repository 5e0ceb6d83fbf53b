"""
Database Module - Supabase client

Provides the async Supabase client singleton used by the Supabase backends.
"""

from typing import Optional

from supabase._async.client import AsyncClient, create_client as acreate_client

from pos.config import get_settings
from pos.logging import get_logger

logger = get_logger(__name__)

# Singleton instance
_async_supabase_client: Optional[AsyncClient] = None


async def get_supabase() -> AsyncClient:
    """
    Get async Supabase client (singleton).
    Reads SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY through settings.
    """
    global _async_supabase_client

    if _async_supabase_client is None:
        settings = get_settings()
        if not settings.supabase_url or not settings.supabase_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        _async_supabase_client = await acreate_client(settings.supabase_url, settings.supabase_key)
        logger.info("Supabase client created")

    return _async_supabase_client
