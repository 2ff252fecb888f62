# =============================================================================
# school_core/data/supabase_client.py
# Supabase Client Configuration for SchoolHub
# =============================================================================

from __future__ import annotations
from typing import Optional

from supabase import AsyncClient, acreate_client
from supabase.lib.client_options import AsyncClientOptions

from school_core.config import SyncSettings
from school_core.errors import ConfigurationError
from school_core.logging import get_logger

logger = get_logger(__name__)


async def create_supabase_client(settings: SyncSettings) -> AsyncClient:
    """
    Create the async Supabase client used by the sync layer.

    The async client is required for the realtime change feed; it must be
    created on the event loop that will drive it.

    Raises:
        ConfigurationError: if the URL or key is rejected by the client
    """
    options = AsyncClientOptions(schema=settings.schema)
    try:
        client: AsyncClient = await acreate_client(
            settings.supabase_url, settings.supabase_key, options=options
        )
    except Exception as e:
        # supabase raises SupabaseException for malformed URLs / keys
        raise ConfigurationError(
            f"Failed to initialize Supabase client: {e}", config_key="supabase.url"
        ) from e

    logger.info(f"Supabase client created for {settings.supabase_url}")
    return client


async def close_supabase_client(client: Optional[AsyncClient]) -> None:
    """
    Close the realtime socket and HTTP sessions held by the client.
    Call this when the runtime shuts down.
    """
    if client is None:
        return
    try:
        await client.remove_all_channels()
    except Exception as e:
        logger.warning(f"Error closing realtime channels: {e}")
    postgrest = getattr(client, "postgrest", None)
    if postgrest is not None and hasattr(postgrest, "aclose"):
        await postgrest.aclose()
