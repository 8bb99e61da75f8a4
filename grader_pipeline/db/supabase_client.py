"""Service-role Supabase client shared by the job store and the grading repository."""

from typing import Optional

from supabase import create_client, Client
from grader_pipeline.config import Settings, settings as default_settings

_client: Client | None = None


def get_supabase(config: Optional[Settings] = None) -> Client:
    """Get or create the Supabase client for the queue backing store."""
    global _client
    if _client is None:
        config = config or default_settings
        if not config.supabase_url or not config.supabase_service_role_key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set "
                "when QUEUE_BACKEND=supabase"
            )
        _client = create_client(config.supabase_url, config.supabase_service_role_key)
    return _client


def reset_supabase() -> None:
    """Drop the cached client (used on shutdown)."""
    global _client
    _client = None
