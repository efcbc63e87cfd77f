"""
Supabase Client

Provides the initialized Supabase client for the application.
All push bookkeeping runs server-side with the service role key.
"""

import logging

from supabase import create_client, Client
from app.core.config import (
    SUPABASE_URL,
    SUPABASE_SERVICE_ROLE_KEY,
    validate_supabase_config,
)
from app.core.exceptions import StorageError

logger = logging.getLogger(__name__)

# Module-level client, initialized lazily
_service_client: Client | None = None


def get_service_client() -> Client:
    """
    Get the Supabase client using the service_role (admin) key.

    WARNING: This client BYPASSES Row Level Security.
    The push core reads tokens and recipients across all users,
    so every store uses this client.
    """
    global _service_client
    if _service_client is None:
        validate_supabase_config()
        _service_client = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
    return _service_client


def execute(query, action: str):
    """
    Run a PostgREST query builder, converting client errors to StorageError.

    Args:
        query: Any supabase-py builder ending right before `.execute()`.
        action: Short description used in the log line and error message.
    """
    try:
        return query.execute()
    except Exception as exc:
        logger.error("Database error while trying to %s: %s", action, exc)
        raise StorageError(f"Failed to {action}: {exc}") from exc
