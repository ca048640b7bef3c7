import os
import threading
from typing import Optional, Tuple

from supabase import Client, create_client

_instance_lock = threading.Lock()
_client: Optional[Client] = None

# first key found wins; the service key is needed to write the cache tables
KEY_VARIABLES = ("SUPABASE_SERVICE_KEY", "SUPABASE_SERVICE_ROLE_KEY", "SUPABASE_ANON_KEY")


def supabase_credentials() -> Optional[Tuple[str, str]]:
    url = os.getenv("SUPABASE_URL")
    key = next((os.getenv(name) for name in KEY_VARIABLES if os.getenv(name)), None)
    if not url or not key:
        return None
    return url, key


def is_configured() -> bool:
    return _client is not None or supabase_credentials() is not None


def get_supabase_client() -> Optional[Client]:
    """
    Lazily instantiate the Supabase client that backs the cache, the fetch
    history and the OAuth token table.

    Returns:
        Client instance or None if required environment variables are missing.
    """
    global _client

    if _client is not None:
        return _client

    credentials = supabase_credentials()
    if credentials is None:
        return None

    with _instance_lock:
        if _client is None:
            _client = create_client(*credentials)
    return _client


def reset_supabase_client() -> None:
    """Drop the cached client so the next call re-reads the environment."""
    global _client
    with _instance_lock:
        _client = None
