import logging
import os
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from supabase import Client

from cache_store import Clock, _parse_dt, utcnow
from errors import NotConnected, TokenExpired
from supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

OAUTH_TOKENS_TABLE = os.getenv("OAUTH_TOKENS_TABLE", "oauth_tokens")


class AuthStatus:
    def __init__(self, connected: bool, token: Optional[str] = None, expires_at: Optional[datetime] = None):
        self.connected = connected
        self.token = token
        self.expires_at = expires_at

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def __repr__(self) -> str:
        return f"AuthStatus(connected={self.connected}, expires_at={self.expires_at})"


DISCONNECTED = AuthStatus(False)


def require_connection(status: AuthStatus, platform: str, now: Optional[datetime] = None) -> str:
    """
    Returns the access token or raises ``NotConnected`` / ``TokenExpired``.
    """
    if not status.connected or not status.token:
        raise NotConnected(platform)
    if status.is_expired(now or utcnow()):
        raise TokenExpired(platform)
    return status.token


class TokenStore:
    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utcnow

    def get_auth_status(self, user_id: str, platform: str) -> AuthStatus:
        raise NotImplementedError

    def require(self, user_id: str, platform: str) -> str:
        return require_connection(self.get_auth_status(user_id, platform), platform, self._clock())


class StaticTokenStore(TokenStore):
    """In-process token map, used by tests and local development."""

    def __init__(self, tokens: Optional[Dict[Tuple[str, str], AuthStatus]] = None, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._tokens: Dict[Tuple[str, str], AuthStatus] = dict(tokens or {})

    def set(self, user_id: str, platform: str, status: AuthStatus) -> None:
        self._tokens[(user_id, platform.lower())] = status

    def get_auth_status(self, user_id: str, platform: str) -> AuthStatus:
        return self._tokens.get((user_id, platform.lower()), DISCONNECTED)


class SupabaseTokenStore(TokenStore):
    def __init__(self, client: Optional[Client] = None, table_name: str = OAUTH_TOKENS_TABLE,
                 clock: Optional[Clock] = None):
        super().__init__(clock)
        self._client = client
        self.table_name = table_name

    def get_auth_status(self, user_id: str, platform: str) -> AuthStatus:
        client = self._client or get_supabase_client()
        if client is None:
            return DISCONNECTED
        try:
            response = (
                client.table(self.table_name)
                .select("access_token,refresh_token,expires_at")
                .eq("user_id", user_id)
                .eq("provider", platform.lower())
                .limit(1)
                .execute()
            )
        except Exception as err:  # noqa: BLE001
            logger.error("Failed to load OAuth tokens for %s (%s): %s", user_id, platform, err)
            return DISCONNECTED

        data = getattr(response, "data", None) or []
        if not data:
            return DISCONNECTED
        return status_from_record(data[0])


def status_from_record(record: Dict[str, Any]) -> AuthStatus:
    token = record.get("access_token")
    return AuthStatus(bool(token), token=token, expires_at=_parse_dt(record.get("expires_at")))
