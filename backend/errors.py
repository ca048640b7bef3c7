from typing import Optional

NOT_CONNECTED = "not_connected"
TOKEN_EXPIRED = "token_expired"


class MetricsError(Exception):
    """Base error for the metrics pipeline. ``reason`` is the code shown to the dashboard."""

    reason = "error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.reason)

    @property
    def message(self) -> str:
        return self.args[0]


class NotConnected(MetricsError):
    reason = NOT_CONNECTED

    def __init__(self, platform: Optional[str] = None):
        label = (platform or "platform").capitalize()
        super().__init__(f"{label} account not connected. Please connect your account.")
        self.platform = platform


class TokenExpired(MetricsError):
    reason = TOKEN_EXPIRED

    def __init__(self, platform: Optional[str] = None):
        label = (platform or "platform").capitalize()
        super().__init__(f"{label} access token expired. Please reconnect your account.")
        self.platform = platform


class UpstreamError(MetricsError):
    def __init__(self, status: int, message: str, code: Optional[int] = None, error_type: Optional[str] = None,
                 raw: Optional[dict] = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.error_type = error_type
        self.raw = raw or {}

    @property
    def reason(self) -> str:  # type: ignore[override]
        return self.message


class InvalidCachedPayload(MetricsError):
    reason = "invalid_cached_payload"

    def __init__(self, cache_key: str, detail: str):
        super().__init__(f"Cached payload for {cache_key} is unreadable: {detail}")
        self.cache_key = cache_key


def reason_for(err: BaseException) -> str:
    if isinstance(err, MetricsError):
        return err.reason
    return str(err) or err.__class__.__name__
