import logging
import os
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from supabase import Client

from cache_store import Clock, _parse_dt, utcnow
from supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

DEFAULT_FETCH_LOG_TABLE = os.getenv("SOCIAL_FETCH_LOG_TABLE", "social_media_fetch_history")

STATUS_SUCCESS = "success"
STATUS_FAILED = "failed"
STATUS_CACHED = "cached"
FETCH_STATUSES = (STATUS_SUCCESS, STATUS_FAILED, STATUS_CACHED)


class FetchLogEntry:
    __slots__ = (
        "user_id",
        "platform",
        "fetch_type",
        "status",
        "duration_ms",
        "records_fetched",
        "cache_hit",
        "error",
        "timestamp",
    )

    def __init__(
        self,
        user_id: str,
        platform: str,
        fetch_type: str,
        status: str,
        duration_ms: int = 0,
        records_fetched: int = 0,
        cache_hit: bool = False,
        error: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ):
        if status not in FETCH_STATUSES:
            raise ValueError(f"Unknown fetch status '{status}'")
        object.__setattr__(self, "user_id", user_id)
        object.__setattr__(self, "platform", platform)
        object.__setattr__(self, "fetch_type", fetch_type)
        object.__setattr__(self, "status", status)
        object.__setattr__(self, "duration_ms", max(0, int(duration_ms)))
        object.__setattr__(self, "records_fetched", max(0, int(records_fetched)))
        object.__setattr__(self, "cache_hit", bool(cache_hit))
        object.__setattr__(self, "error", error)
        object.__setattr__(self, "timestamp", timestamp or utcnow())

    def __setattr__(self, name: str, value: Any) -> None:
        raise AttributeError("FetchLogEntry is immutable")

    def to_record(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "platform": self.platform,
            "fetch_type": self.fetch_type,
            "fetch_status": self.status,
            "duration_ms": self.duration_ms,
            "records_fetched": self.records_fetched,
            "cache_hit": self.cache_hit,
            "error_message": self.error,
            "created_at": self.timestamp.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "FetchLogEntry":
        return cls(
            user_id=str(record.get("user_id") or ""),
            platform=record.get("platform") or "",
            fetch_type=record.get("fetch_type") or "metrics",
            status=record.get("fetch_status") or STATUS_FAILED,
            duration_ms=record.get("duration_ms") or 0,
            records_fetched=record.get("records_fetched") or 0,
            cache_hit=bool(record.get("cache_hit")),
            error=record.get("error_message"),
            timestamp=_parse_dt(record.get("created_at")),
        )

    def __repr__(self) -> str:
        return f"FetchLogEntry({self.user_id!r}, {self.platform!r}, {self.status!r}, {self.duration_ms}ms)"


class FetchLog:
    """Historico append-only de tentativas de busca (cache, sucesso, falha)."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utcnow

    def record(
        self,
        user_id: str,
        platform: str,
        status: str,
        fetch_type: str = "metrics",
        duration_ms: int = 0,
        records_fetched: int = 0,
        cache_hit: bool = False,
        error: Optional[str] = None,
    ) -> FetchLogEntry:
        entry = FetchLogEntry(
            user_id,
            platform,
            fetch_type,
            status,
            duration_ms=duration_ms,
            records_fetched=records_fetched,
            cache_hit=cache_hit,
            error=error,
            timestamp=self._clock(),
        )
        try:
            self.append(entry)
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao registrar historico de busca (%s/%s): %s", user_id, platform, err)
        return entry

    def append(self, entry: FetchLogEntry) -> None:
        raise NotImplementedError

    def entries_for_user(self, user_id: str) -> List[FetchLogEntry]:
        raise NotImplementedError


class MemoryFetchLog(FetchLog):
    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._lock = threading.Lock()
        self._entries: List[FetchLogEntry] = []

    def append(self, entry: FetchLogEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def entries_for_user(self, user_id: str) -> List[FetchLogEntry]:
        with self._lock:
            return [entry for entry in self._entries if entry.user_id == user_id]

    def __len__(self) -> int:
        return len(self._entries)


class SupabaseFetchLog(FetchLog):
    def __init__(self, client: Optional[Client] = None, table_name: str = DEFAULT_FETCH_LOG_TABLE,
                 clock: Optional[Clock] = None):
        super().__init__(clock)
        self._client = client
        self.table_name = table_name

    @property
    def client(self) -> Client:
        client = self._client or get_supabase_client()
        if client is None:
            raise RuntimeError("Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_KEY).")
        return client

    def append(self, entry: FetchLogEntry) -> None:
        self.client.table(self.table_name).insert(entry.to_record()).execute()

    def entries_for_user(self, user_id: str) -> List[FetchLogEntry]:
        try:
            response = (
                self.client.table(self.table_name)
                .select("*")
                .eq("user_id", user_id)
                .order("created_at", desc=True)
                .limit(1000)
                .execute()
            )
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao consultar historico de busca de %s: %s", user_id, err)
            return []

        entries: List[FetchLogEntry] = []
        for row in getattr(response, "data", None) or []:
            try:
                entries.append(FetchLogEntry.from_record(row))
            except (TypeError, ValueError) as err:
                logger.warning("Ignorando linha de historico invalida: %s", err)
        return entries


def _bucket() -> Dict[str, Any]:
    return {"attempts": 0, STATUS_CACHED: 0, STATUS_SUCCESS: 0, STATUS_FAILED: 0}


def summarize(entries: Iterable[FetchLogEntry]) -> Dict[str, Any]:
    """
    Agrega o historico em contadores por status e por plataforma.

    ``hitRate`` considera todas as tentativas; ``avgDurationMs`` apenas as
    buscas que foram ate a API (sucesso ou falha).
    """
    totals = _bucket()
    per_platform: Dict[str, Dict[str, Any]] = {}
    live_durations: List[int] = []

    for entry in entries:
        totals["attempts"] += 1
        totals[entry.status] += 1
        bucket = per_platform.setdefault(entry.platform, _bucket())
        bucket["attempts"] += 1
        bucket[entry.status] += 1
        if not entry.cache_hit:
            live_durations.append(entry.duration_ms)

    for bucket in per_platform.values():
        bucket["hitRate"] = round(bucket[STATUS_CACHED] / bucket["attempts"], 4)

    totals["hitRate"] = round(totals[STATUS_CACHED] / totals["attempts"], 4) if totals["attempts"] else 0.0
    totals["avgDurationMs"] = round(sum(live_durations) / len(live_durations), 1) if live_durations else 0.0
    totals["perPlatform"] = per_platform
    return totals
