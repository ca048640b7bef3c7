import copy
import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from supabase import Client

from cache_keys import CacheKey, storage_key
from errors import InvalidCachedPayload
from supabase_client import get_supabase_client

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TABLE = os.getenv("SOCIAL_CACHE_TABLE", "social_media_cache")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not value or not isinstance(value, str):
        return None
    try:
        if value.endswith("Z"):
            value = value.replace("Z", "+00:00")
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _clone_payload(payload: Any) -> Any:
    try:
        return copy.deepcopy(payload)
    except Exception:  # noqa: BLE001
        return payload


class CacheEntry:
    def __init__(
        self,
        key: CacheKey,
        value: Dict[str, Any],
        created_at: datetime,
        expires_at: datetime,
        fingerprint: Optional[str] = None,
    ):
        self.key = key
        self.value = value
        self.created_at = created_at
        self.expires_at = expires_at
        self.fingerprint = fingerprint

    @property
    def user_id(self) -> str:
        return self.key[0]

    @property
    def platform(self) -> str:
        return self.key[1]

    @property
    def scope(self) -> str:
        return self.key[2]

    def is_valid(self, now: datetime, fingerprint: Optional[str] = None) -> bool:
        if now >= self.expires_at:
            return False
        if fingerprint is not None and self.fingerprint != fingerprint:
            return False
        return True

    def age_minutes(self, now: datetime) -> int:
        return max(0, int((now - self.created_at).total_seconds() // 60))

    def to_record(self) -> Dict[str, Any]:
        return {
            "cache_key": storage_key(self.key),
            "user_id": self.user_id,
            "platform": self.platform,
            "scope": self.scope,
            "fingerprint": self.fingerprint,
            "payload": self.value,
            "data_available": self.value.get("dataAvailable", True) is not False,
            "last_fetched_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "updated_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "CacheEntry":
        cache_key = record.get("cache_key") or "?"
        payload = record.get("payload")
        if not isinstance(payload, dict):
            raise InvalidCachedPayload(cache_key, "payload is not an object")
        created_at = _parse_dt(record.get("last_fetched_at"))
        expires_at = _parse_dt(record.get("expires_at"))
        if created_at is None or expires_at is None:
            raise InvalidCachedPayload(cache_key, "missing timestamps")
        key = (str(record.get("user_id") or ""), record.get("platform") or "", record.get("scope") or "")
        return cls(key, payload, created_at, expires_at, record.get("fingerprint"))

    def __repr__(self) -> str:
        return f"CacheEntry({storage_key(self.key)!r}, expires_at={self.expires_at.isoformat()})"


class CacheStore:
    """
    Contrato do armazenamento chave-valor com expiracao.

    ``get`` nunca devolve entradas vencidas; ``invalidate`` apenas antecipa a
    expiracao (a linha continua disponivel para estatisticas) e
    ``purge_expired`` remove fisicamente o que ja venceu.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        raise NotImplementedError

    def put(self, key: CacheKey, value: Dict[str, Any], ttl_minutes: int,
            fingerprint: Optional[str] = None) -> CacheEntry:
        raise NotImplementedError

    def invalidate(self, key: CacheKey) -> bool:
        raise NotImplementedError

    def purge_expired(self) -> int:
        raise NotImplementedError

    def entries_for_user(self, user_id: str) -> List[CacheEntry]:
        raise NotImplementedError

    def delete(self, key: CacheKey) -> bool:
        raise NotImplementedError

    def delete_for_user(self, user_id: str) -> int:
        raise NotImplementedError

    def _new_entry(self, key: CacheKey, value: Dict[str, Any], ttl_minutes: int,
                   fingerprint: Optional[str]) -> CacheEntry:
        now = self.now()
        return CacheEntry(key, value, now, now + timedelta(minutes=ttl_minutes), fingerprint)


class MemoryCacheStore(CacheStore):
    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self._lock = threading.Lock()
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(storage_key(key))
        if entry is None or self.now() >= entry.expires_at:
            return None
        return CacheEntry(entry.key, _clone_payload(entry.value), entry.created_at, entry.expires_at,
                          entry.fingerprint)

    def put(self, key: CacheKey, value: Dict[str, Any], ttl_minutes: int,
            fingerprint: Optional[str] = None) -> CacheEntry:
        entry = self._new_entry(key, _clone_payload(value), ttl_minutes, fingerprint)
        with self._lock:
            self._entries[storage_key(key)] = entry
        return entry

    def invalidate(self, key: CacheKey) -> bool:
        with self._lock:
            entry = self._entries.get(storage_key(key))
            if entry is None:
                return False
            entry.expires_at = self.now()
        return True

    def purge_expired(self) -> int:
        now = self.now()
        with self._lock:
            expired = [name for name, entry in self._entries.items() if entry.expires_at < now]
            for name in expired:
                del self._entries[name]
        return len(expired)

    def entries_for_user(self, user_id: str) -> List[CacheEntry]:
        with self._lock:
            return [entry for entry in self._entries.values() if entry.user_id == user_id]

    def delete(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(storage_key(key), None) is not None

    def delete_for_user(self, user_id: str) -> int:
        with self._lock:
            names = [name for name, entry in self._entries.items() if entry.user_id == user_id]
            for name in names:
                del self._entries[name]
        return len(names)

    def __len__(self) -> int:
        return len(self._entries)


class SupabaseCacheStore(CacheStore):
    def __init__(self, client: Optional[Client] = None, table_name: str = DEFAULT_CACHE_TABLE,
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

    def _select(self, cache_key: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.client.table(self.table_name).select("*").eq("cache_key", cache_key).limit(1).execute()
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao consultar cache Supabase: %s", err)
            return None
        data = getattr(response, "data", None) or []
        return data[0] if data else None

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        record = self._select(storage_key(key))
        if not record:
            return None
        entry = CacheEntry.from_record(record)
        if self.now() >= entry.expires_at:
            return None
        return entry

    def put(self, key: CacheKey, value: Dict[str, Any], ttl_minutes: int,
            fingerprint: Optional[str] = None) -> CacheEntry:
        entry = self._new_entry(key, _clone_payload(value), ttl_minutes, fingerprint)
        try:
            self.client.table(self.table_name).upsert(entry.to_record(), on_conflict="cache_key").execute()
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao persistir cache Supabase: %s", err)
            raise
        return entry

    def invalidate(self, key: CacheKey) -> bool:
        cache_key = storage_key(key)
        try:
            response = (
                self.client.table(self.table_name)
                .update({"expires_at": self.now().isoformat()})
                .eq("cache_key", cache_key)
                .execute()
            )
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao invalidar cache %s: %s", cache_key, err)
            return False
        return bool(getattr(response, "data", None))

    def purge_expired(self) -> int:
        now_iso = self.now().isoformat()
        try:
            response = self.client.table(self.table_name).delete().lt("expires_at", now_iso).execute()
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao remover cache vencido na tabela %s: %s", self.table_name, err)
            return 0
        return len(getattr(response, "data", None) or [])

    def entries_for_user(self, user_id: str) -> List[CacheEntry]:
        try:
            response = self.client.table(self.table_name).select("*").eq("user_id", user_id).execute()
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao listar cache do usuario %s: %s", user_id, err)
            return []

        entries: List[CacheEntry] = []
        for record in getattr(response, "data", None) or []:
            try:
                entries.append(CacheEntry.from_record(record))
            except InvalidCachedPayload as err:
                logger.warning("Ignorando linha de cache invalida: %s", err)
        return entries

    def delete(self, key: CacheKey) -> bool:
        cache_key = storage_key(key)
        try:
            response = self.client.table(self.table_name).delete().eq("cache_key", cache_key).execute()
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao remover cache %s: %s", cache_key, err)
            return False
        return bool(getattr(response, "data", None))

    def delete_for_user(self, user_id: str) -> int:
        try:
            response = self.client.table(self.table_name).delete().eq("user_id", user_id).execute()
        except Exception as err:  # noqa: BLE001
            logger.error("Falha ao limpar cache do usuario %s: %s", user_id, err)
            return 0
        return len(getattr(response, "data", None) or [])
