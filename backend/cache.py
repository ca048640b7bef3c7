import copy
import logging
import os
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

from cache_keys import CacheKey, storage_key
from cache_store import CacheStore
from errors import InvalidCachedPayload, MetricsError, NotConnected, TokenExpired, reason_for
from fetch_log import STATUS_CACHED, STATUS_FAILED, STATUS_SUCCESS, FetchLog

logger = logging.getLogger(__name__)

# Registrador de plataformas -> fetchers
FETCHERS: Dict[str, Callable[..., Any]] = {}

DEFAULT_TTL_MINUTES = int(os.getenv("SOCIAL_CACHE_TTL_MINUTES", "30"))

RawFetch = Callable[[], Any]
Normalizer = Callable[[Any], Dict[str, Any]]


def register_fetcher(platform: str, fetcher: Callable[..., Any]) -> None:
    FETCHERS[platform.lower()] = fetcher


def get_fetcher(platform: str) -> Callable[..., Any]:
    fetcher = FETCHERS.get((platform or "").lower())
    if not fetcher:
        raise KeyError(f"Nenhum fetcher registrado para a plataforma '{platform}'")
    return fetcher


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _clone_payload(payload: Any) -> Any:
    try:
        return copy.deepcopy(payload)
    except Exception:  # noqa: BLE001
        return payload


def _count_records(result: Dict[str, Any]) -> int:
    for field in ("allPosts", "topPosts", "posts"):
        value = result.get(field)
        if isinstance(value, list):
            return len(value)
    return 0


def unavailable(err: BaseException) -> Dict[str, Any]:
    return {
        "dataAvailable": False,
        "reason": reason_for(err),
        "error": str(err),
        "requiresConnection": isinstance(err, (NotConnected, TokenExpired)),
    }


class _Flight:
    def __init__(self) -> None:
        self.done = threading.Event()
        self.result: Optional[Dict[str, Any]] = None


class MetricsCache:
    """
    Cache-aside sobre um ``CacheStore``.

    No maximo uma busca em andamento por chave: chamadas concorrentes para a
    mesma chave aguardam o resultado da primeira e compartilham a mesma
    gravacao no cache.
    """

    def __init__(self, store: CacheStore, fetch_log: FetchLog):
        self.store = store
        self.fetch_log = fetch_log
        self._inflight_lock = threading.Lock()
        self._inflight: Dict[str, _Flight] = {}

    def get_or_fetch(
        self,
        key: CacheKey,
        ttl_minutes: int,
        raw_fetch: RawFetch,
        fingerprint: Optional[str] = None,
        normalize: Optional[Normalizer] = None,
        authorize: Optional[Callable[[], Any]] = None,
        force_refresh: bool = False,
        fetch_type: str = "metrics",
    ) -> Dict[str, Any]:
        started = time.monotonic()

        if authorize is not None:
            try:
                authorize()
            except Exception as err:  # noqa: BLE001
                return self._failure(key, fetch_type, err, started)

        if not force_refresh:
            cached = self._lookup(key, fingerprint)
            if cached is not None:
                self.fetch_log.record(
                    key[0],
                    key[1],
                    STATUS_CACHED,
                    fetch_type,
                    duration_ms=_elapsed_ms(started),
                    cache_hit=True,
                )
                return cached

        # callers with a different fingerprint must not share a result
        name = f"{storage_key(key)}|{fingerprint or ''}"
        flight, leader = self._join(name)
        if not leader:
            logger.debug("Aguardando busca em andamento para %s.", name)
            flight.done.wait()
            return _clone_payload(flight.result)

        try:
            flight.result = self._fetch_and_store(
                key, ttl_minutes, raw_fetch, fingerprint, normalize, fetch_type, started
            )
        finally:
            with self._inflight_lock:
                self._inflight.pop(name, None)
            flight.done.set()
        return _clone_payload(flight.result)

    def in_flight(self) -> int:
        with self._inflight_lock:
            return len(self._inflight)

    def _join(self, name: str) -> Tuple[_Flight, bool]:
        with self._inflight_lock:
            flight = self._inflight.get(name)
            if flight is not None:
                return flight, False
            flight = _Flight()
            self._inflight[name] = flight
            return flight, True

    def _lookup(self, key: CacheKey, fingerprint: Optional[str]) -> Optional[Dict[str, Any]]:
        try:
            entry = self.store.get(key)
        except InvalidCachedPayload as err:
            logger.warning("Cache ilegivel tratado como miss: %s", err)
            return None

        if entry is None:
            return None

        now = self.store.now()
        if not entry.is_valid(now, fingerprint):
            logger.info("Fingerprint alterado para %s; ignorando cache.", storage_key(key))
            return None

        result = dict(entry.value)
        result["cacheAge"] = entry.age_minutes(now)
        result["cached"] = True
        result["source"] = "cache"
        logger.debug("Cache hit para %s (%s min).", storage_key(key), result["cacheAge"])
        return result

    def _fetch_and_store(
        self,
        key: CacheKey,
        ttl_minutes: int,
        raw_fetch: RawFetch,
        fingerprint: Optional[str],
        normalize: Optional[Normalizer],
        fetch_type: str,
        started: float,
    ) -> Dict[str, Any]:
        user_id, platform, _ = key
        try:
            raw = raw_fetch()
            result = normalize(raw) if normalize is not None else raw
            if not isinstance(result, dict):
                raise TypeError(f"fetcher for '{platform}' returned {type(result).__name__}, expected dict")
        except Exception as err:  # noqa: BLE001
            return self._failure(key, fetch_type, err, started)

        if result.get("dataAvailable") is False:
            message = result.get("reason") or result.get("error") or "data unavailable"
            self.fetch_log.record(
                user_id, platform, STATUS_FAILED, fetch_type, duration_ms=_elapsed_ms(started), error=str(message)
            )
            return result

        result = dict(result)
        result.setdefault("dataAvailable", True)
        result.setdefault("lastUpdated", self.store.now().isoformat())

        try:
            self.store.put(key, result, ttl_minutes, fingerprint)
            logger.info("Cache %s gravado (%s min).", storage_key(key), ttl_minutes)
        except Exception as err:  # noqa: BLE001
            logger.error("Nao foi possivel gravar o cache %s: %s", storage_key(key), err)

        self.fetch_log.record(
            user_id,
            platform,
            STATUS_SUCCESS,
            fetch_type,
            duration_ms=_elapsed_ms(started),
            records_fetched=_count_records(result),
        )
        return result

    def _failure(self, key: CacheKey, fetch_type: str, err: BaseException, started: float) -> Dict[str, Any]:
        user_id, platform, _ = key
        if isinstance(err, MetricsError):
            logger.warning("Falha ao buscar %s para %s: %s", platform, user_id, err)
        else:
            logger.exception("Erro inesperado ao buscar %s para %s: %s", platform, user_id, err)
        self.fetch_log.record(
            user_id, platform, STATUS_FAILED, fetch_type, duration_ms=_elapsed_ms(started), error=str(err)
        )
        return unavailable(err)
