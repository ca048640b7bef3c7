import logging
import os
from datetime import date
from typing import Any, Callable, Dict, Mapping, Optional

from cache import DEFAULT_TTL_MINUTES, FETCHERS, MetricsCache, unavailable
from cache_keys import (
    COMPETITOR_PLATFORM,
    HANDLE_FIELDS,
    clean_domain,
    comparison_fingerprint,
    comparison_key,
    metrics_key,
    normalize_handle,
)
from cache_store import CacheStore, MemoryCacheStore, SupabaseCacheStore
from fetch_log import FetchLog, MemoryFetchLog, SupabaseFetchLog, summarize
from oauth_tokens import StaticTokenStore, SupabaseTokenStore, TokenStore
from reconciliation import reconcile, top_posts
from supabase_client import is_configured
from timeline import build_follower_growth

logger = logging.getLogger(__name__)

COMPETITOR_TTL_MINUTES = int(os.getenv("COMPETITOR_CACHE_TTL_MINUTES", str(7 * 24 * 60)))
SUPPORTED_PERIODS = ("day", "week", "month")


def build_metrics_result(raw: Optional[Dict[str, Any]], today: Optional[date] = None) -> Dict[str, Any]:
    """
    Normaliza o RawMetricsInput de uma plataforma no MetricsResult do dashboard.
    """
    raw = raw or {}
    summary, allocations = reconcile(raw.get("aggregate"), raw.get("posts"))
    growth, synthetic = build_follower_growth(
        raw.get("currentTotal"),
        raw.get("deltas"),
        today=today,
        reach=summary["reach"],
    )
    return {
        "dataAvailable": True,
        "profile": raw.get("profile") or {},
        "engagementScore": summary,
        "followerGrowth": growth,
        "followerGrowthSynthetic": synthetic,
        "companyFollowers": growth[-1]["followers"] if growth else 0,
        "topPosts": top_posts(allocations),
        "allPosts": allocations,
    }


class MetricsService:
    def __init__(
        self,
        cache: MetricsCache,
        tokens: TokenStore,
        fetchers: Optional[Mapping[str, Callable[..., Any]]] = None,
        metrics_ttl_minutes: int = DEFAULT_TTL_MINUTES,
        comparison_ttl_minutes: int = COMPETITOR_TTL_MINUTES,
    ):
        self.cache = cache
        self.tokens = tokens
        self._fetchers = FETCHERS if fetchers is None else fetchers
        self.metrics_ttl_minutes = metrics_ttl_minutes
        self.comparison_ttl_minutes = comparison_ttl_minutes

    @property
    def store(self) -> CacheStore:
        return self.cache.store

    @property
    def fetch_log(self) -> FetchLog:
        return self.cache.fetch_log

    def get_metrics(
        self,
        user_id: str,
        platform: str,
        period: Optional[str] = "month",
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        platform = (platform or "").lower()
        period = (period or "month").lower()
        if period not in SUPPORTED_PERIODS:
            return {"dataAvailable": False, "reason": "unsupported_period", "error": f"Unsupported period '{period}'"}

        fetcher = self._fetchers.get(platform)
        if fetcher is None or platform == COMPETITOR_PLATFORM:
            return {
                "dataAvailable": False,
                "reason": "unsupported_platform",
                "error": f"Unsupported platform '{platform}'",
            }

        credentials: Dict[str, str] = {}

        def authorize() -> None:
            credentials["token"] = self.tokens.require(user_id, platform)

        def raw_fetch() -> Any:
            return fetcher(credentials["token"])

        return self.cache.get_or_fetch(
            metrics_key(user_id, platform, period),
            self.metrics_ttl_minutes,
            raw_fetch,
            normalize=build_metrics_result,
            authorize=authorize,
            force_refresh=force_refresh,
        )

    def get_comparison(
        self,
        user_id: str,
        own_domain: str,
        competitor_domain: str,
        handles: Optional[Dict[str, Any]] = None,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        try:
            key = comparison_key(user_id, own_domain, competitor_domain)
        except ValueError as err:
            return unavailable(err)

        fetcher = self._fetchers.get(COMPETITOR_PLATFORM)
        if fetcher is None:
            return {
                "dataAvailable": False,
                "reason": "unsupported_platform",
                "error": "No competitor analysis fetcher registered",
            }

        handles = handles or {}
        normalized_handles = {field: normalize_handle(handles.get(field)) for field in HANDLE_FIELDS}
        own, competitor = clean_domain(own_domain), clean_domain(competitor_domain)

        return self.cache.get_or_fetch(
            key,
            self.comparison_ttl_minutes,
            lambda: fetcher(own, competitor, normalized_handles),
            fingerprint=comparison_fingerprint(own_domain, competitor_domain, handles),
            force_refresh=force_refresh,
            fetch_type="comparison",
        )

    def invalidate(self, user_id: str, platform: str) -> int:
        platform = (platform or "").lower()
        count = 0
        for entry in self.store.entries_for_user(user_id):
            if entry.platform == platform and self.store.invalidate(entry.key):
                count += 1
        logger.info("Cache de %s invalidado para %s (%s entrada(s)).", platform, user_id, count)
        return count

    def clear_all(self, user_id: str) -> int:
        count = self.store.delete_for_user(user_id)
        logger.info("Todo o cache de %s removido (%s entrada(s)).", user_id, count)
        return count

    def delete_comparison(self, user_id: str, own_domain: str, competitor_domain: str) -> bool:
        key = comparison_key(user_id, own_domain, competitor_domain)
        deleted = self.store.delete(key)
        logger.info("Cache de comparacao %s removido para %s: %s", key[2], user_id, deleted)
        return deleted

    def get_cache_stats(self, user_id: str) -> Dict[str, Any]:
        now = self.store.now()
        stats: Dict[str, Any] = {"total": 0, "valid": 0, "expired": 0, "perPlatform": {}}

        for entry in self.store.entries_for_user(user_id):
            is_valid = now < entry.expires_at
            stats["total"] += 1
            stats["valid" if is_valid else "expired"] += 1

            platform = stats["perPlatform"].setdefault(
                entry.platform,
                {"cached": True, "entries": 0, "valid": 0, "lastFetched": None, "expiresAt": None,
                 "dataAvailable": False},
            )
            platform["entries"] += 1
            platform["valid"] += 1 if is_valid else 0
            fetched_iso = entry.created_at.isoformat()
            if platform["lastFetched"] is None or fetched_iso > platform["lastFetched"]:
                platform["lastFetched"] = fetched_iso
                platform["expiresAt"] = entry.expires_at.isoformat()
            platform["dataAvailable"] = platform["dataAvailable"] or entry.value.get("dataAvailable") is not False

        stats["fetches"] = summarize(self.fetch_log.entries_for_user(user_id))
        return stats

    def purge_expired(self) -> int:
        count = self.store.purge_expired()
        logger.info("%s entrada(s) de cache vencidas removidas.", count)
        return count


def build_default_service(fetchers: Optional[Mapping[str, Callable[..., Any]]] = None) -> MetricsService:
    """
    Usa Supabase quando configurado; caso contrario mantem cache, historico e
    tokens em memoria (desenvolvimento local).
    """
    if is_configured():
        store: CacheStore = SupabaseCacheStore()
        fetch_log: FetchLog = SupabaseFetchLog()
        tokens: TokenStore = SupabaseTokenStore()
    else:
        logger.warning("Supabase nao configurado. Cache, historico e tokens mantidos em memoria.")
        store = MemoryCacheStore()
        fetch_log = MemoryFetchLog()
        tokens = StaticTokenStore()
    return MetricsService(MetricsCache(store, fetch_log), tokens, fetchers=fetchers)
