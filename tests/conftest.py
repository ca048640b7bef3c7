"""
Pytest fixtures for the social metrics backend.

Provides:
- A frozen, manually advanced UTC clock
- In-memory cache store, fetch log and token store wired to that clock
- Sample raw payloads (aggregate analytics, posts, follower deltas)
"""

import os
import sys
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

# Backend modules are flat and imported by bare name
sys.path.insert(0, str(Path(__file__).parent.parent / "backend"))

os.environ["CACHE_MAINTENANCE_AUTOSTART"] = "0"
os.environ.pop("SUPABASE_URL", None)

from cache import MetricsCache  # noqa: E402
from cache_store import MemoryCacheStore  # noqa: E402
from fetch_log import MemoryFetchLog  # noqa: E402
from metrics_service import MetricsService  # noqa: E402
from oauth_tokens import AuthStatus, StaticTokenStore  # noqa: E402


TODAY = date(2026, 10, 19)
START = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


# =============================================================================
# CLOCK / STORAGE FIXTURES
# =============================================================================

@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def store(clock):
    return MemoryCacheStore(clock=clock)


@pytest.fixture
def fetch_log(clock):
    return MemoryFetchLog(clock=clock)


@pytest.fixture
def metrics_cache(store, fetch_log):
    return MetricsCache(store, fetch_log)


@pytest.fixture
def tokens(clock):
    token_store = StaticTokenStore(clock=clock)
    token_store.set("user-1", "linkedin", AuthStatus(True, token="li-token", expires_at=START + timedelta(days=30)))
    return token_store


# =============================================================================
# SAMPLE PAYLOADS
# =============================================================================

@pytest.fixture
def sample_posts():
    return [
        {"id": "p1", "text": "Launch", "likes": 10, "comments": 0, "shares": 0},
        {"id": "p2", "text": "Hiring", "likes": 15, "comments": 5, "shares": 0},
        {"id": "p3", "text": "Case study", "likes": 50, "comments": 10, "shares": 10},
    ]


@pytest.fixture
def sample_aggregate():
    return {"likes": 200, "comments": 40, "shares": 20, "clicks": 140, "impressions": 8000, "reach": 1000}


@pytest.fixture
def sample_deltas():
    # newest first
    return [
        {"date": "2026-10-17", "organicGain": 5, "paidGain": 0},
        {"date": "2026-10-16", "organicGain": 0, "paidGain": 0},
        {"date": "2026-10-15", "organicGain": 8, "paidGain": 2},
    ]


@pytest.fixture
def sample_raw(sample_aggregate, sample_posts, sample_deltas):
    return {
        "profile": {"id": "42", "name": "Acme", "url": "https://www.linkedin.com/company/acme"},
        "aggregate": sample_aggregate,
        "posts": sample_posts,
        "currentTotal": 1000,
        "deltas": sample_deltas,
    }


@pytest.fixture
def fetcher_calls():
    return []


@pytest.fixture
def linkedin_fetcher(sample_raw, fetcher_calls):
    def fetch(access_token):
        fetcher_calls.append(access_token)
        return sample_raw

    return fetch


@pytest.fixture
def service(metrics_cache, tokens, linkedin_fetcher):
    return MetricsService(metrics_cache, tokens, fetchers={"linkedin": linkedin_fetcher})
