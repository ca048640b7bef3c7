# backend/linkedin.py
import logging
import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from errors import UpstreamError
from sources import settle_all
from timeline import delta_window

logger = logging.getLogger(__name__)

API_BASE = "https://api.linkedin.com"
VERSION = os.getenv("LINKEDIN_API_VERSION", "202510")
TIMEOUT = float(os.getenv("LINKEDIN_TIMEOUT_SECONDS", "15"))
POSTS_LIMIT = 10
POSTS_WINDOW_DAYS = 90
SHARES_PAGE_SIZE = 50


def _ms_to_date(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc).date().isoformat()


def _date_to_ms(value: date) -> int:
    return int(datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp() * 1000)


class LinkedInClient:
    """
    Cliente minimo da API do LinkedIn (Community Management + Analytics).

    Sem retry: qualquer status de erro vira ``UpstreamError`` imediatamente.
    """

    def __init__(self, access_token: str, session: Optional[requests.Session] = None, timeout: float = TIMEOUT):
        self.access_token = access_token
        self.session = session or requests.Session()
        self.timeout = timeout

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "X-Restli-Protocol-Version": "2.0.0",
            "LinkedIn-Version": VERSION,
        }

    def get(self, path: str, params: Optional[dict] = None) -> Dict[str, Any]:
        url = path if path.startswith("http") else f"{API_BASE}{path}"
        try:
            r = self.session.get(url, params=params, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as err:
            raise UpstreamError(status=0, message=f"LinkedIn request failed: {err}") from err

        if r.ok:
            return r.json()
        try:
            payload = r.json()
        except ValueError:
            payload = {}
        message = payload.get("message") if isinstance(payload, dict) else None
        raise UpstreamError(
            status=r.status_code,
            message=message or r.text or "LinkedIn API request failed",
            code=payload.get("serviceErrorCode") if isinstance(payload, dict) else None,
            raw=payload if isinstance(payload, dict) else {"raw": r.text},
        )

    # ---- organizacao ----

    def organization(self) -> Dict[str, Any]:
        acls = self.get(
            "/v2/organizationalEntityAcls",
            {"q": "roleAssignee", "projection": "(elements*(organizationalTarget,role,state))"},
        )
        elements = acls.get("elements") or []
        if not elements:
            raise UpstreamError(status=404, message="No LinkedIn organizations found for this account")

        urn = elements[0].get("organizationalTarget")
        org_id = str(urn).split(":")[-1]
        details = self.get(f"/v2/organizations/{org_id}")
        vanity = details.get("vanityName")
        return {
            "id": org_id,
            "urn": urn,
            "name": details.get("localizedName"),
            "url": f"https://www.linkedin.com/company/{vanity}" if vanity else None,
        }

    def share_statistics(self, org_urn: str) -> Optional[Dict[str, int]]:
        data = self.get(
            "/v2/organizationalEntityShareStatistics",
            {"q": "organizationalEntity", "organizationalEntity": org_urn},
        )
        elements = data.get("elements") or []
        if not elements:
            return None
        stats = elements[0].get("totalShareStatistics") or {}
        return {
            "impressions": stats.get("impressionCount") or 0,
            "reach": stats.get("uniqueImpressionsCount") or 0,
            "clicks": stats.get("clickCount") or 0,
            "likes": stats.get("likeCount") or 0,
            "comments": stats.get("commentCount") or 0,
            "shares": stats.get("shareCount") or 0,
        }

    # ---- posts ----

    def recent_shares(self, org_urn: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        cutoff_ms = int((now - timedelta(days=POSTS_WINDOW_DAYS)).timestamp() * 1000)
        data = self.get(
            "/v2/shares",
            {"q": "owners", "owners": org_urn, "count": SHARES_PAGE_SIZE, "sortBy": "LAST_MODIFIED"},
        )
        shares = [
            share for share in data.get("elements") or []
            if ((share.get("created") or {}).get("time") or 0) >= cutoff_ms
        ]
        return shares[:POSTS_LIMIT]

    def post_engagement(self, share: Dict[str, Any]) -> Dict[str, Any]:
        post_id = str(share.get("id"))
        post_urn = f"urn:li:share:{post_id}"
        post = {
            "id": post_id,
            "text": (share.get("text") or {}).get("text") or "",
            "createdAt": _ms_to_date((share.get("created") or {}).get("time")),
            "url": f"https://www.linkedin.com/feed/update/{post_urn}/",
            "likes": 0,
            "comments": 0,
            "shares": 0,
            "clicks": 0,
            "impressions": 0,
            "reach": 0,
        }
        try:
            metadata = self.get(f"/v2/socialMetadata/{quote(post_urn, safe='')}")
        except UpstreamError as err:
            logger.warning("Engajamento indisponivel para o post %s: %s", post_id, err)
            return post

        reactions = metadata.get("reactionSummaries") or {}
        post["likes"] = (reactions.get("LIKE") or {}).get("count") or 0
        post["totalReactions"] = sum((item or {}).get("count") or 0 for item in reactions.values())
        post["comments"] = (metadata.get("commentSummary") or {}).get("count") or 0
        post["shares"] = (metadata.get("shareSummary") or {}).get("aggregatedTotalShares") or 0
        return post

    def posts_with_engagement(self, org_urn: str) -> List[Dict[str, Any]]:
        return [self.post_engagement(share) for share in self.recent_shares(org_urn)]

    # ---- seguidores ----

    def follower_count(self, org_urn: str) -> int:
        data = self.get(
            f"/rest/networkSizes/{quote(org_urn, safe='')}",
            {"edgeType": "COMPANY_FOLLOWED_BY_MEMBER"},
        )
        return int(data.get("firstDegreeSize") or 0)

    def follower_deltas(self, org_urn: str, today: Optional[date] = None) -> List[Dict[str, Any]]:
        start, end = delta_window(today)
        # Rest.li time intervals must not be percent-encoded
        url = (
            f"{API_BASE}/rest/organizationalEntityFollowerStatistics"
            f"?q=organizationalEntity&organizationalEntity={quote(org_urn, safe='')}"
            f"&timeIntervals=(timeRange:(start:{_date_to_ms(start)},end:{_date_to_ms(end)}),"
            f"timeGranularityType:DAY)"
        )
        data = self.get(url)
        deltas = []
        for item in data.get("elements") or []:
            gains = item.get("followerGains") or {}
            day = _ms_to_date((item.get("timeRange") or {}).get("start"))
            if day is None:
                continue
            deltas.append(
                {
                    "date": day,
                    "organicGain": gains.get("organicFollowerGain") or 0,
                    "paidGain": gains.get("paidFollowerGain") or 0,
                }
            )
        return deltas


def fetch_linkedin_metrics(
    access_token: str,
    session: Optional[requests.Session] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    Monta o RawMetricsInput do LinkedIn.

    A organizacao e obrigatoria (falha propaga como ``UpstreamError``); as
    demais fontes sao independentes e uma falha vira ``None``.
    """
    client = LinkedInClient(access_token, session=session)
    org = client.organization()
    urn = org["urn"]

    sources = settle_all(
        {
            "aggregate": lambda: client.share_statistics(urn),
            "posts": lambda: client.posts_with_engagement(urn),
            "currentTotal": lambda: client.follower_count(urn),
            "deltas": lambda: client.follower_deltas(urn, today),
        }
    )

    raw: Dict[str, Any] = {"profile": {"id": org["id"], "urn": urn, "name": org["name"], "url": org["url"]}}
    raw.update(sources)
    return raw
