import hashlib
import json
import os
import re
from typing import Any, Dict, Optional, Tuple

CACHE_NAMESPACE = os.getenv("SOCIAL_CACHE_NAMESPACE", "").strip() or "default"
COMPETITOR_PLATFORM = "competitor"
DEFAULT_PERIOD = "month"

# (user_id, platform, scope)
CacheKey = Tuple[str, str, str]

HANDLE_FIELDS = (
    "own_instagram",
    "own_facebook",
    "own_linkedin",
    "competitor_instagram",
    "competitor_facebook",
    "competitor_linkedin",
)

_SCHEME_RE = re.compile(r"^https?://", re.IGNORECASE)
_WWW_RE = re.compile(r"^www\.", re.IGNORECASE)


def make_key(user_id: str, platform: str, scope: Optional[str] = None) -> CacheKey:
    if not user_id:
        raise ValueError("user_id is required to build a cache key")
    if not platform:
        raise ValueError("platform is required to build a cache key")
    return (str(user_id), platform.strip().lower(), (scope or "").strip())


def metrics_key(user_id: str, platform: str, period: Optional[str] = None) -> CacheKey:
    return make_key(user_id, platform, (period or DEFAULT_PERIOD).lower())


def clean_domain(domain: Optional[str]) -> Optional[str]:
    """
    Normaliza o dominio para comparacao: remove protocolo, ``www.``, caminho e barra final.
    """
    if not domain:
        return None
    value = _SCHEME_RE.sub("", domain.strip())
    value = _WWW_RE.sub("", value)
    value = value.split("/")[0].strip().lower()
    return value or None


def normalize_handle(handle: Optional[str]) -> Optional[str]:
    if not handle:
        return None
    value = str(handle).strip().lower().replace("@", "").strip()
    return value or None


def comparison_key(user_id: str, own_domain: str, competitor_domain: str) -> CacheKey:
    own = clean_domain(own_domain)
    competitor = clean_domain(competitor_domain)
    if not own or not competitor:
        raise ValueError("own_domain and competitor_domain are required")
    return make_key(user_id, COMPETITOR_PLATFORM, f"{own}|{competitor}")


def comparison_fingerprint(
    own_domain: str,
    competitor_domain: str,
    handles: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Fingerprint de identidade do cache de concorrentes.

    Tupla ordenada (dominio proprio, dominio concorrente, handles proprios e do
    concorrente), cada valor normalizado ou ``None``. Qualquer handle diferente
    invalida a entrada mesmo antes do TTL.
    """
    handles = handles or {}
    parts = [clean_domain(own_domain), clean_domain(competitor_domain)]
    parts.extend(normalize_handle(handles.get(field)) for field in HANDLE_FIELDS)
    return json.dumps(parts, separators=(",", ":"))


def storage_key(key: CacheKey) -> str:
    user_id, platform, scope = key
    base = f"{CACHE_NAMESPACE}|{platform}|{user_id}|{scope}"
    digest = hashlib.sha256(base.encode("utf-8")).hexdigest()[:16]
    return "|".join([platform, user_id or "na", scope or "na", digest])
