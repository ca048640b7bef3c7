"""
Reconciliacao de metricas de engajamento.

Combina a fonte agregada (analytics da organizacao/pagina) com a fonte por
post, escolhendo a de maior confianca disponivel:

* Tier 1 - agregado com impressoes > 0: totais usados sem alteracao e
  alcance/impressoes/cliques redistribuidos entre os posts na proporcao do
  engajamento de cada um.
* Tier 2 - soma campo a campo dos posts; cada post mantem o que foi medido.

A taxa de engajamento segue a mesma ordem (impressoes, alcance, estimativa) e
todo resultado carrega ``rateSource`` para que estimativas nunca se passem por
dados medidos.
"""
import logging
import math
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

RATE_FROM_IMPRESSIONS = "from_impressions"
RATE_FROM_REACH = "from_reach"
RATE_ESTIMATED = "estimated"

SOURCE_ORGANIZATION = "organization_analytics"
SOURCE_POSTS = "aggregated_posts"

TOTAL_FIELDS = ("likes", "comments", "shares", "clicks", "impressions", "reach")
ALLOCATED_FIELDS = ("reach", "impressions", "clicks")

# heuristic reach = engagement * 15, i.e. ~6.7% baseline engagement
ESTIMATED_REACH_MULTIPLIER = 15
ESTIMATE_CEILING = 10.0
ESTIMATE_FLOOR = 0.5
ESTIMATE_HIGH_VALUE = 6.5  # midpoint of [5, 8]
ESTIMATE_LOW_VALUE = 1.0  # midpoint of [0.5, 1.5]

TOP_POSTS_LIMIT = 5


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _as_int(value: Optional[Any]) -> int:
    if value is None:
        return 0
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return 0


def post_engagement(post: Dict[str, Any]) -> int:
    return _as_int(post.get("likes")) + _as_int(post.get("comments")) + _as_int(post.get("shares"))


def normalize_post(post: Dict[str, Any]) -> Dict[str, Any]:
    normalized = dict(post)
    for field in TOTAL_FIELDS:
        normalized[field] = _as_int(post.get(field))
    normalized["engagement"] = post_engagement(normalized)
    normalized["allocated"] = False
    return normalized


def normalize_totals(source: Optional[Dict[str, Any]]) -> Dict[str, int]:
    source = source or {}
    return {field: _as_int(source.get(field)) for field in TOTAL_FIELDS}


def sum_posts(posts: Iterable[Dict[str, Any]]) -> Dict[str, int]:
    totals = {field: 0 for field in TOTAL_FIELDS}
    for post in posts:
        for field in TOTAL_FIELDS:
            totals[field] += _as_int(post.get(field))
    return totals


def select_totals(
    aggregate: Optional[Dict[str, Any]],
    posts: Sequence[Dict[str, Any]],
) -> Tuple[Dict[str, int], str]:
    if aggregate is not None:
        totals = normalize_totals(aggregate)
        if totals["impressions"] > 0:
            return totals, SOURCE_ORGANIZATION
        logger.info("Analytics agregado sem impressoes; usando soma dos posts.")
    return sum_posts(posts), SOURCE_POSTS


def allocate(posts: Sequence[Dict[str, Any]], totals: Dict[str, int]) -> List[Dict[str, Any]]:
    """
    Redistribui alcance, impressoes e cliques agregados entre os posts.

    Peso de cada post = likes + comments + shares. Sem engajamento algum a
    divisao e igualitaria. A soma alocada difere do total em no maximo
    ``len(posts)`` unidades por causa do arredondamento.
    """
    if not posts:
        return []

    allocated = [normalize_post(post) for post in posts]
    total_engagement = sum(post["engagement"] for post in allocated)

    for post in allocated:
        for field in ALLOCATED_FIELDS:
            if total_engagement > 0:
                post[field] = round_half_up(totals[field] * post["engagement"] / total_engagement)
            else:
                post[field] = round_half_up(totals[field] / len(allocated))
        post["allocated"] = True
    return allocated


def clamp_estimate(rate: float) -> float:
    if rate > ESTIMATE_CEILING:
        return ESTIMATE_HIGH_VALUE
    if 0 < rate < ESTIMATE_FLOOR:
        return ESTIMATE_LOW_VALUE
    return rate


def engagement_rate(totals: Dict[str, int]) -> Tuple[float, str]:
    interactions = totals["likes"] + totals["comments"] + totals["shares"]

    if totals["impressions"] > 0:
        return (interactions + totals["clicks"]) / totals["impressions"] * 100, RATE_FROM_IMPRESSIONS

    if totals["reach"] > 0:
        return interactions / totals["reach"] * 100, RATE_FROM_REACH

    estimated_reach = interactions * ESTIMATED_REACH_MULTIPLIER
    rate = interactions / estimated_reach * 100 if estimated_reach > 0 else 0.0
    return clamp_estimate(rate), RATE_ESTIMATED


def engagement_score(rate: float) -> int:
    """
    Faixas: 0-2% -> 0-40, 2-5% -> 40-70, 5-8% -> 70-90, acima de 8% -> 90-100.
    """
    rate = max(0.0, float(rate))
    if rate <= 2:
        score = rate / 2 * 40
    elif rate <= 5:
        score = 40 + (rate - 2) / 3 * 30
    elif rate <= 8:
        score = 70 + (rate - 5) / 3 * 20
    else:
        score = min(90 + (rate - 8) / 2 * 10, 100)
    return min(100, round_half_up(score))


def reconcile(
    aggregate: Optional[Dict[str, Any]] = None,
    posts: Optional[Sequence[Dict[str, Any]]] = None,
) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    posts = [post for post in (posts or []) if isinstance(post, dict)]
    totals, data_source = select_totals(aggregate, posts)

    if data_source == SOURCE_ORGANIZATION:
        allocations = allocate(posts, totals)
    else:
        allocations = [normalize_post(post) for post in posts]
    allocations.sort(key=lambda post: post["engagement"], reverse=True)

    rate, rate_source = engagement_rate(totals)
    summary: Dict[str, Any] = dict(totals)
    summary.update(
        {
            "totalEngagement": totals["likes"] + totals["comments"] + totals["shares"],
            "engagementRate": round(rate, 2),
            "score": engagement_score(rate),
            "rateSource": rate_source,
            "dataSource": data_source,
        }
    )

    logger.debug(
        "Engajamento reconciliado: %.2f%% (%s, %s), score %s, %s post(s)",
        rate,
        rate_source,
        data_source,
        summary["score"],
        len(allocations),
    )
    return summary, allocations


def top_posts(allocations: Sequence[Dict[str, Any]], limit: int = TOP_POSTS_LIMIT) -> List[Dict[str, Any]]:
    return [dict(post) for post in allocations[:limit]]
