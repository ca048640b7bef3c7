import logging
import math
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

FOLLOWER_WINDOW_DAYS = 90
REPORTING_LAG_DAYS = 2
ESTIMATE_WINDOW_DAYS = 30
ESTIMATE_START_RATIO = 0.7
SIGMOID_STEEPNESS = 10
MIN_ESTIMATED_FOLLOWERS = 100
REACH_TO_FOLLOWERS = 10


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _to_date(value: Any) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value) >= 10:
        return date.fromisoformat(value[:10])
    raise ValueError(f"Invalid delta date: {value!r}")


def _as_gain(value: Optional[Any]) -> int:
    if value is None:
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def normalize_delta(delta: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "date": _to_date(delta.get("date")),
        "organicGain": _as_gain(delta.get("organicGain")),
        "paidGain": _as_gain(delta.get("paidGain")),
    }


def _point(day: date, followers: int, organic: int, paid: int, synthetic: bool) -> Dict[str, Any]:
    return {
        "date": day.isoformat(),
        "followers": max(0, followers),
        "gained": organic + paid,
        "organicGain": organic,
        "paidGain": paid,
        "synthetic": synthetic,
    }


def reconstruct_timeline(
    current_total: int,
    deltas: Iterable[Dict[str, Any]],
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """
    Reconstroi a serie diaria de seguidores a partir do total atual.

    Percorre os deltas do mais recente para o mais antigo subtraindo o ganho
    de cada dia; cada ponto guarda o total no inicio do dia e o ganho do dia.
    Assim o primeiro ponto vale ``current_total - soma(deltas)`` e a serie e
    ancorada em ``current_total`` com um ponto extra datado de hoje, que cobre
    o atraso de publicacao da API.
    """
    today = today or _today()
    ordered = sorted((normalize_delta(delta) for delta in deltas), key=lambda item: item["date"])

    cursor = int(current_total)
    newest_first: List[Dict[str, Any]] = []
    for delta in reversed(ordered):
        cursor -= delta["organicGain"] + delta["paidGain"]
        newest_first.append(_point(delta["date"], cursor, delta["organicGain"], delta["paidGain"], False))

    points = list(reversed(newest_first))
    points.append(_point(today, int(current_total), 0, 0, False))

    if cursor < 0:
        logger.warning("Deltas somam mais que o total atual (%s); serie truncada em zero.", current_total)
    return points


def _sigmoid(x: float) -> float:
    return 1 / (1 + math.exp(-SIGMOID_STEEPNESS * (x - 0.5)))


def estimate_timeline(
    current_total: int,
    today: Optional[date] = None,
    window_days: int = ESTIMATE_WINDOW_DAYS,
) -> List[Dict[str, Any]]:
    """Curva logistica de 70% do total ate o total, marcada como ``synthetic``."""
    if window_days < 1:
        raise ValueError("window_days must be >= 1")

    today = today or _today()
    current_total = max(0, int(current_total))
    start = _round_half_up(current_total * ESTIMATE_START_RATIO)
    low, high = _sigmoid(0.0), _sigmoid(1.0)

    points: List[Dict[str, Any]] = []
    previous = start
    for index in range(window_days):
        day = today - timedelta(days=window_days - 1 - index)
        x = index / (window_days - 1) if window_days > 1 else 1.0
        progress = (_sigmoid(x) - low) / (high - low)
        followers = _round_half_up(start + (current_total - start) * progress)
        gained = followers - previous if index else 0
        points.append(_point(day, followers, gained, 0, True))
        previous = followers
    return points


def estimate_current_total(reach: Optional[int]) -> int:
    return max(MIN_ESTIMATED_FOLLOWERS, _round_half_up((reach or 0) * REACH_TO_FOLLOWERS))


def build_follower_growth(
    current_total: Optional[int],
    deltas: Optional[Sequence[Dict[str, Any]]],
    today: Optional[date] = None,
    reach: Optional[int] = 0,
) -> Tuple[List[Dict[str, Any]], bool]:
    """
    Retorna ``(pontos, synthetic)``. Usa a reconstrucao real quando ha total e
    deltas; caso contrario gera a estimativa deterministica.
    """
    if current_total is None:
        estimated = estimate_current_total(reach)
        logger.warning("Total de seguidores indisponivel; estimando %s a partir do alcance.", estimated)
        return estimate_timeline(estimated, today), True

    if not deltas:
        logger.warning("Historico de seguidores indisponivel; gerando curva estimada.")
        return estimate_timeline(current_total, today), True

    return reconstruct_timeline(current_total, deltas, today), False


def delta_window(
    today: Optional[date] = None,
    days: int = FOLLOWER_WINDOW_DAYS,
    lag_days: int = REPORTING_LAG_DAYS,
) -> Tuple[date, date]:
    """Intervalo pedido a API: ``days`` dias terminando ``lag_days`` antes de hoje."""
    today = today or _today()
    return today - timedelta(days=days + lag_days), today - timedelta(days=lag_days)
