import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


def _settle(name: str, call: Callable[[], Any]) -> Optional[Any]:
    try:
        return call()
    except Exception as err:  # noqa: BLE001
        logger.warning("Fonte %s indisponivel: %s", name, err)
        return None


def settle_all(
    calls: Mapping[str, Callable[[], Any]],
    max_workers: int = DEFAULT_MAX_WORKERS,
) -> Dict[str, Optional[Any]]:
    """
    Executa fontes independentes e devolve ``{nome: valor ou None}``.

    Cada fonte roda isolada: uma excecao vira ``None`` para aquela fonte e nao
    interrompe as demais. Nenhuma excecao atravessa esta funcao.
    """
    if not calls:
        return {}
    if max_workers <= 1 or len(calls) == 1:
        return {name: _settle(name, call) for name, call in calls.items()}

    with ThreadPoolExecutor(max_workers=min(max_workers, len(calls))) as executor:
        futures = {name: executor.submit(_settle, name, call) for name, call in calls.items()}
        return {name: future.result() for name, future in futures.items()}
