import os
import logging
import concurrent.futures
from typing import Any, Callable, Iterable, List


LOGGER = logging.getLogger(__name__)

MAX_CONCURRENCY = int(os.environ.get("LASTMODSYNC_MAX_CONCURRENCY", "4"))


class PoisonPill:
    """Sinaliza para as threads que a execução da rotina deve ser abortada.
    """

    def __init__(self):
        self.poisoned = False


def run_concurrently(
    func: Callable[[Any], Any],
    args: Iterable[Any],
    max_concurrency: int = MAX_CONCURRENCY,
) -> List[Any]:
    """Executa `func` para cada elemento de `args` em um *pool* de threads e
    aguarda o término de todas as execuções.

    Retorna os resultados na mesma ordem de `args`. A primeira exceção
    lançada por `func` interrompe a rotina: as tarefas que ainda não tiverem
    começado são descartadas e a exceção é propagada ao chamador.
    """
    if max_concurrency < 1:
        raise ValueError("max_concurrency must be greater than zero")

    ppill = PoisonPill()

    def _task(arg):
        if ppill.poisoned:
            return None
        return func(arg)

    with concurrent.futures.ThreadPoolExecutor(
        max_workers=max_concurrency
    ) as executor:
        try:
            futures = [executor.submit(_task, arg) for arg in args]
            for future in concurrent.futures.as_completed(futures):
                exc = future.exception()
                if exc is not None:
                    ppill.poisoned = True
                    LOGGER.debug("aborting concurrent tasks: %s", exc)
                    raise exc
        except KeyboardInterrupt:
            ppill.poisoned = True
            raise

    return [future.result() for future in futures]
