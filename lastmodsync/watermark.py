import logging
from typing import Any, Callable

from lastmodsync import interfaces, workers
from lastmodsync.query import BEGINNING_OF_TIME


LOGGER = logging.getLogger(__name__)


def resolve_watermark(
    cache: interfaces.CacheStore,
    last_modified: Callable[[Any], Any],
    max_concurrency: int = workers.MAX_CONCURRENCY,
    metrics: interfaces.Metrics = None,
    tracer: interfaces.Tracer = None,
):
    """Obtém a maior data de última modificação dentre os itens do cache.

    Os itens são lidos concorrentemente. Caso o cache esteja vazio o valor
    retornado é `BEGINNING_OF_TIME`. Qualquer falha de leitura interrompe a
    rotina e é propagada -- não existe resultado parcial.
    """
    metrics = metrics or interfaces.NoopMetrics()
    tracer = tracer or interfaces.NoopTracer()

    def _read_timestamp(key):
        return last_modified(cache.read(key))

    with tracer.span("resolve_watermark"):
        timestamps = workers.run_concurrently(
            _read_timestamp, cache.keys(), max_concurrency=max_concurrency
        )
    watermark = max(timestamps, default=BEGINNING_OF_TIME)

    LOGGER.debug(
        "watermark resolved from %s cached items: %r", len(timestamps), watermark
    )
    metrics.record_watermark(watermark)
    return watermark
