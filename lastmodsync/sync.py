import logging
from typing import Any, Callable, Iterable, Iterator, Optional, Set

from lastmodsync import exceptions, interfaces, workers
from lastmodsync.poll import Poller
from lastmodsync.query import BEGINNING_OF_TIME, Filter, LastModified
from lastmodsync.watermark import resolve_watermark


LOGGER = logging.getLogger(__name__)

STRATEGIES = ("ordered", "eager")


class ObservingCursor:
    """Cursor que grava no cache cada item obtido da fonte antes de entregá-lo
    ao chamador.

    Cada avanço do cursor é composto por três passos explícitos: obtém o
    próximo item da fonte, o *observa* (i.e., executa `observe(item)`) e só
    então o retorna. Se `observe` falhar o item não é entregue. Apenas os itens
    efetivamente consumidos pelo chamador são observados.
    """

    def __init__(self, items: Iterable[Any], observe: Callable[[Any], None]):
        self._items = iter(items)
        self._observe = observe
        self.observed = 0

    def __iter__(self):
        return self

    def __next__(self):
        item = self._fetch()
        self._observe(item)
        self.observed += 1
        return item

    def _fetch(self):
        return next(self._items)

    def close(self):
        close = getattr(self._items, "close", None)
        if callable(close):
            close()


class Synchronizer:
    """Sincroniza incrementalmente o cache local com uma fonte remota.

    O *watermark* -- a maior data de última modificação presente no cache --
    é recalculado no início de cada ciclo e usado para consultar na fonte
    apenas os itens mais novos do que ele. A comparação é estritamente maior:
    um item distinto cuja data seja exatamente igual ao *watermark* não será
    obtido.

    :param source: a fonte remota. ATENÇÃO: a fonte não deve ter filtros que
    mudem entre usos do mesmo cache.
    :param cache: onde os itens observados são gravados.
    :param key: função que obtém a chave persistente do item. ATENÇÃO: a chave
    não pode mudar durante a vida do item.
    :param last_modified: instância de `LastModified` ou nome do campo que
    contém a data de última modificação.
    :param strategy: (opcional) `ordered` ou `eager`. Se omitido, a estratégia
    ordenada é usada sempre que a fonte for capaz de ordenar os itens.
    :param metrics: (opcional) instância de `interfaces.Metrics`.
    :param tracer: (opcional) instância de `interfaces.Tracer`; cada etapa do
    ciclo é delimitada por um *span*.
    """

    def __init__(
        self,
        source: interfaces.RemoteSource,
        cache: interfaces.CacheStore,
        key: Callable[[Any], str],
        last_modified,
        strategy: Optional[str] = None,
        max_concurrency: int = workers.MAX_CONCURRENCY,
        metrics: Optional[interfaces.Metrics] = None,
        tracer: Optional[interfaces.Tracer] = None,
    ):
        if not isinstance(last_modified, LastModified):
            last_modified = LastModified(last_modified)

        if strategy is None:
            strategy = "ordered" if interfaces.supports_sorting(source) else "eager"
        elif strategy not in STRATEGIES:
            raise ValueError(
                'unknown strategy "%s". choose one of %s' % (strategy, STRATEGIES)
            )
        elif strategy == "ordered" and not interfaces.supports_sorting(source):
            raise exceptions.UnsupportedQuery(
                "cannot use the ordered strategy: %r does not sort" % source
            )

        self.source = source
        self.cache = cache
        self.key = key
        self.last_modified = last_modified
        self.strategy = strategy
        self.max_concurrency = max_concurrency
        self.metrics = metrics or interfaces.NoopMetrics()
        self.tracer = tracer or interfaces.NoopTracer()

    def watermark(self):
        return resolve_watermark(
            self.cache,
            self.last_modified,
            max_concurrency=self.max_concurrency,
            metrics=self.metrics,
            tracer=self.tracer,
        )

    def _updated_since(self, watermark) -> interfaces.RemoteSource:
        LOGGER.info(
            'starting to sync records from remote since "%s"',
            "the very beginning" if watermark is BEGINNING_OF_TIME else watermark,
        )
        return self.source.filter(Filter.newer_than(self.last_modified.field, watermark))

    def _write(self, item) -> None:
        self.cache.write(self.key(item), item)

    def observe(self) -> Iterator[Any]:
        """Itens novos ou modificados na fonte desde o último ciclo, gravados no
        cache à medida que são observados.
        """
        if self.strategy == "ordered":
            return self.observe_ordered()
        return self.observe_eagerly()

    def observe_ordered(self) -> Iterator[Any]:
        """Obtém os itens modificados em ordem crescente de data de modificação,
        gravando cada um no cache imediatamente antes de entregá-lo.

        Se a iteração for interrompida, apenas os itens consumidos terão sido
        gravados. Os demais serão consultados novamente no próximo ciclo, o
        que é necessário já que a fonte pode ser infinita.
        """
        with self.tracer.span("observe_ordered"):
            watermark = self.watermark()
            source = self._updated_since(watermark).sort_ascending(
                self.last_modified.field
            )
            cursor = ObservingCursor(source, self._write)
            try:
                yield from cursor
            finally:
                cursor.close()
                LOGGER.debug("items observed to cache: %s", cursor.observed)

    def observe_eagerly(self) -> Iterator[Any]:
        """Obtém todos os itens modificados, grava-os no cache e só então os
        entrega ao chamador, na ordem produzida pela fonte.

        É a estratégia para fontes que não ordenam: sem a ordenação, a
        interrupção da iteração no meio deixaria o cache com um *watermark*
        incorreto para o próximo ciclo. Não há *rollback* caso alguma gravação
        falhe.
        """
        with self.tracer.span("observe_eagerly"):
            watermark = self.watermark()
            with self.tracer.span("materialize_remote"):
                items = list(self._updated_since(watermark))
            self.metrics.record_materialized_count(len(items))
            LOGGER.debug("items materialized from remote: %s", len(items))

            with self.tracer.span("write_to_cache", count=len(items)):
                workers.run_concurrently(
                    self._write, items, max_concurrency=self.max_concurrency
                )
            yield from items

    def sync(self) -> "MergeCycle":
        """Ciclo de sincronização que, além dos itens modificados, entrega os
        itens do cache que não foram atualizados.
        """
        return MergeCycle(self)

    def poll(self, interval, **kwargs):
        return Poller(self, interval, **kwargs)


class MergeCycle:
    """Um ciclo de sincronização com a fonte remota seguido do complemento
    a partir do cache.

    A ordem dos itens entregues, da qual não se deve depender, é:

    1. itens atualizados na fonte (em ordem de modificação, se a estratégia for
       a ordenada);
    2. itens do cache que não foram atualizados (em ordem não especificada).

    Entregar primeiro os itens do cache faria com que dados desatualizados
    parecessem definitivos. Cada chave é entregue uma única vez.
    """

    def __init__(self, synchronizer: Synchronizer):
        self.synchronizer = synchronizer
        self.snapshot: Optional[Set[str]] = None
        self.seen: Set[str] = set()
        self.stale_count = 0

    def remote_items(self) -> Iterator[Any]:
        sync = self.synchronizer
        with sync.tracer.span("remote_items"):
            # as chaves devem ser lidas antes que a fonte remota altere o cache
            self.snapshot = set(sync.cache.keys())
            for item in sync.observe():
                self.seen.add(sync.key(item))
                yield item

    def stale_keys(self):
        if self.snapshot is None:
            raise RuntimeError("remote items must be enumerated before stale ones")
        return sorted(self.snapshot - self.seen)

    def stale_items(self) -> Iterator[Any]:
        cache = self.synchronizer.cache
        keys = self.stale_keys()
        with self.synchronizer.tracer.span("stale_items", count=len(keys)):
            for key in keys:
                item = cache.read(key)
                self.stale_count += 1
                yield item

    def __iter__(self):
        yield from self.remote_items()
        yield from self.stale_items()
        LOGGER.debug(
            "cycle finished: %s items from remote, %s items from cache",
            len(self.seen),
            self.stale_count,
        )
