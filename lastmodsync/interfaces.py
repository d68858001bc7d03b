import logging
import contextlib
from typing import Any, Iterator, Set

from lastmodsync.query import Filter


LOGGER = logging.getLogger(__name__)


class CacheStore:
    """Armazenamento local, endereçado pela chave persistente dos itens.

    Assume-se um único escritor: alterações concorrentes feitas por terceiros
    durante uma sincronização podem produzir resultados duplicados ou
    ausentes. As operações individuais de leitura e escrita devem ser
    atômicas por chave.
    """

    def keys(self) -> Set[str]:
        """Conjunto das chaves presentes no cache.

        Lança `exceptions.StorageUnavailable` em caso de falha de I/O.
        """

    def read(self, key: str) -> Any:
        """Obtém o item identificado por `key`.

        Lança `exceptions.NotFound` caso a chave não exista e
        `exceptions.StorageUnavailable` em caso de falha de I/O.
        """

    def write(self, key: str, item: Any) -> None:
        """Grava `item` sob a chave `key`, sobrescrevendo o valor anterior.

        Lança `exceptions.StorageUnavailable` em caso de falha de I/O.
        """


class RemoteSource:
    """Coleção remota, possivelmente infinita, que pode ser filtrada e
    iterada de maneira preguiçosa.

    Cada instância é imutável: `filter` retorna uma nova fonte. Falhas de
    comunicação devem ser lançadas como `exceptions.RemoteUnavailable` no
    momento da iteração.
    """

    def filter(self, predicate: Filter) -> "RemoteSource":
        """Retorna nova fonte restrita aos itens que satisfazem `predicate`.
        """

    def __iter__(self) -> Iterator[Any]:
        """Itera sobre os itens da fonte, um a um.
        """


class SortableRemoteSource(RemoteSource):
    """Fonte remota capaz de ordenar os itens no servidor.

    A ausência do método `sort_ascending` numa fonte indica que apenas a
    estratégia ávida de sincronização pode ser utilizada.
    """

    def sort_ascending(self, field: str) -> "SortableRemoteSource":
        """Retorna nova fonte com os itens em ordem crescente de `field`.
        """


def supports_sorting(source: RemoteSource) -> bool:
    return callable(getattr(source, "sort_ascending", None))


class Metrics:
    """Instrumentação opcional da sincronização.
    """

    def record_watermark(self, value: Any) -> None:
        """Registra o *watermark* obtido a partir do cache.
        """

    def record_materialized_count(self, count: int) -> None:
        """Registra a quantidade de itens carregados da fonte remota numa
        execução da estratégia ávida.
        """


class NoopMetrics(Metrics):
    def record_watermark(self, value):
        pass

    def record_materialized_count(self, count):
        pass


class LoggingMetrics(Metrics):
    """Escreve as métricas no log, em nível DEBUG.
    """

    def __init__(self, logger=LOGGER):
        self.logger = logger

    def record_watermark(self, value):
        self.logger.debug("watermark resolved from cache: %r", value)

    def record_materialized_count(self, count):
        self.logger.debug("items materialized from remote: %s", count)


class Tracer:
    """Rastreamento opcional das etapas da sincronização.

    Cada etapa é delimitada por `span`, um gerenciador de contexto que recebe
    o nome da etapa e, opcionalmente, *tags* que a descrevem.
    """

    def span(self, name: str, **tags):
        """Gerenciador de contexto que delimita a etapa `name`.
        """


class NoopTracer(Tracer):
    @contextlib.contextmanager
    def span(self, name, **tags):
        yield


class LoggingTracer(Tracer):
    """Escreve o início e o fim de cada etapa no log, em nível DEBUG.
    """

    def __init__(self, logger=LOGGER):
        self.logger = logger

    @contextlib.contextmanager
    def span(self, name, **tags):
        self.logger.debug("span \"%s\" started %r", name, tags)
        try:
            yield
        finally:
            self.logger.debug("span \"%s\" finished", name)


class BlobStorage:
    """Armazenamento de sequências de bytes endereçadas por identificador.
    """

    def list(self) -> Set[str]:
        """Identificadores dos blobs armazenados.
        """

    def read(self, blob_id: str) -> bytes:
        """Obtém o conteúdo do blob `blob_id`.

        Lança `exceptions.NotFound` caso o blob não exista.
        """

    def write(self, blob_id: str, data: bytes) -> None:
        """Grava `data` sob `blob_id`, sobrescrevendo o conteúdo anterior.
        """


class Serializer:
    def serialize(self, item: Any) -> bytes:
        """Produz a representação de `item` em bytes.
        """

    def deserialize(self, data: bytes) -> Any:
        """Reconstrói o item a partir de `data`.
        """
