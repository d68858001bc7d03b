"""Adaptadores em memória, úteis em testes e em coleções já carregadas pelo
processo.
"""
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional

from lastmodsync import exceptions, interfaces
from lastmodsync.query import Filter, Query, Sort, _default_getter


class CollectionSource(interfaces.RemoteSource):
    """Fonte remota sobre uma sequência de itens em memória.

    A sequência é referenciada, e não copiada, de maneira que inclusões
    realizadas após a criação da fonte são percebidas na próxima iteração.

    :param fields: (opcional) mapeamento de nome de campo para a função que
    obtém o seu valor a partir de um item. Campos ausentes são obtidos por
    `item[field]` ou `getattr(item, field)`.
    """

    def __init__(
        self,
        items: List[Any],
        fields: Optional[Mapping[str, Callable[[Any], Any]]] = None,
        query: Optional[Query] = None,
    ):
        self._items = items
        self._fields = dict(fields or {})
        self.query = query or Query()

    def _getter(self, field):
        return self._fields.get(field) or _default_getter(field)

    def _derive(self, query):
        return self.__class__(self._items, fields=self._fields, query=query)

    def filter(self, predicate: Filter):
        return self._derive(self.query.with_filter(predicate))

    def __iter__(self):
        items = list(self._items)
        if self.query.sort is not None:
            sort = self.query.sort
            items.sort(key=self._getter(sort.field), reverse=not sort.ascending)

        for item in items:
            if all(
                f.evaluate(item, self._getter(f.field))
                for f in self.query.bounded_filters()
            ):
                yield item

    def __repr__(self):
        return "<%s %r>" % (self.__class__.__name__, self.query)


class SortableCollectionSource(CollectionSource, interfaces.SortableRemoteSource):
    def sort_ascending(self, field: str):
        return self._derive(self.query.with_sort(Sort(field, ascending=True)))


class MemoryCache(interfaces.CacheStore):
    """Cache em dicionário, limitado à vida do processo.
    """

    def __init__(self, items: Optional[Dict[str, Any]] = None):
        self._items = dict(items or {})
        self._lock = threading.Lock()

    def keys(self):
        with self._lock:
            return set(self._items)

    def read(self, key):
        with self._lock:
            try:
                return self._items[key]
            except KeyError:
                raise exceptions.NotFound('cannot find item "%s" in cache' % key) from None

    def write(self, key, item):
        with self._lock:
            self._items[key] = item

    def __len__(self):
        with self._lock:
            return len(self._items)
