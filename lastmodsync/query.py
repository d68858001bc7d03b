"""Representação das consultas enviadas às fontes remotas.

As consultas são dados -- nome do campo, operador e valor -- e cabe a cada
adaptador traduzi-las para a linguagem de consulta da fonte que representa.
"""
import operator
from collections.abc import Mapping
from typing import Any, Callable, Iterable, Optional, Tuple

from lastmodsync import exceptions


class _BeginningOfTime:
    """Marca temporal anterior a qualquer outra.

    É o *watermark* de um cache vazio. Compara-se como menor do que qualquer
    valor e igual apenas a si mesma, de maneira que funciona com `datetime`,
    strings ISO-8601 ou números sem que seja preciso conhecer o tipo dos
    timestamps de antemão.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __lt__(self, other):
        return other is not self

    def __le__(self, other):
        return True

    def __gt__(self, other):
        return False

    def __ge__(self, other):
        return other is self

    def __eq__(self, other):
        return other is self

    def __hash__(self):
        return hash(_BeginningOfTime)

    def __repr__(self):
        return "BEGINNING_OF_TIME"

    def __reduce__(self):
        return (_BeginningOfTime, ())


BEGINNING_OF_TIME = _BeginningOfTime()


def _default_getter(field: str) -> Callable[[Any], Any]:
    def getter(item):
        if isinstance(item, Mapping):
            return item[field]
        return getattr(item, field)

    return getter


class LastModified:
    """Projeção da data de última modificação de um item.

    Carrega o nome do campo, usado na construção das consultas remotas, e a
    função que obtém o valor a partir do item. Por padrão o valor é obtido
    por `item[field]` ou `getattr(item, field)`.
    """

    def __init__(self, field: str, getter: Optional[Callable[[Any], Any]] = None):
        self.field = field
        self._getter = getter or _default_getter(field)

    def __call__(self, item):
        return self._getter(item)

    def __repr__(self):
        return "<%s field=%r>" % (self.__class__.__name__, self.field)


OPERATORS = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "eq": operator.eq,
}


class Filter:
    """Predicado `<field> <op> <value>`.

    O núcleo da sincronização emite apenas `gt` (estritamente maior), mas os
    adaptadores podem aceitar os demais operadores de `OPERATORS`.
    """

    __slots__ = ("field", "op", "value")

    def __init__(self, field: str, op: str, value: Any):
        if op not in OPERATORS:
            raise exceptions.UnsupportedQuery('unknown filter operator "%s"' % op)
        self.field = field
        self.op = op
        self.value = value

    @classmethod
    def newer_than(cls, field: str, value: Any) -> "Filter":
        return cls(field, "gt", value)

    @property
    def is_unbounded(self) -> bool:
        """`True` quando o filtro não restringe nada, i.e., compara com
        `BEGINNING_OF_TIME` usando `gt` ou `gte`.
        """
        return self.value is BEGINNING_OF_TIME and self.op in ("gt", "gte")

    def evaluate(self, item, getter: Optional[Callable[[Any], Any]] = None) -> bool:
        getter = getter or _default_getter(self.field)
        return OPERATORS[self.op](getter(item), self.value)

    def __eq__(self, other):
        if not isinstance(other, Filter):
            return NotImplemented
        return (self.field, self.op, self.value) == (other.field, other.op, other.value)

    def __hash__(self):
        return hash((self.field, self.op, self.value))

    def __repr__(self):
        return "<Filter %s %s %r>" % (self.field, self.op, self.value)


class Sort:
    __slots__ = ("field", "ascending")

    def __init__(self, field: str, ascending: bool = True):
        self.field = field
        self.ascending = ascending

    def __eq__(self, other):
        if not isinstance(other, Sort):
            return NotImplemented
        return (self.field, self.ascending) == (other.field, other.ascending)

    def __hash__(self):
        return hash((self.field, self.ascending))

    def __repr__(self):
        return "<Sort %s %s>" % (self.field, "asc" if self.ascending else "desc")


class Query:
    """Conjunto imutável de filtros e ordenação acumulados por uma fonte
    remota. Os adaptadores guardam uma instância e a traduzem no momento da
    iteração.
    """

    def __init__(self, filters: Iterable[Filter] = (), sort: Optional[Sort] = None):
        self.filters: Tuple[Filter, ...] = tuple(filters)
        self.sort = sort

    def with_filter(self, filter: Filter) -> "Query":
        return self.__class__(self.filters + (filter,), self.sort)

    def with_sort(self, sort: Sort) -> "Query":
        return self.__class__(self.filters, sort)

    def bounded_filters(self) -> Tuple[Filter, ...]:
        """Filtros que de fato restringem o resultado.
        """
        return tuple(f for f in self.filters if not f.is_unbounded)

    def __eq__(self, other):
        if not isinstance(other, Query):
            return NotImplemented
        return (self.filters, self.sort) == (other.filters, other.sort)

    def __repr__(self):
        return "<Query filters=%r sort=%r>" % (list(self.filters), self.sort)
