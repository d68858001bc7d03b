import os
import json
import logging

import requests

from lastmodsync import exceptions, interfaces
from lastmodsync.query import Query, Sort


LOGGER = logging.getLogger(__name__)

TIMEOUT = float(os.environ.get("LASTMODSYNC_HTTP_TIMEOUT", "2"))


def fetch_data(url: str, params: dict = None, timeout: float = TIMEOUT) -> bytes:
    try:
        response = requests.get(url, params=params, timeout=timeout)
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
        raise exceptions.RemoteUnavailable(
            'cannot reach "%s": %s' % (url, exc)
        ) from exc
    except (
        requests.exceptions.InvalidSchema,
        requests.exceptions.MissingSchema,
        requests.exceptions.InvalidURL,
    ) as exc:
        raise exceptions.RemoteUnavailable('invalid URL "%s": %s' % (url, exc)) from exc
    else:
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise exceptions.RemoteUnavailable(
                'unexpected response from "%s": %s' % (url, exc)
            ) from exc

    return response.content


class ChangesFeedSource(interfaces.SortableRemoteSource):
    """Fonte remota que consome um *feed* de mudanças via HTTP.

    O *feed* deve aceitar o parâmetro `since_param` e retornar um objeto JSON
    com a lista de registros em `results_key`, em ordem crescente de
    `timestamp_field`. A paginação é feita consultando novamente o *feed* a
    partir do `timestamp` do último registro obtido, até que uma página não
    traga nenhum registro novo. Como vários registros podem compartilhar o
    mesmo `timestamp`, o *feed* deve tratar `since` como limite inclusivo; os
    registros repetidos entre páginas são reconhecidos pelo par
    (`key_field`, `timestamp_field`) e descartados.

    Apenas filtros `gt` sobre `timestamp_field` são suportados, e a ordenação
    solicitada deve coincidir com a ordem natural do *feed*. Registros cujo
    `timestamp` não seja estritamente maior do que o filtro são descartados
    no cliente, já que o *feed* pode tratar `since` como limite inclusivo.

    Cada registro do *feed* é entregue como um item distinto. Se a mesma
    chave aparecer mais de uma vez no intervalo consultado, com `timestamp`
    diferentes, todas as ocorrências são entregues.
    """

    def __init__(
        self,
        url,
        timestamp_field="timestamp",
        key_field="id",
        since_param="since",
        results_key="results",
        timeout=TIMEOUT,
        query=None,
    ):
        self.url = url
        self.timestamp_field = timestamp_field
        self.key_field = key_field
        self.since_param = since_param
        self.results_key = results_key
        self.timeout = timeout
        self.query = query or Query()

    def _derive(self, query):
        return self.__class__(
            self.url,
            timestamp_field=self.timestamp_field,
            key_field=self.key_field,
            since_param=self.since_param,
            results_key=self.results_key,
            timeout=self.timeout,
            query=query,
        )

    def filter(self, predicate):
        if predicate.field != self.timestamp_field or predicate.op != "gt":
            raise exceptions.UnsupportedQuery(
                "changes feed can only filter by %s > value, got %r"
                % (self.timestamp_field, predicate)
            )
        return self._derive(self.query.with_filter(predicate))

    def sort_ascending(self, field):
        if field != self.timestamp_field:
            raise exceptions.UnsupportedQuery(
                'changes feed is ordered by "%s" and cannot be sorted by "%s"'
                % (self.timestamp_field, field)
            )
        return self._derive(self.query.with_sort(Sort(field, ascending=True)))

    def _since(self):
        bounds = [f.value for f in self.query.bounded_filters()]
        return max(bounds) if bounds else None

    def _fetch_changes(self, since):
        params = {self.since_param: since if since is not None else ""}
        try:
            return json.loads(fetch_data(self.url, params=params, timeout=self.timeout))
        except ValueError as exc:
            raise exceptions.RemoteUnavailable(
                'cannot decode the response from "%s": %s' % (self.url, exc)
            ) from exc

    def __iter__(self):
        """Obtém os registros de mudança ocorridos desde o filtro informado.
        """
        bound = self._since()
        cursor = bound
        # chaves já entregues com o timestamp igual a `cursor`
        delivered = set()
        while True:
            resp_json = self._fetch_changes(cursor)
            has_changes = False

            for result in resp_json.get(self.results_key, []):
                timestamp = result[self.timestamp_field]
                if bound is not None and not timestamp > bound:
                    continue
                if cursor is not None and timestamp < cursor:
                    continue
                key = result[self.key_field]
                if timestamp == cursor:
                    if key in delivered:
                        continue
                else:
                    cursor = timestamp
                    delivered = set()
                delivered.add(key)
                has_changes = True
                yield result

            if not has_changes:
                return

            LOGGER.debug('fetching next page of changes since "%s"', cursor)

    def __repr__(self):
        return "<%s %s %r>" % (self.__class__.__name__, self.url, self.query)
