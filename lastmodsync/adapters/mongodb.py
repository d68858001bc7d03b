import logging

import pymongo

from lastmodsync import exceptions, interfaces
from lastmodsync.query import Query, Sort


LOGGER = logging.getLogger(__name__)

MONGO_OPERATORS = {
    "gt": "$gt",
    "gte": "$gte",
    "lt": "$lt",
    "lte": "$lte",
    "eq": "$eq",
}


class MongoDB:
    """Abstrai a configuração do MongoDB de maneira que nenhum outro objeto do
    código necessita conhecer detalhes de conexão ou nome do banco de dados.

    :param options: (opcional) dicionário com opções que serão passadas diretamente
    na instanciação de `pymongo.MongoClient`. Veja as opções em:
    https://pymongo.readthedocs.io/en/stable/api/pymongo/mongo_client.html
    """

    def __init__(
        self, uri, dbname="lastmodsync", mongoclient=pymongo.MongoClient, options=None
    ):
        self._dbname = dbname
        self._uri = uri
        self._MongoClient = mongoclient
        self._client_instance = None
        self._options = options or {}

    @property
    def _client(self):
        """Posterga a instanciação de `pymongo.MongoClient` até o seu primeiro
        uso.
        """
        options = {k: v for k, v in self._options.items() if v}

        if not self._client_instance:
            self._client_instance = self._MongoClient(self._uri, **options)
            LOGGER.debug(
                "new MongoDB client created: <%r at %s>",
                self._client_instance,
                id(self._client_instance),
            )

        return self._client_instance

    def _db(self):
        return self._client[self._dbname]

    def collection(self, colname):
        return self._db()[colname]


class MongoCache(interfaces.CacheStore):
    """Implementação de `interfaces.CacheStore` para armazenamento em MongoDB.

    Cada item é gravado num documento `{"_id": <chave>, "item": <item>}`.
    """

    def __init__(self, collection):
        self._collection = collection

    def keys(self):
        try:
            return {
                doc["_id"] for doc in self._collection.find({}, projection={"_id": True})
            }
        except pymongo.errors.PyMongoError as exc:
            raise exceptions.StorageUnavailable(
                "cannot list keys from cache: %s" % exc
            ) from exc

    def read(self, key):
        try:
            doc = self._collection.find_one({"_id": key})
        except pymongo.errors.PyMongoError as exc:
            raise exceptions.StorageUnavailable(
                'cannot read item "%s" from cache: %s' % (key, exc)
            ) from exc

        if doc is None:
            raise exceptions.NotFound('cannot find item "%s" in cache' % key)
        return doc["item"]

    def write(self, key, item):
        try:
            self._collection.replace_one(
                {"_id": key}, {"_id": key, "item": item}, upsert=True
            )
        except pymongo.errors.PyMongoError as exc:
            raise exceptions.StorageUnavailable(
                'cannot write item "%s" to cache: %s' % (key, exc)
            ) from exc


def translate_filters(filters):
    """Traduz uma sequência de `Filter` para o documento de consulta do
    MongoDB.

    Os filtros que não restringem o resultado são omitidos.
    """
    spec = {}
    for f in filters:
        if f.is_unbounded:
            continue
        try:
            operator = MONGO_OPERATORS[f.op]
        except KeyError:
            raise exceptions.UnsupportedQuery(
                'operator "%s" is not supported by MongoDB sources' % f.op
            ) from None
        spec.setdefault(f.field, {})[operator] = f.value
    return spec


class MongoSource(interfaces.SortableRemoteSource):
    """Fonte remota sobre uma coleção do MongoDB. Filtros e ordenação são
    executados pelo servidor.

    :param projection: (opcional) projeção aplicada aos documentos obtidos. Por
    padrão o campo `_id` é omitido.
    """

    def __init__(self, collection, query=None, projection=None):
        self._collection = collection
        self._projection = projection if projection is not None else {"_id": False}
        self.query = query or Query()

    def _derive(self, query):
        return self.__class__(self._collection, query=query, projection=self._projection)

    def filter(self, predicate):
        return self._derive(self.query.with_filter(predicate))

    def sort_ascending(self, field):
        return self._derive(self.query.with_sort(Sort(field, ascending=True)))

    def __iter__(self):
        spec = translate_filters(self.query.filters)
        LOGGER.debug("querying MongoDB with filter %r", spec)
        try:
            cursor = self._collection.find(spec, projection=self._projection)
            if self.query.sort is not None:
                direction = (
                    pymongo.ASCENDING if self.query.sort.ascending else pymongo.DESCENDING
                )
                cursor = cursor.sort(self.query.sort.field, direction)

            for doc in cursor:
                yield doc
        except pymongo.errors.PyMongoError as exc:
            raise exceptions.RemoteUnavailable(
                "cannot fetch documents from MongoDB: %s" % exc
            ) from exc

    def __repr__(self):
        return "<%s %r>" % (self.__class__.__name__, self.query)
