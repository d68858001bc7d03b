"""Cache de itens sobre armazenamentos de blobs.

`BlobCache` serializa os itens e os grava como blobs, um por chave, em
qualquer implementação de `interfaces.BlobStorage`.
"""
import os
import json
import logging
import tempfile
import threading
from datetime import date, datetime
from urllib.parse import quote, unquote

from lastmodsync import exceptions, interfaces


LOGGER = logging.getLogger(__name__)

BLOB_SUFFIX = ".json"


def json_default(obj):
    """Codifica datas no formato ISO-8601. Útil como `default` de
    `JSONSerializer`.
    """
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    raise TypeError("Object of type %s is not JSON serializable" % type(obj).__name__)


class JSONSerializer(interfaces.Serializer):
    """Serializa os itens em JSON codificado em UTF-8.

    :param default: (opcional) função repassada a `json.dumps` para os objetos
    que não são serializáveis nativamente.
    :param object_hook: (opcional) função repassada a `json.loads` para
    reconstruir os objetos.
    """

    def __init__(self, default=json_default, object_hook=None, encoding="utf-8"):
        self.default = default
        self.object_hook = object_hook
        self.encoding = encoding

    def serialize(self, item):
        return json.dumps(item, default=self.default, sort_keys=True).encode(
            self.encoding
        )

    def deserialize(self, data):
        return json.loads(data.decode(self.encoding), object_hook=self.object_hook)


class MemoryBlobStorage(interfaces.BlobStorage):
    def __init__(self):
        self._blobs = {}
        self._lock = threading.Lock()

    def list(self):
        with self._lock:
            return set(self._blobs)

    def read(self, blob_id):
        with self._lock:
            try:
                return self._blobs[blob_id]
            except KeyError:
                raise exceptions.NotFound('cannot find blob "%s"' % blob_id) from None

    def write(self, blob_id, data):
        with self._lock:
            self._blobs[blob_id] = bytes(data)


class FileSystemBlobStorage(interfaces.BlobStorage):
    """Grava cada blob num arquivo do diretório `directory`.

    O identificador do blob é codificado no nome do arquivo com
    `urllib.parse.quote`, de modo que qualquer string é um identificador
    válido. A gravação é feita num arquivo temporário que então substitui o
    original, de forma que leitores nunca encontram um blob pela metade.
    """

    def __init__(self, directory):
        self.directory = os.fspath(directory)

    def _path(self, blob_id):
        return os.path.join(self.directory, quote(blob_id, safe="") + BLOB_SUFFIX)

    def list(self):
        try:
            names = os.listdir(self.directory)
        except FileNotFoundError:
            return set()
        except OSError as exc:
            raise exceptions.StorageUnavailable(
                'cannot list blobs in "%s": %s' % (self.directory, exc)
            ) from exc

        return {
            unquote(name[: -len(BLOB_SUFFIX)])
            for name in names
            if name.endswith(BLOB_SUFFIX)
        }

    def read(self, blob_id):
        try:
            with open(self._path(blob_id), "rb") as fp:
                return fp.read()
        except FileNotFoundError:
            raise exceptions.NotFound(
                'cannot find blob "%s" in "%s"' % (blob_id, self.directory)
            ) from None
        except OSError as exc:
            raise exceptions.StorageUnavailable(
                'cannot read blob "%s": %s' % (blob_id, exc)
            ) from exc

    def write(self, blob_id, data):
        try:
            os.makedirs(self.directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as fp:
                    fp.write(data)
                os.replace(tmp_path, self._path(blob_id))
            except BaseException:
                os.unlink(tmp_path)
                raise
        except OSError as exc:
            raise exceptions.StorageUnavailable(
                'cannot write blob "%s": %s' % (blob_id, exc)
            ) from exc


class BlobCache(interfaces.CacheStore):
    """Implementação de `interfaces.CacheStore` que serializa os itens num
    armazenamento de blobs.
    """

    def __init__(self, storage: interfaces.BlobStorage, serializer=None):
        self.storage = storage
        self.serializer = serializer or JSONSerializer()

    def keys(self):
        return self.storage.list()

    def read(self, key):
        data = self.storage.read(key)
        try:
            return self.serializer.deserialize(data)
        except ValueError as exc:
            raise exceptions.StorageUnavailable(
                'cannot deserialize item "%s": %s' % (key, exc)
            ) from exc

    def write(self, key, item):
        self.storage.write(key, self.serializer.serialize(item))
        LOGGER.debug('item "%s" written to cache', key)
