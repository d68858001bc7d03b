class Error(Exception):
    """Erro base de `lastmodsync`.
    """


class StorageUnavailable(Error):
    """Falha de I/O no armazenamento local (cache).
    """


class RemoteUnavailable(Error):
    """Falha ao consultar a fonte de dados remota.
    """


class NotFound(Error):
    """A chave referenciada não existe no cache.
    """


class UnsupportedQuery(Error):
    """A fonte remota não é capaz de executar a consulta solicitada.
    """
