import os
import sys
import json
import argparse
import logging

from lastmodsync import interfaces
from lastmodsync.sync import Synchronizer
from lastmodsync.adapters.blobs import json_default


LOGGER = logging.getLogger(__name__)

EPILOG = """\
Licensed under the terms of the BSD license. Please see LICENSE in the source
code for more information.
"""

LOGGER_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


DEFAULT_SETTINGS = [
    ("cache.dir", "LASTMODSYNC_CACHE_DIR", str, ""),
    ("mongodb.dsn", "LASTMODSYNC_MONGODB_DSN", str, ""),
    ("mongodb.dbname", "LASTMODSYNC_MONGODB_DBNAME", str, "lastmodsync"),
    ("mongodb.collection", "LASTMODSYNC_MONGODB_COLLECTION", str, "cache"),
    ("mongodb.replicaset", "LASTMODSYNC_MONGODB_REPLICASET", str, ""),
    ("items.key", "LASTMODSYNC_KEY_FIELD", str, "id"),
    ("items.timestamp", "LASTMODSYNC_TIMESTAMP_FIELD", str, "timestamp"),
    ("poll.interval", "LASTMODSYNC_POLL_INTERVAL", float, 60.0),
    ("concurrency", "LASTMODSYNC_MAX_CONCURRENCY", int, 4),
    ("http.timeout", "LASTMODSYNC_HTTP_TIMEOUT", float, 2.0),
]


def parse_settings(settings, environ=None):
    """Analisa e retorna as configurações com base nos argumentos da linha de
    comando e nas variáveis de ambiente.

    Os valores informados em `settings` têm precedência em relação às
    variáveis de ambiente, que por sua vez têm precedência em relação aos
    valores padrão. Valores `None` em `settings` são considerados ausentes.
    """
    environ = os.environ if environ is None else environ
    parsed = {}

    for name, envkey, convert, default in DEFAULT_SETTINGS:
        value = settings.get(name)
        if value is None:
            value = environ.get(envkey, default)
        if convert is not None:
            value = convert(value)
        parsed[name] = value

    return parsed


def make_cache(settings) -> interfaces.CacheStore:
    if settings["mongodb.dsn"]:
        from lastmodsync.adapters import mongodb

        mongo = mongodb.MongoDB(
            [dsn.strip() for dsn in settings["mongodb.dsn"].split() if dsn],
            dbname=settings["mongodb.dbname"],
            options={"replicaSet": settings["mongodb.replicaset"]},
        )
        return mongodb.MongoCache(mongo.collection(settings["mongodb.collection"]))

    elif settings["cache.dir"]:
        from lastmodsync.adapters import blobs

        return blobs.BlobCache(blobs.FileSystemBlobStorage(settings["cache.dir"]))

    else:
        raise ValueError(
            "a cache destination is required: set either --cache-dir or --mongodb-dsn"
        )


def make_synchronizer(args, settings):
    from lastmodsync.adapters import http

    key_field = settings["items.key"]
    return Synchronizer(
        source=http.ChangesFeedSource(
            args.source,
            timestamp_field=settings["items.timestamp"],
            key_field=key_field,
            timeout=settings["http.timeout"],
        ),
        cache=make_cache(settings),
        key=lambda item: str(item[key_field]),
        last_modified=settings["items.timestamp"],
        strategy=args.strategy,
        max_concurrency=settings["concurrency"],
        metrics=interfaces.LoggingMetrics(),
        tracer=interfaces.LoggingTracer(),
    )


def _settings_from_args(args):
    return {
        "cache.dir": args.cache_dir,
        "mongodb.dsn": args.mongodb_dsn,
        "mongodb.dbname": args.mongodb_dbname,
        "mongodb.collection": args.mongodb_collection,
        "mongodb.replicaset": args.replicaset,
        "items.key": args.key_field,
        "items.timestamp": args.timestamp_field,
        "poll.interval": getattr(args, "interval", None),
        "concurrency": args.concurrency,
        "http.timeout": args.timeout,
    }


def write_items(items, out=None):
    out = out or sys.stdout
    count = 0
    for item in items:
        out.write(json.dumps(item, default=json_default) + "\n")
        out.flush()
        count += 1
    return count


def sync(args):
    settings = parse_settings(_settings_from_args(args))
    synchronizer = make_synchronizer(args, settings)
    count = write_items(synchronizer.sync())
    LOGGER.info("items written to the output: %s", count)


def poll(args):
    settings = parse_settings(_settings_from_args(args))
    synchronizer = make_synchronizer(args, settings)
    write_items(synchronizer.poll(settings["poll.interval"]))


def _add_common_arguments(parser):
    parser.add_argument("-c", "--concurrency", type=int, default=None)
    parser.add_argument("--cache-dir", default=None, help="Directory of the cache.")
    parser.add_argument("--mongodb-dsn", default=None, help="DSN of the cache.")
    parser.add_argument("--mongodb-dbname", default=None)
    parser.add_argument("--mongodb-collection", default=None)
    parser.add_argument("-r", "--replicaset", default=None)
    parser.add_argument("-k", "--key-field", default=None)
    parser.add_argument("-t", "--timestamp-field", default=None)
    parser.add_argument("--timeout", type=float, default=None)
    parser.add_argument("--strategy", choices=["ordered", "eager"], default=None)
    parser.add_argument(
        "source",
        help="URL of the remote changes feed. Each change record is written as "
        "one line, so a key changed twice since the last run appears twice.",
    )


def cli(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    parser = argparse.ArgumentParser(
        description="Incremental cache synchronization command line utility.",
        epilog=EPILOG,
    )
    parser.add_argument("--loglevel", default="")
    subparsers = parser.add_subparsers(dest="command", required=True)

    parser_sync = subparsers.add_parser(
        "sync", help="Sync the cache with a remote source once."
    )
    _add_common_arguments(parser_sync)
    parser_sync.set_defaults(func=sync)

    parser_poll = subparsers.add_parser(
        "poll", help="Keep the cache in sync with a remote source, forever."
    )
    _add_common_arguments(parser_poll)
    parser_poll.add_argument("-i", "--interval", type=float, default=None)
    parser_poll.set_defaults(func=poll)

    args = parser.parse_args(argv)
    # todas as mensagens serão omitidas se level > 50
    logging.basicConfig(
        level=getattr(logging, args.loglevel.upper(), 999), format=LOGGER_FMT
    )
    return args.func(args)


def main():
    try:
        sys.exit(cli())
    except KeyboardInterrupt:
        LOGGER.info("Got a Ctrl+C. Terminating the program.")
        # É convencionado no shell que o programa finalizado pelo signal de
        # código N deve retornar o código N + 128.
        sys.exit(130)
    except Exception as exc:
        LOGGER.exception(exc)
        sys.exit("An unexpected error has occurred: %s" % exc)


if __name__ == "__main__":
    main()
