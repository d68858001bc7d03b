import os
import json
import tempfile
import unittest
from datetime import datetime
from unittest import mock

import pymongo
import requests

from lastmodsync import exceptions
from lastmodsync.query import BEGINNING_OF_TIME, Filter
from lastmodsync.adapters import blobs, http, memory, mongodb


class CollectionSourceTests(unittest.TestCase):
    def setUp(self):
        self.items = [{"ts": 3}, {"ts": 1}, {"ts": 2}]

    def test_filters_items(self):
        source = memory.CollectionSource(self.items).filter(Filter.newer_than("ts", 1))
        self.assertEqual(list(source), [{"ts": 3}, {"ts": 2}])

    def test_unsortable_source_has_no_sort(self):
        self.assertFalse(hasattr(memory.CollectionSource(self.items), "sort_ascending"))

    def test_sorts_items(self):
        source = memory.SortableCollectionSource(self.items).sort_ascending("ts")
        self.assertEqual(list(source), [{"ts": 1}, {"ts": 2}, {"ts": 3}])

    def test_filter_returns_new_source(self):
        source = memory.CollectionSource(self.items)
        source.filter(Filter.newer_than("ts", 2))
        self.assertEqual(len(list(source)), 3)

    def test_sees_items_added_after_creation(self):
        source = memory.SortableCollectionSource(self.items).filter(
            Filter.newer_than("ts", 2)
        )
        self.items.append({"ts": 4})
        self.assertEqual(list(source), [{"ts": 3}, {"ts": 4}])

    def test_custom_field_getters(self):
        source = memory.CollectionSource(
            [("a", 1), ("b", 2)], fields={"ts": lambda item: item[1]}
        ).filter(Filter.newer_than("ts", 1))
        self.assertEqual(list(source), [("b", 2)])


class MemoryCacheTests(unittest.TestCase):
    def test_read_missing_key(self):
        self.assertRaises(exceptions.NotFound, memory.MemoryCache().read, "nope")

    def test_write_overwrites(self):
        cache = memory.MemoryCache()
        cache.write("a", 1)
        cache.write("a", 2)
        self.assertEqual(cache.read("a"), 2)
        self.assertEqual(cache.keys(), {"a"})


class JSONSerializerTests(unittest.TestCase):
    def test_encodes_datetimes_as_isoformat(self):
        data = blobs.JSONSerializer().serialize({"ts": datetime(2019, 1, 2, 3, 4, 5)})
        self.assertEqual(json.loads(data), {"ts": "2019-01-02T03:04:05"})

    def test_object_hook(self):
        serializer = blobs.JSONSerializer(
            object_hook=lambda obj: {k: v.upper() for k, v in obj.items()}
        )
        self.assertEqual(serializer.deserialize(b'{"a": "x"}'), {"a": "X"})

    def test_rejects_unknown_types(self):
        self.assertRaises(TypeError, blobs.JSONSerializer().serialize, {"a": object()})


class FileSystemBlobStorageTests(unittest.TestCase):
    def setUp(self):
        self._tmpdir = tempfile.TemporaryDirectory()
        self.directory = os.path.join(self._tmpdir.name, "cache")
        self.storage = blobs.FileSystemBlobStorage(self.directory)

    def tearDown(self):
        self._tmpdir.cleanup()

    def test_missing_directory_is_empty(self):
        self.assertEqual(self.storage.list(), set())

    def test_write_then_list_and_read(self):
        self.storage.write("/documents/abc", b"data")
        self.assertEqual(self.storage.list(), {"/documents/abc"})
        self.assertEqual(self.storage.read("/documents/abc"), b"data")

    def test_write_replaces_previous_content(self):
        self.storage.write("a", b"1")
        self.storage.write("a", b"22")
        self.assertEqual(self.storage.read("a"), b"22")
        self.assertEqual(os.listdir(self.directory), ["a.json"])

    def test_read_missing_blob(self):
        self.assertRaises(exceptions.NotFound, self.storage.read, "missing")

    def test_unreadable_directory(self):
        with open(os.path.join(self._tmpdir.name, "file"), "w") as fp:
            fp.write("not a directory")
        storage = blobs.FileSystemBlobStorage(os.path.join(self._tmpdir.name, "file"))
        self.assertRaises(exceptions.StorageUnavailable, storage.list)
        self.assertRaises(exceptions.StorageUnavailable, storage.write, "a", b"")


class BlobCacheTests(unittest.TestCase):
    def setUp(self):
        self.storage = blobs.MemoryBlobStorage()
        self.cache = blobs.BlobCache(self.storage)

    def test_items_are_serialized(self):
        self.cache.write("k1", {"id": "k1", "ts": "2019-01-01"})
        self.assertEqual(
            self.storage.read("k1"), b'{"id": "k1", "ts": "2019-01-01"}'
        )
        self.assertEqual(self.cache.read("k1"), {"id": "k1", "ts": "2019-01-01"})
        self.assertEqual(self.cache.keys(), {"k1"})

    def test_read_missing_item(self):
        self.assertRaises(exceptions.NotFound, self.cache.read, "k1")

    def test_corrupted_item(self):
        self.storage.write("k1", b"{not json")
        self.assertRaises(exceptions.StorageUnavailable, self.cache.read, "k1")


class MongoCacheTests(unittest.TestCase):
    def setUp(self):
        self.collection = mock.MagicMock()
        self.cache = mongodb.MongoCache(self.collection)

    def test_keys(self):
        self.collection.find.return_value = [{"_id": "a"}, {"_id": "b"}]
        self.assertEqual(self.cache.keys(), {"a", "b"})
        self.collection.find.assert_called_once_with({}, projection={"_id": True})

    def test_read(self):
        self.collection.find_one.return_value = {"_id": "a", "item": {"ts": 1}}
        self.assertEqual(self.cache.read("a"), {"ts": 1})
        self.collection.find_one.assert_called_once_with({"_id": "a"})

    def test_read_missing_item(self):
        self.collection.find_one.return_value = None
        self.assertRaises(exceptions.NotFound, self.cache.read, "a")

    def test_write_upserts(self):
        self.cache.write("a", {"ts": 1})
        self.collection.replace_one.assert_called_once_with(
            {"_id": "a"}, {"_id": "a", "item": {"ts": 1}}, upsert=True
        )

    def test_driver_errors(self):
        error = pymongo.errors.ConnectionFailure("down")
        self.collection.find.side_effect = error
        self.collection.find_one.side_effect = error
        self.collection.replace_one.side_effect = error
        self.assertRaises(exceptions.StorageUnavailable, self.cache.keys)
        self.assertRaises(exceptions.StorageUnavailable, self.cache.read, "a")
        self.assertRaises(exceptions.StorageUnavailable, self.cache.write, "a", {})


class MongoSourceTests(unittest.TestCase):
    def setUp(self):
        self.collection = mock.MagicMock()
        self.cursor = mock.MagicMock()
        self.cursor.sort.return_value = self.cursor
        self.cursor.__iter__.return_value = iter([{"ts": 2}, {"ts": 3}])
        self.collection.find.return_value = self.cursor
        self.source = mongodb.MongoSource(self.collection)

    def test_filter_and_sort_are_executed_by_the_server(self):
        source = self.source.filter(Filter.newer_than("ts", 1)).sort_ascending("ts")
        self.assertEqual(list(source), [{"ts": 2}, {"ts": 3}])
        self.collection.find.assert_called_once_with(
            {"ts": {"$gt": 1}}, projection={"_id": False}
        )
        self.cursor.sort.assert_called_once_with("ts", pymongo.ASCENDING)

    def test_unbounded_filter_is_omitted(self):
        list(self.source.filter(Filter.newer_than("ts", BEGINNING_OF_TIME)))
        self.collection.find.assert_called_once_with({}, projection={"_id": False})
        self.cursor.sort.assert_not_called()

    def test_translate_filters(self):
        self.assertEqual(
            mongodb.translate_filters(
                [Filter("ts", "gt", 1), Filter("ts", "lte", 5), Filter("n", "eq", 0)]
            ),
            {"ts": {"$gt": 1, "$lte": 5}, "n": {"$eq": 0}},
        )

    def test_driver_errors(self):
        self.collection.find.side_effect = pymongo.errors.ServerSelectionTimeoutError(
            "timeout"
        )
        self.assertRaises(exceptions.RemoteUnavailable, list, self.source)


class MongoDBTests(unittest.TestCase):
    def test_client_is_created_lazily(self):
        client_class = mock.MagicMock()
        mongo = mongodb.MongoDB(
            "mongodb://db:27017",
            dbname="cache",
            mongoclient=client_class,
            options={"replicaSet": ""},
        )
        client_class.assert_not_called()

        mongo.collection("items")
        mongo.collection("items")
        client_class.assert_called_once_with("mongodb://db:27017")


def make_response(results):
    response = mock.Mock()
    response.content = json.dumps({"results": results}).encode("utf-8")
    return response


class FetchDataTests(unittest.TestCase):
    @mock.patch("lastmodsync.adapters.http.requests.get")
    def test_returns_content(self, mock_get):
        mock_get.return_value = make_response([])
        self.assertEqual(http.fetch_data("http://feed/changes"), b'{"results": []}')

    @mock.patch("lastmodsync.adapters.http.requests.get")
    def test_connection_errors(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")
        self.assertRaises(
            exceptions.RemoteUnavailable, http.fetch_data, "http://feed/changes"
        )

    @mock.patch("lastmodsync.adapters.http.requests.get")
    def test_http_errors(self, mock_get):
        response = make_response([])
        response.raise_for_status.side_effect = requests.HTTPError("503")
        mock_get.return_value = response
        self.assertRaises(
            exceptions.RemoteUnavailable, http.fetch_data, "http://feed/changes"
        )


class ChangesFeedSourceTests(unittest.TestCase):
    def setUp(self):
        self.source = http.ChangesFeedSource("http://feed/changes")

    @mock.patch("lastmodsync.adapters.http.requests.get")
    def test_paginates_until_nothing_new(self, mock_get):
        mock_get.side_effect = [
            make_response(
                [
                    {"id": "a", "timestamp": "2019-01-01"},
                    {"id": "b", "timestamp": "2019-01-02"},
                ]
            ),
            make_response(
                [
                    {"id": "b", "timestamp": "2019-01-02"},
                    {"id": "c", "timestamp": "2019-01-03"},
                ]
            ),
            make_response([{"id": "c", "timestamp": "2019-01-03"}]),
        ]
        source = self.source.filter(Filter.newer_than("timestamp", BEGINNING_OF_TIME))

        self.assertEqual([r["id"] for r in source], ["a", "b", "c"])
        self.assertEqual(
            [c[1]["params"] for c in mock_get.call_args_list],
            [
                {"since": ""},
                {"since": "2019-01-02"},
                {"since": "2019-01-03"},
            ],
        )

    @mock.patch("lastmodsync.adapters.http.requests.get")
    def test_filter_is_strict(self, mock_get):
        mock_get.side_effect = [
            make_response(
                [
                    {"id": "a", "timestamp": "2019-01-01"},
                    {"id": "b", "timestamp": "2019-01-02"},
                ]
            ),
            make_response([]),
        ]
        source = self.source.filter(Filter.newer_than("timestamp", "2019-01-01"))
        self.assertEqual([r["id"] for r in source], ["b"])
        self.assertEqual(mock_get.call_args_list[0][1]["params"], {"since": "2019-01-01"})

    def test_only_timestamp_filters_are_supported(self):
        self.assertRaises(
            exceptions.UnsupportedQuery,
            self.source.filter,
            Filter.newer_than("other", "x"),
        )
        self.assertRaises(
            exceptions.UnsupportedQuery,
            self.source.filter,
            Filter("timestamp", "lt", "x"),
        )

    def test_sorting_matches_feed_order(self):
        self.assertIsInstance(
            self.source.sort_ascending("timestamp"), http.ChangesFeedSource
        )
        self.assertRaises(exceptions.UnsupportedQuery, self.source.sort_ascending, "id")

    @mock.patch("lastmodsync.adapters.http.requests.get")
    def test_invalid_json(self, mock_get):
        response = mock.Mock()
        response.content = b"<html>"
        mock_get.return_value = response
        self.assertRaises(exceptions.RemoteUnavailable, list, self.source)

    @mock.patch("lastmodsync.adapters.http.requests.get")
    def test_records_sharing_a_timestamp_are_not_dropped(self, mock_get):
        mock_get.side_effect = [
            make_response(
                [
                    {"id": "a", "timestamp": "2019-01-01"},
                    {"id": "b", "timestamp": "2019-01-01"},
                ]
            ),
            make_response(
                [
                    {"id": "a", "timestamp": "2019-01-01"},
                    {"id": "b", "timestamp": "2019-01-01"},
                    {"id": "c", "timestamp": "2019-01-01"},
                    {"id": "d", "timestamp": "2019-01-02"},
                ]
            ),
            make_response([{"id": "d", "timestamp": "2019-01-02"}]),
        ]

        self.assertEqual([r["id"] for r in self.source], ["a", "b", "c", "d"])
        self.assertEqual(
            [c[1]["params"] for c in mock_get.call_args_list],
            [
                {"since": ""},
                {"since": "2019-01-01"},
                {"since": "2019-01-02"},
            ],
        )

    @mock.patch("lastmodsync.adapters.http.requests.get")
    def test_key_field_identifies_repeated_records(self, mock_get):
        mock_get.side_effect = [
            make_response([{"pid": "a", "ts": 1}, {"pid": "b", "ts": 1}]),
            make_response([{"pid": "b", "ts": 1}]),
        ]
        source = http.ChangesFeedSource(
            "http://feed/changes", timestamp_field="ts", key_field="pid"
        ).filter(Filter.newer_than("ts", 0))
        self.assertEqual([r["pid"] for r in source], ["a", "b"])

    @mock.patch("lastmodsync.adapters.http.requests.get")
    def test_repeated_key_is_yielded_once_per_change(self, mock_get):
        mock_get.side_effect = [
            make_response(
                [
                    {"id": "a", "timestamp": "2019-01-01", "rev": 1},
                    {"id": "a", "timestamp": "2019-01-02", "rev": 2},
                ]
            ),
            make_response([{"id": "a", "timestamp": "2019-01-02", "rev": 2}]),
        ]
        self.assertEqual([r["rev"] for r in self.source], [1, 2])
