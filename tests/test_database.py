"""Unit tests for the shared MongoDB client."""

import unittest
from unittest.mock import MagicMock, patch

from bson import ObjectId
from pymongo.errors import ServerSelectionTimeoutError

from rag_api import database
from rag_api.config import Settings
from rag_api.database import (
    close_mongo_client,
    get_database,
    get_mongo_client,
    ping_database,
    serialize_document,
)


class TestMongoClient(unittest.TestCase):
    """Test cases for the cached client."""

    def setUp(self) -> None:
        close_mongo_client()
        self.settings = Settings(mongodb_uri="mongodb://localhost:27017", mongodb_db_name="ragDatabase")
        patcher = patch("rag_api.database.MongoClient")
        self.mock_client_class = patcher.start()
        self.addCleanup(patcher.stop)
        self.mock_client = self.mock_client_class.return_value

    def tearDown(self) -> None:
        close_mongo_client()

    def test_client_created_once(self) -> None:
        first = get_mongo_client(self.settings)
        second = get_mongo_client(self.settings)

        self.assertIs(first, second)
        self.mock_client_class.assert_called_once_with(
            "mongodb://localhost:27017",
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=10000,
            socketTimeoutMS=30000,
            maxPoolSize=10,
            minPoolSize=0,
        )
        self.mock_client.admin.command.assert_called_once_with("ping")

    def test_failed_ping_is_not_cached(self) -> None:
        self.mock_client.admin.command.side_effect = ServerSelectionTimeoutError("no servers")

        with self.assertRaises(ServerSelectionTimeoutError):
            get_mongo_client(self.settings)

        self.mock_client.close.assert_called_once()
        self.assertIsNone(database._client)

    def test_get_database_uses_configured_name(self) -> None:
        get_database(self.settings)
        self.mock_client.__getitem__.assert_called_with("ragDatabase")

        get_database(self.settings, "kag-database")
        self.mock_client.__getitem__.assert_called_with("kag-database")

    def test_ping_database(self) -> None:
        db = MagicMock()
        self.mock_client.__getitem__.return_value = db

        elapsed = ping_database(self.settings)

        db.command.assert_called_once_with("ping")
        self.assertGreaterEqual(elapsed, 0)

    def test_close_resets_client(self) -> None:
        get_mongo_client(self.settings)

        close_mongo_client()

        self.mock_client.close.assert_called_once()
        self.assertIsNone(database._client)


class TestSerializeDocument(unittest.TestCase):
    """Test cases for serialize_document."""

    def test_object_ids_become_strings(self) -> None:
        outer, inner = ObjectId(), ObjectId()

        serialized = serialize_document({"_id": outer, "meta": {"ref": inner, "n": 1}, "text": "x"})

        self.assertEqual(serialized, {"_id": str(outer), "meta": {"ref": str(inner), "n": 1}, "text": "x"})

    def test_object_ids_inside_arrays(self) -> None:
        first, second, nested = ObjectId(), ObjectId(), ObjectId()

        serialized = serialize_document({
            "refs": [first, second],
            "links": [{"target": nested}, "plain", 3],
            "tags": ["a", "b"],
        })

        self.assertEqual(serialized, {
            "refs": [str(first), str(second)],
            "links": [{"target": str(nested)}, "plain", 3],
            "tags": ["a", "b"],
        })


if __name__ == "__main__":
    unittest.main()
