"""
MongoDB access for the RAG API.

A single MongoClient is created lazily and reused for the lifetime of the
process. Every endpoint reaches the database through this module.
"""

import logging
import threading
import time
from typing import Any, Dict, Optional

from bson import ObjectId
from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from rag_api.config import Settings

logger = logging.getLogger(__name__)

_client: Optional[MongoClient] = None
_client_lock = threading.Lock()


def get_mongo_client(settings: Settings) -> MongoClient:
    """
    Return the cached MongoClient, connecting on first use.

    Args:
        settings: Application settings holding the connection string

    Returns:
        Connected MongoClient

    Raises:
        PyMongoError: If the server cannot be reached
    """
    global _client

    if _client is not None:
        return _client

    with _client_lock:
        if _client is None:
            logger.info("Attempting to connect to MongoDB...")
            client = MongoClient(
                settings.mongodb_uri,
                serverSelectionTimeoutMS=settings.mongodb_server_selection_timeout_ms,
                connectTimeoutMS=settings.mongodb_connect_timeout_ms,
                socketTimeoutMS=settings.mongodb_socket_timeout_ms,
                maxPoolSize=settings.mongodb_max_pool_size,
                minPoolSize=0,
            )
            try:
                client.admin.command("ping")
            except PyMongoError as e:
                logger.error(f"MongoDB connection error: {e}")
                client.close()
                raise
            logger.info("Successfully connected to MongoDB")
            _client = client

    return _client


def get_database(settings: Settings, db_name: Optional[str] = None) -> Database:
    """Get a database handle from the cached client."""
    client = get_mongo_client(settings)
    return client[db_name or settings.mongodb_db_name]


def ping_database(settings: Settings) -> float:
    """
    Ping the configured database.

    Returns:
        Elapsed time in milliseconds, connection time included on first use
    """
    start_time = time.time()
    database = get_database(settings)
    database.command("ping")
    return (time.time() - start_time) * 1000


def close_mongo_client() -> None:
    """Close and forget the cached client."""
    global _client

    with _client_lock:
        if _client is not None:
            _client.close()
            logger.info("MongoDB connection closed")
        _client = None


def _serialize_value(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return serialize_document(value)
    if isinstance(value, (list, tuple)):
        return [_serialize_value(item) for item in value]
    return value


def serialize_document(document: Dict[str, Any]) -> Dict[str, Any]:
    """Make a MongoDB document JSON friendly by stringifying ObjectIds, nested ones included."""
    return {key: _serialize_value(value) for key, value in document.items()}
