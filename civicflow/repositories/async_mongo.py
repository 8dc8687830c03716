"""Async MongoDB Client - Motor connection for the complaint, key and audit stores"""
from typing import Any, Dict, Optional
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorCollection, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

COMPLAINTS_COLLECTION = "complaints"
SUBMISSION_KEYS_COLLECTION = "submission_keys"
AUDIT_EVENTS_COLLECTION = "audit_events"

# Collections written through Motor
STORE_COLLECTIONS = (COMPLAINTS_COLLECTION, SUBMISSION_KEYS_COLLECTION, AUDIT_EVENTS_COLLECTION)

_async_client: Optional[AsyncIOMotorClient] = None
_async_database: Optional[AsyncIOMotorDatabase] = None


def get_async_client() -> AsyncIOMotorClient:
    """Get or create the Motor client (tz-aware, so stored datetimes come back in UTC)"""
    global _async_client
    if _async_client is None:
        logger.info(f"Creating async MongoDB client for: {settings.mongo_uri}")
        _async_client = AsyncIOMotorClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
            tz_aware=True,
        )
    return _async_client


def get_async_database() -> AsyncIOMotorDatabase:
    global _async_database
    if _async_database is None:
        _async_database = get_async_client()[settings.mongo_db]
    return _async_database


def get_async_collection(name: str) -> AsyncIOMotorCollection:
    return get_async_database()[name]


async def close_async_connection() -> None:
    """Close the Motor client"""
    global _async_client, _async_database
    if _async_client is not None:
        _async_client.close()
        _async_client = None
        _async_database = None
        logger.info("Async MongoDB connection closed")


async def async_health_check() -> Dict[str, Any]:
    """
    Ping through Motor and report store collections that do not exist yet

    A missing collection is not unhealthy (Mongo creates it on first write),
    but before create_indexes() has run it means the TTL index is absent.
    """
    try:
        database = get_async_database()
        await database.command("ping")
        existing = set(await database.list_collection_names())
    except PyMongoError as e:
        logger.error(f"Async MongoDB health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}
    return {
        "status": "healthy",
        "missing_collections": [name for name in STORE_COLLECTIONS if name not in existing],
    }
