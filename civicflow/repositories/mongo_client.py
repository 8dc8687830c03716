"""MongoDB Client - Connection, Collection and Index Management"""
from typing import Any, Dict, Optional
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure

from ..config.settings import settings
from .async_mongo import AUDIT_EVENTS_COLLECTION, COMPLAINTS_COLLECTION, SUBMISSION_KEYS_COLLECTION
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the application database"""
    global _database
    if _database is None:
        client = get_client()
        _database = client[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def get_collection(name: str) -> Collection:
    """Get a collection from the database"""
    return get_database()[name]


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def create_indexes() -> None:
    """Create all required indexes"""
    db = get_database()
    logger.info("Creating MongoDB indexes...")

    # Complaints (dashboard filters: type, status, date range, department)
    complaints = db[COMPLAINTS_COLLECTION]
    complaints.create_index("complaint_id", unique=True)
    complaints.create_index([("status", ASCENDING), ("created_at", DESCENDING)])
    complaints.create_index([("complaint_type", ASCENDING), ("created_at", DESCENDING)])
    complaints.create_index("routing.department_id")
    complaints.create_index("review_tags")
    complaints.create_index("local_id", sparse=True)

    # Idempotency keys expire after the retention window
    submission_keys = db[SUBMISSION_KEYS_COLLECTION]
    submission_keys.create_index("local_id", unique=True)
    submission_keys.create_index(
        "claimed_at",
        expireAfterSeconds=settings.dedup_retention_seconds
    )

    # Department mappings
    department_mappings = db["department_mappings"]
    department_mappings.create_index(
        [("complaint_type", ASCENDING), ("department_id", ASCENDING)],
        unique=True
    )

    # Audit events
    audit_events = db[AUDIT_EVENTS_COLLECTION]
    audit_events.create_index("audit_event_id", unique=True)
    audit_events.create_index([("complaint_id", ASCENDING), ("timestamp", ASCENDING)])
    audit_events.create_index("event_type")
    audit_events.create_index("correlation_id")

    logger.info("MongoDB indexes created successfully")


def health_check() -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        client = get_client()
        client.admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok"
        }
    except Exception as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
