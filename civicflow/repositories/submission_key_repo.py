"""Submission Key Repository - local_id idempotency for offline drafts"""
from datetime import datetime
from typing import Optional
from motor.motor_asyncio import AsyncIOMotorCollection
from pymongo.errors import DuplicateKeyError, PyMongoError

from .async_mongo import SUBMISSION_KEYS_COLLECTION, get_async_collection
from ..domain.models import SubmissionKey
from ..domain.errors import DuplicateSubmissionError, PersistenceError
from ..utils.time import ensure_utc, utc_now
from ..utils.logger import get_logger

logger = get_logger(__name__)


class SubmissionKeyRepository:
    """
    One document per accepted local_id

    A TTL index on claimed_at purges keys after the retention window; since
    TTL deletion is lazy, every read also compares claimed_at to `since`.
    """

    def __init__(self, collection: Optional[AsyncIOMotorCollection] = None):
        self._keys = collection if collection is not None else get_async_collection(SUBMISSION_KEYS_COLLECTION)

    async def find_active(self, local_id: str, since: datetime) -> Optional[SubmissionKey]:
        """Key for local_id claimed at or after `since`"""
        doc = await self._keys.find_one({"local_id": local_id, "claimed_at": {"$gte": since}})
        if not doc:
            return None
        doc.pop("_id", None)
        return SubmissionKey.model_validate(doc)

    async def claim(self, local_id: str, complaint_id: str, since: datetime) -> SubmissionKey:
        """
        Atomically claim local_id for complaint_id

        Raises:
            DuplicateSubmissionError: local_id already claimed inside the window
        """
        key = SubmissionKey(local_id=local_id, complaint_id=complaint_id, claimed_at=utc_now())
        doc = key.model_dump()
        doc["_id"] = local_id

        try:
            await self._keys.insert_one(doc)
            return key
        except DuplicateKeyError:
            pass
        except PyMongoError as e:
            raise PersistenceError(f"Failed to claim submission key {local_id}: {e}") from e

        existing = await self._keys.find_one({"_id": local_id})
        if existing and ensure_utc(existing["claimed_at"]) >= since:
            raise DuplicateSubmissionError(
                f"local_id {local_id} already submitted",
                original_complaint_id=existing.get("complaint_id"),
                details={"local_id": local_id}
            )

        # Expired key the TTL monitor has not removed yet: take it over
        result = await self._keys.replace_one(
            {"_id": local_id, "claimed_at": {"$lt": since}},
            doc
        )
        if result.modified_count == 0:
            winner = await self._keys.find_one({"_id": local_id})
            raise DuplicateSubmissionError(
                f"local_id {local_id} already submitted",
                original_complaint_id=winner.get("complaint_id") if winner else None,
                details={"local_id": local_id}
            )
        logger.info(f"Reclaimed expired submission key {local_id}", extra={"local_id": local_id})
        return key

    async def release(self, local_id: str, complaint_id: str) -> None:
        """Drop a claim whose complaint was never persisted"""
        await self._keys.delete_one({"_id": local_id, "complaint_id": complaint_id})
