import logging
from typing import Optional

from motor.motor_asyncio import AsyncIOMotorCollection, AsyncIOMotorDatabase

from .models import USAGE_SINGLETON_ID, UsageRecord

logger = logging.getLogger(__name__)

USAGE_COLLECTION = "gemini_usage"


class UsageStore:
    """Reads and writes the singleton usage record.

    Errors from the driver are not caught here; the ledger owns retries.
    """

    def __init__(
        self,
        db: Optional[AsyncIOMotorDatabase] = None,
        collection: Optional[AsyncIOMotorCollection] = None,
        record_id: str = USAGE_SINGLETON_ID,
    ) -> None:
        if collection is not None:
            self._col = collection
        elif db is not None:
            self._col = db[USAGE_COLLECTION]
        else:
            raise ValueError("UsageStore requires a db or collection")
        self._record_id = record_id

    async def fetch(self) -> Optional[UsageRecord]:
        doc = await self._col.find_one({"_id": self._record_id})
        if doc is None:
            return None
        return UsageRecord.from_document(doc)

    async def insert(self, record: UsageRecord) -> None:
        record.id = self._record_id
        await self._col.insert_one(record.to_document())

    async def update(self, record: UsageRecord) -> None:
        fields = record.model_dump(exclude={"id"})
        await self._col.update_one({"_id": self._record_id}, {"$set": fields}, upsert=True)
