import logging
from datetime import datetime
from typing import List, Optional

from checkout_service.models import IntentStatus, PaymentIntentDB, TRANSITIONS

logger = logging.getLogger(__name__)


class IntentStore:
    """Payment intents keyed by the gateway order id.

    Status changes are compare-and-set updates on the expected current status,
    so a transition can only move forward and only once.
    """

    def __init__(self, db):
        self.collection = db.payment_intents

    async def create_indexes(self):
        await self.collection.create_index([("status", 1), ("created_at", 1)])
        await self.collection.create_index([("buyer_id", 1), ("status", 1)])

    async def insert(self, intent: PaymentIntentDB) -> None:
        await self.collection.insert_one(intent.model_dump(by_alias=True))

    async def get(self, intent_id: str) -> Optional[PaymentIntentDB]:
        doc = await self.collection.find_one({"_id": intent_id})
        return PaymentIntentDB(**doc) if doc else None

    async def transition(self, intent_id: str, current: IntentStatus, new: IntentStatus, **fields) -> bool:
        """Move ``intent_id`` from ``current`` to ``new``; False if it was not in ``current``."""
        if new not in TRANSITIONS[IntentStatus(current)]:
            raise ValueError(f"Illegal intent transition {current} -> {new}")
        update = {"status": IntentStatus(new).value, "updated_at": datetime.utcnow(), **fields}
        result = await self.collection.update_one(
            {"_id": intent_id, "status": IntentStatus(current).value},
            {"$set": update}
        )
        if result.modified_count:
            logger.info(f"Intent {current} -> {new}", extra={"intent_id": intent_id})
        return result.modified_count == 1

    async def record_commit_attempt(self, intent_id: str) -> None:
        await self.collection.update_one({"_id": intent_id}, {"$inc": {"commit_attempts": 1}})

    async def list_stale(self, older_than: datetime) -> List[PaymentIntentDB]:
        cursor = self.collection.find({
            "status": IntentStatus.CREATED.value,
            "created_at": {"$lt": older_than},
        })
        return [PaymentIntentDB(**doc) async for doc in cursor]

    async def list_by_status(self, status: IntentStatus) -> List[PaymentIntentDB]:
        cursor = self.collection.find({"status": IntentStatus(status).value})
        return [PaymentIntentDB(**doc) async for doc in cursor]

    async def list_open(self, buyer_id: str) -> List[PaymentIntentDB]:
        """The buyer's intents that still hold cart lines (Created or Verified)."""
        cursor = self.collection.find({
            "buyer_id": buyer_id,
            "status": {"$in": [IntentStatus.CREATED.value, IntentStatus.VERIFIED.value]},
        }).sort("created_at", 1)
        return [PaymentIntentDB(**doc) async for doc in cursor]
