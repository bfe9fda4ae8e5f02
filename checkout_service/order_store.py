from datetime import datetime
from typing import List

from checkout_service.models import OrderDB, PaymentIntentDB


class OrderStore:
    """Append-only paid orders, one row per intent line item.

    Order ids are derived from the intent id and line position, and rows are
    written with ``$setOnInsert``; writing the same intent twice leaves the
    first rows untouched.
    """

    def __init__(self, db):
        self.collection = db.orders

    async def create_indexes(self):
        await self.collection.create_index([("buyer_id", 1), ("order_date", -1)])
        await self.collection.create_index("intent_id")

    def orders_for(self, intent: PaymentIntentDB, payment_id: str, order_date: datetime) -> List[OrderDB]:
        return [
            OrderDB(
                _id=OrderDB.order_id_for(intent.intent_id, index),
                intent_id=intent.intent_id,
                buyer_id=intent.buyer_id,
                product_id=line.product_id,
                product_name=line.product_name,
                category=line.category,
                quantity=line.quantity,
                amount=line.line_total,
                currency=intent.currency,
                address=intent.address,
                payment_id=payment_id,
                order_date=order_date,
            )
            for index, line in enumerate(intent.line_items)
        ]

    async def write_orders(self, intent: PaymentIntentDB, payment_id: str) -> List[OrderDB]:
        orders = self.orders_for(intent, payment_id, datetime.utcnow())
        for order in orders:
            doc = order.model_dump(by_alias=True)
            await self.collection.update_one(
                {"_id": doc.pop("_id")},
                {"$setOnInsert": doc},
                upsert=True
            )
        return await self.list_for_intent(intent.intent_id)

    async def list_for_intent(self, intent_id: str) -> List[OrderDB]:
        cursor = self.collection.find({"intent_id": intent_id}).sort("_id", 1)
        return [OrderDB(**doc) async for doc in cursor]

    async def list_for_buyer(self, buyer_id: str) -> List[OrderDB]:
        cursor = self.collection.find({"buyer_id": buyer_id}).sort("order_date", -1)
        return [OrderDB(**doc) async for doc in cursor]
