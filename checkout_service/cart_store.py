import logging
from typing import Iterable, List, Optional

from pymongo.errors import DuplicateKeyError

from shared.utils import settings
from checkout_service.errors import CartFull, DuplicateItem, ItemNotFound
from checkout_service.locks import KeyedLocks
from checkout_service.models import CartItemDB

logger = logging.getLogger(__name__)


def clamp_quantity(quantity: int, low: int = settings.MIN_QUANTITY, high: int = settings.MAX_QUANTITY) -> int:
    return max(low, min(high, int(quantity)))


class CartStore:
    """Per-buyer cart lines in the ``cart_items`` collection.

    Every mutation for a buyer runs under that buyer's lock, so the capacity
    and uniqueness checks cannot interleave with another add. The unique
    ``(buyer_id, product_id)`` index catches duplicates coming from other
    processes.
    """

    def __init__(self, db, locks: Optional[KeyedLocks] = None,
                 max_items: int = settings.CART_MAX_ITEMS):
        self.collection = db.cart_items
        self.locks = locks or KeyedLocks()
        self.max_items = max_items

    async def create_indexes(self):
        await self.collection.create_index([("buyer_id", 1), ("product_id", 1)], unique=True)
        await self.collection.create_index("buyer_id")

    def buyer_lock(self, buyer_id: str):
        return self.locks.hold(f"buyer:{buyer_id}")

    async def add_item(self, buyer_id: str, product_id: str, quantity: int = 1) -> int:
        async with self.buyer_lock(buyer_id):
            existing = await self.collection.find_one({"buyer_id": buyer_id, "product_id": product_id})
            if existing:
                raise DuplicateItem()

            size = await self.collection.count_documents({"buyer_id": buyer_id})
            if size >= self.max_items:
                logger.info("Cart limit reached", extra={"buyer_id": buyer_id})
                raise CartFull(self.max_items)

            item = CartItemDB(buyer_id=buyer_id, product_id=product_id, quantity=clamp_quantity(quantity))
            try:
                await self.collection.insert_one(item.model_dump(by_alias=True))
            except DuplicateKeyError:
                raise DuplicateItem()
            return size + 1

    async def update_quantity(self, buyer_id: str, product_id: str, quantity: int) -> CartItemDB:
        quantity = clamp_quantity(quantity)
        async with self.buyer_lock(buyer_id):
            result = await self.collection.update_one(
                {"buyer_id": buyer_id, "product_id": product_id},
                {"$set": {"quantity": quantity}}
            )
            if result.matched_count == 0:
                raise ItemNotFound()
            doc = await self.collection.find_one({"buyer_id": buyer_id, "product_id": product_id})
        return CartItemDB(**doc)

    async def remove_item(self, buyer_id: str, product_id: str) -> None:
        async with self.buyer_lock(buyer_id):
            await self.collection.delete_one({"buyer_id": buyer_id, "product_id": product_id})

    async def get_item(self, item_id: str) -> Optional[CartItemDB]:
        doc = await self.collection.find_one({"_id": item_id})
        return CartItemDB(**doc) if doc else None

    async def remove_by_id(self, item_id: str) -> Optional[CartItemDB]:
        item = await self.get_item(item_id)
        if item is None:
            return None
        async with self.buyer_lock(item.buyer_id):
            await self.collection.delete_one({"_id": item_id})
        return item

    async def clear_cart(self, buyer_id: str) -> int:
        async with self.buyer_lock(buyer_id):
            result = await self.collection.delete_many({"buyer_id": buyer_id})
        return result.deleted_count

    async def remove_items(self, buyer_id: str, item_ids: Iterable[str]) -> int:
        """Remove exactly these cart lines; lines added later are left alone."""
        item_ids = list(item_ids)
        if not item_ids:
            return 0
        async with self.buyer_lock(buyer_id):
            result = await self.collection.delete_many({"buyer_id": buyer_id, "_id": {"$in": item_ids}})
        return result.deleted_count

    async def snapshot(self, buyer_id: str) -> List[CartItemDB]:
        async with self.buyer_lock(buyer_id):
            cursor = self.collection.find({"buyer_id": buyer_id}).sort("added_at", 1)
            docs = await cursor.to_list(length=None)
        return [CartItemDB(**doc) for doc in docs]

    async def size(self, buyer_id: str) -> int:
        return await self.collection.count_documents({"buyer_id": buyer_id})
