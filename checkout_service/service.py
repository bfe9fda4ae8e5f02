from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from checkout_service.cart_store import CartStore
from checkout_service.collaborators import AddressBookClient, CatalogClient
from checkout_service.errors import ProductNotFound
from checkout_service.gateway import PaymentGateway
from checkout_service.intent_store import IntentStore
from checkout_service.intents import OrderIntentBuilder
from checkout_service.locks import KeyedLocks
from checkout_service.order_store import OrderStore
from checkout_service.reconciliation import ReconciliationEngine
from checkout_service.sweeper import IntentSweeper


@dataclass
class CheckoutService:
    """Wiring of stores, collaborators and the checkout state machine."""

    cart_store: CartStore
    intent_store: IntentStore
    order_store: OrderStore
    gateway: PaymentGateway
    catalog: CatalogClient
    address_book: AddressBookClient
    builder: OrderIntentBuilder
    engine: ReconciliationEngine
    sweeper: IntentSweeper

    @classmethod
    def build(cls, db, gateway: PaymentGateway, catalog: CatalogClient,
              address_book: AddressBookClient, **engine_options) -> "CheckoutService":
        # Cart mutations, checkouts and the commit's cart clear share one lock table
        locks = KeyedLocks()
        cart_store = CartStore(db, locks=locks)
        intent_store = IntentStore(db)
        order_store = OrderStore(db)
        builder = OrderIntentBuilder(cart_store, intent_store, gateway, catalog, address_book, locks=locks)
        engine = ReconciliationEngine(intent_store, order_store, cart_store, gateway, locks=locks, **engine_options)
        sweeper = IntentSweeper(intent_store, engine)
        return cls(
            cart_store=cart_store,
            intent_store=intent_store,
            order_store=order_store,
            gateway=gateway,
            catalog=catalog,
            address_book=address_book,
            builder=builder,
            engine=engine,
            sweeper=sweeper,
        )

    async def create_indexes(self):
        await self.cart_store.create_indexes()
        await self.intent_store.create_indexes()
        await self.order_store.create_indexes()

    async def get_cart(self, buyer_id: str, request_id: Optional[str] = None) -> List[dict]:
        """Cart lines priced at the current catalog cost, for display only."""
        lines = []
        for item in await self.cart_store.snapshot(buyer_id):
            try:
                product = await self.catalog.get_product(item.product_id, request_id)
                unit_cost = self.catalog.price_of(product, item.product_id)
                name, category = product.get("name"), product.get("category")
            except ProductNotFound:
                # Product was delisted after it was carted; still show the line
                unit_cost, name, category = Decimal("0.00"), None, None
            lines.append({
                "id": item.id,
                "product_id": item.product_id,
                "product_name": name,
                "category": category,
                "unit_cost": unit_cost,
                "quantity": item.quantity,
                "line_total": unit_cost * item.quantity,
                "added_at": item.added_at,
            })
        return lines
