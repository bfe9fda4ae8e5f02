import logging
from decimal import Decimal
from typing import List, Optional

from shared.utils import settings
from checkout_service.cart_store import CartStore
from checkout_service.collaborators import AddressBookClient, CatalogClient
from checkout_service.errors import CheckoutInProgress, EmptyCart
from checkout_service.gateway import PaymentGateway
from checkout_service.intent_store import IntentStore
from checkout_service.locks import KeyedLocks
from checkout_service.models import CartItemDB, IntentLineItem, IntentStatus, PaymentIntentDB

logger = logging.getLogger(__name__)


class OrderIntentBuilder:
    """Turns a buyer's cart into a priced payment intent registered with the gateway.

    The cart is only read. Prices and product details are locked when the
    intent is created, so later catalog changes never alter what the buyer
    pays or what the order records.

    An open intent (``Created`` or ``Verified``) reserves the cart lines it
    covers until it commits, fails or expires. Checking out the same cart
    again returns that intent instead of registering a second payment.
    """

    def __init__(self, cart_store: CartStore, intent_store: IntentStore,
                 gateway: PaymentGateway, catalog: CatalogClient,
                 address_book: AddressBookClient, currency: str = settings.CURRENCY,
                 locks: Optional[KeyedLocks] = None):
        self.cart_store = cart_store
        self.intent_store = intent_store
        self.gateway = gateway
        self.catalog = catalog
        self.address_book = address_book
        self.currency = currency
        self.locks = locks or KeyedLocks()

    def checkout_lock(self, buyer_id: str):
        return self.locks.hold(f"checkout:{buyer_id}")

    async def create_intent(self, buyer_id: str, address_id: str,
                            request_id: Optional[str] = None) -> PaymentIntentDB:
        address = await self.address_book.get_address(buyer_id, address_id, request_id)

        async with self.checkout_lock(buyer_id):
            items = await self.cart_store.snapshot(buyer_id)
            if not items:
                raise EmptyCart()

            existing = await self._open_intent_for(buyer_id, str(address_id), items)
            if existing is not None:
                logger.info(
                    "Checkout repeated for an unchanged cart, returning the open intent",
                    extra={"intent_id": existing.intent_id, "buyer_id": buyer_id}
                )
                return existing

            line_items = []
            amount = Decimal("0.00")
            for item in items:
                product = await self.catalog.get_product(item.product_id, request_id)
                line = IntentLineItem(
                    cart_item_id=item.id,
                    product_id=item.product_id,
                    product_name=product.get("name"),
                    category=product.get("category"),
                    quantity=item.quantity,
                    unit_cost=self.catalog.price_of(product, item.product_id),
                )
                amount += line.line_total
                line_items.append(line)

            # Nothing is persisted if the gateway call fails; the caller may retry
            remote = await self.gateway.create_remote_order(amount, self.currency, receipt=f"buyer_{buyer_id}")

            intent = PaymentIntentDB(
                _id=remote.intent_id,
                buyer_id=buyer_id,
                address_id=str(address_id),
                address=address,
                line_items=line_items,
                amount=amount,
                currency=remote.currency,
                gateway_order_ref=remote.gateway_order_ref,
            )
            await self.intent_store.insert(intent)

        logger.info(
            f"Payment intent created for {len(line_items)} item(s), amount {amount} {intent.currency}",
            extra={"intent_id": intent.intent_id, "buyer_id": buyer_id}
        )
        return intent

    async def _open_intent_for(self, buyer_id: str, address_id: str,
                               items: List[CartItemDB]) -> Optional[PaymentIntentDB]:
        """The open intent covering exactly this cart, or None if no open intent touches it.

        Raises ``CheckoutInProgress`` when an open intent holds some of these
        lines but the cart (or address) has changed since, or when the
        payment for it is already verified.
        """
        wanted = {(item.id, item.quantity) for item in items}
        wanted_ids = {item.id for item in items}

        for intent in await self.intent_store.list_open(buyer_id):
            held = {(line.cart_item_id, line.quantity) for line in intent.line_items}
            if not wanted_ids & {line.cart_item_id for line in intent.line_items}:
                continue
            if intent.status == IntentStatus.CREATED and held == wanted and intent.address_id == address_id:
                return intent
            logger.warning(
                f"Checkout blocked by open intent in state {intent.status}",
                extra={"intent_id": intent.intent_id, "buyer_id": buyer_id}
            )
            raise CheckoutInProgress(intent.intent_id)
        return None
