import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from pymongo.errors import AutoReconnect

from checkout_service.errors import (
    AddressNotFound, CheckoutInProgress, CommitFailed, EmptyCart, GatewayUnavailable,
    ProductNotFound, SignatureInvalid,
)
from checkout_service.models import IntentStatus
from tests.conftest import ADDRESS_ID, BUYER, OTHER_BUYER


async def test_intent_prices_cart_at_creation(checkout, gateway):
    await checkout.cart_store.add_item(BUYER, "7", 2)

    intent = await checkout.builder.create_intent(BUYER, ADDRESS_ID)

    assert intent.amount == Decimal("200.00")
    assert intent.currency == "INR"
    assert intent.status == IntentStatus.CREATED
    assert intent.intent_id.startswith("order_fake_")
    assert [(l.product_id, l.quantity, l.unit_cost) for l in intent.line_items] == [("7", 2, Decimal("100.00"))]
    assert intent.address.city == "Bengaluru"
    assert intent.address.pincode == "560001"
    assert gateway.calls[0]["amount"] == Decimal("200.00")

    stored = await checkout.intent_store.get(intent.intent_id)
    assert stored.amount == Decimal("200.00")
    assert stored.status == IntentStatus.CREATED


async def test_cart_is_left_untouched(checkout):
    await checkout.cart_store.add_item(BUYER, "7", 2)
    await checkout.cart_store.add_item(BUYER, "9", 1)

    intent = await checkout.builder.create_intent(BUYER, ADDRESS_ID)

    assert intent.amount == Decimal("245.50")
    assert await checkout.cart_store.size(BUYER) == 2


async def test_empty_cart(checkout, gateway):
    with pytest.raises(EmptyCart):
        await checkout.builder.create_intent(BUYER, ADDRESS_ID)
    assert gateway.calls == []


@pytest.mark.parametrize("address_id", ["21", "999"])
async def test_address_must_belong_to_buyer(checkout, address_id):
    await checkout.cart_store.add_item(BUYER, "7")
    with pytest.raises(AddressNotFound):
        await checkout.builder.create_intent(BUYER, address_id)


async def test_buyer_without_addresses(checkout):
    await checkout.cart_store.add_item("77", "7")
    with pytest.raises(AddressNotFound):
        await checkout.builder.create_intent("77", ADDRESS_ID)


async def test_delisted_product_blocks_checkout(checkout, products, gateway):
    await checkout.cart_store.add_item(BUYER, "7")
    del products["7"]
    with pytest.raises(ProductNotFound):
        await checkout.builder.create_intent(BUYER, ADDRESS_ID)
    assert gateway.calls == []


async def test_gateway_failure_persists_nothing(checkout, gateway, db):
    await checkout.cart_store.add_item(BUYER, "7", 2)
    gateway.configure(failure=GatewayUnavailable())

    with pytest.raises(GatewayUnavailable):
        await checkout.builder.create_intent(BUYER, ADDRESS_ID)

    assert await db.payment_intents.count_documents({}) == 0
    assert await checkout.cart_store.size(BUYER) == 1

    gateway.configure(failure=None)
    intent = await checkout.builder.create_intent(BUYER, ADDRESS_ID)
    assert intent.amount == Decimal("200.00")


async def test_repeated_checkout_returns_the_open_intent(checkout, gateway):
    await checkout.cart_store.add_item(BUYER, "7")
    first = await checkout.builder.create_intent(BUYER, ADDRESS_ID)
    second = await checkout.builder.create_intent(BUYER, ADDRESS_ID)

    assert second.intent_id == first.intent_id
    assert len(gateway.calls) == 1


async def test_concurrent_checkouts_register_one_payment(checkout, gateway, db):
    await checkout.cart_store.add_item(BUYER, "7", 2)

    intents = await asyncio.gather(*(checkout.builder.create_intent(BUYER, ADDRESS_ID) for _ in range(3)))

    assert len({intent.intent_id for intent in intents}) == 1
    assert len(gateway.calls) == 1
    assert await db.payment_intents.count_documents({}) == 1


async def test_paying_every_checkout_places_one_order_set(checkout, gateway):
    await checkout.cart_store.add_item(BUYER, "7", 2)
    intents = [await checkout.builder.create_intent(BUYER, ADDRESS_ID) for _ in range(2)]

    for n, intent in enumerate(intents):
        payment_id = f"pay_{n}"
        await checkout.engine.handle_callback(intent.intent_id, payment_id, gateway.sign(intent.intent_id, payment_id))

    orders = await checkout.order_store.list_for_buyer(BUYER)
    assert [(o.product_id, o.quantity) for o in orders] == [("7", 2)]
    assert await checkout.cart_store.size(BUYER) == 0


async def test_changed_quantity_is_blocked_while_intent_open(checkout, gateway):
    await checkout.cart_store.add_item(BUYER, "7", 1)
    first = await checkout.builder.create_intent(BUYER, ADDRESS_ID)
    await checkout.cart_store.update_quantity(BUYER, "7", 3)

    with pytest.raises(CheckoutInProgress) as exc:
        await checkout.builder.create_intent(BUYER, ADDRESS_ID)

    assert exc.value.status_code == 409
    assert exc.value.code == "CHECKOUT_IN_PROGRESS"
    assert exc.value.intent_id == first.intent_id
    assert len(gateway.calls) == 1


async def test_added_line_is_blocked_while_intent_open(checkout):
    await checkout.cart_store.add_item(BUYER, "7")
    await checkout.builder.create_intent(BUYER, ADDRESS_ID)
    await checkout.cart_store.add_item(BUYER, "9")

    with pytest.raises(CheckoutInProgress):
        await checkout.builder.create_intent(BUYER, ADDRESS_ID)


async def test_other_address_is_blocked_while_intent_open(checkout, addresses):
    addresses[BUYER].append({"id": 12, "houseNumber": "3", "street": "Brigade Road", "city": "Bengaluru",
                             "state": "Karnataka", "pincode": "560025"})
    await checkout.cart_store.add_item(BUYER, "7")
    await checkout.builder.create_intent(BUYER, ADDRESS_ID)

    with pytest.raises(CheckoutInProgress):
        await checkout.builder.create_intent(BUYER, "12")


async def test_verified_intent_holds_the_cart(checkout, gateway, monkeypatch):
    await checkout.cart_store.add_item(BUYER, "7")
    intent = await checkout.builder.create_intent(BUYER, ADDRESS_ID)

    async def broken(buyer_id, item_ids):
        raise AutoReconnect("no primary")

    monkeypatch.setattr(checkout.cart_store, "remove_items", broken)
    with pytest.raises(CommitFailed):
        await checkout.engine.handle_callback(intent.intent_id, "pay_1", gateway.sign(intent.intent_id, "pay_1"))

    # Same cart, but the payment is already taken
    with pytest.raises(CheckoutInProgress):
        await checkout.builder.create_intent(BUYER, ADDRESS_ID)


async def test_failed_intent_releases_the_cart(checkout, gateway):
    await checkout.cart_store.add_item(BUYER, "7")
    first = await checkout.builder.create_intent(BUYER, ADDRESS_ID)
    with pytest.raises(SignatureInvalid):
        await checkout.engine.handle_callback(first.intent_id, "pay_1", "0" * 64)

    second = await checkout.builder.create_intent(BUYER, ADDRESS_ID)

    assert second.intent_id != first.intent_id
    assert second.status == IntentStatus.CREATED


async def test_expired_intent_releases_the_cart(checkout):
    await checkout.cart_store.add_item(BUYER, "7")
    first = await checkout.builder.create_intent(BUYER, ADDRESS_ID)
    await checkout.sweeper.sweep_once(now=datetime.utcnow() + timedelta(hours=2))

    second = await checkout.builder.create_intent(BUYER, ADDRESS_ID)

    assert second.intent_id != first.intent_id


async def test_lines_not_held_by_open_intent_get_a_new_one(checkout):
    await checkout.cart_store.add_item(BUYER, "7")
    first = await checkout.builder.create_intent(BUYER, ADDRESS_ID)
    await checkout.cart_store.clear_cart(BUYER)
    await checkout.cart_store.add_item(BUYER, "9")

    second = await checkout.builder.create_intent(BUYER, ADDRESS_ID)

    assert second.intent_id != first.intent_id
    assert [l.product_id for l in second.line_items] == ["9"]


async def test_product_details_are_locked_at_checkout(checkout, gateway, products):
    await checkout.cart_store.add_item(BUYER, "7", 2)
    await checkout.cart_store.add_item(BUYER, "100")
    intent = await checkout.builder.create_intent(BUYER, ADDRESS_ID)
    products["7"]["name"] = "Copper Kettle"
    products["7"]["category"] = "Appliances"

    result = await checkout.engine.handle_callback(intent.intent_id, "pay_1", gateway.sign(intent.intent_id, "pay_1"))

    by_product = {order.product_id: order for order in result.orders}
    assert (by_product["7"].product_name, by_product["7"].category) == ("Steel Kettle", "Kitchen")
    assert (by_product["100"].product_name, by_product["100"].category) == ("Item 100", None)
    stored = await checkout.order_store.list_for_intent(intent.intent_id)
    assert {o.product_name for o in stored} == {"Steel Kettle", "Item 100"}



async def test_other_buyer_uses_own_address(checkout):
    await checkout.cart_store.add_item(OTHER_BUYER, "9", 2)
    intent = await checkout.builder.create_intent(OTHER_BUYER, "21")
    assert intent.amount == Decimal("91.00")
    assert intent.address.city == "Kolkata"


async def test_catalog_unit_cost(catalog, products):
    products["8"] = {"id": 8, "name": "Strainer", "price": "12.5"}

    assert await catalog.get_unit_cost("7") == Decimal("100.00")
    assert await catalog.get_unit_cost("9") == Decimal("45.50")
    assert await catalog.get_unit_cost("8") == Decimal("12.50")
    with pytest.raises(ProductNotFound):
        await catalog.get_unit_cost("404")
