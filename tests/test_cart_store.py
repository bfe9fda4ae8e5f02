"""Tests for the per-buyer cart store."""

import asyncio
from decimal import Decimal

import pytest

from checkout_service.cart_store import CartStore, clamp_quantity
from checkout_service.errors import CartFull, DuplicateItem, ItemNotFound


@pytest.fixture
def cart(db):
    return CartStore(db, max_items=10)


class TestAddItem:
    async def test_returns_new_cart_size(self, cart):
        assert await cart.add_item("1", "7", 2) == 1
        assert await cart.add_item("1", "9") == 2

    async def test_duplicate_product_is_rejected(self, cart):
        await cart.add_item("1", "7")
        with pytest.raises(DuplicateItem) as exc:
            await cart.add_item("1", "7", 3)
        assert exc.value.code == "DUPLICATE_ITEM"
        items = await cart.snapshot("1")
        assert [(i.product_id, i.quantity) for i in items] == [("7", 1)]

    async def test_same_product_for_different_buyers(self, cart):
        await cart.add_item("1", "7")
        assert await cart.add_item("2", "7") == 1

    async def test_full_cart_is_rejected(self, cart):
        for pid in range(10):
            await cart.add_item("1", str(pid))
        with pytest.raises(CartFull) as exc:
            await cart.add_item("1", "99")
        assert exc.value.code == "CART_FULL"
        assert await cart.size("1") == 10

    async def test_initial_quantity_is_clamped(self, cart):
        await cart.add_item("1", "7", 40)
        (item,) = await cart.snapshot("1")
        assert item.quantity == 10

    async def test_concurrent_adds_never_exceed_limit(self, cart):
        results = await asyncio.gather(
            *(cart.add_item("1", str(pid)) for pid in range(15)),
            return_exceptions=True,
        )
        assert sum(isinstance(r, int) for r in results) == 10
        assert sum(isinstance(r, CartFull) for r in results) == 5
        assert await cart.size("1") == 10

    async def test_concurrent_duplicate_adds_insert_once(self, cart):
        results = await asyncio.gather(
            *(cart.add_item("1", "7") for _ in range(5)),
            return_exceptions=True,
        )
        assert results.count(1) == 1
        assert sum(isinstance(r, DuplicateItem) for r in results) == 4


class TestUpdateQuantity:
    async def test_upper_bound_clamps_to_ten(self, cart):
        await cart.add_item("1", "7", 2)
        item = await cart.update_quantity("1", "7", 15)
        assert item.quantity == 10

    async def test_lower_bound_clamps_to_one(self, cart):
        await cart.add_item("1", "7", 2)
        item = await cart.update_quantity("1", "7", 0)
        assert item.quantity == 1

    async def test_missing_item(self, cart):
        with pytest.raises(ItemNotFound):
            await cart.update_quantity("1", "7", 3)

    def test_clamp_helper(self):
        assert clamp_quantity(-5) == 1
        assert clamp_quantity(5) == 5
        assert clamp_quantity(11) == 10


class TestRemoval:
    async def test_remove_absent_item_is_silent(self, cart):
        await cart.remove_item("1", "7")
        assert await cart.size("1") == 0

    async def test_remove_item(self, cart):
        await cart.add_item("1", "7")
        await cart.add_item("1", "9")
        await cart.remove_item("1", "7")
        assert [i.product_id for i in await cart.snapshot("1")] == ["9"]

    async def test_remove_by_id(self, cart):
        await cart.add_item("1", "7")
        (item,) = await cart.snapshot("1")
        removed = await cart.remove_by_id(item.id)
        assert removed.product_id == "7"
        assert await cart.remove_by_id(item.id) is None

    async def test_clear_empty_cart_is_silent(self, cart):
        assert await cart.clear_cart("1") == 0

    async def test_clear_only_touches_one_buyer(self, cart):
        await cart.add_item("1", "7")
        await cart.add_item("2", "7")
        await cart.clear_cart("1")
        assert await cart.size("1") == 0
        assert await cart.size("2") == 1

    async def test_remove_items_keeps_unlisted_lines(self, cart):
        await cart.add_item("1", "7")
        snapshot = await cart.snapshot("1")
        await cart.add_item("1", "9")
        removed = await cart.remove_items("1", [i.id for i in snapshot])
        assert removed == 1
        assert [i.product_id for i in await cart.snapshot("1")] == ["9"]

    async def test_remove_items_is_idempotent(self, cart):
        await cart.add_item("1", "7")
        ids = [i.id for i in await cart.snapshot("1")]
        assert await cart.remove_items("1", ids) == 1
        assert await cart.remove_items("1", ids) == 0
        assert await cart.remove_items("1", []) == 0


class TestCartView:
    async def test_lines_carry_current_prices(self, checkout):
        await checkout.cart_store.add_item("1", "7", 2)
        await checkout.cart_store.add_item("1", "9", 1)

        lines = {line["product_id"]: line for line in await checkout.get_cart("1")}

        assert lines["7"]["unit_cost"] == Decimal("100.00")
        assert lines["7"]["line_total"] == Decimal("200.00")
        assert lines["7"]["product_name"] == "Steel Kettle"
        assert lines["9"]["line_total"] == Decimal("45.50")

    async def test_delisted_product_shows_zero_cost(self, checkout, products):
        await checkout.cart_store.add_item("1", "7", 2)
        del products["7"]

        (line,) = await checkout.get_cart("1")

        assert line["unit_cost"] == 0
        assert line["product_name"] is None
