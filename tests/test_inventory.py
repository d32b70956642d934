"""
Tests for InventoryReconciler.
"""
import asyncio

import pytest

from marketplace.application.inventory_service import InventoryReconciler
from marketplace.domain.entities import (
    InvalidInputError,
    InventoryAlreadyRestoredError,
    ListingNotFoundError,
    OrderNotFoundError,
)

from tests.factories import T0, seed_listing, seed_order, seed_parties


@pytest.fixture
def reconciler(clock):
    return InventoryReconciler(clock=clock)


@pytest.mark.asyncio
async def test_restore_increments_listing(uow_factory, reconciler):
    async with uow_factory() as uow:
        await seed_parties(uow)
        await seed_listing(uow, quantity=4)

    async with uow_factory() as uow:
        assert await reconciler.restore(uow, "lst_eggs", 3) is True

    async with uow_factory() as uow:
        listing = await uow.listings.get_by_id("lst_eggs")
    assert listing.quantity == 7


@pytest.mark.asyncio
async def test_restore_unlimited_listing_is_a_no_op(uow_factory, reconciler):
    async with uow_factory() as uow:
        await seed_parties(uow)
        await seed_listing(uow, listing_id="lst_bread", quantity=None)
        assert await reconciler.restore(uow, "lst_bread", 2) is False

        listing = await uow.listings.get_by_id("lst_bread")
        assert listing.has_unlimited_inventory


@pytest.mark.asyncio
async def test_restore_missing_listing(uow_factory, reconciler):
    async with uow_factory() as uow:
        with pytest.raises(ListingNotFoundError):
            await reconciler.restore(uow, "lst_missing", 1)


@pytest.mark.asyncio
@pytest.mark.parametrize("quantity", [0, -1, True, 1.5])
async def test_restore_rejects_bad_quantity(uow_factory, reconciler, quantity):
    async with uow_factory() as uow:
        with pytest.raises(InvalidInputError):
            await reconciler.restore(uow, "lst_eggs", quantity)


@pytest.mark.asyncio
async def test_restore_for_item_happens_once(uow_factory, reconciler):
    async with uow_factory() as uow:
        await seed_parties(uow)
        await seed_listing(uow, quantity=0)
        order = await seed_order(uow, [("item_1", "lst_eggs", 2, 500)])

    item = order.items[0]
    async with uow_factory() as uow:
        assert await reconciler.restore_for_item(uow, item) is True

    async with uow_factory() as uow:
        with pytest.raises(InventoryAlreadyRestoredError) as exc_info:
            await reconciler.restore_for_item(uow, item)
    assert exc_info.value.item_ids == ["item_1"]

    async with uow_factory() as uow:
        assert (await uow.listings.get_by_id("lst_eggs")).quantity == 2
        assert (await uow.order_items.get_by_id("item_1")).inventory_restored


@pytest.mark.asyncio
async def test_restore_for_item_releases_claim_when_listing_is_gone(uow_factory, reconciler):
    async with uow_factory() as uow:
        await seed_parties(uow)
        order = await seed_order(uow, [("item_1", "lst_deleted", 1, 500)])

    async with uow_factory() as uow:
        with pytest.raises(ListingNotFoundError):
            await reconciler.restore_for_item(uow, order.items[0])
        assert not (await uow.order_items.get_by_id("item_1")).inventory_restored


@pytest.mark.asyncio
async def test_restore_for_order_aggregates_per_listing(uow_factory, reconciler):
    async with uow_factory() as uow:
        await seed_parties(uow)
        await seed_listing(uow, quantity=1)
        await seed_listing(uow, listing_id="lst_honey", quantity=None, title="Raw honey")
        await seed_order(uow, [
            ("item_1", "lst_eggs", 2, 500),
            ("item_2", "lst_eggs", 3, 500),
            ("item_3", "lst_honey", 1, 1200),
        ])

    async with uow_factory() as uow:
        summary = await reconciler.restore_for_order(uow, "ord_1")

    assert summary.complete
    assert summary.restored == 2
    assert summary.restored_listing_ids == ["lst_eggs", "lst_honey"]

    async with uow_factory() as uow:
        assert (await uow.listings.get_by_id("lst_eggs")).quantity == 6
        items = await uow.order_items.list_for_order("ord_1")
        assert all(item.inventory_restored for item in items)

    # Second pass finds nothing left to restore
    async with uow_factory() as uow:
        again = await reconciler.restore_for_order(uow, "ord_1")
    assert again.restored == 0 and again.failed == 0

    async with uow_factory() as uow:
        assert (await uow.listings.get_by_id("lst_eggs")).quantity == 6


@pytest.mark.asyncio
async def test_restore_for_order_reports_partial_failure(uow_factory, reconciler):
    async with uow_factory() as uow:
        await seed_parties(uow)
        await seed_listing(uow, quantity=0)
        await seed_order(uow, [
            ("item_1", "lst_eggs", 2, 500),
            ("item_2", "lst_deleted", 1, 800),
        ])

    async with uow_factory() as uow:
        summary = await reconciler.restore_for_order(uow, "ord_1")

    assert not summary.complete
    assert summary.restored_listing_ids == ["lst_eggs"]
    assert summary.failed_listing_ids == ["lst_deleted"]

    async with uow_factory() as uow:
        assert (await uow.order_items.get_by_id("item_1")).inventory_restored
        assert not (await uow.order_items.get_by_id("item_2")).inventory_restored
        assert (await uow.listings.get_by_id("lst_eggs")).quantity == 2


@pytest.mark.asyncio
async def test_restore_for_missing_order(uow_factory, reconciler):
    async with uow_factory() as uow:
        with pytest.raises(OrderNotFoundError):
            await reconciler.restore_for_order(uow, "ord_missing")


@pytest.mark.asyncio
async def test_concurrent_restores_keep_every_increment(uow_factory, reconciler):
    async with uow_factory() as uow:
        await seed_parties(uow)
        await seed_listing(uow, quantity=4)

    async def restore_in_own_transaction(quantity):
        async with uow_factory() as uow:
            return await reconciler.restore(uow, "lst_eggs", quantity)

    results = await asyncio.gather(*(restore_in_own_transaction(n) for n in (1, 2, 3, 4, 5)))

    assert results == [True] * 5
    async with uow_factory() as uow:
        assert (await uow.listings.get_by_id("lst_eggs")).quantity == 4 + 15


@pytest.mark.asyncio
async def test_restore_for_order_rejects_a_claim_taken_after_loading(uow_factory, reconciler, monkeypatch):
    async with uow_factory() as uow:
        await seed_parties(uow)
        await seed_listing(uow, quantity=0)
        await seed_order(uow, [
            ("item_1", "lst_eggs", 2, 500),
            ("item_2", "lst_eggs", 3, 500),
        ])

    with pytest.raises(InventoryAlreadyRestoredError) as exc_info:
        async with uow_factory() as uow:
            list_for_order = uow.order_items.list_for_order

            async def list_then_claim_elsewhere(order_id):
                items = await list_for_order(order_id)
                async with uow_factory() as other:
                    await other.order_items.claim_inventory_restoration(["item_1"], T0)
                return items

            monkeypatch.setattr(uow.order_items, "list_for_order", list_then_claim_elsewhere)
            await reconciler.restore_for_order(uow, "ord_1")

    assert exc_info.value.item_ids == ["item_1", "item_2"]

    # Nothing from the rejected restore was applied
    async with uow_factory() as uow:
        assert (await uow.listings.get_by_id("lst_eggs")).quantity == 0
        assert not (await uow.order_items.get_by_id("item_2")).inventory_restored


@pytest.mark.asyncio
async def test_simultaneous_order_restores_apply_once(uow_factory, reconciler):
    async with uow_factory() as uow:
        await seed_parties(uow)
        await seed_listing(uow, quantity=0)
        await seed_order(uow, [
            ("item_1", "lst_eggs", 2, 500),
            ("item_2", "lst_eggs", 3, 500),
        ])

    async def restore_order():
        async with uow_factory() as uow:
            return await reconciler.restore_for_order(uow, "ord_1")

    results = await asyncio.gather(restore_order(), restore_order(), return_exceptions=True)

    restored = [r for r in results if not isinstance(r, Exception) and r.restored == 1]
    assert len(restored) == 1
    for other in results:
        if other is not restored[0]:
            assert isinstance(other, InventoryAlreadyRestoredError) or other.restored == 0

    async with uow_factory() as uow:
        assert (await uow.listings.get_by_id("lst_eggs")).quantity == 5
