"""
HTTP tests for the FastAPI app.

The app is driven in-process through httpx's ASGI transport. The lifespan
does not run: the database comes from the autouse fixture and the order
lifecycle is swapped for the test one so side effects are recorded.
"""
import json
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from marketplace.api.deps import get_order_lifecycle
from marketplace.application.payment_webhook_service import compute_signature
from marketplace.config import settings
from marketplace.domain.value_objects import PaymentMethod
from marketplace.main import app

from tests.factories import (
    BUYER_ID,
    T0,
    VENDOR_USER_ID,
    seed_listing,
    seed_order,
    seed_parties,
)

BUYER_HEADERS = {"X-User-Id": BUYER_ID}
VENDOR_HEADERS = {"X-User-Id": VENDOR_USER_ID}


@pytest_asyncio.fixture
async def client(lifecycle):
    app.dependency_overrides[get_order_lifecycle] = lambda: lifecycle
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def seeded(uow_factory):
    async with uow_factory() as uow:
        await seed_parties(uow)
        await seed_listing(uow)
        await seed_order(uow, [("item_1", "lst_eggs", 1, 1000)])


async def _post_webhook(client, event, secret=None):
    body = json.dumps(event).encode()
    signature = compute_signature(body, secret or settings.payment_webhook_secret)
    return await client.post(
        "/webhooks/payments",
        content=body,
        headers={"Content-Type": "application/json", "X-Signature-256": signature},
    )


class TestServiceEndpoints:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["task_queue"]["name"] == "side_effects"

    @pytest.mark.asyncio
    async def test_root(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["webhook_url"] == "/webhooks/payments"


class TestOrderEndpoints:

    @pytest.mark.asyncio
    async def test_requires_user_header(self, client, seeded):
        response = await client.post("/api/v1/vendor/order-items/item_1/confirm")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_confirm_then_conflict(self, client, seeded):
        first = await client.post("/api/v1/vendor/order-items/item_1/confirm", headers=VENDOR_HEADERS)

        assert first.status_code == 200
        body = first.json()
        assert body["previous_status"] == "pending"
        assert body["item"]["status"] == "confirmed"
        assert body["notification_id"] is not None

        second = await client.post("/api/v1/vendor/order-items/item_1/confirm", headers=VENDOR_HEADERS)
        assert second.status_code == 409
        assert second.json()["code"] == "transition_conflict"

    @pytest.mark.asyncio
    async def test_confirm_without_payment_account(self, client, uow_factory):
        async with uow_factory() as uow:
            await seed_parties(uow, payment_account_id=None)
            await seed_listing(uow)
            await seed_order(uow, [("item_1", "lst_eggs", 1, 1000)])

        response = await client.post("/api/v1/vendor/order-items/item_1/confirm", headers=VENDOR_HEADERS)

        assert response.status_code == 400
        assert response.json()["code"] == "PAYMENT_ACCOUNT_REQUIRED"

    @pytest.mark.asyncio
    async def test_wrong_vendor_is_forbidden(self, client, seeded):
        response = await client.post(
            "/api/v1/vendor/order-items/item_1/confirm",
            headers={"X-User-Id": "usr_other_vendor"},
        )

        assert response.status_code == 403
        assert response.json()["code"] == "not_authorized"

    @pytest.mark.asyncio
    async def test_unknown_item(self, client, seeded):
        response = await client.post("/api/v1/vendor/order-items/item_nope/confirm", headers=VENDOR_HEADERS)

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    @pytest.mark.asyncio
    async def test_preview_then_cancel(self, client, seeded, clock, queue):
        await client.post("/api/v1/vendor/order-items/item_1/confirm", headers=VENDOR_HEADERS)
        clock.advance(hours=2)

        preview = await client.get("/api/v1/buyer/order-items/item_1/cancellation-preview", headers=BUYER_HEADERS)
        assert preview.status_code == 200
        assert preview.json()["refund_cents"] == 810
        assert preview.json()["fee_applied"] is True

        response = await client.post(
            "/api/v1/buyer/order-items/item_1/cancel",
            json={"reason": "Running late"},
            headers=BUYER_HEADERS,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["item"]["status"] == "cancelled"
        assert body["cancellation"]["refund_cents"] == 810
        assert body["payout_amount_cents"] == 235
        assert "refund:item_1" in queue.names

    @pytest.mark.asyncio
    async def test_vendor_reject(self, client, seeded):
        response = await client.post(
            "/api/v1/vendor/order-items/item_1/reject",
            json={"reason": "Sold out"},
            headers=VENDOR_HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["item"]["cancelled_by"] == "vendor"
        assert response.json()["cancellation"]["refund_cents"] == 1080

    @pytest.mark.asyncio
    async def test_full_pickup_flow(self, client, seeded):
        for step in ("confirm", "ready", "fulfill"):
            response = await client.post(f"/api/v1/vendor/order-items/item_1/{step}", headers=VENDOR_HEADERS)
            assert response.status_code == 200, step

        response = await client.post("/api/v1/buyer/order-items/item_1/complete", headers=BUYER_HEADERS)

        assert response.status_code == 200
        assert response.json()["item"]["status"] == "completed"
        assert response.json()["payout_amount_cents"] == 920

    @pytest.mark.asyncio
    async def test_cancel_whole_order(self, client, seeded):
        response = await client.post("/api/v1/buyer/orders/ord_1/cancel", json={}, headers=BUYER_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert [r["item"]["id"] for r in body["cancelled"]] == ["item_1"]
        assert body["listings_restored"] == 1

    @pytest.mark.asyncio
    async def test_confirm_external_payment(self, client, uow_factory):
        async with uow_factory() as uow:
            await seed_parties(uow)
            await seed_listing(uow)
            await seed_order(uow, [("item_1", "lst_eggs", 1, 1000)], payment_method=PaymentMethod.CASH)

        response = await client.post("/api/v1/vendor/orders/ord_1/confirm-external-payment", headers=VENDOR_HEADERS)
        assert response.status_code == 200
        assert response.json()["fee_cents"] == 115

        again = await client.post("/api/v1/vendor/orders/ord_1/confirm-external-payment", headers=VENDOR_HEADERS)
        assert again.status_code == 409


class TestQuote:

    @pytest.mark.asyncio
    async def test_quote_with_tip(self, client):
        response = await client.post(
            "/api/v1/pricing/quote",
            json={"item_subtotals_cents": [1000, 500], "tip_percent": "10"},
        )

        assert response.status_code == 200
        assert response.json() == {
            "subtotal_cents": 1500,
            "buyer_fee_cents": 113,
            "tip_cents": 160,
            "tip_on_platform_fee_cents": 10,
            "vendor_tip_cents": 150,
            "total_cents": 1773,
        }

    @pytest.mark.asyncio
    async def test_empty_cart_is_rejected(self, client):
        response = await client.post("/api/v1/pricing/quote", json={"item_subtotals_cents": []})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_negative_line_is_rejected(self, client):
        response = await client.post("/api/v1/pricing/quote", json={"item_subtotals_cents": [-5]})

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_input"


class TestFeeAndNotificationEndpoints:

    @pytest.mark.asyncio
    async def test_vendor_fee_balance(self, client, seeded):
        response = await client.get("/api/v1/vendor/fees", headers=VENDOR_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["balance_cents"] == 0
        assert body["requires_payment"] is False
        assert body["can_use_external_payments"] is True
        assert body["recent_entries"] == []

    @pytest.mark.asyncio
    async def test_fee_balance_for_non_vendor(self, client, seeded):
        response = await client.get("/api/v1/vendor/fees", headers=BUYER_HEADERS)

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_inbox_and_mark_read(self, client, seeded):
        await client.post("/api/v1/vendor/order-items/item_1/confirm", headers=VENDOR_HEADERS)

        inbox = await client.get("/api/v1/notifications", headers=BUYER_HEADERS)
        assert inbox.status_code == 200
        body = inbox.json()
        assert body["unread_count"] == 1
        notification = body["notifications"][0]
        assert notification["type"] == "order_confirmed"
        assert notification["channels"] == ["in_app", "email"]

        read = await client.post(f"/api/v1/notifications/{notification['id']}/read", headers=BUYER_HEADERS)
        assert read.status_code == 200
        assert read.json()["read_at"] is not None

        foreign = await client.post(f"/api/v1/notifications/{notification['id']}/read", headers=VENDOR_HEADERS)
        assert foreign.status_code == 404

        inbox = await client.get("/api/v1/notifications", params={"unread_only": True}, headers=BUYER_HEADERS)
        assert inbox.json() == {"notifications": [], "unread_count": 0}


class TestWebhookEndpoint:

    @pytest.mark.asyncio
    async def test_bad_signature(self, client, seeded):
        response = await _post_webhook(client, {"id": "evt_1", "type": "account.updated"}, secret="wrong")

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_signature"

    @pytest.mark.asyncio
    async def test_checkout_completed(self, client, seeded):
        event = {
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "payment_intent": "pi_9", "metadata": {"order_id": "ord_1"}}},
        }

        response = await _post_webhook(client, event)
        assert response.status_code == 200
        assert response.json()["status"] == "processed"

        duplicate = await _post_webhook(client, event)
        assert duplicate.json()["status"] == "duplicate"

    @pytest.mark.asyncio
    async def test_unknown_order_asks_for_retry(self, client, seeded):
        event = {
            "id": "evt_2",
            "type": "checkout.session.completed",
            "data": {"object": {"metadata": {"order_id": "ord_missing"}}},
        }

        response = await _post_webhook(client, event)

        assert response.status_code == 500

    @pytest.mark.asyncio
    async def test_signed_garbage_is_rejected(self, client):
        body = b"not json"
        response = await client.post(
            "/webhooks/payments",
            content=body,
            headers={"X-Signature-256": compute_signature(body, settings.payment_webhook_secret)},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_input"


class TestCronEndpoint:

    @pytest.mark.asyncio
    async def test_expire_orders(self, client, uow_factory, monkeypatch):
        monkeypatch.setattr(settings, "cron_secret", "cron_test_secret")
        async with uow_factory() as uow:
            await seed_parties(uow)
            await seed_listing(uow)
            await seed_order(
                uow, [("item_1", "lst_eggs", 1, 1000)],
                created_at=T0 - timedelta(days=2),
                expires_at=T0 - timedelta(days=1),
            )

        rejected = await client.post("/api/v1/cron/expire-orders")
        assert rejected.status_code == 401

        response = await client.post(
            "/api/v1/cron/expire-orders",
            headers={"Authorization": "Bearer cron_test_secret"},
        )
        assert response.status_code == 200
        assert response.json() == {"expired": 1, "conflicts": 0, "failed": 0, "expired_item_ids": ["item_1"]}
