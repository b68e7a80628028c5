"""
Order fee settlement: free-plan prepaid rule, paid-plan debit + receipt,
fallback fee, store-level subscription override, and the POST /api/orders glue.
"""
from datetime import datetime, timezone, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest

from models import PlanType, SubscriptionStatus, FALLBACK_ORDER_FEE
from services.billing_errors import InsufficientFunds, NotFound
from services.order_fee_service import order_fee_service
from services.wallet_service import wallet_service

from conftest import put_subscription, put_wallet

MERCHANT = "ACC-MERCHANT0001"


@pytest.mark.asyncio
async def test_free_plan_with_too_little_balance_is_rejected_without_writes(fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Free"])
    put_wallet(fake_db, MERCHANT, 0.4)

    with pytest.raises(InsufficientFunds) as exc_info:
        await order_fee_service.process_order_fee(MERCHANT, "ORD-FREE-1")

    assert exc_info.value.required == 0.5
    assert await wallet_service.get_balance(MERCHANT) == Decimal("0.40")
    assert fake_db.wallet_transactions.docs == []
    assert fake_db.receipts.docs == []


@pytest.mark.asyncio
async def test_free_plan_with_enough_balance_is_charged(fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Free"])
    put_wallet(fake_db, MERCHANT, 250.0)

    new_balance = await order_fee_service.process_order_fee(MERCHANT, "ORD-FREE-2")

    assert new_balance == 249.5
    assert len(fake_db.wallet_transactions.docs) == 1


@pytest.mark.asyncio
async def test_paid_plan_fee_debits_once_and_issues_one_receipt(fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Basic"])
    put_wallet(fake_db, MERCHANT, 10.0)

    new_balance = await order_fee_service.process_order_fee(MERCHANT, "ORD-PAID-1")

    assert new_balance == 9.5
    txns = fake_db.wallet_transactions.docs
    receipts = fake_db.receipts.docs
    assert len(txns) == 1 and len(receipts) == 1
    assert txns[0]["reason"] == "order_fee"
    assert txns[0]["type"] == "debit"
    assert txns[0]["reference_id"] == "ORD-PAID-1"
    assert receipts[0]["type"] == "order"
    assert receipts[0]["reference_id"] == "ORD-PAID-1"
    assert receipts[0]["amount"] == 0.5


@pytest.mark.asyncio
async def test_missing_subscription_is_not_found(fake_db, plans):
    put_wallet(fake_db, MERCHANT, 10.0)
    with pytest.raises(NotFound):
        await order_fee_service.process_order_fee(MERCHANT, "ORD-NOSUB")
    assert fake_db.wallet_transactions.docs == []


@pytest.mark.asyncio
async def test_dangling_plan_falls_back_to_constant_fee(fake_db, plans):
    fake_db.subscriptions.docs.append({
        "subscription_id": "SUB-DANGLING0001",
        "account_id": MERCHANT,
        "plan_id": "PLN-DOES-NOT-EXIST",
        "status": "active",
        "expires_at": datetime.now(timezone.utc) + timedelta(days=30),
    })
    put_wallet(fake_db, MERCHANT, 5.0)

    new_balance = await order_fee_service.process_order_fee(MERCHANT, "ORD-FALLBACK")

    assert new_balance == Decimal("5.00") - FALLBACK_ORDER_FEE
    assert fake_db.wallet_transactions.docs[0]["amount"] == FALLBACK_ORDER_FEE


@pytest.mark.asyncio
async def test_zero_fee_plan_writes_nothing(fake_db, plans):
    fake_db.plans.docs[1]["order_fee"] = 0.0
    put_subscription(fake_db, MERCHANT, plans["Basic"])
    put_wallet(fake_db, MERCHANT, 3.0)

    new_balance = await order_fee_service.process_order_fee(MERCHANT, "ORD-ZERO")

    assert new_balance == 3.0
    assert fake_db.wallet_transactions.docs == []
    assert fake_db.receipts.docs == []


@pytest.mark.asyncio
async def test_store_subscription_override_wins(fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Basic"])
    fake_db.plans.docs[0]["order_fee"] = 2.0
    # Record reachable only through the store override
    store_sub = put_subscription(fake_db, "ACC-STORE-SCOPED", plans["Free"])
    put_wallet(fake_db, MERCHANT, 10.0)
    store = {"store_id": "STR-1", "owner_id": MERCHANT, "subscription_id": store_sub.subscription_id}

    new_balance = await order_fee_service.process_order_fee(MERCHANT, "ORD-STORE", store=store)

    assert new_balance == 8.0


@pytest.mark.asyncio
async def test_fee_resolution_failure_logs_and_uses_fallback(fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Pro"])
    put_wallet(fake_db, MERCHANT, 1.0)

    with patch(
        "services.order_fee_service.subscription_service.resolve_plan",
        side_effect=RuntimeError("catalogue unavailable"),
    ):
        fee, plan_type = await order_fee_service._resolve_fee(None)

    assert fee == FALLBACK_ORDER_FEE
    assert plan_type is None


# ----------------------------------------------------------------------------
# POST /api/orders
# ----------------------------------------------------------------------------

def _publish_store(db, owner_id, store_id="STR-ORDERS0001", **extra):
    store = {
        "store_id": store_id,
        "owner_id": owner_id,
        "name": "Test Store",
        "is_published": True,
        "subscription_id": None,
        "stats": {"total_orders": 0, "total_revenue": 0},
    }
    store.update(extra)
    db.stores.docs.append(store)
    db.products.docs.append({"product_id": "PRD-1", "store_id": store_id, "inventory": {"quantity": 5}})
    return store


def _order_body(store_id="STR-ORDERS0001"):
    return {
        "store_id": store_id,
        "items": [{"product_id": "PRD-1", "name": "Mug", "quantity": 2, "price": 100.0}],
        "customer": {"full_name": "Nour Adel", "phone": "01000000000"},
    }


def test_create_order_collects_fee_and_updates_store(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Basic"])
    put_wallet(fake_db, MERCHANT, 10.0)
    _publish_store(fake_db, MERCHANT)

    response = client.post("/api/orders", json=_order_body())

    assert response.status_code == 201
    order = fake_db.orders.docs[0]
    assert order["fee_status"] == "collected"
    assert order["total"] == 250.0
    assert fake_db.stores.docs[0]["stats"]["total_orders"] == 1
    assert fake_db.products.docs[0]["inventory"]["quantity"] == 3
    assert fake_db.wallets.docs[0]["balance"] == 9.5


def test_create_order_on_unpublished_store_is_404(client, fake_db, plans):
    _publish_store(fake_db, MERCHANT, is_published=False)
    response = client.post("/api/orders", json=_order_body())
    assert response.status_code == 404
    assert fake_db.orders.docs == []


def test_best_effort_fee_failure_marks_order_uncollected(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Free"])
    put_wallet(fake_db, MERCHANT, 0.4)
    _publish_store(fake_db, MERCHANT)

    response = client.post("/api/orders", json=_order_body())

    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error_code"] == "ORDER_FEE_UNCOLLECTED"
    assert detail["cause"] == "INSUFFICIENT_FUNDS"
    assert fake_db.orders.docs[0]["fee_status"] == "uncollected"
    assert fake_db.wallet_transactions.docs == []
    assert fake_db.wallets.docs[0]["balance"] == Decimal("0.40")


def test_orders_blocked_while_subscription_past_due(client, fake_db, plans):
    put_subscription(
        fake_db, MERCHANT, plans["Basic"],
        status=SubscriptionStatus.PAST_DUE,
        grace_period_end=datetime.now(timezone.utc) + timedelta(days=3),
    )
    put_wallet(fake_db, MERCHANT, 10.0)
    _publish_store(fake_db, MERCHANT)

    response = client.post("/api/orders", json=_order_body())

    assert response.status_code == 403
    assert response.json()["detail"]["error_code"] == "PAYMENT_PENDING"
    assert fake_db.orders.docs == []


def test_plan_type_enum_matches_catalogue(plans):
    assert plans["Free"].type == PlanType.FREE
    assert plans["Basic"].type == PlanType.PAID
