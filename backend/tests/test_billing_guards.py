"""
Billing guards over HTTP: store and product limits, publish gate, grace-period
availability, and plan feature gating. Auth is a real JWT; Mongo is in-memory.
"""
from datetime import datetime, timezone, timedelta

import pytest

from models import Subscription, SubscriptionStatus
from middleware.billing_context import BillingContext
from middleware.billing_guards import enforce_service_availability
from services.billing_errors import GracePeriodExpired, PaymentPending

from conftest import auth_headers, put_subscription, put_wallet

MERCHANT = "ACC-GUARDED00001"


def _add_store(db, owner_id=MERCHANT, store_id="STR-EXISTING0001"):
    db.stores.docs.append({
        "store_id": store_id,
        "owner_id": owner_id,
        "name": "Existing",
        "is_published": False,
        "subscription_id": None,
    })


# ----------------------------------------------------------------------------
# Store limit
# ----------------------------------------------------------------------------

def test_store_limit_reached_on_free_plan(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Free"])
    _add_store(fake_db)

    response = client.post("/api/stores", json={"name": "Second"}, headers=auth_headers(MERCHANT))

    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["error_code"] == "STORE_LIMIT_REACHED"
    assert detail["message"] == "Your Free plan allows only 1 stores."
    assert detail["limit"] == 1
    assert len(fake_db.stores.docs) == 1


def test_store_created_under_limit(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Basic"])
    _add_store(fake_db)

    response = client.post("/api/stores", json={"name": "Second Store"}, headers=auth_headers(MERCHANT))

    assert response.status_code == 201
    assert response.json()["slug"] == "second-store"
    assert len(fake_db.stores.docs) == 2


def test_first_request_materializes_free_subscription(client, fake_db, plans):
    response = client.post("/api/stores", json={"name": "Mine"}, headers=auth_headers(MERCHANT))

    assert response.status_code == 201
    assert fake_db.subscriptions.docs[0]["plan_id"] == plans["Free"].plan_id
    assert len(fake_db.wallets.docs) == 1


def test_inactive_subscription_cannot_create_stores(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Basic"], status="inactive")

    response = client.post("/api/stores", json={"name": "Blocked"}, headers=auth_headers(MERCHANT))

    assert response.status_code == 403
    assert response.json()["detail"]["error_code"] == "SUBSCRIPTION_INACTIVE"


def test_stores_require_authentication(client, fake_db, plans):
    response = client.get("/api/stores")
    assert response.status_code == 401


# ----------------------------------------------------------------------------
# Product limit
# ----------------------------------------------------------------------------

def test_product_limit_reached(client, fake_db, plans):
    fake_db.plans.docs[0]["product_limit"] = 2
    put_subscription(fake_db, MERCHANT, plans["Free"])
    _add_store(fake_db)
    for i in range(2):
        fake_db.products.docs.append({"product_id": f"PRD-{i}", "store_id": "STR-EXISTING0001"})

    response = client.post(
        "/api/products",
        json={"store_id": "STR-EXISTING0001", "name": "Third", "price": 10},
        headers=auth_headers(MERCHANT),
    )

    assert response.status_code == 403
    assert response.json()["detail"]["error_code"] == "PRODUCT_LIMIT_REACHED"


def test_product_limit_ignores_stores_of_other_merchants(client, fake_db, plans):
    fake_db.plans.docs[0]["product_limit"] = 2
    put_subscription(fake_db, MERCHANT, plans["Free"])
    _add_store(fake_db, owner_id="ACC-SOMEONEELSE1", store_id="STR-FOREIGN00001")
    for i in range(3):
        fake_db.products.docs.append({"product_id": f"PRD-{i}", "store_id": "STR-FOREIGN00001"})

    response = client.post(
        "/api/products",
        json={"store_id": "STR-FOREIGN00001", "name": "Intruder", "price": 10},
        headers=auth_headers(MERCHANT),
    )

    assert response.status_code == 404
    detail = response.json()["detail"]
    assert detail["error_code"] == "NOT_FOUND"
    assert "current" not in detail
    assert "limit" not in detail
    assert len(fake_db.products.docs) == 3


def test_product_limit_needs_store_id(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Free"])

    response = client.post("/api/products", json={"name": "Orphan", "price": 10}, headers=auth_headers(MERCHANT))

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "STORE_ID_REQUIRED"


def test_product_store_id_from_query_string(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Free"])
    _add_store(fake_db)

    response = client.post(
        "/api/products?storeId=STR-EXISTING0001",
        json={"name": "Mug", "price": 10, "quantity": 4},
        headers=auth_headers(MERCHANT),
    )

    assert response.status_code == 201
    assert fake_db.products.docs[0]["store_id"] == "STR-EXISTING0001"


# ----------------------------------------------------------------------------
# Publish gate
# ----------------------------------------------------------------------------

def test_free_plan_publish_requires_minimum_wallet(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Free"])
    put_wallet(fake_db, MERCHANT, 249.99)
    _add_store(fake_db)

    response = client.post("/api/stores/STR-EXISTING0001/publish", headers=auth_headers(MERCHANT))

    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["error_code"] == "INSUFFICIENT_WALLET_BALANCE"
    assert detail["required"] == 250.0
    assert fake_db.stores.docs[0]["is_published"] is False


def test_free_plan_publish_with_minimum_wallet(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Free"])
    put_wallet(fake_db, MERCHANT, 250.0)
    _add_store(fake_db)

    response = client.post("/api/stores/STR-EXISTING0001/publish", headers=auth_headers(MERCHANT))

    assert response.status_code == 200
    assert fake_db.stores.docs[0]["is_published"] is True


def test_paid_plan_publish_ignores_wallet(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Basic"])
    put_wallet(fake_db, MERCHANT, 0.0)
    _add_store(fake_db)

    response = client.post("/api/stores/STR-EXISTING0001/publish", headers=auth_headers(MERCHANT))

    assert response.status_code == 200


# ----------------------------------------------------------------------------
# Grace period
# ----------------------------------------------------------------------------

def _context(status, grace_period_end=None):
    sub = Subscription(
        account_id=MERCHANT,
        plan_id="PLN-ANY",
        status=status,
        expires_at=datetime.now(timezone.utc),
        grace_period_end=grace_period_end,
    )
    return BillingContext(account_id=MERCHANT, subscription=sub, plan=None, wallet=None)


def test_past_due_within_grace_allows_reads_blocks_orders():
    context = _context(SubscriptionStatus.PAST_DUE, datetime.now(timezone.utc) + timedelta(days=2))

    enforce_service_availability(context, "GET", "/api/stores")
    enforce_service_availability(context, "POST", "/api/stores")
    with pytest.raises(PaymentPending):
        enforce_service_availability(context, "POST", "/api/orders")


def test_grace_expired_blocks_everything():
    context = _context(SubscriptionStatus.EXPIRED, datetime.now(timezone.utc) - timedelta(seconds=1))

    with pytest.raises(GracePeriodExpired):
        enforce_service_availability(context, "GET", "/api/stores")


def test_active_and_missing_subscriptions_pass():
    enforce_service_availability(_context(SubscriptionStatus.ACTIVE), "POST", "/api/orders")
    enforce_service_availability(None, "POST", "/api/orders")


def test_grace_expired_over_http(client, fake_db, plans):
    put_subscription(
        fake_db, MERCHANT, plans["Basic"],
        status="expired",
        grace_period_end=datetime.now(timezone.utc) - timedelta(days=1),
    )

    response = client.get("/api/stores", headers=auth_headers(MERCHANT))

    assert response.status_code == 403
    assert response.json()["detail"]["error_code"] == "GRACE_PERIOD_EXPIRED"


def test_past_due_store_listing_still_allowed(client, fake_db, plans):
    put_subscription(
        fake_db, MERCHANT, plans["Basic"],
        status="past_due",
        grace_period_end=datetime.now(timezone.utc) + timedelta(days=1),
    )
    _add_store(fake_db)

    response = client.get("/api/stores", headers=auth_headers(MERCHANT))

    assert response.status_code == 200
    assert len(response.json()) == 1


# ----------------------------------------------------------------------------
# Feature gating
# ----------------------------------------------------------------------------

def test_coupons_locked_on_free_plan_and_audited(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Free"])
    _add_store(fake_db)

    response = client.get("/api/stores/STR-EXISTING0001/coupons", headers=auth_headers(MERCHANT))

    assert response.status_code == 403
    detail = response.json()["detail"]
    assert detail["error_code"] == "FEATURE_LOCKED"
    assert detail["feature"] == "coupons"
    denied = [a for a in fake_db.audit_logs.docs if a["action"] == "PLAN_GATE_DENIED"]
    assert len(denied) == 1


def test_coupons_open_on_paid_plan(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Basic"])
    _add_store(fake_db)
    headers = auth_headers(MERCHANT)

    created = client.post("/api/stores/STR-EXISTING0001/coupons", json={"code": "eid10", "value": 10}, headers=headers)
    listed = client.get("/api/stores/STR-EXISTING0001/coupons", headers=headers)

    assert created.status_code == 201
    assert created.json()["code"] == "EID10"
    assert listed.status_code == 200
    assert len(listed.json()) == 1


def test_abandoned_cart_locked_on_basic(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Basic"])
    _add_store(fake_db)

    response = client.get("/api/stores/STR-EXISTING0001/abandoned-carts", headers=auth_headers(MERCHANT))

    assert response.status_code == 403
    assert response.json()["detail"]["error_code"] == "FEATURE_LOCKED"


def test_feature_gate_requires_active_subscription(client, fake_db, plans):
    put_subscription(fake_db, MERCHANT, plans["Enterprise"], status="inactive")
    _add_store(fake_db)

    response = client.get("/api/stores/STR-EXISTING0001/coupons", headers=auth_headers(MERCHANT))

    assert response.status_code == 403
    assert response.json()["detail"]["error_code"] == "SUBSCRIPTION_INACTIVE"
