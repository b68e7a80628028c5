"""
Payment reconciliation: simulated recharge, Paymob webhook recharge and subscription
payments, idempotency by gateway transaction id, no-op and failure paths.
"""
import json
from unittest.mock import AsyncMock, patch

import pytest

from models import SubscriptionStatus
from services.payment_reconciler import is_recharge_simulated, payment_reconciler
from services.billing_errors import InvalidAmount
from services.wallet_service import wallet_service

from conftest import auth_headers, put_subscription, put_wallet

MERCHANT = "ACC-PAYER0000001"


def _webhook(txn_id=9001, purpose="recharge", amount_cents=50000, success=True, pending=False, account_id=MERCHANT):
    return {
        "type": "TRANSACTION",
        "obj": {
            "id": txn_id,
            "success": success,
            "pending": pending,
            "amount_cents": amount_cents,
            "order": {"id": 777},
            "extra_config": {"accountId": account_id, "purpose": purpose},
        },
    }


# ----------------------------------------------------------------------------
# Direct recharge
# ----------------------------------------------------------------------------

def test_recharge_is_simulated_without_gateway_key(monkeypatch):
    monkeypatch.delenv("PAYMOB_API_KEY", raising=False)
    monkeypatch.setenv("ENVIRONMENT", "production")
    assert is_recharge_simulated() is True


def test_recharge_is_simulated_in_development(monkeypatch):
    monkeypatch.setenv("PAYMOB_API_KEY", "key")
    monkeypatch.setenv("ENVIRONMENT", "development")
    assert is_recharge_simulated() is True


def test_recharge_is_live_with_key_in_production(monkeypatch):
    monkeypatch.setenv("PAYMOB_API_KEY", "key")
    monkeypatch.setenv("ENVIRONMENT", "production")
    assert is_recharge_simulated() is False


@pytest.mark.asyncio
async def test_simulated_recharge_credits_and_issues_receipt(fake_db, monkeypatch):
    monkeypatch.delenv("PAYMOB_API_KEY", raising=False)

    result = await payment_reconciler.recharge_wallet(MERCHANT, 300.0)

    assert result["simulated"] is True
    assert result["new_balance"] == 300.0
    txn = fake_db.wallet_transactions.docs[0]
    assert txn["reason"] == "recharge"
    assert txn["reference_id"].startswith("SIM-")
    receipt = fake_db.receipts.docs[0]
    assert receipt["type"] == "wallet_recharge"
    assert receipt["reference_id"] == txn["transaction_id"]


@pytest.mark.asyncio
async def test_live_recharge_returns_gateway_url_without_ledger_effect(fake_db, monkeypatch):
    monkeypatch.setenv("PAYMOB_API_KEY", "key")
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("PAYMOB_IFRAME_ID", "4242")

    result = await payment_reconciler.recharge_wallet(MERCHANT, 300.0)

    assert result["simulated"] is False
    assert result["payment_url"].endswith("/4242")
    assert result["extra_config"] == {"accountId": MERCHANT, "purpose": "recharge"}
    assert fake_db.wallet_transactions.docs == []


@pytest.mark.asyncio
async def test_recharge_rejects_non_positive_amount(fake_db):
    with pytest.raises(InvalidAmount):
        await payment_reconciler.recharge_wallet(MERCHANT, 0)


def test_recharge_endpoint(client, fake_db, monkeypatch):
    monkeypatch.delenv("PAYMOB_API_KEY", raising=False)

    response = client.post("/api/billing/recharge", json={"amount": 100}, headers=auth_headers(MERCHANT))

    assert response.status_code == 200
    assert response.json()["new_balance"] == 100.0


def test_recharge_endpoint_invalid_amount(client, fake_db):
    response = client.post("/api/billing/recharge", json={"amount": -1}, headers=auth_headers(MERCHANT))
    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "INVALID_AMOUNT"


# ----------------------------------------------------------------------------
# Webhook
# ----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_webhook_recharge_credits_wallet(fake_db):
    success, message, details = await payment_reconciler.process_webhook(_webhook())

    assert success is True
    assert message == "Processed"
    assert details["new_balance"] == 500.0
    assert fake_db.payment_events.docs[0]["status"] == "PROCESSED"
    assert fake_db.wallet_transactions.docs[0]["reference_id"] == "777"


@pytest.mark.asyncio
async def test_duplicate_webhook_applies_once(fake_db):
    await payment_reconciler.process_webhook(_webhook())
    success, message, _ = await payment_reconciler.process_webhook(_webhook())

    assert success is True
    assert message == "Already processed"
    assert await wallet_service.get_balance(MERCHANT) == 500.0
    assert len(fake_db.wallet_transactions.docs) == 1
    assert len(fake_db.payment_events.docs) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("flags", [{"success": False}, {"pending": True}])
async def test_unsuccessful_or_pending_webhook_is_noop(fake_db, flags):
    success, message, _ = await payment_reconciler.process_webhook(_webhook(**flags))

    assert success is True
    assert message == "No ledger effect"
    assert fake_db.wallets.docs == []
    assert fake_db.payment_events.docs == []


@pytest.mark.asyncio
async def test_webhook_subscription_activates_and_balances_ledger(fake_db, plans):
    put_wallet(fake_db, MERCHANT, 20.0)
    sub = put_subscription(fake_db, MERCHANT, plans["Basic"], status="inactive")

    success, _, details = await payment_reconciler.process_webhook(
        _webhook(txn_id=9100, purpose="subscription", amount_cents=49900)
    )

    assert success is True
    assert details["subscription_id"] == sub.subscription_id
    assert details["new_balance"] == 20.0
    assert fake_db.subscriptions.docs[0]["status"] == SubscriptionStatus.ACTIVE.value
    reasons = [(t["type"], t["reason"]) for t in fake_db.wallet_transactions.docs]
    assert reasons == [("credit", "plan_payment"), ("debit", "plan_payment")]
    assert fake_db.receipts.docs[0]["type"] == "plan_payment"
    assert fake_db.receipts.docs[0]["amount"] == 499.0


@pytest.mark.asyncio
async def test_webhook_without_account_is_ignored(fake_db):
    success, message, details = await payment_reconciler.process_webhook(_webhook(account_id=None))

    assert success is True
    assert message == "Ignored"
    assert fake_db.payment_events.docs[0]["status"] == "IGNORED"
    assert fake_db.wallet_transactions.docs == []


@pytest.mark.asyncio
async def test_webhook_failure_is_recorded_and_retryable(fake_db):
    with patch(
        "services.payment_reconciler.wallet_service.credit",
        new=AsyncMock(side_effect=RuntimeError("write failed")),
    ):
        success, message, details = await payment_reconciler.process_webhook(_webhook(txn_id=9200))

    assert success is False
    assert message == "Processing failed"
    assert fake_db.payment_events.docs[0]["status"] == "FAILED"

    # Gateway retry goes through once the fault clears
    success, message, _ = await payment_reconciler.process_webhook(_webhook(txn_id=9200))
    assert success is True
    assert message == "Processed"
    assert await wallet_service.get_balance(MERCHANT) == 500.0
    assert fake_db.payment_events.docs[0]["attempts"] == 2


@pytest.mark.asyncio
async def test_redelivery_while_processing_applies_nothing(fake_db):
    await payment_reconciler.process_webhook(_webhook(txn_id=9250, amount_cents=10000))
    assert fake_db.payment_events.docs[0]["status"] == "PROCESSED"

    # An earlier delivery still holds the event
    fake_db.payment_events.docs[0]["status"] = "PROCESSING"
    success, message, details = await payment_reconciler.process_webhook(_webhook(txn_id=9250, amount_cents=10000))

    assert success is False
    assert message == "Processing in progress"
    assert details == {"event_id": "9250"}
    assert await wallet_service.get_balance(MERCHANT) == 100.0
    assert len(fake_db.wallet_transactions.docs) == 1
    assert fake_db.payment_events.docs[0]["attempts"] == 1


@pytest.mark.asyncio
async def test_failure_inside_ledger_block_never_marks_processed(fake_db):
    with patch(
        "services.payment_reconciler.wallet_service.issue_receipt",
        new=AsyncMock(side_effect=RuntimeError("receipt write failed")),
    ):
        success, _, _ = await payment_reconciler.process_webhook(_webhook(txn_id=9260))

    assert success is False
    event = fake_db.payment_events.docs[0]
    assert event["status"] == "FAILED"
    assert event["error"] == "receipt write failed"


@pytest.mark.asyncio
async def test_webhook_subscription_without_record_fails(fake_db, plans):
    success, _, details = await payment_reconciler.process_webhook(
        _webhook(txn_id=9300, purpose="subscription", amount_cents=49900)
    )

    assert success is False
    assert fake_db.wallet_transactions.docs == []


def test_webhook_route_answers_ok(client, fake_db):
    response = client.post("/api/billing/webhook/paymob", content=json.dumps(_webhook(txn_id=9400)))

    assert response.status_code == 200
    assert response.text == "OK"


def test_webhook_route_answers_500_on_failure(client, fake_db):
    with patch(
        "routes.webhooks.payment_reconciler.process_webhook",
        new=AsyncMock(return_value=(False, "Processing failed", {})),
    ):
        response = client.post("/api/billing/webhook/paymob", json=_webhook())

    assert response.status_code == 500
    assert response.text == "Error"


def test_webhook_route_rejects_invalid_json(client, fake_db):
    response = client.post("/api/billing/webhook/paymob", content=b"not-json")
    assert response.status_code == 400
