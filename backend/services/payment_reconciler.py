"""Payment Reconciler - wallet recharges and gateway (Paymob) confirmations.

Entry points:
- recharge_wallet(): direct recharge request. Without gateway credentials (or in
  development) the credit is applied immediately as a simulation; otherwise the
  caller gets the gateway iframe URL.
- process_webhook(): transaction-processed callback. Only success && !pending
  payloads touch the ledger. Idempotent by gateway transaction id through the
  payment_events collection (unique event_id).

Event claim: a delivery only applies an event it moved to PROCESSING itself,
either by inserting the record or by taking it over from FAILED. The PROCESSED
mark is written in the same unit of work as the ledger effects.

Subscription payments pass through the wallet: the gateway amount is credited
and immediately debited as plan_payment, so the ledger always sums to the balance.
"""
import os
import uuid
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Tuple
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction,
    PaymentEventStatus,
    PaymentPurpose,
    ReceiptType,
    TransactionReason,
    DEFAULT_CURRENCY,
    to_money,
)
from services.subscription_service import subscription_service
from services.wallet_service import wallet_service, require_positive_amount
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

PAYMOB_IFRAME_BASE = "https://accept.paymob.com/api/acceptance/iframes"


def is_recharge_simulated() -> bool:
    """Development convenience, not a security boundary."""
    if not (os.getenv("PAYMOB_API_KEY") or "").strip():
        return True
    return os.getenv("ENVIRONMENT", "development") == "development"


def amount_from_cents(amount_cents) -> Optional[Decimal]:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, (int, float)):
        return None
    try:
        return to_money(Decimal(str(amount_cents)) / 100)
    except InvalidOperation:
        return None


def _extract_payment(obj: Dict[str, Any]) -> Dict[str, Any]:
    extra = obj.get("extra_config") or {}
    order = obj.get("order")
    gateway_order_id = order.get("id") if isinstance(order, dict) else order
    return {
        "event_id": str(obj["id"]) if obj.get("id") is not None else None,
        "account_id": extra.get("accountId") or extra.get("account_id") or extra.get("userId"),
        "purpose": extra.get("purpose") or extra.get("type"),
        "amount": amount_from_cents(obj.get("amount_cents")),
        "gateway_order_id": str(gateway_order_id) if gateway_order_id is not None else None,
    }


class PaymentReconciler:
    """Applies external payment confirmations to the ledger."""

    # =========================================================================
    # Direct recharge
    # =========================================================================

    async def recharge_wallet(self, account_id: str, amount: Decimal) -> Dict[str, Any]:
        amount = require_positive_amount(amount, "Recharge")

        if not is_recharge_simulated():
            iframe_id = os.getenv("PAYMOB_IFRAME_ID", "")
            return {
                "success": True,
                "simulated": False,
                "payment_url": f"{PAYMOB_IFRAME_BASE}/{iframe_id}",
                "extra_config": {"accountId": account_id, "purpose": PaymentPurpose.RECHARGE.value},
            }

        reference_id = f"SIM-{uuid.uuid4().hex[:12].upper()}"
        new_balance = await self._apply_recharge(account_id, amount, reference_id)
        logger.warning(
            "WALLET_RECHARGE_SIMULATED account_id=%s amount=%s (gateway not configured or development mode)",
            account_id, amount,
        )
        await create_audit_log(
            action=AuditAction.WALLET_RECHARGE_SIMULATED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="wallet",
            metadata={"amount": amount, "reference_id": reference_id},
        )
        return {
            "success": True,
            "simulated": True,
            "message": "SIMULATED SUCCESS: payment gateway is not configured, balance has been added directly for testing.",
            "new_balance": new_balance,
        }

    # =========================================================================
    # Gateway webhook
    # =========================================================================

    async def process_webhook(self, payload: Dict[str, Any]) -> Tuple[bool, str, Optional[Dict]]:
        """
        Gateway webhook entry point.

        Returns:
            (success, message, details) - success False means the gateway should retry.
        """
        obj = (payload or {}).get("obj") or {}
        if not obj.get("success") or obj.get("pending"):
            logger.info("PAYMENT_WEBHOOK_NOOP id=%s success=%s pending=%s", obj.get("id"), obj.get("success"), obj.get("pending"))
            return True, "No ledger effect", {"event_id": obj.get("id")}

        payment = _extract_payment(obj)
        event_id = payment["event_id"]
        logger.info(
            "PAYMENT_WEBHOOK_RECEIVED event_id=%s account_id=%s purpose=%s amount=%s",
            event_id, payment["account_id"], payment["purpose"], payment["amount"],
        )

        if event_id:
            status = await self._claim_event(payment)
            if status in (PaymentEventStatus.PROCESSED, PaymentEventStatus.IGNORED):
                logger.info(f"Payment event {event_id} already processed - skipping")
                return True, "Already processed", {"event_id": event_id}
            if status == PaymentEventStatus.PROCESSING:
                # Another delivery holds the claim; ask the gateway to come back later
                logger.warning(f"Payment event {event_id} is being processed by another delivery")
                return False, "Processing in progress", {"event_id": event_id}
        else:
            logger.warning("Payment webhook without transaction id - cannot deduplicate")

        problem = self._validate(payment)
        if problem:
            logger.error("PAYMENT_WEBHOOK_IGNORED event_id=%s reason=%s", event_id, problem)
            await self._mark(event_id, PaymentEventStatus.IGNORED, error=problem)
            return True, "Ignored", {"event_id": event_id, "reason": problem}

        try:
            result = await self._apply(payment)
        except Exception as e:
            logger.error(
                "PAYMENT_WEBHOOK_FAILED event_id=%s account_id=%s purpose=%s error=%s",
                event_id, payment["account_id"], payment["purpose"], str(e),
            )
            await self._mark(event_id, PaymentEventStatus.FAILED, error=str(e))
            await create_audit_log(
                action=AuditAction.PAYMENT_EVENT_FAILED,
                actor_role="SYSTEM",
                account_id=payment["account_id"],
                metadata={"event_id": event_id, "purpose": payment["purpose"], "error": str(e)},
            )
            return False, "Processing failed", {"event_id": event_id, "error": str(e)}

        await create_audit_log(
            action=AuditAction.PAYMENT_EVENT_PROCESSED,
            actor_role="SYSTEM",
            account_id=payment["account_id"],
            metadata={"event_id": event_id, "purpose": payment["purpose"], "amount": payment["amount"]},
        )
        logger.info("PAYMENT_WEBHOOK_PROCESSED_OK event_id=%s account_id=%s", event_id, payment["account_id"])
        return True, "Processed", result

    async def _claim_event(self, payment: Dict[str, Any]) -> Optional[PaymentEventStatus]:
        """Move the event to PROCESSING for this delivery.

        Returns None when the claim was taken, otherwise the status that blocked it.
        Only a new event or a FAILED one can be claimed.
        """
        db = database.get_db()
        event_id = payment["event_id"]
        now = datetime.now(timezone.utc)
        try:
            await db.payment_events.insert_one({
                "event_id": event_id,
                "account_id": payment["account_id"],
                "purpose": payment["purpose"],
                "amount": payment["amount"],
                "gateway_order_id": payment["gateway_order_id"],
                "status": PaymentEventStatus.PROCESSING.value,
                "attempts": 1,
                "received_at": now,
                "processed_at": None,
                "error": None,
            })
        except DuplicateKeyError:
            return await self._reclaim_failed_event(event_id, now)
        return None

    async def _reclaim_failed_event(self, event_id: str, now: datetime) -> Optional[PaymentEventStatus]:
        db = database.get_db()
        retried = await db.payment_events.find_one_and_update(
            {"event_id": event_id, "status": PaymentEventStatus.FAILED.value},
            {
                "$set": {"status": PaymentEventStatus.PROCESSING.value, "received_at": now, "error": None},
                "$inc": {"attempts": 1},
            },
            return_document=ReturnDocument.AFTER,
        )
        if retried:
            logger.info("Payment event %s retry claimed (attempt %s)", event_id, retried.get("attempts"))
            return None

        existing = await db.payment_events.find_one({"event_id": event_id}, {"_id": 0, "status": 1})
        return PaymentEventStatus(existing["status"]) if existing else PaymentEventStatus.PROCESSING

    def _validate(self, payment: Dict[str, Any]) -> Optional[str]:
        if not payment["account_id"]:
            return "missing account id in extra_config"
        if payment["purpose"] not in (PaymentPurpose.RECHARGE.value, PaymentPurpose.SUBSCRIPTION.value):
            return f"unknown purpose {payment['purpose']!r}"
        amount = payment["amount"]
        if amount is None or not amount.is_finite() or amount <= 0:
            return "amount_cents must be positive"
        return None

    async def _mark(
        self,
        event_id: Optional[str],
        status: PaymentEventStatus,
        error: Optional[str] = None,
        session=None,
    ):
        if not event_id:
            return
        db = database.get_db()
        await db.payment_events.update_one(
            {"event_id": event_id},
            {"$set": {
                "status": status.value,
                "processed_at": datetime.now(timezone.utc),
                "error": error,
            }},
            session=session,
        )

    async def _apply(self, payment: Dict[str, Any]) -> Dict[str, Any]:
        account_id = payment["account_id"]
        amount = payment["amount"]
        event_id = payment["event_id"]
        reference_id = payment["gateway_order_id"] or event_id or f"PAY-{uuid.uuid4().hex[:12].upper()}"

        if payment["purpose"] == PaymentPurpose.RECHARGE.value:
            new_balance = await self._apply_recharge(account_id, amount, reference_id, event_id=event_id)
            return {"account_id": account_id, "purpose": PaymentPurpose.RECHARGE.value, "new_balance": new_balance}

        unit_of_work = database.get_unit_of_work()
        async with unit_of_work.begin() as session:
            sub = await subscription_service.activate_from_gateway(account_id, session=session)
            await wallet_service.credit(
                account_id, amount, TransactionReason.PLAN_PAYMENT,
                reference_id=sub.subscription_id, session=session,
            )
            txn = await wallet_service.debit(
                account_id, amount, TransactionReason.PLAN_PAYMENT,
                reference_id=sub.subscription_id, session=session,
            )
            await wallet_service.issue_receipt(
                account_id, sub.subscription_id, ReceiptType.PLAN_PAYMENT, amount, session=session,
            )
            await self._mark(event_id, PaymentEventStatus.PROCESSED, session=session)
        logger.info(
            "SUBSCRIPTION_ACTIVATED account_id=%s source=gateway amount=%s %s expires_at=%s",
            account_id, amount, DEFAULT_CURRENCY, sub.expires_at,
        )
        return {
            "account_id": account_id,
            "purpose": PaymentPurpose.SUBSCRIPTION.value,
            "subscription_id": sub.subscription_id,
            "new_balance": txn.balance_after,
        }

    async def _apply_recharge(
        self,
        account_id: str,
        amount: Decimal,
        reference_id: str,
        event_id: Optional[str] = None,
    ) -> Decimal:
        unit_of_work = database.get_unit_of_work()
        async with unit_of_work.begin() as session:
            txn = await wallet_service.credit(
                account_id, amount, TransactionReason.RECHARGE,
                reference_id=reference_id, session=session,
            )
            await wallet_service.issue_receipt(
                account_id, txn.transaction_id, ReceiptType.WALLET_RECHARGE, amount, session=session,
            )
            await self._mark(event_id, PaymentEventStatus.PROCESSED, session=session)
        return txn.balance_after


# Singleton instance
payment_reconciler = PaymentReconciler()
