"""Subscription Lifecycle Service

One subscription per merchant account. Status changes happen only through the
named operations in this module:

    inactive --pay_from_wallet / gateway confirmation--> active
    active   --expiry sweep (paid plans)--> past_due (grace_period_end set)
    past_due --expiry sweep after grace--> expired
    past_due / expired --payment--> active

A store may carry its own subscription_id; resolve_subscription() honours it
and falls back to the account-scoped record.
"""
import calendar
from decimal import Decimal
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any, Tuple
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    Plan,
    PlanRef,
    ResolvedPlan,
    UnresolvedPlan,
    Subscription,
    SubscriptionStatus,
    TransactionReason,
    ReceiptType,
    AuditAction,
    DEFAULT_CURRENCY,
    FREE_FALLBACK_YEARS,
    GRACE_PERIOD_DAYS,
    WEBHOOK_SUBSCRIPTION_DAYS,
    ZERO,
)
from services.billing_errors import AlreadyActive, InsufficientFunds, NotFound
from services.plan_catalogue import plan_catalogue
from services.wallet_service import wallet_service
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def add_months(moment: datetime, months: int = 1) -> datetime:
    """Same day-of-month `months` later, clamped to the month's last day."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


class SubscriptionService:
    """Plan assignment and status state machine."""

    # =========================================================================
    # Lookups
    # =========================================================================

    async def get_subscription(self, account_id: str, session=None) -> Optional[Subscription]:
        db = database.get_db()
        doc = await db.subscriptions.find_one({"account_id": account_id}, {"_id": 0}, session=session)
        return Subscription(**doc) if doc else None

    async def get_subscription_by_id(self, subscription_id: str, session=None) -> Optional[Subscription]:
        db = database.get_db()
        doc = await db.subscriptions.find_one({"subscription_id": subscription_id}, {"_id": 0}, session=session)
        return Subscription(**doc) if doc else None

    async def resolve_plan(self, ref: PlanRef) -> Plan:
        """Turn a plan reference into a Plan. Raises NotFound for a dangling id."""
        if isinstance(ref, ResolvedPlan):
            return ref.plan
        if isinstance(ref, UnresolvedPlan):
            return await plan_catalogue.get_plan(ref.plan_id)
        raise TypeError(f"Unsupported plan reference: {ref!r}")

    async def resolve_subscription(
        self,
        account_id: str,
        store: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> Optional[Subscription]:
        """Store-level subscription override first, then the account's subscription."""
        store_subscription_id = (store or {}).get("subscription_id")
        if store_subscription_id:
            sub = await self.get_subscription_by_id(store_subscription_id, session=session)
            if sub:
                return sub
            logger.warning(
                "Store %s references missing subscription %s - using account subscription",
                (store or {}).get("store_id"), store_subscription_id,
            )
        return await self.get_subscription(account_id, session=session)

    async def get_current_subscription(self, account_id: str) -> Optional[Dict[str, Any]]:
        sub = await self.get_subscription(account_id)
        if not sub:
            return None
        plan = await plan_catalogue.find_plan(sub.plan_id)
        result = sub.model_dump()
        result["plan"] = plan.model_dump() if plan else None
        return result

    # =========================================================================
    # Default materialization
    # =========================================================================

    async def get_or_create_default(self, account_id: str) -> Optional[Subscription]:
        """Existing subscription, or a new long-running active free-plan record.

        Returns None only when the catalogue has no active free plan.
        """
        existing = await self.get_subscription(account_id)
        if existing:
            return existing

        try:
            free_plan = await plan_catalogue.get_free_plan()
        except NotFound:
            logger.warning("No free plan available - cannot create fallback subscription for %s", account_id)
            return None

        now = datetime.now(timezone.utc)
        sub = Subscription(
            account_id=account_id,
            plan_id=free_plan.plan_id,
            status=SubscriptionStatus.ACTIVE,
            started_at=now,
            expires_at=add_months(now, 12 * FREE_FALLBACK_YEARS),
        )
        db = database.get_db()
        try:
            await db.subscriptions.insert_one(sub.model_dump())
        except DuplicateKeyError:
            logger.info("Fallback subscription race for account_id=%s - using existing record", account_id)
            return await self.get_subscription(account_id)

        logger.info("Created fallback free subscription %s for account_id=%s", sub.subscription_id, account_id)
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CREATED,
            actor_role="SYSTEM",
            account_id=account_id,
            resource_type="subscription",
            resource_id=sub.subscription_id,
            metadata={"plan_id": free_plan.plan_id, "fallback": True},
        )
        return sub

    # =========================================================================
    # Plan selection
    # =========================================================================

    async def auto_subscribe_record(self, account_id: str, plan_id: str) -> Subscription:
        """Upsert the account's subscription onto plan_id.

        Free plans start active; paid plans start inactive until paid.
        """
        plan = await plan_catalogue.get_plan(plan_id)
        now = datetime.now(timezone.utc)
        status = SubscriptionStatus.ACTIVE if plan.is_free else SubscriptionStatus.INACTIVE
        seed = Subscription(account_id=account_id, plan_id=plan.plan_id, expires_at=now)

        db = database.get_db()
        doc = await db.subscriptions.find_one_and_update(
            {"account_id": account_id},
            {
                "$set": {
                    "plan_id": plan.plan_id,
                    "status": status.value,
                    "started_at": now,
                    "expires_at": add_months(now, 1),
                    "grace_period_end": None,
                    "updated_at": now,
                },
                "$setOnInsert": {
                    "subscription_id": seed.subscription_id,
                    "account_id": account_id,
                    "created_at": now,
                },
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
        )
        sub = Subscription(**doc)

        logger.info(
            "SUBSCRIPTION_RECORDED account_id=%s plan=%s status=%s",
            account_id, plan.name, status.value,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CREATED,
            actor_id=account_id,
            account_id=account_id,
            resource_type="subscription",
            resource_id=sub.subscription_id,
            metadata={"plan_id": plan.plan_id, "plan_name": plan.name, "status": status.value},
        )
        return sub

    async def subscribe(self, account_id: str, plan_id: str) -> Tuple[Subscription, Plan]:
        """Explicit plan selection. Paid plans require the monthly price in the wallet."""
        plan = await plan_catalogue.get_plan(plan_id)
        if not plan.is_free:
            balance = await wallet_service.get_balance(account_id)
            if balance < plan.monthly_price:
                raise InsufficientFunds(
                    f"Insufficient wallet balance. You need {plan.monthly_price} {DEFAULT_CURRENCY} "
                    f"to activate the {plan.name} plan.",
                    required=plan.monthly_price,
                    available=balance,
                )
        sub = await self.auto_subscribe_record(account_id, plan.plan_id)
        return sub, plan

    # =========================================================================
    # Activation
    # =========================================================================

    async def pay_from_wallet(self, account_id: str) -> Dict[str, Any]:
        """Pay the pending subscription from the wallet and activate it.

        Debit, ledger row, activation and receipt commit as one unit of work.
        """
        sub = await self.get_subscription(account_id)
        if not sub:
            raise NotFound("No pending subscription found", details={"account_id": account_id})
        if sub.status == SubscriptionStatus.ACTIVE:
            raise AlreadyActive("Subscription is already active")

        plan = await self.resolve_plan(sub.plan_ref)

        if plan.is_free:
            activated = await self._activate(sub.subscription_id, add_months(datetime.now(timezone.utc), 1))
            await self._audit_activation(activated, plan, source="free_plan")
            return {"subscription": activated, "new_balance": await wallet_service.get_balance(account_id)}

        balance = await wallet_service.get_balance(account_id)
        if balance < plan.monthly_price:
            raise InsufficientFunds(
                f"Insufficient wallet balance. Required {plan.monthly_price} {DEFAULT_CURRENCY}, current {balance}",
                required=plan.monthly_price,
                available=balance,
            )

        # The activation itself is the claim: only one payer can move the record
        # out of its unpaid status, so a concurrent payment never debits twice.
        activated = None
        unit_of_work = database.get_unit_of_work()
        try:
            async with unit_of_work.begin() as session:
                activated = await self._claim_for_payment(sub, session=session)
                txn = await wallet_service.debit(
                    account_id,
                    plan.monthly_price,
                    TransactionReason.PLAN_PAYMENT,
                    reference_id=sub.subscription_id,
                    session=session,
                )
                await wallet_service.issue_receipt(
                    account_id,
                    sub.subscription_id,
                    ReceiptType.PLAN_PAYMENT,
                    plan.monthly_price,
                    session=session,
                )
        except Exception:
            if activated is not None:
                await self._release_claim(activated, sub)
            raise

        await self._audit_activation(activated, plan, source="wallet", amount=plan.monthly_price)
        return {"subscription": activated, "new_balance": txn.balance_after}

    async def _claim_for_payment(self, sub: Subscription, session=None) -> Subscription:
        """Activate sub only if it is still unpaid on the same plan. Raises AlreadyActive otherwise."""
        db = database.get_db()
        doc = await db.subscriptions.find_one_and_update(
            {
                "subscription_id": sub.subscription_id,
                "plan_id": sub.plan_id,
                "status": {"$ne": SubscriptionStatus.ACTIVE.value},
            },
            {"$set": self._activation_changes(add_months(datetime.now(timezone.utc), 1))},
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
            session=session,
        )
        if not doc:
            logger.info("SUBSCRIPTION_PAYMENT_SKIPPED account_id=%s - already active", sub.account_id)
            raise AlreadyActive("Subscription is already active")
        return Subscription(**doc)

    async def _release_claim(self, claimed: Subscription, previous: Subscription):
        """Put back the unpaid state when the payment after the claim failed.

        A no-op in atomic mode, where the aborted transaction already undid the claim.
        """
        db = database.get_db()
        result = await db.subscriptions.update_one(
            {
                "subscription_id": claimed.subscription_id,
                "status": SubscriptionStatus.ACTIVE.value,
                "updated_at": claimed.updated_at,
            },
            {"$set": {
                "status": previous.status.value,
                "started_at": previous.started_at,
                "expires_at": previous.expires_at,
                "grace_period_end": previous.grace_period_end,
                "updated_at": datetime.now(timezone.utc),
            }},
        )
        if result.modified_count:
            logger.warning(
                "SUBSCRIPTION_CLAIM_RELEASED account_id=%s status=%s - wallet payment failed",
                previous.account_id, previous.status.value,
            )

    async def activate_from_gateway(self, account_id: str, session=None) -> Subscription:
        """Gateway-confirmed payment: active for WEBHOOK_SUBSCRIPTION_DAYS from now."""
        sub = await self.get_subscription(account_id, session=session)
        if not sub:
            raise NotFound("No subscription to activate", details={"account_id": account_id})
        expires_at = datetime.now(timezone.utc) + timedelta(days=WEBHOOK_SUBSCRIPTION_DAYS)
        return await self._activate(sub.subscription_id, expires_at, session=session, refresh_start=False)

    async def _activate(
        self,
        subscription_id: str,
        expires_at: datetime,
        session=None,
        refresh_start: bool = True,
    ) -> Subscription:
        db = database.get_db()
        doc = await db.subscriptions.find_one_and_update(
            {"subscription_id": subscription_id},
            {"$set": self._activation_changes(expires_at, refresh_start=refresh_start)},
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
            session=session,
        )
        if not doc:
            raise NotFound(f"Subscription {subscription_id} not found")
        return Subscription(**doc)

    @staticmethod
    def _activation_changes(expires_at: datetime, refresh_start: bool = True) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        changes = {
            "status": SubscriptionStatus.ACTIVE.value,
            "expires_at": expires_at,
            "grace_period_end": None,
            "updated_at": now,
        }
        if refresh_start:
            changes["started_at"] = now
        return changes

    async def _audit_activation(self, sub: Subscription, plan: Plan, source: str, amount: Decimal = ZERO):
        logger.info(
            "SUBSCRIPTION_ACTIVATED account_id=%s plan=%s source=%s expires_at=%s",
            sub.account_id, plan.name, source, sub.expires_at,
        )
        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_ACTIVATED,
            account_id=sub.account_id,
            resource_type="subscription",
            resource_id=sub.subscription_id,
            metadata={"plan_name": plan.name, "source": source, "amount": amount},
        )

    # =========================================================================
    # Expiry sweep
    # =========================================================================

    async def run_expiry_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Advance lapsed subscriptions.

        - paid active past expires_at -> past_due with a grace window
        - past_due past grace_period_end -> expired
        - free active past expires_at -> renewed for another month
        """
        now = now or datetime.now(timezone.utc)
        db = database.get_db()
        paid_plan_ids = await plan_catalogue.paid_plan_ids()

        lapsed = await db.subscriptions.update_many(
            {
                "status": SubscriptionStatus.ACTIVE.value,
                "plan_id": {"$in": paid_plan_ids},
                "expires_at": {"$lt": now},
            },
            {"$set": {
                "status": SubscriptionStatus.PAST_DUE.value,
                "grace_period_end": now + timedelta(days=GRACE_PERIOD_DAYS),
                "updated_at": now,
            }},
        )
        expired = await db.subscriptions.update_many(
            {
                "status": SubscriptionStatus.PAST_DUE.value,
                "grace_period_end": {"$lt": now},
            },
            {"$set": {"status": SubscriptionStatus.EXPIRED.value, "updated_at": now}},
        )
        renewed = await db.subscriptions.update_many(
            {
                "status": SubscriptionStatus.ACTIVE.value,
                "plan_id": {"$nin": paid_plan_ids},
                "expires_at": {"$lt": now},
            },
            {"$set": {"expires_at": add_months(now, 1), "updated_at": now}},
        )

        summary = {
            "past_due": lapsed.modified_count,
            "expired": expired.modified_count,
            "renewed": renewed.modified_count,
        }
        logger.info(
            "SUBSCRIPTION_EXPIRY_SWEEP past_due=%s expired=%s renewed=%s",
            summary["past_due"], summary["expired"], summary["renewed"],
        )
        if summary["past_due"]:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_PAST_DUE,
                actor_role="SYSTEM",
                metadata={"count": summary["past_due"]},
            )
        if summary["expired"]:
            await create_audit_log(
                action=AuditAction.SUBSCRIPTION_EXPIRED,
                actor_role="SYSTEM",
                metadata={"count": summary["expired"]},
            )
        return summary


# Singleton instance
subscription_service = SubscriptionService()
