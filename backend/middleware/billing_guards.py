"""
Billing Guards
Request-time checks in front of store, product, publish and order handlers.
Each guard resolves (or reuses) the request billing context and raises a
BillingError subclass; server.py renders it as {"detail": {"error_code", "message"}}.

Usage:
    @router.post("", dependencies=[Depends(protect_store_limit)])
    async def create_store(request: Request, body: StoreCreate):
        ...
"""
from datetime import datetime, timezone
from typing import Optional
import logging

from fastapi import Request

from database import database
from models import SubscriptionStatus, MIN_WALLET_BALANCE, DEFAULT_CURRENCY
from middleware.billing_context import BillingContext, resolve_billing_context
from services.billing_errors import (
    BillingError,
    GracePeriodExpired,
    InsufficientFunds,
    LimitReached,
    NoPlan,
    NotFound,
    PaymentPending,
    SubscriptionInactive,
)
from services.plan_catalogue import is_within_limit
from services.subscription_service import as_utc

logger = logging.getLogger(__name__)

LAPSED_STATUSES = frozenset({SubscriptionStatus.PAST_DUE, SubscriptionStatus.EXPIRED})


def _require_plan(context: BillingContext, message: str = "No active plan"):
    if not context.subscription or not context.plan:
        raise NoPlan(message)


def _require_active(context: BillingContext, message: str):
    if context.subscription.status != SubscriptionStatus.ACTIVE:
        raise SubscriptionInactive(message, details={"status": context.subscription.status.value})


async def protect_store_limit(request: Request) -> BillingContext:
    """Active subscription and room under the plan's store limit."""
    context = await resolve_billing_context(request)
    _require_plan(context)
    _require_active(context, "An active subscription is required to create stores.")

    plan = context.plan.plan
    db = database.get_db()
    store_count = await db.stores.count_documents({"owner_id": context.account_id})
    if not is_within_limit(store_count, plan.store_limit):
        logger.info(
            "STORE_LIMIT_REACHED account_id=%s plan=%s limit=%s current=%s",
            context.account_id, plan.name, plan.store_limit, store_count,
        )
        raise LimitReached(
            f"Your {plan.name} plan allows only {plan.store_limit} stores.",
            error_code="STORE_LIMIT_REACHED",
            details={"limit": plan.store_limit, "current": store_count},
        )
    return context


async def protect_product_limit(request: Request, store_id: Optional[str]) -> BillingContext:
    """Active subscription, a store the caller owns, and room under its product limit."""
    context = await resolve_billing_context(request)
    _require_plan(context)
    _require_active(context, "An active subscription is required to create products.")

    plan = context.plan.plan
    if plan.product_limit == -1:
        return context
    if not store_id:
        raise BillingError("storeId is required to check limits", error_code="STORE_ID_REQUIRED", status_code=400)

    db = database.get_db()
    owned = await db.stores.find_one({"store_id": store_id, "owner_id": context.account_id}, {"_id": 0, "store_id": 1})
    if not owned:
        raise NotFound("Store not found", details={"store_id": store_id})
    product_count = await db.products.count_documents({"store_id": store_id})
    if not is_within_limit(product_count, plan.product_limit):
        raise LimitReached(
            f"Store product limit reached ({plan.product_limit} products). Upgrade your plan for more.",
            error_code="PRODUCT_LIMIT_REACHED",
            details={"limit": plan.product_limit, "current": product_count},
        )
    return context


async def protect_store_publish(request: Request) -> BillingContext:
    """Free plan: wallet >= MIN_WALLET_BALANCE. Paid plan: subscription active."""
    context = await resolve_billing_context(request)
    _require_plan(context, "Subscription required")

    if context.plan.plan.is_free:
        if context.balance < MIN_WALLET_BALANCE:
            raise InsufficientFunds(
                f"Free plan requires a minimum wallet balance of {MIN_WALLET_BALANCE} {DEFAULT_CURRENCY} to go live.",
                required=MIN_WALLET_BALANCE,
                available=context.balance,
                error_code="INSUFFICIENT_WALLET_BALANCE",
                status_code=403,
            )
    else:
        _require_active(context, "Active subscription required for paid plans.")
    return context


def enforce_service_availability(
    context: Optional[BillingContext],
    method: str,
    path: str,
    now: Optional[datetime] = None,
) -> None:
    """Grace-period rules for lapsed (past_due / expired) subscriptions.

    Within the grace window only order creation is blocked; after it, everything is.
    """
    if context is None or context.subscription is None:
        return
    sub = context.subscription
    if sub.status not in LAPSED_STATUSES:
        return

    now = now or datetime.now(timezone.utc)
    grace_end = as_utc(sub.grace_period_end)
    if grace_end and now > grace_end:
        raise GracePeriodExpired(
            "Grace period expired. Please renew your subscription to resume service.",
            details={"grace_period_end": grace_end.isoformat()},
        )
    if method.upper() == "POST" and "/orders" in path:
        raise PaymentPending("Subscription payment pending. Order creation is temporarily blocked.")


async def check_service_availability(request: Request) -> BillingContext:
    context = await resolve_billing_context(request)
    enforce_service_availability(context, request.method, request.url.path)
    return context
