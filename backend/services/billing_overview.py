"""Billing Overview - dashboard read model.

Composes wallet, subscription, plan and usage counts. blocking_reason is
derived on every call and never stored.
"""
from decimal import Decimal
from typing import Optional, Dict, Any
import logging

from database import database
from models import (
    Plan,
    PlanType,
    Subscription,
    SubscriptionStatus,
    BlockingReason,
    MIN_WALLET_BALANCE,
    ZERO,
)
from services.plan_catalogue import plan_catalogue
from services.plan_features import features_for_plan
from services.subscription_service import subscription_service
from services.wallet_service import wallet_service

logger = logging.getLogger(__name__)

# Shown when no subscription can be materialized (empty catalogue)
NO_PLAN = {
    "name": "No Plan",
    "type": PlanType.FREE.value,
    "monthly_price": ZERO,
    "store_limit": 0,
    "product_limit": 0,
    "order_fee": ZERO,
    "features": {"dropshipping": False, "custom_domain": False},
}


def derive_blocking_reason(
    plan_type: str,
    balance: Decimal,
    status: Optional[str],
) -> Optional[BlockingReason]:
    if plan_type == PlanType.FREE.value and balance < MIN_WALLET_BALANCE:
        return BlockingReason.LOW_WALLET
    if status in (SubscriptionStatus.PAST_DUE.value, SubscriptionStatus.EXPIRED.value):
        return BlockingReason.SUBSCRIPTION_EXPIRED
    return None


async def get_usage(account_id: str) -> Dict[str, int]:
    db = database.get_db()
    store_count = await db.stores.count_documents({"owner_id": account_id})
    stores = await db.stores.find({"owner_id": account_id}, {"_id": 0, "store_id": 1}).to_list(length=None)
    store_ids = [s["store_id"] for s in stores]
    product_count = 0
    if store_ids:
        product_count = await db.products.count_documents({"store_id": {"$in": store_ids}})
    return {"stores_used": store_count, "products_used": product_count}


async def get_billing_overview(account_id: str) -> Dict[str, Any]:
    wallet = await wallet_service.ensure_wallet(account_id)
    subscription: Optional[Subscription] = await subscription_service.get_or_create_default(account_id)

    plan: Optional[Plan] = None
    if subscription:
        plan = await plan_catalogue.find_plan(subscription.plan_id)
        if plan is None:
            logger.warning(
                "Subscription %s references missing plan %s",
                subscription.subscription_id, subscription.plan_id,
            )
    plan_view = plan.model_dump() if plan else dict(NO_PLAN)
    plan_type = plan_view["type"].value if isinstance(plan_view["type"], PlanType) else plan_view["type"]
    status = subscription.status.value if subscription else SubscriptionStatus.INACTIVE.value

    usage = await get_usage(account_id)
    reason = derive_blocking_reason(plan_type, wallet.balance, status)

    return {
        "wallet": {
            "balance": wallet.balance,
            "currency": wallet.currency,
        },
        "plan": {
            "plan_id": plan_view.get("plan_id"),
            "name": plan_view["name"],
            "type": plan_type,
            "monthly_price": plan_view["monthly_price"],
            "order_fee": plan_view["order_fee"],
            "features": plan_view["features"],
            "entitlements": features_for_plan(plan_view["name"]),
        },
        "subscription": {
            "status": status,
            "started_at": subscription.started_at if subscription else None,
            "expires_at": subscription.expires_at if subscription else None,
            "trial_expires_at": subscription.trial_expires_at if subscription else None,
            "grace_period_end": subscription.grace_period_end if subscription else None,
            "renewal_date": subscription.expires_at if subscription else None,
        },
        "usage": {
            "stores_used": usage["stores_used"],
            "store_limit": plan_view["store_limit"],
            "products_used": usage["products_used"],
            "product_limit": plan_view["product_limit"],
        },
        "blocking_reason": reason.value if reason else None,
    }
