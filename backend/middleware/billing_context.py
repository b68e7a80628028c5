"""Request-scoped billing context.

Resolves the merchant's wallet, subscription and plan once per request and
caches it on request.state.billing. Resolution never fails for a missing
subscription: a free-plan subscription is materialized instead.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any
import logging

from fastapi import Request

from models import ResolvedPlan, Subscription, Wallet, ZERO
from middleware.auth import require_auth
from services.plan_catalogue import plan_catalogue
from services.subscription_service import subscription_service
from services.wallet_service import wallet_service

logger = logging.getLogger(__name__)


@dataclass
class BillingContext:
    account_id: str
    subscription: Optional[Subscription]
    plan: Optional[ResolvedPlan]
    wallet: Optional[Wallet]

    @property
    def plan_name(self) -> Optional[str]:
        return self.plan.plan.name if self.plan else None

    @property
    def balance(self) -> Decimal:
        return self.wallet.balance if self.wallet else ZERO


async def _build_context(account_id: str, subscription: Optional[Subscription]) -> BillingContext:
    wallet = await wallet_service.ensure_wallet(account_id)
    plan = None
    if subscription:
        found = await plan_catalogue.find_plan(subscription.plan_id)
        if found:
            plan = ResolvedPlan(plan=found)
        else:
            logger.warning(
                "Subscription %s references missing plan %s",
                subscription.subscription_id, subscription.plan_id,
            )
    return BillingContext(account_id=account_id, subscription=subscription, plan=plan, wallet=wallet)


async def resolve_billing_context(request: Request) -> BillingContext:
    """Billing context of the authenticated merchant. Idempotent per request."""
    cached = getattr(request.state, "billing", None)
    if cached is not None:
        return cached

    user = await require_auth(request)
    account_id = user["account_id"]
    subscription = await subscription_service.get_or_create_default(account_id)
    context = await _build_context(account_id, subscription)
    request.state.billing = context
    return context


async def resolve_storefront_context(request: Request, store: Dict[str, Any]) -> BillingContext:
    """Billing context of a store's owner, for unauthenticated storefront calls.

    The store's own subscription_id wins over the owner's account subscription.
    """
    cached = getattr(request.state, "billing", None)
    if cached is not None:
        return cached

    owner_id = store["owner_id"]
    subscription = await subscription_service.resolve_subscription(owner_id, store=store)
    if subscription is None:
        subscription = await subscription_service.get_or_create_default(owner_id)
    context = await _build_context(owner_id, subscription)
    request.state.billing = context
    return context
