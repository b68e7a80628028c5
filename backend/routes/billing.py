"""Billing Routes - wallet, plans and subscription management.

Endpoints:
- GET  /api/billing/overview - Wallet, plan, subscription, usage and blocking reason
- GET  /api/billing/transactions - Paginated wallet ledger
- GET  /api/billing/receipts - Receipts, newest first
- GET  /api/billing/plans - Active plan catalogue
- GET  /api/billing/subscription - Current subscription with plan
- POST /api/billing/subscribe - Select a plan
- POST /api/billing/pay - Pay the pending subscription from the wallet
- POST /api/billing/recharge - Recharge the wallet
- GET/PUT /api/billing/profile - Billing profile
"""
from fastapi import APIRouter, HTTPException, Request, Query, status
from pydantic import BaseModel, EmailStr
from decimal import Decimal
from typing import Optional, List
from middleware.auth import require_auth
from models import BillingAddress, PaymentMethod
from services.billing_errors import BillingError
from services.billing_overview import get_billing_overview
from services.billing_profile_service import get_billing_profile, update_billing_profile
from services.payment_reconciler import payment_reconciler
from services.plan_catalogue import plan_catalogue
from services.subscription_service import subscription_service
from services.wallet_service import wallet_service
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class SubscribeRequest(BaseModel):
    plan_id: str


class RechargeRequest(BaseModel):
    amount: Decimal


class BillingProfileRequest(BaseModel):
    customer_name: str
    billing_email: EmailStr
    address: Optional[BillingAddress] = None
    tax_id: Optional[str] = None
    payment_methods: List[PaymentMethod] = []


@router.get("/overview")
async def overview(request: Request):
    user = await require_auth(request)
    try:
        return await get_billing_overview(user["account_id"])
    except (HTTPException, BillingError):
        raise
    except Exception as e:
        logger.error(f"Billing overview error: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Error fetching billing overview"
        )


@router.get("/transactions")
async def transactions(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
):
    user = await require_auth(request)
    return await wallet_service.get_transactions(user["account_id"], page=page, limit=limit)


@router.get("/receipts")
async def receipts(request: Request):
    user = await require_auth(request)
    return await wallet_service.get_receipts(user["account_id"])


@router.get("/plans")
async def plans():
    """Active plans. Public."""
    return [plan.model_dump() for plan in await plan_catalogue.list_active_plans()]


@router.get("/subscription")
async def current_subscription(request: Request):
    user = await require_auth(request)
    return await subscription_service.get_current_subscription(user["account_id"])


@router.post("/subscribe")
async def subscribe(request: Request, body: SubscribeRequest):
    """Select a plan. Paid plans start inactive until paid."""
    user = await require_auth(request)
    subscription, plan = await subscription_service.subscribe(user["account_id"], body.plan_id)
    return {
        "message": "Plan updated successfully" if plan.is_free else "Subscription pending payment",
        "subscription": subscription.model_dump(),
    }


@router.post("/pay")
async def pay_from_wallet(request: Request):
    user = await require_auth(request)
    result = await subscription_service.pay_from_wallet(user["account_id"])
    return {
        "message": "Subscription activated",
        "subscription": result["subscription"].model_dump(),
        "new_balance": result["new_balance"],
    }


@router.post("/recharge")
async def recharge(request: Request, body: RechargeRequest):
    user = await require_auth(request)
    return await payment_reconciler.recharge_wallet(user["account_id"], body.amount)


@router.get("/profile")
async def read_profile(request: Request):
    user = await require_auth(request)
    return await get_billing_profile(user["account_id"])


@router.put("/profile")
async def write_profile(request: Request, body: BillingProfileRequest):
    user = await require_auth(request)
    fields = body.model_dump(exclude_none=True)
    return await update_billing_profile(user["account_id"], fields)
