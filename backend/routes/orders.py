"""Storefront order routes.

POST /api/orders - place an order against a published store (public).

The order insert, the merchant's order fee and the store stats update share one
unit of work. In best-effort mode a fee failure after the order was written leaves
the order with fee_status=uncollected and answers ORDER_FEE_UNCOLLECTED so the fee
can be reconciled out of band.
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import List, Optional
from datetime import datetime, timezone
import uuid
from database import database
from models import AuditAction, to_money
from middleware.billing_context import resolve_storefront_context
from middleware.billing_guards import enforce_service_availability
from services.billing_errors import BillingError
from services.order_fee_service import order_fee_service
from unit_of_work import MODE_BEST_EFFORT
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/orders", tags=["orders"])

SHIPPING_FEE = Decimal("50.00")


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(gt=0)
    price: Decimal = Field(ge=0)


class CustomerInfo(BaseModel):
    full_name: str
    phone: str
    address: Optional[str] = None
    city: Optional[str] = None


class OrderCreate(BaseModel):
    store_id: str
    items: List[OrderItem] = Field(min_length=1)
    customer: CustomerInfo
    payment_method: str = "Cash on Delivery"


def _build_order(body: OrderCreate) -> dict:
    subtotal = to_money(sum(item.price * item.quantity for item in body.items))
    now = datetime.now(timezone.utc)
    return {
        "order_id": f"ORD-{uuid.uuid4().hex[:12].upper()}",
        "order_number": f"{now.strftime('%y%m%d')}-{uuid.uuid4().hex[:6].upper()}",
        "store_id": body.store_id,
        "items": [item.model_dump() for item in body.items],
        "subtotal": subtotal,
        "shipping": SHIPPING_FEE,
        "total": subtotal + SHIPPING_FEE,
        "customer": body.customer.model_dump(),
        "payment_method": body.payment_method,
        "status": "pending",
        "payment_status": "pending",
        "fee_status": "pending",
        "created_at": now,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_order(request: Request, body: OrderCreate):
    db = database.get_db()
    store = await db.stores.find_one({"store_id": body.store_id}, {"_id": 0})
    if not store or not store.get("is_published"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")

    context = await resolve_storefront_context(request, store)
    enforce_service_availability(context, request.method, request.url.path)

    order = _build_order(body)
    owner_id = store["owner_id"]
    unit_of_work = database.get_unit_of_work()
    order_written = False

    try:
        async with unit_of_work.begin() as session:
            await db.orders.insert_one(dict(order), session=session)
            order_written = True

            await order_fee_service.process_order_fee(
                owner_id, order["order_id"], store=store, session=session
            )
            await db.orders.update_one(
                {"order_id": order["order_id"]},
                {"$set": {"fee_status": "collected"}},
                session=session,
            )
            await db.stores.update_one(
                {"store_id": store["store_id"]},
                {"$inc": {"stats.total_orders": 1, "stats.total_revenue": order["total"]}},
                session=session,
            )
            for item in body.items:
                await db.products.update_one(
                    {"product_id": item.product_id, "store_id": store["store_id"]},
                    {"$inc": {"inventory.quantity": -item.quantity}},
                    session=session,
                )
    except BillingError as fee_error:
        if unit_of_work.mode != MODE_BEST_EFFORT or not order_written:
            raise
        await db.orders.update_one(
            {"order_id": order["order_id"]},
            {"$set": {"fee_status": "uncollected", "fee_error": fee_error.error_code}},
        )
        logger.error(
            "ORDER_FEE_UNCOLLECTED order_id=%s owner_id=%s cause=%s",
            order["order_id"], owner_id, fee_error.error_code,
        )
        await create_audit_log(
            action=AuditAction.ORDER_FEE_UNCOLLECTED,
            actor_role="SYSTEM",
            account_id=owner_id,
            resource_type="order",
            resource_id=order["order_id"],
            metadata={"cause": fee_error.error_code, "message": fee_error.message},
        )
        raise BillingError(
            "Order was recorded but the platform fee could not be collected",
            error_code="ORDER_FEE_UNCOLLECTED",
            status_code=fee_error.status_code,
            details={"order_id": order["order_id"], "cause": fee_error.error_code},
        ) from fee_error

    logger.info(f"Order created: {order['order_id']} store={store['store_id']}")
    return {
        "success": True,
        "order_id": order["order_id"],
        "order_number": order["order_number"],
    }
