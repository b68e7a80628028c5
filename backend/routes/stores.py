"""Merchant store and product routes.

Thin CRUD glue; billing rules come from the guards:
- POST /api/stores - store-limit guard
- POST /api/stores/{store_id}/publish - publish guard
- POST /api/products - product-limit guard (store_id in body or ?storeId=)
- GET/POST /api/stores/{store_id}/coupons - coupons feature
- GET /api/stores/{store_id}/abandoned-carts - abandoned_cart feature
Every route here also passes the service-availability guard.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional
from datetime import datetime, timezone
import uuid
from database import database
from middleware.auth import require_auth
from middleware.billing_guards import (
    check_service_availability,
    protect_product_limit,
    protect_store_limit,
    protect_store_publish,
)
from middleware.feature_gating import require_feature
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/stores", tags=["stores"], dependencies=[Depends(check_service_availability)])
products_router = APIRouter(prefix="/api/products", tags=["products"], dependencies=[Depends(check_service_availability)])


class StoreCreate(BaseModel):
    name: str
    slug: Optional[str] = None


class ProductCreate(BaseModel):
    store_id: Optional[str] = None
    name: str
    price: Decimal = Field(ge=0)
    quantity: int = Field(default=0, ge=0)


class CouponCreate(BaseModel):
    code: str
    type: str = "percentage"
    value: Decimal = Field(gt=0)


async def _owned_store(account_id: str, store_id: str) -> dict:
    db = database.get_db()
    store = await db.stores.find_one({"store_id": store_id, "owner_id": account_id}, {"_id": 0})
    if not store:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Store not found")
    return store


@router.get("")
async def list_stores(request: Request):
    user = await require_auth(request)
    db = database.get_db()
    return await db.stores.find({"owner_id": user["account_id"]}, {"_id": 0}).to_list(length=None)


@router.post("", status_code=status.HTTP_201_CREATED, dependencies=[Depends(protect_store_limit)])
async def create_store(request: Request, body: StoreCreate):
    user = await require_auth(request)
    store = {
        "store_id": f"STR-{uuid.uuid4().hex[:12].upper()}",
        "owner_id": user["account_id"],
        "name": body.name,
        "slug": body.slug or body.name.strip().lower().replace(" ", "-"),
        "is_published": False,
        "subscription_id": None,
        "stats": {"total_orders": 0, "total_revenue": 0},
        "created_at": datetime.now(timezone.utc),
    }
    db = database.get_db()
    await db.stores.insert_one(store)
    store.pop("_id", None)
    logger.info(f"Store created: {store['store_id']} owner={user['account_id']}")
    return store


@router.post("/{store_id}/publish", dependencies=[Depends(protect_store_publish)])
async def publish_store(request: Request, store_id: str):
    user = await require_auth(request)
    await _owned_store(user["account_id"], store_id)
    db = database.get_db()
    await db.stores.update_one(
        {"store_id": store_id},
        {"$set": {"is_published": True, "published_at": datetime.now(timezone.utc)}}
    )
    return {"store_id": store_id, "is_published": True}


@router.get("/{store_id}/orders")
async def list_store_orders(request: Request, store_id: str):
    user = await require_auth(request)
    await _owned_store(user["account_id"], store_id)
    db = database.get_db()
    return await db.orders.find({"store_id": store_id}, {"_id": 0}).sort("created_at", -1).to_list(length=100)


@router.get("/{store_id}/coupons")
@require_feature("coupons")
async def list_coupons(request: Request, store_id: str):
    user = await require_auth(request)
    await _owned_store(user["account_id"], store_id)
    db = database.get_db()
    return await db.coupons.find({"store_id": store_id}, {"_id": 0}).to_list(length=None)


@router.post("/{store_id}/coupons", status_code=status.HTTP_201_CREATED)
@require_feature("coupons")
async def create_coupon(request: Request, store_id: str, body: CouponCreate):
    user = await require_auth(request)
    await _owned_store(user["account_id"], store_id)
    coupon = {
        "coupon_id": f"CPN-{uuid.uuid4().hex[:12].upper()}",
        "store_id": store_id,
        "code": body.code.upper(),
        "type": body.type,
        "value": body.value,
        "is_active": True,
        "created_at": datetime.now(timezone.utc),
    }
    db = database.get_db()
    await db.coupons.insert_one(coupon)
    coupon.pop("_id", None)
    return coupon


@router.get("/{store_id}/abandoned-carts")
@require_feature("abandoned_cart")
async def list_abandoned_carts(request: Request, store_id: str):
    user = await require_auth(request)
    await _owned_store(user["account_id"], store_id)
    db = database.get_db()
    return await db.abandoned_carts.find({"store_id": store_id}, {"_id": 0}).to_list(length=100)


@products_router.post("", status_code=status.HTTP_201_CREATED)
async def create_product(request: Request, body: ProductCreate):
    user = await require_auth(request)
    store_id = body.store_id or request.query_params.get("storeId")
    await protect_product_limit(request, store_id)
    await _owned_store(user["account_id"], store_id)

    product = {
        "product_id": f"PRD-{uuid.uuid4().hex[:12].upper()}",
        "store_id": store_id,
        "name": body.name,
        "price": body.price,
        "inventory": {"quantity": body.quantity},
        "created_at": datetime.now(timezone.utc),
    }
    db = database.get_db()
    await db.products.insert_one(product)
    product.pop("_id", None)
    return product
