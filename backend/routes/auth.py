"""Merchant auth routes.

Registration and login both make sure the merchant has a wallet; registration can
also record a plan choice (a failure there is logged, never fatal to signup).
"""
from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, EmailStr
from typing import Optional
from pymongo.errors import DuplicateKeyError
from database import database
from models import Account, AuditAction
from auth import verify_password, hash_password, create_account_token, password_problem
from services.billing_errors import BillingError
from services.subscription_service import subscription_service
from services.wallet_service import wallet_service
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    plan_id: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


def _token_for(account: dict) -> str:
    return create_account_token(
        account["account_id"],
        role=account.get("role", "merchant"),
        email=account["email"],
    )


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(request: Request, body: RegisterRequest):
    """Create a merchant account, its wallet, and optionally its first subscription."""
    db = database.get_db()

    problem = password_problem(body.password)
    if problem:
        raise HTTPException(status_code=400, detail=problem)

    account = Account(
        name=body.name,
        email=body.email,
        password_hash=hash_password(body.password),
    )
    try:
        await db.accounts.insert_one(account.model_dump())
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="An account with this email already exists")

    await wallet_service.ensure_wallet(account.account_id)

    if body.plan_id:
        try:
            await subscription_service.auto_subscribe_record(account.account_id, body.plan_id)
        except BillingError as sub_error:
            logger.error(f"Auto-subscription after signup failed for {account.account_id}: {sub_error.message}")

    await create_audit_log(
        action=AuditAction.ACCOUNT_REGISTERED,
        actor_id=account.account_id,
        account_id=account.account_id,
        metadata={"plan_id": body.plan_id},
    )
    logger.info(f"Merchant registered: {account.account_id}")

    return {
        "account_id": account.account_id,
        "name": account.name,
        "email": account.email,
        "role": account.role.value,
        "access_token": _token_for(account.model_dump()),
    }


@router.post("/login")
async def login(request: Request, credentials: LoginRequest):
    db = database.get_db()
    account = await db.accounts.find_one({"email": credentials.email}, {"_id": 0})

    if not account or not verify_password(credentials.password, account.get("password_hash", "")):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password"
        )

    await wallet_service.ensure_wallet(account["account_id"])

    return {
        "account_id": account["account_id"],
        "name": account["name"],
        "email": account["email"],
        "role": account.get("role", "merchant"),
        "access_token": _token_for(account),
    }
