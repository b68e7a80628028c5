"""Wallet Service

The wallet is the only contended resource in the ledger. Balance changes go
through credit() and debit() only:
- credit: atomic $inc, upserting the wallet on first touch
- debit: single conditional update (balance >= amount) so two concurrent debits
  can never take the balance below zero
Every balance change appends exactly one wallet_transactions row in the same
unit of work (pass the session through).

Amounts are Decimal quantized to piastres; MongoDB holds them as Decimal128.
Floats never reach $inc or $gte, so a debit leaves exactly balance - amount.
"""
import math
from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    Wallet,
    WalletTransaction,
    TransactionDirection,
    TransactionReason,
    Receipt,
    ReceiptType,
    AuditAction,
    DEFAULT_CURRENCY,
    ZERO,
    to_money,
)
from services.billing_errors import InsufficientFunds, InvalidAmount
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


def require_positive_amount(amount, label: str = "Amount") -> Decimal:
    """Quantized positive amount, or InvalidAmount."""
    try:
        value = None if isinstance(amount, bool) else to_money(amount)
    except InvalidOperation:
        value = None
    if value is None or not value.is_finite() or value <= 0:
        raise InvalidAmount(f"{label} amount must be positive", details={"amount": str(amount)})
    return value


class WalletService:
    """Prepaid wallet balance and its append-only ledger."""

    # =========================================================================
    # Wallet lifecycle
    # =========================================================================

    async def get_wallet(self, account_id: str, session=None) -> Optional[Wallet]:
        db = database.get_db()
        doc = await db.wallets.find_one({"account_id": account_id}, {"_id": 0}, session=session)
        return Wallet(**doc) if doc else None

    async def ensure_wallet(self, account_id: str, session=None) -> Wallet:
        """Idempotent get-or-create. An existing wallet is returned untouched."""
        existing = await self.get_wallet(account_id, session=session)
        if existing:
            return existing

        db = database.get_db()
        wallet = Wallet(account_id=account_id, currency=DEFAULT_CURRENCY)
        try:
            await db.wallets.insert_one(wallet.model_dump(), session=session)
        except DuplicateKeyError:
            # Concurrent first touch; the unique account_id index kept one wallet
            logger.info("Wallet create race for account_id=%s - using existing wallet", account_id)
            return await self.get_wallet(account_id, session=session)

        logger.info("Initialized missing wallet for account_id=%s", account_id)
        await create_audit_log(
            action=AuditAction.WALLET_CREATED,
            account_id=account_id,
            resource_type="wallet",
            resource_id=wallet.wallet_id,
        )
        return wallet

    async def get_balance(self, account_id: str, session=None) -> Decimal:
        wallet = await self.get_wallet(account_id, session=session)
        return wallet.balance if wallet else ZERO

    # =========================================================================
    # Balance primitives
    # =========================================================================

    async def credit(
        self,
        account_id: str,
        amount: Decimal,
        reason: TransactionReason,
        reference_id: Optional[str] = None,
        session=None,
    ) -> WalletTransaction:
        """Increase balance by amount and append a credit row."""
        amount = require_positive_amount(amount, "Credit")

        db = database.get_db()
        now = datetime.now(timezone.utc)
        seed = Wallet(account_id=account_id)
        wallet = await db.wallets.find_one_and_update(
            {"account_id": account_id},
            {
                "$inc": {"balance": amount},
                "$set": {"updated_at": now},
                "$setOnInsert": {
                    "wallet_id": seed.wallet_id,
                    "currency": seed.currency,
                    "created_at": now,
                },
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
            session=session,
        )

        txn = await self._append_transaction(
            account_id,
            TransactionDirection.CREDIT,
            amount,
            reason,
            reference_id,
            wallet["balance"],
            session=session,
        )
        logger.info(
            "WALLET_CREDIT account_id=%s amount=%s reason=%s balance=%s",
            account_id, amount, reason.value, wallet["balance"],
        )
        return txn

    async def debit(
        self,
        account_id: str,
        amount: Decimal,
        reason: TransactionReason,
        reference_id: Optional[str] = None,
        session=None,
    ) -> WalletTransaction:
        """Decrease balance by amount and append a debit row.

        Raises InsufficientFunds (balance unchanged) when balance < amount.
        """
        amount = require_positive_amount(amount, "Debit")

        db = database.get_db()
        wallet = await db.wallets.find_one_and_update(
            {"account_id": account_id, "balance": {"$gte": amount}},
            {
                "$inc": {"balance": -amount},
                "$set": {"updated_at": datetime.now(timezone.utc)},
            },
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
            session=session,
        )
        if wallet is None:
            available = await self.get_balance(account_id, session=session)
            logger.warning(
                "WALLET_DEBIT_REJECTED account_id=%s amount=%s available=%s reason=%s",
                account_id, amount, available, reason.value,
            )
            raise InsufficientFunds(
                f"Insufficient wallet balance: {amount} {DEFAULT_CURRENCY} required, {available} available",
                required=amount,
                available=available,
            )

        txn = await self._append_transaction(
            account_id,
            TransactionDirection.DEBIT,
            amount,
            reason,
            reference_id,
            wallet["balance"],
            session=session,
        )
        logger.info(
            "WALLET_DEBIT account_id=%s amount=%s reason=%s balance=%s",
            account_id, amount, reason.value, wallet["balance"],
        )
        return txn

    async def _append_transaction(
        self,
        account_id: str,
        direction: TransactionDirection,
        amount: Decimal,
        reason: TransactionReason,
        reference_id: Optional[str],
        balance_after: Decimal,
        session=None,
    ) -> WalletTransaction:
        db = database.get_db()
        txn = WalletTransaction(
            account_id=account_id,
            type=direction,
            amount=amount,
            reason=reason,
            reference_id=reference_id,
            balance_after=balance_after,
        )
        await db.wallet_transactions.insert_one(txn.model_dump(), session=session)
        return txn

    # =========================================================================
    # Receipts
    # =========================================================================

    async def issue_receipt(
        self,
        account_id: str,
        reference_id: str,
        receipt_type: ReceiptType,
        amount: Decimal,
        session=None,
    ) -> Receipt:
        db = database.get_db()
        receipt = Receipt(
            account_id=account_id,
            reference_id=reference_id,
            type=receipt_type,
            amount=amount,
        )
        await db.receipts.insert_one(receipt.model_dump(), session=session)
        return receipt

    # =========================================================================
    # History
    # =========================================================================

    async def get_transactions(self, account_id: str, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """Newest-first transaction page with pagination metadata."""
        page = max(page, 1)
        limit = max(limit, 1)
        db = database.get_db()

        cursor = db.wallet_transactions.find(
            {"account_id": account_id},
            {"_id": 0},
        ).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
        transactions = await cursor.to_list(length=limit)
        total = await db.wallet_transactions.count_documents({"account_id": account_id})

        return {
            "transactions": transactions,
            "pagination": {
                "total": total,
                "page": page,
                "pages": math.ceil(total / limit),
            },
        }

    async def get_receipts(self, account_id: str) -> List[Dict[str, Any]]:
        db = database.get_db()
        cursor = db.receipts.find({"account_id": account_id}, {"_id": 0}).sort("issued_at", -1)
        return await cursor.to_list(length=None)


# Singleton instance
wallet_service = WalletService()
