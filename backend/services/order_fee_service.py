"""Order Fee Settlement

Called once per created order, inside the order's unit of work when one is open:
1. resolve the merchant subscription (store override, else account)
2. fee = plan.order_fee, or FALLBACK_ORDER_FEE if the plan can't be read
3. free plans must already hold the fee in the wallet
4. debit + order_fee ledger row + order receipt
"""
from decimal import Decimal
from typing import Optional, Dict, Any, Tuple
import logging

from models import (
    Plan,
    PlanType,
    TransactionReason,
    ReceiptType,
    DEFAULT_CURRENCY,
    FALLBACK_ORDER_FEE,
)
from services.billing_errors import InsufficientFunds, NotFound
from services.subscription_service import subscription_service
from services.wallet_service import wallet_service

logger = logging.getLogger(__name__)


class OrderFeeService:

    async def _resolve_fee(self, plan_ref) -> Tuple[Decimal, Optional[PlanType]]:
        """(fee, plan type). Falls back to the constant fee on any plan read failure."""
        try:
            plan: Plan = await subscription_service.resolve_plan(plan_ref)
            fee = plan.order_fee
            if not fee.is_finite() or fee < 0:
                raise ValueError(f"plan {plan.name} has unusable order_fee {fee!r}")
            return fee, plan.type
        except Exception as e:
            logger.warning(
                "ORDER_FEE_FALLBACK plan_ref=%s fallback_fee=%s error=%s",
                getattr(plan_ref, "plan_id", None), FALLBACK_ORDER_FEE, e,
            )
            return FALLBACK_ORDER_FEE, None

    async def process_order_fee(
        self,
        account_id: str,
        order_id: str,
        store: Optional[Dict[str, Any]] = None,
        session=None,
    ) -> Decimal:
        """Charge the per-order platform fee. Returns the merchant's new balance.

        Raises InsufficientFunds (nothing written) when the wallet can't cover the fee.
        """
        sub = await subscription_service.resolve_subscription(account_id, store=store, session=session)
        if not sub:
            raise NotFound("Subscription not found", details={"account_id": account_id})

        fee, plan_type = await self._resolve_fee(sub.plan_ref)
        if fee == 0:
            return await wallet_service.get_balance(account_id, session=session)

        if plan_type == PlanType.FREE:
            balance = await wallet_service.get_balance(account_id, session=session)
            if balance < fee:
                logger.warning(
                    "ORDER_FEE_REJECTED account_id=%s order_id=%s fee=%s balance=%s plan_type=free",
                    account_id, order_id, fee, balance,
                )
                raise InsufficientFunds(
                    f"Insufficient wallet balance (Free plan requires prepaid fees of {fee} {DEFAULT_CURRENCY} per order)",
                    required=fee,
                    available=balance,
                )

        txn = await wallet_service.debit(
            account_id,
            fee,
            TransactionReason.ORDER_FEE,
            reference_id=order_id,
            session=session,
        )
        await wallet_service.issue_receipt(
            account_id,
            order_id,
            ReceiptType.ORDER,
            fee,
            session=session,
        )
        logger.info(
            "ORDER_FEE_COLLECTED account_id=%s order_id=%s fee=%s balance=%s",
            account_id, order_id, fee, txn.balance_after,
        )
        return txn.balance_after


# Singleton instance
order_fee_service = OrderFeeService()
