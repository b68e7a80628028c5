"""Unit of work strategies for multi-document ledger writes.

AtomicUnitOfWork runs the block inside a MongoDB multi-document transaction
(replica sets and sharded clusters). BestEffortUnitOfWork runs the same block as
plain sequential writes for standalone servers: nothing is rolled back on failure.

Usage:
    async with database.get_unit_of_work().begin() as session:
        await db.wallets.find_one_and_update(..., session=session)
        await db.wallet_transactions.insert_one(..., session=session)

session is None in best-effort mode; Motor treats session=None as "no session".
"""
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional
import logging

from pymongo.errors import PyMongoError

from services.billing_errors import BillingError, TransactionAbort

logger = logging.getLogger(__name__)

MODE_ATOMIC = "atomic"
MODE_BEST_EFFORT = "best_effort"


class AtomicUnitOfWork:
    mode = MODE_ATOMIC

    def __init__(self, client):
        self._client = client

    @asynccontextmanager
    async def begin(self) -> AsyncIterator:
        try:
            async with await self._client.start_session() as session:
                async with session.start_transaction():
                    yield session
        except BillingError:
            raise
        except PyMongoError as e:
            logger.error("UNIT_OF_WORK_ABORTED mode=atomic error=%s", e)
            raise TransactionAbort(
                "Ledger update failed and was rolled back",
                details={"mode": self.mode},
            ) from e


class BestEffortUnitOfWork:
    mode = MODE_BEST_EFFORT

    @asynccontextmanager
    async def begin(self) -> AsyncIterator[Optional[object]]:
        try:
            yield None
        except BillingError:
            raise
        except PyMongoError as e:
            # No rollback available: earlier writes in this block stay applied
            logger.critical(
                "UNIT_OF_WORK_PARTIAL mode=best_effort error=%s - ledger may need manual reconciliation", e
            )
            raise TransactionAbort(
                "Ledger update failed; partial writes may need reconciliation",
                details={"mode": self.mode},
            ) from e


def build_unit_of_work(mode: str, client, supports_transactions: bool):
    """Pick the strategy once at startup.

    mode is TRANSACTION_MODE: "atomic", "best_effort" or "auto".
    """
    mode = (mode or "auto").strip().lower()
    if mode == MODE_ATOMIC:
        if not supports_transactions:
            logger.warning("TRANSACTION_MODE=atomic but the server did not report transaction support")
        return AtomicUnitOfWork(client)
    if mode == MODE_BEST_EFFORT:
        logger.warning("Ledger unit of work running in BEST-EFFORT mode (TRANSACTION_MODE=best_effort)")
        return BestEffortUnitOfWork()
    if supports_transactions:
        logger.info("Ledger unit of work: atomic (multi-document transactions available)")
        return AtomicUnitOfWork(client)
    logger.warning(
        "Ledger unit of work running in BEST-EFFORT mode: MongoDB deployment is standalone, "
        "multi-document transactions unavailable"
    )
    return BestEffortUnitOfWork()
