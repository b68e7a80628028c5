"""Plan Catalogue - read-only plan definitions for the ledger.

Plans live in the `plans` collection so operators can deactivate or reprice them;
DEFAULT_PLANS is the seed set written at startup (idempotent upsert by name).

Plan Structure:
- Free: 1 store, 50 products, prepaid order fees from the wallet
- Basic: 499/mo, 2 stores, 500 products, custom domain
- Pro: 999/mo, 5 stores, 2000 products, dropshipping + custom domain
- Enterprise: 2499/mo, unlimited stores and products
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Any
import logging

from database import database
from models import Plan, PlanType, UNLIMITED
from services.billing_errors import NotFound

logger = logging.getLogger(__name__)


# ============================================================================
# DEFAULT PLAN DEFINITIONS
# ============================================================================
DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "name": "Free",
        "type": PlanType.FREE.value,
        "monthly_price": Decimal("0.00"),
        "store_limit": 1,
        "product_limit": 50,
        "order_fee": Decimal("0.50"),
        "features": {"dropshipping": False, "custom_domain": False},
        "is_active": True,
    },
    {
        "name": "Basic",
        "type": PlanType.PAID.value,
        "monthly_price": Decimal("499.00"),
        "store_limit": 2,
        "product_limit": 500,
        "order_fee": Decimal("0.50"),
        "features": {"dropshipping": False, "custom_domain": True},
        "is_active": True,
    },
    {
        "name": "Pro",
        "type": PlanType.PAID.value,
        "monthly_price": Decimal("999.00"),
        "store_limit": 5,
        "product_limit": 2000,
        "order_fee": Decimal("0.50"),
        "features": {"dropshipping": True, "custom_domain": True},
        "is_active": True,
    },
    {
        "name": "Enterprise",
        "type": PlanType.PAID.value,
        "monthly_price": Decimal("2499.00"),
        "store_limit": UNLIMITED,
        "product_limit": UNLIMITED,
        "order_fee": Decimal("0.50"),
        "features": {"dropshipping": True, "custom_domain": True},
        "is_active": True,
    },
]


def is_within_limit(current_count: int, limit: int) -> bool:
    """True when one more item fits under limit (-1 = unlimited)."""
    if limit == UNLIMITED:
        return True
    return current_count < limit


class PlanCatalogue:
    """Lookups over the plans collection."""

    async def seed_default_plans(self, db=None) -> int:
        """Upsert DEFAULT_PLANS by name. Existing plan_ids are preserved."""
        db = db if db is not None else database.get_db()
        created = 0
        for definition in DEFAULT_PLANS:
            fresh = Plan(**definition)
            result = await db.plans.update_one(
                {"name": definition["name"]},
                {
                    "$set": dict(definition),
                    "$setOnInsert": {
                        "plan_id": fresh.plan_id,
                        "created_at": datetime.now(timezone.utc),
                    },
                },
                upsert=True,
            )
            if getattr(result, "upserted_id", None) is not None:
                created += 1
        logger.info("Plan catalogue seeded: %s created, %s total", created, len(DEFAULT_PLANS))
        return created

    async def get_plan(self, plan_id: str) -> Plan:
        db = database.get_db()
        doc = await db.plans.find_one({"plan_id": plan_id}, {"_id": 0})
        if not doc:
            raise NotFound(f"Plan {plan_id} not found", details={"plan_id": plan_id})
        return Plan(**doc)

    async def find_plan(self, plan_id: str) -> Optional[Plan]:
        db = database.get_db()
        doc = await db.plans.find_one({"plan_id": plan_id}, {"_id": 0})
        return Plan(**doc) if doc else None

    async def get_free_plan(self) -> Plan:
        db = database.get_db()
        doc = await db.plans.find_one({"type": PlanType.FREE.value, "is_active": True}, {"_id": 0})
        if not doc:
            raise NotFound("No active free plan in the catalogue")
        return Plan(**doc)

    async def list_active_plans(self) -> List[Plan]:
        db = database.get_db()
        docs = await db.plans.find({"is_active": True}, {"_id": 0}).sort("monthly_price", 1).to_list(length=100)
        return [Plan(**d) for d in docs]

    async def paid_plan_ids(self) -> List[str]:
        db = database.get_db()
        docs = await db.plans.find({"type": PlanType.PAID.value}, {"_id": 0, "plan_id": 1}).to_list(length=100)
        return [d["plan_id"] for d in docs]


# Singleton instance
plan_catalogue = PlanCatalogue()
