"""Billing profile storage (one per account, upserted)."""
from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging

from pymongo import ReturnDocument

from database import database
from models import BillingProfile

logger = logging.getLogger(__name__)


async def get_billing_profile(account_id: str) -> Optional[Dict[str, Any]]:
    db = database.get_db()
    return await db.billing_profiles.find_one({"account_id": account_id}, {"_id": 0})


async def update_billing_profile(account_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and upsert the profile. account_id always comes from the caller, never the body."""
    profile = BillingProfile(**{**fields, "account_id": account_id})
    doc = profile.model_dump()
    doc["updated_at"] = datetime.now(timezone.utc)

    db = database.get_db()
    saved = await db.billing_profiles.find_one_and_update(
        {"account_id": account_id},
        {"$set": doc},
        upsert=True,
        return_document=ReturnDocument.AFTER,
        projection={"_id": 0},
    )
    logger.info("Billing profile updated for account_id=%s", account_id)
    return saved
