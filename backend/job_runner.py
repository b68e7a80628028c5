"""
Shared job runner for scheduled background jobs.
Used by the server scheduler; each run_* returns a dict with "message" (and optionally counts).
"""
import logging

logger = logging.getLogger(__name__)


async def run_subscription_expiry_sweep():
    try:
        from services.subscription_service import subscription_service
        summary = await subscription_service.run_expiry_sweep()
        logger.info(
            f"Subscription expiry sweep completed: {summary['past_due']} past due, "
            f"{summary['expired']} expired, {summary['renewed']} renewed"
        )
        return {"message": "Subscription expiry sweep completed", **summary}
    except Exception as e:
        logger.error(f"Subscription expiry sweep failed: {e}")
        raise
