"""
Feature Gating Middleware
Server-side enforcement of plan-based feature access.
Uses plan_features.can_access_feature as single source of truth; plan comes from
the request billing context, never from the request payload.
"""
from fastapi import Request
from models import AuditAction, SubscriptionStatus
from middleware.billing_context import resolve_billing_context
from services.billing_errors import FeatureLocked, NoPlan, SubscriptionInactive
from services.plan_features import can_access_feature
from utils.audit import create_audit_log
from functools import wraps
import logging

logger = logging.getLogger(__name__)


def require_feature(feature_key: str):
    """
    Decorator to enforce plan-based feature access.

    Usage:
        @router.get("/{store_id}/coupons")
        @require_feature("coupons")
        async def my_endpoint(request: Request, store_id: str):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(request: Request, *args, **kwargs):
            context = await resolve_billing_context(request)

            if not context.subscription or not context.plan:
                raise NoPlan("No active plan found. Please subscribe to access this feature.")

            if context.subscription.status != SubscriptionStatus.ACTIVE:
                raise SubscriptionInactive(
                    "Your subscription is not active. Please complete payment to access this feature."
                )

            plan_name = context.plan_name
            if not can_access_feature(plan_name, feature_key):
                await create_audit_log(
                    action=AuditAction.PLAN_GATE_DENIED,
                    actor_id=context.account_id,
                    account_id=context.account_id,
                    metadata={
                        "feature_key": feature_key,
                        "plan_name": plan_name,
                        "endpoint": str(request.url.path),
                        "method": request.method,
                    }
                )
                logger.warning(
                    "Feature access denied: account_id=%s plan=%s requested_feature=%s endpoint=%s method=%s",
                    context.account_id, plan_name, feature_key, request.url.path, request.method
                )
                raise FeatureLocked(
                    f"The '{feature_key}' feature is not included in your current plan. Please upgrade to unlock.",
                    details={"feature": feature_key},
                )

            # Feature allowed - proceed
            return await func(request, *args, **kwargs)

        return wrapper
    return decorator
