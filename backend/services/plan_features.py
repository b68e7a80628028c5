"""Plan Feature Matrix - pure entitlement lookup.

Plan display names are mapped onto four canonical tiers through an explicit,
versioned alias table. A name missing from the table resolves to STARTER, so an
unmapped plan can never unlock a gated feature.

Adding a plan to the catalogue means adding its display name to PLAN_ALIASES.
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional


PLAN_MATRIX_VERSION = "2024-06"


# ============================================================================
# TIERS AND FEATURES
# ============================================================================
class PlanTier(str, Enum):
    STARTER = "starter"
    PROFESSIONAL = "professional"
    PROFESSIONAL_PLUS = "professional_plus"
    ENTERPRISE = "enterprise"


class FeatureKey(str, Enum):
    COUPONS = "coupons"
    PIXELS = "pixels"
    SEO = "seo"
    ABANDONED_CART = "abandoned_cart"
    AI_MARKETING = "ai_marketing"


# Display name -> tier
PLAN_ALIASES: Dict[str, PlanTier] = {
    "Free": PlanTier.STARTER,
    "Basic": PlanTier.PROFESSIONAL,
    "Pro": PlanTier.PROFESSIONAL_PLUS,
    "Professional Plus": PlanTier.PROFESSIONAL_PLUS,
    "Enterprise": PlanTier.ENTERPRISE,
}

_PAID_TIERS = frozenset({PlanTier.PROFESSIONAL, PlanTier.PROFESSIONAL_PLUS, PlanTier.ENTERPRISE})

FEATURE_MATRIX: Dict[FeatureKey, FrozenSet[PlanTier]] = {
    FeatureKey.COUPONS: _PAID_TIERS,
    FeatureKey.PIXELS: _PAID_TIERS,
    FeatureKey.SEO: _PAID_TIERS,
    FeatureKey.ABANDONED_CART: frozenset({PlanTier.PROFESSIONAL_PLUS, PlanTier.ENTERPRISE}),
    FeatureKey.AI_MARKETING: frozenset({PlanTier.ENTERPRISE}),
}


def resolve_plan_tier(plan_name: Optional[str]) -> PlanTier:
    """Map a plan display name to its tier. Unknown or empty names fall to STARTER."""
    if not plan_name:
        return PlanTier.STARTER
    return PLAN_ALIASES.get(plan_name, PlanTier.STARTER)


def _feature_key(feature) -> Optional[FeatureKey]:
    try:
        return FeatureKey(feature)
    except ValueError:
        return None


def can_access_feature(plan_name: Optional[str], feature) -> bool:
    """True if the plan's tier is in the allow-list for feature. Unknown features are denied."""
    key = _feature_key(feature)
    if key is None:
        return False
    return resolve_plan_tier(plan_name) in FEATURE_MATRIX[key]


def features_for_plan(plan_name: Optional[str]) -> Dict[str, bool]:
    tier = resolve_plan_tier(plan_name)
    return {key.value: tier in allowed for key, allowed in FEATURE_MATRIX.items()}
