from pydantic import AfterValidator, BaseModel, EmailStr, Field, ConfigDict
from typing import Annotated, Optional, Dict, Any, List, Literal, Union
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
import os
import uuid


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# MONEY
# ============================================================================

# Amounts are Decimal in piastres precision; MongoDB stores them as Decimal128
MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Quantize an amount to piastres. Floats go through str() so 0.1 stays 0.1.

    Raises decimal.InvalidOperation for values that are not numbers.
    """
    return Decimal(str(value)).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


Money = Annotated[Decimal, AfterValidator(to_money)]


# ============================================================================
# BILLING CONSTANTS
# ============================================================================

DEFAULT_CURRENCY = os.getenv("BILLING_CURRENCY", "EGP")
MIN_WALLET_BALANCE = to_money(os.getenv("MIN_WALLET_BALANCE", "250"))
FALLBACK_ORDER_FEE = to_money(os.getenv("FALLBACK_ORDER_FEE", "0.5"))
GRACE_PERIOD_DAYS = int(os.getenv("GRACE_PERIOD_DAYS", "7"))

# Gateway-confirmed subscription payments run for a fixed window
WEBHOOK_SUBSCRIPTION_DAYS = 30
# Materialized free fallback subscriptions
FREE_FALLBACK_YEARS = 10

UNLIMITED = -1

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    MERCHANT = "merchant"
    ADMIN = "admin"

class PlanType(str, Enum):
    FREE = "free"
    PAID = "paid"

class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"

class TransactionDirection(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"

class TransactionReason(str, Enum):
    ORDER_FEE = "order_fee"
    PLAN_PAYMENT = "plan_payment"
    RECHARGE = "recharge"

class ReceiptType(str, Enum):
    ORDER = "order"
    WALLET_RECHARGE = "wallet_recharge"
    PLAN_PAYMENT = "plan_payment"

class PaymentPurpose(str, Enum):
    RECHARGE = "recharge"
    SUBSCRIPTION = "subscription"

class PaymentEventStatus(str, Enum):
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"
    IGNORED = "IGNORED"

class BlockingReason(str, Enum):
    LOW_WALLET = "LOW_WALLET"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"

class AuditAction(str, Enum):
    # Accounts
    ACCOUNT_REGISTERED = "ACCOUNT_REGISTERED"

    # Wallet
    WALLET_CREATED = "WALLET_CREATED"
    WALLET_RECHARGE_SIMULATED = "WALLET_RECHARGE_SIMULATED"

    # Subscriptions
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    SUBSCRIPTION_PAST_DUE = "SUBSCRIPTION_PAST_DUE"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"

    # Orders
    ORDER_FEE_UNCOLLECTED = "ORDER_FEE_UNCOLLECTED"

    # Gating
    PLAN_GATE_DENIED = "PLAN_GATE_DENIED"

    # Payment gateway
    PAYMENT_EVENT_PROCESSED = "PAYMENT_EVENT_PROCESSED"
    PAYMENT_EVENT_FAILED = "PAYMENT_EVENT_FAILED"

# ============================================================================
# PLANS
# ============================================================================

class PlanFeatures(BaseModel):
    dropshipping: bool = False
    custom_domain: bool = False

class Plan(BaseModel):
    """Catalog entry. -1 limits mean unlimited."""
    model_config = ConfigDict(extra="ignore")

    plan_id: str = Field(default_factory=lambda: _new_id("PLN"))
    name: str
    type: PlanType
    monthly_price: Money = ZERO
    store_limit: int
    product_limit: int
    order_fee: Money = FALLBACK_ORDER_FEE
    features: PlanFeatures = Field(default_factory=PlanFeatures)
    is_active: bool = True
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_free(self) -> bool:
        return self.type == PlanType.FREE


class UnresolvedPlan(BaseModel):
    """Plan reference that has not been loaded from the catalogue yet."""
    kind: Literal["unresolved"] = "unresolved"
    plan_id: str

class ResolvedPlan(BaseModel):
    kind: Literal["resolved"] = "resolved"
    plan: Plan

    @property
    def plan_id(self) -> str:
        return self.plan.plan_id

PlanRef = Union[UnresolvedPlan, ResolvedPlan]

# ============================================================================
# LEDGER
# ============================================================================

class Wallet(BaseModel):
    model_config = ConfigDict(extra="ignore")

    wallet_id: str = Field(default_factory=lambda: _new_id("WAL"))
    account_id: str
    balance: Money = ZERO
    currency: str = DEFAULT_CURRENCY
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

class WalletTransaction(BaseModel):
    """Append-only ledger row. Never updated or deleted."""
    model_config = ConfigDict(extra="ignore")

    transaction_id: str = Field(default_factory=lambda: _new_id("TXN"))
    account_id: str
    type: TransactionDirection
    amount: Money
    reason: TransactionReason
    reference_id: Optional[str] = None
    balance_after: Optional[Money] = None
    created_at: datetime = Field(default_factory=_utcnow)

class Receipt(BaseModel):
    model_config = ConfigDict(extra="ignore")

    receipt_id: str = Field(default_factory=lambda: _new_id("RCP"))
    account_id: str
    reference_id: str
    type: ReceiptType
    amount: Money
    currency: str = DEFAULT_CURRENCY
    issued_at: datetime = Field(default_factory=_utcnow)

# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

class Subscription(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription_id: str = Field(default_factory=lambda: _new_id("SUB"))
    account_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    started_at: datetime = Field(default_factory=_utcnow)
    expires_at: datetime
    trial_expires_at: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def plan_ref(self) -> PlanRef:
        return UnresolvedPlan(plan_id=self.plan_id)

# ============================================================================
# BILLING PROFILE
# ============================================================================

class BillingAddress(BaseModel):
    line1: Optional[str] = None
    line2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: str = "Egypt"

class PaymentMethod(BaseModel):
    type: Literal["card", "bank_transfer", "manual"] = "manual"
    last4: Optional[str] = None
    brand: Optional[str] = None
    is_default: bool = False

class BillingProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str
    customer_name: str
    billing_email: EmailStr
    address: BillingAddress = Field(default_factory=BillingAddress)
    tax_id: Optional[str] = None
    payment_methods: List[PaymentMethod] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_utcnow)

# ============================================================================
# ACCOUNTS AND AUDIT
# ============================================================================

class Account(BaseModel):
    model_config = ConfigDict(extra="ignore")

    account_id: str = Field(default_factory=lambda: _new_id("ACC"))
    name: str
    email: EmailStr
    password_hash: str
    role: UserRole = UserRole.MERCHANT
    created_at: datetime = Field(default_factory=_utcnow)

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    account_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)
