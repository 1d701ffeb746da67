from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class TierId(str, Enum):
    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"

class SubscriptionStatus(str, Enum):
    FREE = "FREE"                  # No purchase on record
    LIFETIME = "LIFETIME"          # One-time payment settled
    ACTIVE = "ACTIVE"              # Recurring subscription in good standing
    TRIALING = "TRIALING"
    PAST_DUE = "PAST_DUE"
    UNPAID = "UNPAID"
    CANCELED = "CANCELED"
    INCOMPLETE = "INCOMPLETE"
    INCOMPLETE_EXPIRED = "INCOMPLETE_EXPIRED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"

class BillingMode(str, Enum):
    FREE = "free"
    LIFETIME = "lifetime"
    RECURRING = "recurring"

class CheckoutSessionStatus(str, Enum):
    PENDING = "PENDING"
    AWAITING_PAYMENT = "AWAITING_PAYMENT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"

class UserRole(str, Enum):
    ROLE_USER = "ROLE_USER"
    ROLE_ADMIN = "ROLE_ADMIN"

class AuditAction(str, Enum):
    # Billing
    CHECKOUT_CREATED = "CHECKOUT_CREATED"
    CHECKOUT_EXPIRED = "CHECKOUT_EXPIRED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    STRIPE_EVENT_FAILED = "STRIPE_EVENT_FAILED"
    ENTITLEMENT_CORRECTED = "ENTITLEMENT_CORRECTED"

    # Gating
    FEATURE_GATE_DENIED = "FEATURE_GATE_DENIED"
    USAGE_LIMIT_DENIED = "USAGE_LIMIT_DENIED"

    # Cards
    CARD_CREATED = "CARD_CREATED"
    CARD_DELETED = "CARD_DELETED"

# ============================================================================
# DATA MODELS
# ============================================================================

class CheckoutSessionRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_id: str
    user_id: str
    tier_id: TierId
    status: CheckoutSessionStatus = CheckoutSessionStatus.PENDING
    checkout_url: Optional[str] = None
    amount_total: Optional[int] = None  # cents
    currency: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

class PaymentRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    payment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    subscription_id: Optional[str] = None
    tier_id: Optional[TierId] = None
    stripe_payment_intent_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    stripe_checkout_session_id: Optional[str] = None
    stripe_charge_id: Optional[str] = None  # refund rows
    amount: float  # major units (converted from cents)
    currency: str = "eur"
    status: str = "succeeded"
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class SocialLink(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(default_factory=lambda: uuid.uuid4().hex[:10])
    platform: str
    url: str
    icon: str = "website"

class Card(BaseModel):
    model_config = ConfigDict(extra="ignore")

    card_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    internal_name: str
    slug: str
    links: List[SocialLink] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class CheckoutRequest(BaseModel):
    tier_id: str  # pro | business

class CreateCardRequest(BaseModel):
    internal_name: str = "New Untitled Site"

class AddLinkRequest(BaseModel):
    platform: str = "New Link"
    url: str = "https://"
    icon: str = "website"
