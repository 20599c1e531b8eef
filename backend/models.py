from pydantic import BaseModel, EmailStr, Field, ConfigDict
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class RegistrationStatus(str, Enum):
    PARTIAL = "partial"
    PLAN_SELECTED = "plan_selected"
    ACTIVE = "active"
    CANCELED = "canceled"
    PENDING_DELETION = "pending_deletion"

class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELED = "canceled"
    PAST_DUE = "past_due"

class PlanInterval(str, Enum):
    MONTH = "month"
    QUARTER = "quarter"
    SEMESTER = "semester"
    YEAR = "year"

class CustomerType(str, Enum):
    INDIVIDUAL = "individual"
    COMPANY = "company"

class UserRole(str, Enum):
    ROLE_BUSINESS_OWNER = "ROLE_BUSINESS_OWNER"
    ROLE_ADMIN = "ROLE_ADMIN"

class IntentPurpose(str, Enum):
    SUBSCRIBE = "subscribe"
    PLAN_CHANGE = "plan_change"
    PAYMENT_METHOD_UPDATE = "payment_method_update"

class IntentStatus(str, Enum):
    PENDING = "PENDING"          # Natural key reserved, processor call in flight
    OPEN = "OPEN"                # Client secret issued, reusable
    CONSUMED = "CONSUMED"
    INVALIDATED = "INVALIDATED"

class IntentType(str, Enum):
    SETUP = "setup"
    PAYMENT = "payment"

class OnboardingStep(str, Enum):
    COLLECTING_IDENTITY = "collecting_identity"
    SELECTING_BUSINESS = "selecting_business"
    SELECTING_PLAN = "selecting_plan"
    AWAITING_PAYMENT = "awaiting_payment"
    COMPLETED = "completed"

class PaymentOutcome(str, Enum):
    SUCCESS = "success"
    CANCEL = "cancel"

class PlanChangeDirection(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    LATERAL = "lateral"

class AuditAction(str, Enum):
    # Onboarding
    LEAD_CAPTURED = "LEAD_CAPTURED"
    LEAD_CAPTURE_FAILED = "LEAD_CAPTURE_FAILED"
    PLAN_SELECTED = "PLAN_SELECTED"

    # Provisioning
    INTENT_CREATED = "INTENT_CREATED"
    INTENT_INVALIDATED = "INTENT_INVALIDATED"
    SUBSCRIPTION_ACTIVATED = "SUBSCRIPTION_ACTIVATED"
    BILLING_PROFILE_STORED = "BILLING_PROFILE_STORED"

    # Lifecycle
    SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
    RETENTION_OFFER_ACCEPTED = "RETENTION_OFFER_ACCEPTED"
    SUBSCRIPTION_RESUMED = "SUBSCRIPTION_RESUMED"
    SUBSCRIPTION_CANCELED = "SUBSCRIPTION_CANCELED"
    PLAN_CHANGED = "PLAN_CHANGED"
    PLAN_CHANGE_PAYMENT_REQUIRED = "PLAN_CHANGE_PAYMENT_REQUIRED"
    PAYMENT_METHOD_UPDATED = "PAYMENT_METHOD_UPDATED"

    # Auth
    USER_LOGIN = "USER_LOGIN"
    USER_LOGIN_FAILED = "USER_LOGIN_FAILED"

    # Admin Actions
    BUSINESS_UPDATED = "BUSINESS_UPDATED"
    PLAN_CATALOG_UPDATED = "PLAN_CATALOG_UPDATED"
    MARKED_PENDING_DELETION = "MARKED_PENDING_DELETION"

# ============================================================================
# PLAN CATALOG
# ============================================================================

class PlanFeature(BaseModel):
    """Single normalized feature row; plain-string features become included=True."""
    name: str
    included: bool = True

class SubscriptionPlan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: str
    name: str
    description: Optional[str] = None
    recurring_price: int = 0  # Minor units (cents)
    setup_price: int = 0
    currency: str = "EUR"
    interval: PlanInterval = PlanInterval.MONTH
    trial_days: int = 0
    features: List[PlanFeature] = Field(default_factory=list)
    popular: bool = False
    active: bool = True
    public: bool = True
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

# ============================================================================
# BILLING PROFILE
# ============================================================================

class BillingAddress(BaseModel):
    model_config = ConfigDict(extra="ignore")

    line1: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    country: str = "ES"

class BillingProfile(BaseModel):
    """Legal/billing identity. Fields default to empty so completeness is
    reported field by field instead of as a schema error."""
    model_config = ConfigDict(extra="ignore")

    customer_type: CustomerType = CustomerType.COMPANY
    legal_name: str = ""
    tax_id: str = ""
    email: str = ""
    phone: str = ""
    address: BillingAddress = Field(default_factory=BillingAddress)

# ============================================================================
# BUSINESS & SUBSCRIPTION
# ============================================================================

class OwnerIdentity(BaseModel):
    """Owner data captured at step 1. Holds a hash, never the raw password."""
    model_config = ConfigDict(extra="ignore")

    name: str
    email: EmailStr
    phone: str
    password_hash: str
    business_type: str = "restaurant"

class Owner(BaseModel):
    model_config = ConfigDict(extra="ignore")

    owner_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    email: EmailStr
    email_normalized: str
    phone: Optional[str] = None
    password_hash: str
    role: UserRole = UserRole.ROLE_BUSINESS_OWNER
    created_at: datetime = Field(default_factory=_utcnow)

class BusinessDescriptor(BaseModel):
    """Business selected at step 2 (place lookup result)."""
    model_config = ConfigDict(extra="ignore")

    name: str
    place_id: Optional[str] = None
    address: str = ""
    address_components: List[Dict[str, Any]] = Field(default_factory=list)
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: float = 0
    total_reviews: int = 0
    photo_url: Optional[str] = None
    country: str = "ES"

class RetentionDiscount(BaseModel):
    coupon_id: Optional[str] = None
    percent_off: int
    duration_in_months: int
    applied_at: datetime = Field(default_factory=_utcnow)

class Subscription(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan: str
    status: SubscriptionStatus
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    default_payment_method_id: Optional[str] = None
    valid_until: Optional[datetime] = None
    auto_renew: bool = True
    activated_intent_id: Optional[str] = None
    activated_at: datetime = Field(default_factory=_utcnow)
    paused_at: Optional[datetime] = None
    pause_reason: Optional[str] = None
    pause_feedback: Optional[str] = None
    retention_discount: Optional[RetentionDiscount] = None
    canceled_at: Optional[datetime] = None
    grace_until: Optional[datetime] = None
    cancel_at_period_end: bool = False
    history: List[Dict[str, Any]] = Field(default_factory=list)

class Business(BaseModel):
    model_config = ConfigDict(extra="ignore")

    business_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    owner_email: str
    name: str
    business_type: str = "restaurant"
    place: BusinessDescriptor
    registration_status: RegistrationStatus = RegistrationStatus.PARTIAL
    registration_step: int = 2
    plan: str = "pending"
    active: bool = False
    skip_subscription: bool = False
    subscription: Optional[Subscription] = None
    billing: Optional[Dict[str, Any]] = None
    pending_plan_change: Optional[Dict[str, Any]] = None
    deletion_scheduled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

class PaymentIntentRef(BaseModel):
    model_config = ConfigDict(extra="ignore")

    intent_ref_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    business_id: str
    plan_key: Optional[str] = None
    purpose: IntentPurpose = IntentPurpose.SUBSCRIBE
    status: IntentStatus = IntentStatus.PENDING
    active_key: Optional[str] = None
    intent_type: Optional[IntentType] = None
    external_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

# ============================================================================
# ONBOARDING SESSION
# ============================================================================

class OnboardingSession(BaseModel):
    """Complete state of one registration session. Mutated only through the
    pure transitions in services.onboarding_state."""
    model_config = ConfigDict(extra="ignore")

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step: OnboardingStep = OnboardingStep.COLLECTING_IDENTITY
    version: int = 0
    identity: Optional[OwnerIdentity] = None
    business: Optional[BusinessDescriptor] = None
    business_id: Optional[str] = None
    lead_saved: bool = False
    owner_exists: bool = False
    plan_key: Optional[str] = None
    billing: Optional[BillingProfile] = None
    client_secret: Optional[str] = None
    intent_id: Optional[str] = None
    payment_ready: bool = False
    errors: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

# ============================================================================
# AUDIT
# ============================================================================

class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore")

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[UserRole] = None
    actor_id: Optional[str] = None
    business_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=_utcnow)

# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class CreateBusinessRequest(BaseModel):
    owner_name: str
    email: EmailStr
    phone: str
    password: str
    business_type: str = "restaurant"
    business: BusinessDescriptor
    registration_status: RegistrationStatus = RegistrationStatus.PARTIAL
    plan: Optional[str] = None
    skip_subscription: bool = False

class UpdateBusinessRequest(BaseModel):
    name: Optional[str] = None
    business_type: Optional[str] = None
    plan: Optional[str] = None
    active: Optional[bool] = None

class PlanCreateRequest(BaseModel):
    key: str
    name: str
    description: Optional[str] = None
    recurring_price: int = Field(ge=0)
    setup_price: int = Field(default=0, ge=0)
    currency: str = "EUR"
    interval: PlanInterval = PlanInterval.MONTH
    trial_days: int = Field(default=0, ge=0)
    features: List[Any] = Field(default_factory=list)
    popular: bool = False
    active: bool = True
    public: bool = True

class PlanUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    recurring_price: Optional[int] = Field(default=None, ge=0)
    setup_price: Optional[int] = Field(default=None, ge=0)
    interval: Optional[PlanInterval] = None
    trial_days: Optional[int] = Field(default=None, ge=0)
    features: Optional[List[Any]] = None
    popular: Optional[bool] = None
    active: Optional[bool] = None
    public: Optional[bool] = None

class SubscribeRequest(BaseModel):
    business_id: str
    plan_key: str
    action: str = "subscribe"
    billing_info: BillingProfile

class ConfirmIntentRequest(BaseModel):
    business_id: str
    intent_id: str

class PauseRequest(BaseModel):
    reason: Optional[str] = None
    feedback: Optional[str] = None
    offer_accepted: bool = False

class CancelRequest(BaseModel):
    immediately: bool = False

class ChangePlanRequest(BaseModel):
    business_id: str
    new_plan_key: str
    current_plan_key: Optional[str] = None

class SetupIntentConfirmRequest(BaseModel):
    business_id: str
    setup_intent_id: str

class BusinessRequest(BaseModel):
    business_id: str

class IdentityRequest(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    password: str = ""
    password_confirmation: str = ""
    business_type: str = "restaurant"

class PlanSelectionRequest(BaseModel):
    plan_key: str

class BackRequest(BaseModel):
    step: OnboardingStep

class PaymentConfirmRequest(BaseModel):
    outcome: PaymentOutcome
    intent_id: Optional[str] = None

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]
