"""Pure transitions of the onboarding state machine.

    collecting_identity -> selecting_business -> selecting_plan
        -> awaiting_payment -> completed

Each function takes an OnboardingSession and returns a new one; nothing here
touches the database or Stripe. Forward transitions require the session to
be on the matching step. Backward navigation may target any earlier step
and never drops accumulated data.
"""
from datetime import datetime, timezone
from typing import Dict, Optional

from auth import validate_password_strength
from models import (
    BillingProfile, BusinessDescriptor, OnboardingSession, OnboardingStep,
    OwnerIdentity,
)
from services.billing_errors import OnboardingStepError
from services.billing_profile import is_valid_email

STEP_ORDER = [
    OnboardingStep.COLLECTING_IDENTITY,
    OnboardingStep.SELECTING_BUSINESS,
    OnboardingStep.SELECTING_PLAN,
    OnboardingStep.AWAITING_PAYMENT,
    OnboardingStep.COMPLETED,
]


def _advance(session: OnboardingSession, **changes) -> OnboardingSession:
    changes.setdefault("errors", {})
    changes["updated_at"] = datetime.now(timezone.utc)
    return session.model_copy(update=changes)


def require_step(session: OnboardingSession, step: OnboardingStep) -> None:
    if session.step != step:
        raise OnboardingStepError(
            f"Session is at {session.step.value}, expected {step.value}"
        )


def new_session() -> OnboardingSession:
    return OnboardingSession()


def validate_identity(
    name: str,
    email: str,
    phone: str,
    password: str,
    password_confirmation: str,
) -> Dict[str, str]:
    errors: Dict[str, str] = {}
    if not name.strip():
        errors["name"] = "Name is required"
    if not email.strip():
        errors["email"] = "Email is required"
    elif not is_valid_email(email.strip()):
        errors["email"] = "Invalid email address"
    if not phone.strip():
        errors["phone"] = "Phone is required"
    if not password:
        errors["password"] = "Password is required"
    else:
        valid, message = validate_password_strength(password)
        if not valid:
            errors["password"] = message
    if password != password_confirmation:
        errors["password_confirmation"] = "Passwords do not match"
    return errors


def with_errors(session: OnboardingSession, errors: Dict[str, str]) -> OnboardingSession:
    """Record inline errors without moving the step."""
    return session.model_copy(update={"errors": dict(errors), "updated_at": datetime.now(timezone.utc)})


def identity_captured(session: OnboardingSession, identity: OwnerIdentity) -> OnboardingSession:
    require_step(session, OnboardingStep.COLLECTING_IDENTITY)
    return _advance(session, identity=identity, step=OnboardingStep.SELECTING_BUSINESS)


def business_selected(
    session: OnboardingSession,
    descriptor: BusinessDescriptor,
    business_id: Optional[str],
    lead_saved: bool,
    owner_exists: bool,
) -> OnboardingSession:
    """Always advances; whether the lead was saved is only recorded."""
    require_step(session, OnboardingStep.SELECTING_BUSINESS)
    if session.identity is None:
        raise OnboardingStepError("Identity must be captured before selecting a business")
    return _advance(
        session,
        business=descriptor,
        business_id=business_id,
        lead_saved=lead_saved,
        owner_exists=owner_exists,
        step=OnboardingStep.SELECTING_PLAN,
    )


def plan_selected(session: OnboardingSession, plan_key: str, business_id: str) -> OnboardingSession:
    require_step(session, OnboardingStep.SELECTING_PLAN)
    if session.business is None:
        raise OnboardingStepError("A business must be selected before choosing a plan")
    changes = {
        "plan_key": plan_key,
        "business_id": business_id,
        "step": OnboardingStep.AWAITING_PAYMENT,
    }
    if session.plan_key != plan_key:
        changes.update(client_secret=None, intent_id=None, payment_ready=False)
    return _advance(session, **changes)


def payment_prepared(
    session: OnboardingSession,
    billing: BillingProfile,
    client_secret: str,
    intent_id: str,
) -> OnboardingSession:
    require_step(session, OnboardingStep.AWAITING_PAYMENT)
    return _advance(
        session,
        billing=billing,
        client_secret=client_secret,
        intent_id=intent_id,
        payment_ready=True,
    )


def payment_completed(session: OnboardingSession, billing: Optional[BillingProfile] = None) -> OnboardingSession:
    require_step(session, OnboardingStep.AWAITING_PAYMENT)
    return _advance(
        session,
        billing=billing or session.billing,
        client_secret=None,
        payment_ready=False,
        step=OnboardingStep.COMPLETED,
    )


def payment_cancelled(session: OnboardingSession) -> OnboardingSession:
    require_step(session, OnboardingStep.AWAITING_PAYMENT)
    return _advance(
        session,
        client_secret=None,
        intent_id=None,
        payment_ready=False,
        step=OnboardingStep.SELECTING_PLAN,
    )


def went_back(session: OnboardingSession, step: OnboardingStep) -> OnboardingSession:
    if session.step == OnboardingStep.COMPLETED:
        raise OnboardingStepError("Onboarding is already completed")
    if STEP_ORDER.index(step) >= STEP_ORDER.index(session.step):
        raise OnboardingStepError(f"Cannot go back to {step.value} from {session.step.value}")

    changes = {"step": step}
    if session.step == OnboardingStep.AWAITING_PAYMENT:
        changes.update(client_secret=None, payment_ready=False)
    return _advance(session, **changes)
