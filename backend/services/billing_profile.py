"""Billing Profile Manager.

Validates the legal/billing identity collected before payment and maps it to
Stripe customer parameters. Validation is local and runs before any network
call; a Subscription is never activated against an incomplete profile.
"""
import re
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from pydantic import EmailStr, TypeAdapter, ValidationError

from models import AuditAction, BillingProfile, CustomerType
from services.billing_errors import BillingValidationError
from services.business_store import business_store
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

# Spanish tax identifiers
NIF_PATTERN = re.compile(r"^[0-9]{8}[A-Z]$")
NIE_PATTERN = re.compile(r"^[XYZ][0-9]{7}[A-Z]$")
CIF_PATTERN = re.compile(r"^[ABCDEFGHJNPQRSUVW][0-9]{7}[0-9A-J]$")

STRIPE_TAX_ID_TYPE = "es_cif"

_email_adapter = TypeAdapter(EmailStr)


def is_valid_email(value: str) -> bool:
    try:
        _email_adapter.validate_python(value)
        return True
    except ValidationError:
        return False


def normalize_tax_id(tax_id: str) -> str:
    return re.sub(r"[\s\-]", "", tax_id or "").upper()


def mask_tax_id(tax_id: Optional[str]) -> str:
    if not tax_id:
        return "not provided"
    return "***" + tax_id[-4:]


def validate_tax_id(customer_type: CustomerType, tax_id: str) -> bool:
    """Companies need a CIF; individuals a NIF or NIE."""
    value = normalize_tax_id(tax_id)
    if customer_type == CustomerType.COMPANY:
        return bool(CIF_PATTERN.match(value))
    return bool(NIF_PATTERN.match(value) or NIE_PATTERN.match(value))


def validate_billing_profile(profile: BillingProfile) -> Dict[str, str]:
    """Return field -> message for every missing or malformed field."""
    errors: Dict[str, str] = {}

    if not profile.legal_name.strip():
        errors["legal_name"] = "Legal name is required"

    if not profile.tax_id.strip():
        errors["tax_id"] = "Tax id is required"
    elif not validate_tax_id(profile.customer_type, profile.tax_id):
        if profile.customer_type == CustomerType.COMPANY:
            errors["tax_id"] = "Invalid CIF format"
        else:
            errors["tax_id"] = "Invalid NIF/NIE format"

    if profile.email and not is_valid_email(profile.email):
        errors["email"] = "Invalid email address"

    address = profile.address
    if not address.line1.strip():
        errors["address.line1"] = "Address is required"
    if not address.city.strip():
        errors["address.city"] = "City is required"
    if not address.postal_code.strip():
        errors["address.postal_code"] = "Postal code is required"
    if not address.country.strip():
        errors["address.country"] = "Country is required"

    return errors


def is_complete(profile: Optional[BillingProfile]) -> bool:
    return profile is not None and not validate_billing_profile(profile)


def require_complete(profile: BillingProfile) -> BillingProfile:
    """Raise BillingValidationError unless the profile is complete.

    Returns a copy with the tax id normalized.
    """
    errors = validate_billing_profile(profile)
    if errors:
        logger.info(f"BILLING_PROFILE_INVALID fields={','.join(sorted(errors))}")
        raise BillingValidationError(errors)
    return profile.model_copy(update={"tax_id": normalize_tax_id(profile.tax_id)})


def profile_from_billing_document(doc: Optional[Dict[str, Any]]) -> Optional[BillingProfile]:
    """Rebuild a BillingProfile from the embedded business.billing document."""
    if not doc:
        return None
    return BillingProfile(**doc)


def to_stripe_customer_params(profile: BillingProfile, fallback_email: Optional[str] = None) -> Dict[str, Any]:
    address = profile.address
    return {
        "name": profile.legal_name,
        "email": profile.email or fallback_email,
        "phone": profile.phone or None,
        "address": {
            "line1": address.line1,
            "line2": address.line2 or None,
            "city": address.city,
            "state": address.state or None,
            "postal_code": address.postal_code,
            "country": address.country or "ES",
        },
        "metadata": {
            "customer_type": profile.customer_type.value,
            "legal_name": profile.legal_name,
        },
    }


def attach_tax_id(customer_id: str, profile: BillingProfile) -> Optional[str]:
    """Register the tax id on the Stripe customer. Failures are logged only:
    a rejected tax id must not block the subscription."""
    if not profile.tax_id:
        return None
    try:
        tax_id = stripe.Customer.create_tax_id(
            customer_id,
            type=STRIPE_TAX_ID_TYPE,
            value=normalize_tax_id(profile.tax_id),
        )
        return tax_id.id
    except stripe.StripeError as e:
        logger.warning(
            f"Tax id not attached to customer {customer_id} "
            f"(tax_id={mask_tax_id(profile.tax_id)}): {e}"
        )
        return None


async def store_billing_profile(
    business_id: str,
    profile: BillingProfile,
    stripe_customer_id: Optional[str] = None,
    stripe_tax_id: Optional[str] = None,
) -> None:
    await business_store.set_billing(business_id, profile, stripe_customer_id, stripe_tax_id)
    await create_audit_log(
        action=AuditAction.BILLING_PROFILE_STORED,
        business_id=business_id,
        metadata={
            "customer_type": profile.customer_type.value,
            "tax_id": mask_tax_id(profile.tax_id),
            "stripe_customer_id": stripe_customer_id,
            "stored_at": datetime.now(timezone.utc).isoformat(),
        },
    )
    logger.info(
        f"BILLING_PROFILE_STORED business_id={business_id} "
        f"tax_id={mask_tax_id(profile.tax_id)}"
    )
