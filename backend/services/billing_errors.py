"""Billing error taxonomy.

Every failure the onboarding and lifecycle services raise derives from
BillingError so routes can translate them with one helper. Soft conflicts
(duplicate owner email) are NOT errors; they come back as CreateBusinessResult.
"""
from typing import Dict, Optional

import stripe


class BillingError(Exception):
    """Base class. error_code is stable and safe to show to clients."""

    error_code = "BILLING_ERROR"
    http_status = 400
    retryable = False

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class BillingValidationError(BillingError):
    """Field-level validation failure. Raised before any network call."""

    error_code = "VALIDATION_FAILED"
    http_status = 422

    def __init__(self, field_errors: Dict[str, str], message: str = "Billing details are incomplete or invalid"):
        super().__init__(message)
        self.field_errors = field_errors


class OnboardingStepError(BillingError):
    error_code = "STEP_NOT_ALLOWED"
    http_status = 400


class PlanNotFoundError(BillingError):
    error_code = "PLAN_NOT_FOUND"
    http_status = 404


class BusinessNotFoundError(BillingError):
    error_code = "BUSINESS_NOT_FOUND"
    http_status = 404


class SessionNotFoundError(BillingError):
    error_code = "SESSION_NOT_FOUND"
    http_status = 404


class SubscriptionStateError(BillingError):
    """Requested transition is not allowed from the stored status."""

    error_code = "INVALID_SUBSCRIPTION_STATE"
    http_status = 409


class IntentInProgressError(BillingError):
    """Another request holds the (business_id, plan_key) reservation."""

    error_code = "INTENT_IN_PROGRESS"
    http_status = 409
    retryable = True


class ConcurrentUpdateError(BillingError):
    error_code = "CONCURRENT_UPDATE"
    http_status = 409
    retryable = True


class PaymentNotConfirmedError(BillingError):
    """Processor has not (yet) reported the intent as succeeded."""

    error_code = "PAYMENT_NOT_CONFIRMED"
    http_status = 409
    retryable = True


class ProcessorError(BillingError):
    """Processor rejected the request (card declined, invalid billing data,
    currency mismatch). The processor message is kept verbatim."""

    error_code = "PROCESSOR_ERROR"
    http_status = 402
    retryable = True

    def __init__(self, message: str, processor_code: Optional[str] = None):
        super().__init__(message)
        self.processor_code = processor_code


class ProcessorUnavailableError(BillingError):
    """Transport failure talking to the processor. No local state changed."""

    error_code = "PROCESSOR_UNAVAILABLE"
    http_status = 503
    retryable = True


class StoreUnavailableError(BillingError):
    error_code = "STORE_FAILURE"
    http_status = 503
    retryable = True


def processor_error_from_stripe(exc: stripe.StripeError) -> BillingError:
    """Map a Stripe SDK exception onto the taxonomy (message kept verbatim)."""
    message = exc.user_message or str(exc)
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError)):
        return ProcessorUnavailableError(f"Payment processor unreachable: {message}")
    if isinstance(exc, stripe.APIError) and (exc.http_status or 500) >= 500:
        return ProcessorUnavailableError(f"Payment processor unavailable: {message}")
    return ProcessorError(message, processor_code=getattr(exc, "code", None))
