"""Subscription Provisioner - Stripe intents and subscription activation.

This service handles:
- Creating (or reusing) the setup/payment intent for a (business_id, plan_key)
- Activating the subscription once Stripe reports the intent as succeeded
- Activating free plans without touching Stripe
- Invalidating intents when the user backs out of payment

Key Principles:
- Idempotency by natural key: one live PaymentIntentRef per
  (business_id, plan_key), enforced by the unique `active_key` index
- The PaymentIntentRef id is the Stripe idempotency key, so a retried
  request can never create two Stripe subscriptions
- Activation is server-confirmed: the intent is retrieved from Stripe,
  client data is advisory only
- Activation consumes the ref with a conditional update; one caller wins,
  the others read the winner's result
"""
import stripe
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from pymongo.errors import DuplicateKeyError

from database import database
from models import (
    AuditAction, BillingProfile, Business, IntentPurpose, IntentStatus,
    IntentType, PaymentIntentRef, RegistrationStatus, Subscription,
    SubscriptionPlan, SubscriptionStatus,
)
from services.billing_errors import (
    BillingError, BillingValidationError, ConcurrentUpdateError,
    IntentInProgressError, PaymentNotConfirmedError, ProcessorError,
    SubscriptionStateError, processor_error_from_stripe,
)
from services.billing_profile import (
    attach_tax_id, is_complete, profile_from_billing_document,
    require_complete, store_billing_profile, to_stripe_customer_params,
    validate_billing_profile, normalize_tax_id,
)
from services.business_store import business_store
from services.plan_catalog import INTERVAL_MONTHS, plan_catalog, requires_payment
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

LIVE_STATUSES = (
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAUSED,
    SubscriptionStatus.PAST_DUE,
)

ACTIVATABLE_FROM = (
    RegistrationStatus.PARTIAL,
    RegistrationStatus.PLAN_SELECTED,
    RegistrationStatus.CANCELED,
)

UNCONSUMED = [IntentStatus.PENDING.value, IntentStatus.OPEN.value]


def natural_key(business_id: str, plan_key: str) -> str:
    return f"{business_id}:{plan_key}"


def interval_end(plan: SubscriptionPlan, start: datetime) -> datetime:
    return start + timedelta(days=30 * INTERVAL_MONTHS[plan.interval])


def _intent_payload(ref: PaymentIntentRef, plan: SubscriptionPlan, reused: bool) -> Dict[str, Any]:
    return {
        "client_secret": ref.client_secret,
        "intent_id": ref.external_intent_id,
        "intent_type": ref.intent_type.value if ref.intent_type else None,
        "subscription_id": ref.stripe_subscription_id,
        "customer_id": ref.stripe_customer_id,
        "reused": reused,
        "plan": {
            "key": plan.key,
            "name": plan.name,
            "price": plan.recurring_price,
            "setup_fee": plan.setup_price,
            "currency": plan.currency,
            "interval": plan.interval.value,
            "trial_days": plan.trial_days,
        },
    }


def verify_intent_succeeded(intent_type: IntentType, external_intent_id: str) -> Optional[str]:
    """Retrieve the intent from Stripe and require status == succeeded.

    Returns the payment method id attached to the intent.
    """
    try:
        if intent_type == IntentType.SETUP:
            intent = stripe.SetupIntent.retrieve(external_intent_id)
        else:
            intent = stripe.PaymentIntent.retrieve(external_intent_id)
    except stripe.StripeError as e:
        logger.error(f"Could not retrieve {intent_type.value} intent {external_intent_id}: {e}")
        raise processor_error_from_stripe(e)

    status = getattr(intent, "status", None)
    if status != "succeeded":
        raise PaymentNotConfirmedError(
            f"Payment has not been completed (intent status: {status})"
        )

    payment_method = getattr(intent, "payment_method", None)
    if payment_method is not None and not isinstance(payment_method, str):
        payment_method = getattr(payment_method, "id", None)
    return payment_method


class SubscriptionProvisioner:
    """Creates Stripe artifacts and maps them back onto the Business record."""

    # ------------------------------------------------------------------
    # Intent creation
    # ------------------------------------------------------------------

    async def create_intent(
        self,
        business_id: str,
        plan_key: str,
        billing_profile: BillingProfile,
    ) -> Dict[str, Any]:
        """Create or reuse the intent for (business_id, plan_key).

        Returns client_secret, intent_id, intent_type, subscription_id,
        customer_id and a plan summary. A retry while the first call is still
        talking to Stripe raises IntentInProgressError.
        """
        profile = require_complete(billing_profile)

        business = await business_store.require_business(business_id)
        if business.registration_status == RegistrationStatus.PENDING_DELETION:
            raise SubscriptionStateError("Business is scheduled for deletion")
        if business.subscription and business.subscription.status in LIVE_STATUSES:
            raise SubscriptionStateError(
                f"Business already has a {business.subscription.status.value} subscription"
            )

        plan = await plan_catalog.require_plan(plan_key)
        if not requires_payment(plan):
            raise SubscriptionStateError(f"Plan {plan_key} does not require payment")

        db = database.get_db()
        key = natural_key(business_id, plan_key)

        existing = await self._find_live_ref(key)
        if existing:
            return self._reuse(existing, plan)

        ref = PaymentIntentRef(
            business_id=business_id,
            plan_key=plan_key,
            purpose=IntentPurpose.SUBSCRIBE,
            status=IntentStatus.PENDING,
            active_key=key,
        )
        try:
            await db.payment_intents.insert_one(ref.model_dump())
        except DuplicateKeyError:
            # Lost the reservation race; resolve against the winner
            existing = await self._find_live_ref(key)
            if existing:
                return self._reuse(existing, plan)
            raise IntentInProgressError("Payment setup is already in progress, retry shortly")

        await self._invalidate_refs({
            "business_id": business_id,
            "purpose": IntentPurpose.SUBSCRIBE.value,
            "status": IntentStatus.OPEN.value,
            "plan_key": {"$ne": plan_key},
        }, reason="plan_changed")

        try:
            customer_id, stripe_tax_id = self._sync_customer(business, profile, ref.intent_ref_id)
        except stripe.StripeError as e:
            await self._release_reservation(ref, e)
            raise processor_error_from_stripe(e)

        # Stored before the intent so a failed attempt's retry reuses the customer
        await store_billing_profile(business_id, profile, customer_id, stripe_tax_id)

        try:
            price_id = await plan_catalog.ensure_stripe_price(plan)
            intent_type, external_id, client_secret, subscription_id = self._create_processor_intent(
                ref, plan, customer_id, price_id
            )
        except stripe.StripeError as e:
            await self._release_reservation(ref, e)
            raise processor_error_from_stripe(e)
        except BillingError as e:
            await self._release_reservation(ref, e)
            raise

        now = datetime.now(timezone.utc)
        result = await db.payment_intents.update_one(
            {"intent_ref_id": ref.intent_ref_id, "status": IntentStatus.PENDING.value},
            {"$set": {
                "status": IntentStatus.OPEN.value,
                "intent_type": intent_type.value,
                "external_intent_id": external_id,
                "client_secret": client_secret,
                "stripe_subscription_id": subscription_id,
                "stripe_customer_id": customer_id,
                "updated_at": now,
            }}
        )
        if result.matched_count == 0:
            # Invalidated while Stripe was being called
            self._cancel_incomplete_subscription(subscription_id)
            raise ConcurrentUpdateError("Payment setup was cancelled while in progress")

        ref.status = IntentStatus.OPEN
        ref.intent_type = intent_type
        ref.external_intent_id = external_id
        ref.client_secret = client_secret
        ref.stripe_subscription_id = subscription_id
        ref.stripe_customer_id = customer_id

        await create_audit_log(
            action=AuditAction.INTENT_CREATED,
            business_id=business_id,
            metadata={
                "plan_key": plan_key,
                "intent_type": intent_type.value,
                "intent_id": external_id,
                "stripe_subscription_id": subscription_id,
                "stripe_customer_id": customer_id,
            },
        )
        logger.info(
            f"INTENT_CREATED business_id={business_id} plan={plan_key} "
            f"type={intent_type.value} intent_id={external_id}"
        )
        return _intent_payload(ref, plan, reused=False)

    async def _release_reservation(self, ref: PaymentIntentRef, error: Exception) -> None:
        db = database.get_db()
        await db.payment_intents.delete_one({"intent_ref_id": ref.intent_ref_id})
        logger.error(f"INTENT_FAILED business_id={ref.business_id} plan={ref.plan_key} error={error}")

    async def _find_live_ref(self, key: str) -> Optional[PaymentIntentRef]:
        db = database.get_db()
        doc = await db.payment_intents.find_one(
            {"active_key": key, "status": {"$in": UNCONSUMED}},
            {"_id": 0}
        )
        return PaymentIntentRef(**doc) if doc else None

    def _reuse(self, ref: PaymentIntentRef, plan: SubscriptionPlan) -> Dict[str, Any]:
        if ref.status == IntentStatus.PENDING:
            raise IntentInProgressError("Payment setup is already in progress, retry shortly")
        logger.info(f"INTENT_REUSED business_id={ref.business_id} plan={ref.plan_key} intent_id={ref.external_intent_id}")
        return _intent_payload(ref, plan, reused=True)

    def _sync_customer(
        self,
        business: Business,
        profile: BillingProfile,
        idempotency_prefix: str,
    ) -> Tuple[str, Optional[str]]:
        """Get or create the Stripe customer and push billing details onto it."""
        params = to_stripe_customer_params(profile, fallback_email=business.owner_email)
        params["metadata"]["business_id"] = business.business_id

        stored = business.billing or {}
        customer_id = stored.get("stripe_customer_id")
        if not customer_id and business.subscription:
            customer_id = business.subscription.stripe_customer_id

        if customer_id:
            stripe.Customer.modify(customer_id, **params)
        else:
            customer = stripe.Customer.create(
                **params,
                idempotency_key=f"{idempotency_prefix}-customer",
            )
            customer_id = customer.id

        stripe_tax_id = stored.get("stripe_tax_id")
        if not stripe_tax_id or normalize_tax_id(stored.get("tax_id", "")) != profile.tax_id:
            stripe_tax_id = attach_tax_id(customer_id, profile)
        return customer_id, stripe_tax_id

    def _create_processor_intent(
        self,
        ref: PaymentIntentRef,
        plan: SubscriptionPlan,
        customer_id: str,
        price_id: Optional[str],
    ) -> Tuple[IntentType, str, str, Optional[str]]:
        """Create the Stripe subscription (or a one-off PaymentIntent for a
        setup-fee-only plan). Returns (intent_type, intent_id, client_secret,
        subscription_id)."""
        metadata = {"business_id": ref.business_id, "plan_key": plan.key, "intent_ref_id": ref.intent_ref_id}

        if not price_id:
            payment_intent = stripe.PaymentIntent.create(
                amount=plan.setup_price,
                currency=plan.currency.lower(),
                customer=customer_id,
                setup_future_usage="off_session",
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
                idempotency_key=ref.intent_ref_id,
            )
            return IntentType.PAYMENT, payment_intent.id, payment_intent.client_secret, None

        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "payment_behavior": "default_incomplete",
            "payment_settings": {"save_default_payment_method": "on_subscription"},
            "expand": ["latest_invoice.payment_intent", "pending_setup_intent"],
            "metadata": metadata,
        }
        if plan.trial_days > 0:
            params["trial_period_days"] = plan.trial_days
        if plan.setup_price > 0:
            params["add_invoice_items"] = [{
                "price_data": {
                    "currency": plan.currency.lower(),
                    "product": plan.stripe_product_id,
                    "unit_amount": plan.setup_price,
                },
            }]

        subscription = stripe.Subscription.create(**params, idempotency_key=ref.intent_ref_id)

        setup_intent = getattr(subscription, "pending_setup_intent", None)
        invoice = getattr(subscription, "latest_invoice", None)
        payment_intent = getattr(invoice, "payment_intent", None) if invoice else None

        if plan.trial_days > 0 and setup_intent:
            return IntentType.SETUP, setup_intent.id, setup_intent.client_secret, subscription.id
        if payment_intent:
            return IntentType.PAYMENT, payment_intent.id, payment_intent.client_secret, subscription.id
        if setup_intent:
            return IntentType.SETUP, setup_intent.id, setup_intent.client_secret, subscription.id

        self._cancel_incomplete_subscription(subscription.id)
        raise ProcessorError("Payment processor returned no confirmable intent")

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def activate(self, business_id: str, confirmed_intent_id: str) -> Subscription:
        """Activate the subscription for a confirmed intent. Safe to repeat."""
        db = database.get_db()
        doc = await db.payment_intents.find_one(
            {
                "business_id": business_id,
                "$or": [
                    {"external_intent_id": confirmed_intent_id},
                    {"intent_ref_id": confirmed_intent_id},
                ],
            },
            {"_id": 0}
        )
        if not doc:
            raise BillingValidationError({"intent_id": "Unknown payment intent for this business"})
        ref = PaymentIntentRef(**doc)

        if ref.purpose != IntentPurpose.SUBSCRIBE:
            raise SubscriptionStateError("Intent was not issued for a new subscription")
        if ref.status == IntentStatus.CONSUMED:
            return await self._activated_subscription(business_id)
        if ref.status == IntentStatus.INVALIDATED:
            raise SubscriptionStateError("Payment intent was cancelled; start payment again")
        if ref.status == IntentStatus.PENDING:
            raise IntentInProgressError("Payment setup is still in progress")

        payment_method = verify_intent_succeeded(ref.intent_type, ref.external_intent_id)

        business = await business_store.require_business(business_id)
        profile = profile_from_billing_document(business.billing)
        if not is_complete(profile):
            raise BillingValidationError(
                validate_billing_profile(profile) if profile else {"billing": "Billing profile is required"}
            )
        if business.registration_status not in ACTIVATABLE_FROM:
            raise SubscriptionStateError(
                f"Business cannot be activated from {business.registration_status.value}"
            )

        plan = await plan_catalog.require_plan(ref.plan_key, active_only=False)
        now = datetime.now(timezone.utc)
        valid_until = self._sync_processor_subscription(ref, plan, payment_method, now)

        result = await db.payment_intents.update_one(
            {"intent_ref_id": ref.intent_ref_id, "status": IntentStatus.OPEN.value},
            {
                "$set": {"status": IntentStatus.CONSUMED.value, "updated_at": now},
                "$unset": {"active_key": ""},
            }
        )
        if result.matched_count == 0:
            logger.info(f"Activation race lost for intent {ref.external_intent_id}; reading winner")
            return await self._activated_subscription(business_id)

        subscription = Subscription(
            plan=plan.key,
            status=SubscriptionStatus.TRIALING if plan.trial_days > 0 else SubscriptionStatus.ACTIVE,
            stripe_subscription_id=ref.stripe_subscription_id,
            stripe_customer_id=ref.stripe_customer_id,
            stripe_price_id=plan.stripe_price_id,
            default_payment_method_id=payment_method,
            valid_until=valid_until,
            activated_intent_id=ref.external_intent_id,
            activated_at=now,
            history=[{"action": "activated", "from_plan": None, "to_plan": plan.key, "at": now}],
        )
        await self._mark_active(business, subscription, ref)
        return subscription

    def _sync_processor_subscription(
        self,
        ref: PaymentIntentRef,
        plan: SubscriptionPlan,
        payment_method: Optional[str],
        now: datetime,
    ) -> datetime:
        """Store the confirmed payment method as default and work out valid_until."""
        if plan.trial_days > 0:
            valid_until = now + timedelta(days=plan.trial_days)
        else:
            valid_until = interval_end(plan, now)

        if not ref.stripe_subscription_id:
            return valid_until

        try:
            if payment_method:
                stripe.Customer.modify(
                    ref.stripe_customer_id,
                    invoice_settings={"default_payment_method": payment_method},
                )
                stripe_subscription = stripe.Subscription.modify(
                    ref.stripe_subscription_id,
                    default_payment_method=payment_method,
                )
            else:
                stripe_subscription = stripe.Subscription.retrieve(ref.stripe_subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Could not finalize Stripe subscription {ref.stripe_subscription_id}: {e}")
            raise processor_error_from_stripe(e)

        period_end = getattr(stripe_subscription, "current_period_end", None)
        if plan.trial_days <= 0 and isinstance(period_end, int):
            valid_until = datetime.fromtimestamp(period_end, tz=timezone.utc)
        return valid_until

    async def _mark_active(self, business: Business, subscription: Subscription, ref: Optional[PaymentIntentRef]) -> None:
        updated = await business_store.transition_status(
            business.business_id,
            allowed_from=ACTIVATABLE_FROM,
            to=RegistrationStatus.ACTIVE,
            extra={
                "subscription": subscription.model_dump(),
                "active": True,
                "plan": subscription.plan,
                "registration_step": 4,
                "skip_subscription": False,
                "deletion_scheduled_at": None,
            },
        )
        if not updated:
            logger.error(f"Business {business.business_id} changed state during activation")
            raise ConcurrentUpdateError("Business changed state during activation; retry")

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_ACTIVATED,
            business_id=business.business_id,
            before_state={"registration_status": business.registration_status.value, "plan": business.plan},
            after_state={"registration_status": RegistrationStatus.ACTIVE.value, "plan": subscription.plan},
            metadata={
                "status": subscription.status.value,
                "intent_id": ref.external_intent_id if ref else None,
                "stripe_subscription_id": subscription.stripe_subscription_id,
                "valid_until": subscription.valid_until.isoformat() if subscription.valid_until else None,
            },
        )
        logger.info(
            f"SUBSCRIPTION_ACTIVATED business_id={business.business_id} plan={subscription.plan} "
            f"status={subscription.status.value}"
        )

    async def _activated_subscription(self, business_id: str) -> Subscription:
        business = await business_store.require_business(business_id)
        if not business.subscription:
            raise ConcurrentUpdateError("Activation is still being recorded; retry")
        return business.subscription

    async def activate_without_payment(
        self,
        business_id: str,
        plan_key: str,
        billing_profile: Optional[BillingProfile] = None,
    ) -> Subscription:
        """Activate a free plan. No Stripe calls; idempotent."""
        plan = await plan_catalog.require_plan(plan_key)
        if requires_payment(plan):
            raise SubscriptionStateError(f"Plan {plan_key} requires payment")

        business = await business_store.require_business(business_id)
        current = business.subscription
        if current and current.status in LIVE_STATUSES:
            if current.plan == plan_key:
                return current
            raise SubscriptionStateError(
                f"Business already has a {current.status.value} subscription"
            )
        if business.registration_status not in ACTIVATABLE_FROM:
            raise SubscriptionStateError(
                f"Business cannot be activated from {business.registration_status.value}"
            )

        if billing_profile is not None:
            profile = require_complete(billing_profile)
            await store_billing_profile(business_id, profile)
        else:
            profile = profile_from_billing_document(business.billing)
            if not is_complete(profile):
                raise BillingValidationError(
                    validate_billing_profile(profile) if profile else {"billing": "Billing profile is required"}
                )

        now = datetime.now(timezone.utc)
        subscription = Subscription(
            plan=plan.key,
            status=SubscriptionStatus.TRIALING if plan.trial_days > 0 else SubscriptionStatus.ACTIVE,
            valid_until=now + timedelta(days=plan.trial_days) if plan.trial_days > 0 else None,
            auto_renew=False,
            activated_at=now,
            history=[{"action": "activated", "from_plan": None, "to_plan": plan.key, "at": now}],
        )
        await self._invalidate_refs({
            "business_id": business_id,
            "purpose": IntentPurpose.SUBSCRIBE.value,
            "status": {"$in": UNCONSUMED},
        }, reason="free_plan_selected")
        await self._mark_active(business, subscription, None)
        return subscription

    # ------------------------------------------------------------------
    # Invalidation / status
    # ------------------------------------------------------------------

    async def invalidate_intent(self, business_id: str, plan_key: Optional[str] = None) -> int:
        """Invalidate unconsumed subscribe intents (all plans when plan_key is None)."""
        query: Dict[str, Any] = {
            "business_id": business_id,
            "purpose": IntentPurpose.SUBSCRIBE.value,
            "status": {"$in": UNCONSUMED},
        }
        if plan_key:
            query["plan_key"] = plan_key
        return await self._invalidate_refs(query, reason="payment_cancelled")

    async def _invalidate_refs(self, query: Dict[str, Any], reason: str) -> int:
        db = database.get_db()
        docs = await db.payment_intents.find(query, {"_id": 0}).to_list(50)
        count = 0
        for doc in docs:
            ref = PaymentIntentRef(**doc)
            result = await db.payment_intents.update_one(
                {"intent_ref_id": ref.intent_ref_id, "status": {"$in": UNCONSUMED}},
                {
                    "$set": {"status": IntentStatus.INVALIDATED.value, "updated_at": datetime.now(timezone.utc)},
                    "$unset": {"active_key": ""},
                }
            )
            if result.matched_count == 0:
                continue
            count += 1
            self._cancel_incomplete_subscription(ref.stripe_subscription_id)
            await create_audit_log(
                action=AuditAction.INTENT_INVALIDATED,
                business_id=ref.business_id,
                metadata={"plan_key": ref.plan_key, "intent_id": ref.external_intent_id, "reason": reason},
            )
            logger.info(f"INTENT_INVALIDATED business_id={ref.business_id} plan={ref.plan_key} reason={reason}")
        return count

    def _cancel_incomplete_subscription(self, subscription_id: Optional[str]) -> None:
        if not subscription_id:
            return
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            logger.warning(f"Could not cancel incomplete Stripe subscription {subscription_id}: {e}")

    async def get_subscription_status(self, business_id: str) -> Dict[str, Any]:
        db = database.get_db()
        business = await business_store.require_business(business_id)
        open_doc = await db.payment_intents.find_one(
            {"business_id": business_id, "status": {"$in": UNCONSUMED}},
            {"_id": 0, "client_secret": 0},
            sort=[("created_at", -1)],
        )
        return {
            "business_id": business_id,
            "registration_status": business.registration_status.value,
            "plan": business.plan,
            "active": business.active,
            "subscription": business.subscription.model_dump(mode="json") if business.subscription else None,
            "pending_intent": {
                "plan_key": open_doc.get("plan_key"),
                "status": open_doc.get("status"),
                "intent_type": open_doc.get("intent_type"),
                "purpose": open_doc.get("purpose"),
            } if open_doc else None,
            "pending_plan_change": business.pending_plan_change,
        }


# Singleton instance
subscription_provisioner = SubscriptionProvisioner()
