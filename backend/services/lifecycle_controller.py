"""Lifecycle Controller - post-activation subscription operations.

State machine over Subscription.status:

    trialing/active <-> paused
    * -> canceled  (resumable until grace_until)

Every local write is a conditional update against the stored
subscription.status, so two concurrent operations on the same Business
cannot both succeed. Stripe is called first; the local transition follows.
"""
import os
import stripe
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from database import database
from models import (
    AuditAction, Business, IntentPurpose, IntentStatus, IntentType,
    PaymentIntentRef, PlanChangeDirection, RegistrationStatus,
    RetentionDiscount, Subscription, SubscriptionPlan, SubscriptionStatus,
)
from services.billing_errors import (
    BillingValidationError, ConcurrentUpdateError, ProcessorError,
    SubscriptionStateError, processor_error_from_stripe,
)
from services.billing_profile import (
    profile_from_billing_document, require_complete, to_stripe_customer_params,
)
from services.business_store import business_store
from services.plan_catalog import compare_tiers, plan_catalog, requires_payment
from services.subscription_provisioner import LIVE_STATUSES, verify_intent_succeeded
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

CANCEL_GRACE_DAYS = int(os.getenv("CANCEL_GRACE_DAYS", "30"))
RETENTION_DISCOUNT_PERCENT = int(os.getenv("RETENTION_DISCOUNT_PERCENT", "25"))
RETENTION_DISCOUNT_MONTHS = int(os.getenv("RETENTION_DISCOUNT_MONTHS", "3"))

SERVING_STATUSES = (SubscriptionStatus.TRIALING, SubscriptionStatus.ACTIVE)


def retention_coupon_id() -> str:
    return f"RETENTION_{RETENTION_DISCOUNT_PERCENT}_{RETENTION_DISCOUNT_MONTHS}M"


def _subscription_payload(business: Business) -> Optional[Dict[str, Any]]:
    return business.subscription.model_dump(mode="json") if business.subscription else None


class LifecycleController:
    """Pause, resume, cancel, change plan and update payment method."""

    async def _require_subscription(self, business_id: str) -> tuple[Business, Subscription]:
        business = await business_store.require_business(business_id)
        if not business.subscription:
            raise SubscriptionStateError("Business has no subscription")
        return business, business.subscription

    async def _status_after_pause(self, subscription: Subscription) -> SubscriptionStatus:
        """trialing while the plan's trial is still running, otherwise active."""
        plan = await plan_catalog.get_plan(subscription.plan)
        if plan and plan.trial_days > 0:
            trial_end = subscription.activated_at + timedelta(days=plan.trial_days)
            if trial_end > datetime.now(timezone.utc):
                return SubscriptionStatus.TRIALING
        return SubscriptionStatus.ACTIVE

    # ------------------------------------------------------------------
    # Pause / retention
    # ------------------------------------------------------------------

    async def pause(
        self,
        business_id: str,
        reason: Optional[str] = None,
        feedback: Optional[str] = None,
        offer_accepted: bool = False,
    ) -> Dict[str, Any]:
        """Pause billing, or apply the retention discount when the offer was accepted.

        Exactly one of the two side effects happens per call.
        """
        business, subscription = await self._require_subscription(business_id)

        if subscription.status == SubscriptionStatus.PAUSED and not offer_accepted:
            return {"success": True, "action": "already_paused", "subscription": _subscription_payload(business)}
        if subscription.status not in SERVING_STATUSES:
            raise SubscriptionStateError(
                f"Cannot pause a {subscription.status.value} subscription"
            )

        if offer_accepted:
            return await self._apply_retention_offer(business, subscription, reason, feedback)

        if subscription.stripe_subscription_id:
            try:
                stripe.Subscription.modify(
                    subscription.stripe_subscription_id,
                    pause_collection={"behavior": "mark_uncollectible"},
                )
            except stripe.StripeError as e:
                logger.error(f"Stripe pause failed for {business_id}: {e}")
                raise processor_error_from_stripe(e)

        now = datetime.now(timezone.utc)
        updated = await business_store.update_subscription(
            business_id,
            allowed_statuses=SERVING_STATUSES,
            changes={
                "status": SubscriptionStatus.PAUSED.value,
                "paused_at": now,
                "pause_reason": reason,
                "pause_feedback": feedback,
            },
            push_history={"action": "paused", "from_plan": subscription.plan, "to_plan": subscription.plan, "at": now},
        )
        if not updated:
            raise ConcurrentUpdateError("Subscription changed while pausing; reload and retry")

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_PAUSED,
            business_id=business_id,
            before_state={"status": subscription.status.value},
            after_state={"status": SubscriptionStatus.PAUSED.value},
            metadata={"reason": reason, "feedback": feedback},
        )
        logger.info(f"SUBSCRIPTION_PAUSED business_id={business_id} reason={reason}")
        return {"success": True, "action": "paused", "subscription": _subscription_payload(updated)}

    async def _apply_retention_offer(
        self,
        business: Business,
        subscription: Subscription,
        reason: Optional[str],
        feedback: Optional[str],
    ) -> Dict[str, Any]:
        if subscription.retention_discount:
            return {"success": True, "action": "retention_offer_already_applied", "subscription": _subscription_payload(business)}

        coupon_id = None
        if subscription.stripe_subscription_id:
            try:
                coupon_id = self._get_or_create_retention_coupon()
                stripe.Subscription.modify(
                    subscription.stripe_subscription_id,
                    discounts=[{"coupon": coupon_id}],
                )
            except stripe.StripeError as e:
                logger.error(f"Retention discount failed for {business.business_id}: {e}")
                raise processor_error_from_stripe(e)

        discount = RetentionDiscount(
            coupon_id=coupon_id,
            percent_off=RETENTION_DISCOUNT_PERCENT,
            duration_in_months=RETENTION_DISCOUNT_MONTHS,
        )
        updated = await business_store.update_subscription(
            business.business_id,
            allowed_statuses=SERVING_STATUSES,
            changes={"retention_discount": discount.model_dump()},
        )
        if not updated:
            raise ConcurrentUpdateError("Subscription changed while applying the offer; reload and retry")

        await create_audit_log(
            action=AuditAction.RETENTION_OFFER_ACCEPTED,
            business_id=business.business_id,
            metadata={
                "coupon_id": coupon_id,
                "percent_off": discount.percent_off,
                "duration_in_months": discount.duration_in_months,
                "reason": reason,
                "feedback": feedback,
            },
        )
        logger.info(f"RETENTION_OFFER_ACCEPTED business_id={business.business_id} coupon={coupon_id}")
        return {"success": True, "action": "retention_offer_applied", "subscription": _subscription_payload(updated)}

    def _get_or_create_retention_coupon(self) -> str:
        coupon_id = retention_coupon_id()
        try:
            return stripe.Coupon.retrieve(coupon_id).id
        except stripe.InvalidRequestError:
            coupon = stripe.Coupon.create(
                id=coupon_id,
                percent_off=RETENTION_DISCOUNT_PERCENT,
                duration="repeating",
                duration_in_months=RETENTION_DISCOUNT_MONTHS,
                name=f"Retention {RETENTION_DISCOUNT_PERCENT}% x {RETENTION_DISCOUNT_MONTHS} months",
            )
            return coupon.id

    # ------------------------------------------------------------------
    # Resume / cancel
    # ------------------------------------------------------------------

    async def resume(self, business_id: str) -> Dict[str, Any]:
        """Resume a paused subscription, or a canceled one inside its grace window."""
        business, subscription = await self._require_subscription(business_id)
        now = datetime.now(timezone.utc)

        if subscription.status in SERVING_STATUSES:
            return {"success": True, "action": "already_active", "status": subscription.status.value,
                    "subscription": _subscription_payload(business)}

        if subscription.status == SubscriptionStatus.PAUSED:
            if subscription.stripe_subscription_id:
                try:
                    stripe.Subscription.modify(subscription.stripe_subscription_id, pause_collection="")
                except stripe.StripeError as e:
                    logger.error(f"Stripe resume failed for {business_id}: {e}")
                    raise processor_error_from_stripe(e)

            target = await self._status_after_pause(subscription)
            updated = await business_store.update_subscription(
                business_id,
                allowed_statuses=[SubscriptionStatus.PAUSED],
                changes={"status": target.value, "paused_at": None, "pause_reason": None, "pause_feedback": None},
                push_history={"action": "resumed", "from_plan": subscription.plan, "to_plan": subscription.plan, "at": now},
            )
        elif subscription.status == SubscriptionStatus.CANCELED:
            if not subscription.grace_until or subscription.grace_until < now:
                raise SubscriptionStateError("Grace period has ended; subscribe again")
            if business.registration_status != RegistrationStatus.CANCELED:
                raise SubscriptionStateError(
                    f"Cannot resume while business is {business.registration_status.value}"
                )
            if subscription.stripe_subscription_id:
                if not subscription.cancel_at_period_end:
                    raise SubscriptionStateError("Subscription was canceled immediately; subscribe again")
                params: Dict[str, Any] = {"cancel_at_period_end": False}
                if subscription.paused_at:
                    # Canceled while paused: collection has to restart too
                    params["pause_collection"] = ""
                try:
                    stripe.Subscription.modify(subscription.stripe_subscription_id, **params)
                except stripe.StripeError as e:
                    logger.error(f"Stripe reactivation failed for {business_id}: {e}")
                    raise processor_error_from_stripe(e)

            target = await self._status_after_pause(subscription)
            updated = await business_store.update_subscription(
                business_id,
                allowed_statuses=[SubscriptionStatus.CANCELED],
                registration_statuses=[RegistrationStatus.CANCELED],
                changes={
                    "status": target.value,
                    "canceled_at": None,
                    "grace_until": None,
                    "cancel_at_period_end": False,
                    "auto_renew": True,
                    "paused_at": None,
                    "pause_reason": None,
                    "pause_feedback": None,
                },
                business_changes={
                    "registration_status": RegistrationStatus.ACTIVE.value,
                    "deletion_scheduled_at": None,
                },
                push_history={"action": "reactivated", "from_plan": subscription.plan, "to_plan": subscription.plan, "at": now},
            )
        else:
            raise SubscriptionStateError(f"Cannot resume a {subscription.status.value} subscription")

        if not updated:
            raise ConcurrentUpdateError("Subscription changed while resuming; reload and retry")

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_RESUMED,
            business_id=business_id,
            before_state={"status": subscription.status.value},
            after_state={"status": target.value},
        )
        logger.info(f"SUBSCRIPTION_RESUMED business_id={business_id} status={target.value}")
        return {"success": True, "action": "resumed", "status": target.value,
                "subscription": _subscription_payload(updated)}

    async def cancel(self, business_id: str, immediately: bool = False) -> Dict[str, Any]:
        """Cancel and open the grace window. The Business keeps serving until
        the deletion sweep moves it to pending_deletion."""
        business, subscription = await self._require_subscription(business_id)

        if subscription.status == SubscriptionStatus.CANCELED:
            return {"success": True, "action": "already_canceled", "subscription": _subscription_payload(business)}
        if subscription.status not in LIVE_STATUSES:
            raise SubscriptionStateError(f"Cannot cancel a {subscription.status.value} subscription")

        if subscription.stripe_subscription_id:
            try:
                if immediately:
                    stripe.Subscription.cancel(subscription.stripe_subscription_id)
                else:
                    stripe.Subscription.modify(subscription.stripe_subscription_id, cancel_at_period_end=True)
            except stripe.StripeError as e:
                logger.error(f"Stripe cancel failed for {business_id}: {e}")
                raise processor_error_from_stripe(e)

        now = datetime.now(timezone.utc)
        grace_until = now + timedelta(days=CANCEL_GRACE_DAYS)
        updated = await business_store.update_subscription(
            business_id,
            allowed_statuses=LIVE_STATUSES,
            registration_statuses=[RegistrationStatus.ACTIVE],
            changes={
                "status": SubscriptionStatus.CANCELED.value,
                "canceled_at": now,
                "grace_until": grace_until,
                "cancel_at_period_end": not immediately,
                "auto_renew": False,
            },
            business_changes={
                "registration_status": RegistrationStatus.CANCELED.value,
                "deletion_scheduled_at": grace_until,
            },
            push_history={"action": "canceled", "from_plan": subscription.plan, "to_plan": None, "at": now},
        )
        if not updated:
            raise ConcurrentUpdateError("Subscription changed while canceling; reload and retry")

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCELED,
            business_id=business_id,
            before_state={"status": subscription.status.value, "registration_status": business.registration_status.value},
            after_state={"status": SubscriptionStatus.CANCELED.value, "registration_status": RegistrationStatus.CANCELED.value},
            metadata={"immediately": immediately, "grace_until": grace_until.isoformat()},
        )
        logger.info(f"SUBSCRIPTION_CANCELED business_id={business_id} grace_until={grace_until.isoformat()}")
        return {
            "success": True,
            "action": "canceled",
            "grace_until": grace_until.isoformat(),
            "subscription": _subscription_payload(updated),
        }

    # ------------------------------------------------------------------
    # Plan change
    # ------------------------------------------------------------------

    async def change_plan(
        self,
        business_id: str,
        new_plan_key: str,
        current_plan_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Swap plans, or return a setup-intent client secret when a payment
        method has to be collected first. Callers branch on requires_payment."""
        business, subscription = await self._require_subscription(business_id)
        if subscription.status not in SERVING_STATUSES:
            raise SubscriptionStateError(
                f"Cannot change plan of a {subscription.status.value} subscription"
            )
        if current_plan_key and current_plan_key != subscription.plan:
            raise SubscriptionStateError(
                f"Plan is now {subscription.plan}, not {current_plan_key}; reload and retry"
            )
        if new_plan_key == subscription.plan:
            return {"success": True, "requires_payment": False, "changed": False, "plan": new_plan_key}

        new_plan = await plan_catalog.require_plan(new_plan_key)
        current_plan = await plan_catalog.require_plan(subscription.plan, active_only=False)
        direction = compare_tiers(current_plan, new_plan)

        if requires_payment(new_plan) and not subscription.default_payment_method_id:
            return await self._request_plan_change_payment(business, subscription, new_plan, direction)

        updated = await self._swap_plan(business, subscription, new_plan, direction)
        return {
            "success": True,
            "requires_payment": False,
            "changed": True,
            "direction": direction.value,
            "plan": new_plan.key,
            "subscription": _subscription_payload(updated),
        }

    async def _request_plan_change_payment(
        self,
        business: Business,
        subscription: Subscription,
        new_plan: SubscriptionPlan,
        direction: PlanChangeDirection,
    ) -> Dict[str, Any]:
        customer_id = await self._ensure_customer(business, subscription)
        setup_intent = self._create_setup_intent(customer_id, business.business_id, IntentPurpose.PLAN_CHANGE, new_plan.key)
        await self._record_setup_ref(business.business_id, IntentPurpose.PLAN_CHANGE, setup_intent, customer_id, new_plan.key)

        now = datetime.now(timezone.utc)
        pending = {
            "new_plan_key": new_plan.key,
            "from_plan": subscription.plan,
            "direction": direction.value,
            "setup_intent_id": setup_intent.id,
            "requested_at": now,
        }
        updated = await business_store.update_subscription(
            business.business_id,
            allowed_statuses=SERVING_STATUSES,
            changes={},
            business_changes={"pending_plan_change": pending},
        )
        if not updated:
            raise ConcurrentUpdateError("Subscription changed while preparing the plan change; reload and retry")

        await create_audit_log(
            action=AuditAction.PLAN_CHANGE_PAYMENT_REQUIRED,
            business_id=business.business_id,
            metadata={"from_plan": subscription.plan, "to_plan": new_plan.key, "direction": direction.value},
        )
        logger.info(
            f"PLAN_CHANGE_PAYMENT_REQUIRED business_id={business.business_id} "
            f"from={subscription.plan} to={new_plan.key}"
        )
        return {
            "success": False,
            "requires_payment": True,
            "client_secret": setup_intent.client_secret,
            "setup_intent_id": setup_intent.id,
            "direction": direction.value,
            "plan": new_plan.key,
        }

    async def confirm_plan_change(self, business_id: str, setup_intent_id: str) -> Dict[str, Any]:
        business, subscription = await self._require_subscription(business_id)
        ref = await self._find_setup_ref(business_id, IntentPurpose.PLAN_CHANGE, setup_intent_id)
        if ref.status == IntentStatus.CONSUMED:
            return {"success": True, "changed": False, "plan": subscription.plan,
                    "subscription": _subscription_payload(business)}

        if ref.status != IntentStatus.OPEN:
            raise SubscriptionStateError("No pending plan change for this setup intent")

        pending = business.pending_plan_change or {}
        if pending.get("setup_intent_id") != setup_intent_id:
            if pending or business.plan != ref.plan_key:
                raise SubscriptionStateError("No pending plan change for this setup intent")
            # Plan already swapped, only the ref is left open
            await self._consume_ref(ref)
            return {"success": True, "changed": False, "plan": business.plan,
                    "subscription": _subscription_payload(business)}

        payment_method = verify_intent_succeeded(IntentType.SETUP, setup_intent_id)
        self._set_customer_default_method(ref.stripe_customer_id, payment_method)
        new_plan = await plan_catalog.require_plan(pending["new_plan_key"])
        current_plan = await plan_catalog.require_plan(subscription.plan, active_only=False)
        direction = compare_tiers(current_plan, new_plan)

        subscription.stripe_customer_id = subscription.stripe_customer_id or ref.stripe_customer_id
        updated = await self._swap_plan(
            business, subscription, new_plan, direction, payment_method,
            pending_setup_intent_id=setup_intent_id,
        )
        await self._consume_ref(ref)
        return {
            "success": True,
            "changed": True,
            "direction": direction.value,
            "plan": new_plan.key,
            "subscription": _subscription_payload(updated),
        }

    async def _swap_plan(
        self,
        business: Business,
        subscription: Subscription,
        new_plan: SubscriptionPlan,
        direction: PlanChangeDirection,
        payment_method: Optional[str] = None,
        pending_setup_intent_id: Optional[str] = None,
    ) -> Business:
        """Move the Stripe subscription (if any) to the new plan, then the local record.

        With pending_setup_intent_id the local write only lands while that
        plan change is still pending, so two confirmations apply it once.
        """
        changes: Dict[str, Any] = {"plan": new_plan.key}
        if payment_method:
            changes["default_payment_method_id"] = payment_method

        try:
            if subscription.stripe_subscription_id and requires_payment(new_plan):
                price_id = await plan_catalog.ensure_stripe_price(new_plan)
                stripe_subscription = stripe.Subscription.retrieve(subscription.stripe_subscription_id)
                item_id = stripe_subscription["items"]["data"][0]["id"]
                params: Dict[str, Any] = {
                    "items": [{"id": item_id, "price": price_id}],
                    "proration_behavior": "always_invoice" if direction == PlanChangeDirection.UPGRADE else "none",
                    "metadata": {"business_id": business.business_id, "plan_key": new_plan.key},
                }
                if payment_method:
                    params["default_payment_method"] = payment_method
                stripe.Subscription.modify(subscription.stripe_subscription_id, **params)
                changes["stripe_price_id"] = price_id

            elif subscription.stripe_subscription_id:
                # Paid -> free: stop billing
                stripe.Subscription.cancel(subscription.stripe_subscription_id)
                changes["stripe_subscription_id"] = None
                changes["stripe_price_id"] = None
                changes["auto_renew"] = False

            elif requires_payment(new_plan):
                # Free -> paid: the first Stripe subscription for this Business
                price_id = await plan_catalog.ensure_stripe_price(new_plan)
                created = stripe.Subscription.create(
                    customer=subscription.stripe_customer_id,
                    items=[{"price": price_id}],
                    default_payment_method=payment_method or subscription.default_payment_method_id,
                    payment_behavior="error_if_incomplete",
                    metadata={"business_id": business.business_id, "plan_key": new_plan.key},
                    idempotency_key=(
                        f"{business.business_id}-{new_plan.key}-{len(subscription.history)}-"
                        f"{payment_method or subscription.default_payment_method_id}"
                    ),
                )
                created_status = getattr(created, "status", None)
                if created_status not in (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value):
                    self._cancel_unpaid_subscription(created.id)
                    logger.warning(
                        f"PLAN_CHANGE_UNPAID business_id={business.business_id} "
                        f"stripe_status={created_status}"
                    )
                    raise ProcessorError("The first payment for the new plan was not completed")
                changes["stripe_subscription_id"] = created.id
                changes["stripe_price_id"] = price_id
                changes["status"] = created_status
                changes["auto_renew"] = True
                period_end = getattr(created, "current_period_end", None)
                if isinstance(period_end, int):
                    changes["valid_until"] = datetime.fromtimestamp(period_end, tz=timezone.utc)
        except stripe.StripeError as e:
            logger.error(f"Stripe plan change failed for {business.business_id}: {e}")
            raise processor_error_from_stripe(e)

        now = datetime.now(timezone.utc)
        updated = await business_store.update_subscription(
            business.business_id,
            allowed_statuses=SERVING_STATUSES,
            changes=changes,
            extra_filter=(
                {"pending_plan_change.setup_intent_id": pending_setup_intent_id}
                if pending_setup_intent_id else None
            ),
            business_changes={"plan": new_plan.key, "pending_plan_change": None},
            push_history={
                "action": "plan_changed",
                "from_plan": subscription.plan,
                "to_plan": new_plan.key,
                "direction": direction.value,
                "at": now,
            },
        )
        if not updated:
            raise ConcurrentUpdateError("Subscription changed during the plan change; reload and retry")

        await create_audit_log(
            action=AuditAction.PLAN_CHANGED,
            business_id=business.business_id,
            before_state={"plan": subscription.plan},
            after_state={"plan": new_plan.key},
            metadata={"direction": direction.value},
        )
        logger.info(
            f"PLAN_CHANGED business_id={business.business_id} from={subscription.plan} "
            f"to={new_plan.key} direction={direction.value}"
        )
        return updated

    # ------------------------------------------------------------------
    # Payment method update
    # ------------------------------------------------------------------

    async def update_payment_method(self, business_id: str) -> Dict[str, Any]:
        """Issue a fresh setup intent bound to the existing customer. Never reused."""
        business, subscription = await self._require_subscription(business_id)
        customer_id = subscription.stripe_customer_id or (business.billing or {}).get("stripe_customer_id")
        if not customer_id:
            raise SubscriptionStateError("No billing customer on file for this business")

        await self._invalidate_open_refs(business_id, IntentPurpose.PAYMENT_METHOD_UPDATE)
        setup_intent = self._create_setup_intent(customer_id, business_id, IntentPurpose.PAYMENT_METHOD_UPDATE)
        await self._record_setup_ref(business_id, IntentPurpose.PAYMENT_METHOD_UPDATE, setup_intent, customer_id)

        billing = business.billing or {}
        logger.info(f"PAYMENT_METHOD_UPDATE_STARTED business_id={business_id} setup_intent={setup_intent.id}")
        return {
            "client_secret": setup_intent.client_secret,
            "setup_intent_id": setup_intent.id,
            "customer_info": {
                "customer_id": customer_id,
                "name": billing.get("legal_name") or business.name,
                "email": billing.get("email") or business.owner_email,
            },
        }

    async def confirm_payment_method_update(self, business_id: str, setup_intent_id: str) -> Dict[str, Any]:
        business, subscription = await self._require_subscription(business_id)
        ref = await self._find_setup_ref(business_id, IntentPurpose.PAYMENT_METHOD_UPDATE, setup_intent_id)
        if ref.status == IntentStatus.CONSUMED:
            return {"success": True, "payment_method_id": subscription.default_payment_method_id}
        if ref.status != IntentStatus.OPEN:
            raise SubscriptionStateError("Setup intent is no longer valid; start the update again")

        payment_method = verify_intent_succeeded(IntentType.SETUP, setup_intent_id)
        self._set_customer_default_method(ref.stripe_customer_id, payment_method)
        if subscription.stripe_subscription_id and payment_method:
            try:
                stripe.Subscription.modify(subscription.stripe_subscription_id, default_payment_method=payment_method)
            except stripe.StripeError as e:
                logger.error(f"Could not set default payment method on {subscription.stripe_subscription_id}: {e}")
                raise processor_error_from_stripe(e)

        updated = await business_store.update_subscription(
            business_id,
            allowed_statuses=LIVE_STATUSES,
            changes={"default_payment_method_id": payment_method},
        )
        if not updated:
            raise ConcurrentUpdateError("Subscription changed while updating the payment method; reload and retry")
        if not await self._consume_ref(ref):
            return {"success": True, "payment_method_id": updated.subscription.default_payment_method_id}

        await create_audit_log(
            action=AuditAction.PAYMENT_METHOD_UPDATED,
            business_id=business_id,
            metadata={"setup_intent_id": setup_intent_id},
        )
        logger.info(f"PAYMENT_METHOD_UPDATED business_id={business_id}")
        return {"success": True, "payment_method_id": payment_method}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _ensure_customer(self, business: Business, subscription: Subscription) -> str:
        customer_id = subscription.stripe_customer_id or (business.billing or {}).get("stripe_customer_id")
        if customer_id:
            return customer_id

        profile = profile_from_billing_document(business.billing)
        if profile is None:
            raise BillingValidationError({"billing": "Billing profile is required"})
        profile = require_complete(profile)

        params = to_stripe_customer_params(profile, fallback_email=business.owner_email)
        params["metadata"]["business_id"] = business.business_id
        try:
            customer = stripe.Customer.create(**params)
        except stripe.StripeError as e:
            raise processor_error_from_stripe(e)

        await business_store.update_subscription(
            business.business_id,
            allowed_statuses=LIVE_STATUSES,
            changes={"stripe_customer_id": customer.id},
            business_changes={"billing.stripe_customer_id": customer.id},
        )
        subscription.stripe_customer_id = customer.id
        return customer.id

    def _create_setup_intent(
        self,
        customer_id: str,
        business_id: str,
        purpose: IntentPurpose,
        plan_key: Optional[str] = None,
    ):
        try:
            return stripe.SetupIntent.create(
                customer=customer_id,
                usage="off_session",
                automatic_payment_methods={"enabled": True},
                metadata={"business_id": business_id, "purpose": purpose.value, "plan_key": plan_key or ""},
            )
        except stripe.StripeError as e:
            logger.error(f"Setup intent creation failed for {business_id}: {e}")
            raise processor_error_from_stripe(e)

    async def _record_setup_ref(
        self,
        business_id: str,
        purpose: IntentPurpose,
        setup_intent,
        customer_id: str,
        plan_key: Optional[str] = None,
    ) -> PaymentIntentRef:
        db = database.get_db()
        ref = PaymentIntentRef(
            business_id=business_id,
            plan_key=plan_key,
            purpose=purpose,
            status=IntentStatus.OPEN,
            intent_type=IntentType.SETUP,
            external_intent_id=setup_intent.id,
            client_secret=setup_intent.client_secret,
            stripe_customer_id=customer_id,
        )
        await db.payment_intents.insert_one(ref.model_dump(exclude={"active_key"}))
        return ref

    async def _find_setup_ref(self, business_id: str, purpose: IntentPurpose, setup_intent_id: str) -> PaymentIntentRef:
        db = database.get_db()
        doc = await db.payment_intents.find_one(
            {"business_id": business_id, "purpose": purpose.value, "external_intent_id": setup_intent_id},
            {"_id": 0}
        )
        if not doc:
            raise BillingValidationError({"setup_intent_id": "Unknown setup intent for this business"})
        return PaymentIntentRef(**doc)

    async def _consume_ref(self, ref: PaymentIntentRef) -> bool:
        db = database.get_db()
        result = await db.payment_intents.update_one(
            {"intent_ref_id": ref.intent_ref_id, "status": IntentStatus.OPEN.value},
            {"$set": {"status": IntentStatus.CONSUMED.value, "updated_at": datetime.now(timezone.utc)}}
        )
        return result.matched_count == 1

    async def _invalidate_open_refs(self, business_id: str, purpose: IntentPurpose) -> None:
        db = database.get_db()
        await db.payment_intents.update_many(
            {"business_id": business_id, "purpose": purpose.value, "status": IntentStatus.OPEN.value},
            {"$set": {"status": IntentStatus.INVALIDATED.value, "updated_at": datetime.now(timezone.utc)}}
        )

    def _cancel_unpaid_subscription(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as e:
            logger.warning(f"Could not cancel unpaid Stripe subscription {subscription_id}: {e}")

    def _set_customer_default_method(self, customer_id: Optional[str], payment_method: Optional[str]) -> None:
        if not customer_id or not payment_method:
            return
        try:
            stripe.Customer.modify(customer_id, invoice_settings={"default_payment_method": payment_method})
        except stripe.StripeError as e:
            logger.error(f"Could not set default payment method on customer {customer_id}: {e}")
            raise processor_error_from_stripe(e)


# Singleton instance
lifecycle_controller = LifecycleController()
