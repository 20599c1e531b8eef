"""
Subscription provisioner: natural-key idempotency and server-confirmed activation.
"""
import pytest
import stripe
from datetime import datetime, timedelta, timezone

from conftest import PERIOD_END, StripeStub, activate_business, billing_profile, create_business, seed_plans
from models import IntentStatus, RegistrationStatus, SubscriptionStatus
from services.billing_errors import (
    BillingValidationError, IntentInProgressError, PaymentNotConfirmedError,
    ProcessorUnavailableError, SubscriptionStateError,
)
from services.business_store import business_store
from services.subscription_provisioner import natural_key, subscription_provisioner


class TestCreateIntent:
    @pytest.mark.asyncio
    async def test_second_call_returns_same_secret_without_new_subscription(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)

        first = await subscription_provisioner.create_intent(business_id, "basic", billing_profile())
        second = await subscription_provisioner.create_intent(business_id, "basic", billing_profile())

        assert first["client_secret"] == second["client_secret"] == "pi_test_secret"
        assert first["reused"] is False
        assert second["reused"] is True
        stripe_mocks.subscription_create.assert_called_once()
        assert len(fake_db.payment_intents.docs) == 1

    @pytest.mark.asyncio
    async def test_subscription_created_incomplete_with_ref_as_idempotency_key(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)

        await subscription_provisioner.create_intent(business_id, "basic", billing_profile())

        ref = fake_db.payment_intents.docs[0]
        assert ref["status"] == "OPEN"
        assert ref["active_key"] == natural_key(business_id, "basic")
        kwargs = stripe_mocks.subscription_create.call_args.kwargs
        assert kwargs["idempotency_key"] == ref["intent_ref_id"]
        assert kwargs["payment_behavior"] == "default_incomplete"
        assert kwargs["items"] == [{"price": "price_test"}]

        business = await business_store.require_business(business_id)
        assert business.billing["stripe_customer_id"] == "cus_test"
        assert business.billing["tax_id"] == "B12345678"
        assert business.registration_status == RegistrationStatus.PLAN_SELECTED

    @pytest.mark.asyncio
    async def test_pending_reservation_reports_in_progress(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        await fake_db.payment_intents.insert_one({
            "intent_ref_id": "ref-inflight",
            "business_id": business_id,
            "plan_key": "basic",
            "purpose": "subscribe",
            "status": "PENDING",
            "active_key": natural_key(business_id, "basic"),
        })

        with pytest.raises(IntentInProgressError):
            await subscription_provisioner.create_intent(business_id, "basic", billing_profile())
        stripe_mocks.subscription_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_other_plan_intent_is_invalidated(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        await subscription_provisioner.create_intent(business_id, "basic", billing_profile())

        await subscription_provisioner.create_intent(business_id, "premium", billing_profile())

        statuses = {d["plan_key"]: d["status"] for d in fake_db.payment_intents.docs}
        assert statuses == {"basic": "INVALIDATED", "premium": "OPEN"}
        basic = next(d for d in fake_db.payment_intents.docs if d["plan_key"] == "basic")
        assert "active_key" not in basic

    @pytest.mark.asyncio
    async def test_incomplete_billing_fails_before_any_network_call(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)

        with pytest.raises(BillingValidationError) as exc:
            await subscription_provisioner.create_intent(business_id, "basic", billing_profile(legal_name=""))

        assert "legal_name" in exc.value.field_errors
        stripe_mocks.customer_create.assert_not_called()
        assert fake_db.payment_intents.docs == []

    @pytest.mark.asyncio
    async def test_transport_failure_releases_reservation(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        stripe_mocks.customer_create.side_effect = stripe.APIConnectionError("Network down")

        with pytest.raises(ProcessorUnavailableError):
            await subscription_provisioner.create_intent(business_id, "basic", billing_profile())
        assert fake_db.payment_intents.docs == []

        stripe_mocks.customer_create.side_effect = None
        result = await subscription_provisioner.create_intent(business_id, "basic", billing_profile())
        assert result["client_secret"] == "pi_test_secret"

    @pytest.mark.asyncio
    async def test_failed_intent_keeps_customer_for_retry(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        stripe_mocks.subscription_create.side_effect = stripe.APIConnectionError("Network down")

        with pytest.raises(ProcessorUnavailableError):
            await subscription_provisioner.create_intent(business_id, "basic", billing_profile())
        business = await business_store.require_business(business_id)
        assert business.billing["stripe_customer_id"] == "cus_test"

        stripe_mocks.subscription_create.side_effect = None
        await subscription_provisioner.create_intent(business_id, "basic", billing_profile())

        stripe_mocks.customer_create.assert_called_once()
        assert stripe_mocks.customer_modify.call_args.args == ("cus_test",)

    @pytest.mark.asyncio
    async def test_trial_plan_with_price_uses_setup_intent(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        await fake_db.subscription_plans.update_one({"key": "basic"}, {"$set": {"trial_days": 14}})
        stripe_mocks.subscription_create.return_value = StripeStub(
            id="sub_trial",
            latest_invoice=None,
            pending_setup_intent={"id": "seti_trial", "client_secret": "seti_trial_secret"},
        )
        business_id = await create_business(fake_db)

        result = await subscription_provisioner.create_intent(business_id, "basic", billing_profile())

        assert result["intent_type"] == "setup"
        assert result["client_secret"] == "seti_trial_secret"
        assert stripe_mocks.subscription_create.call_args.kwargs["trial_period_days"] == 14

    @pytest.mark.asyncio
    async def test_setup_fee_only_plan_uses_one_off_payment_intent(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db, plan="setup_only")

        result = await subscription_provisioner.create_intent(business_id, "setup_only", billing_profile())

        assert result["intent_type"] == "payment"
        assert result["subscription_id"] is None
        stripe_mocks.subscription_create.assert_not_called()
        assert stripe_mocks.payment_intent_create.call_args.kwargs["amount"] == 4900

    @pytest.mark.asyncio
    async def test_live_subscription_rejects_new_intent(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await activate_business(fake_db)
        with pytest.raises(SubscriptionStateError):
            await subscription_provisioner.create_intent(business_id, "premium", billing_profile())

    @pytest.mark.asyncio
    async def test_free_plan_has_no_intent(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        with pytest.raises(SubscriptionStateError):
            await subscription_provisioner.create_intent(business_id, "trial", billing_profile())


class TestActivate:
    async def _open_intent(self, fake_db):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        await subscription_provisioner.create_intent(business_id, "basic", billing_profile())
        return business_id

    @pytest.mark.asyncio
    async def test_activation_is_server_confirmed(self, fake_db, stripe_mocks):
        business_id = await self._open_intent(fake_db)
        stripe_mocks.payment_intent_retrieve.return_value = StripeStub(id="pi_test", status="requires_payment_method")

        with pytest.raises(PaymentNotConfirmedError):
            await subscription_provisioner.activate(business_id, "pi_test")

        business = await business_store.require_business(business_id)
        assert business.registration_status == RegistrationStatus.PLAN_SELECTED
        assert business.subscription is None

    @pytest.mark.asyncio
    async def test_activation_sets_active_and_is_idempotent(self, fake_db, stripe_mocks):
        business_id = await self._open_intent(fake_db)

        first = await subscription_provisioner.activate(business_id, "pi_test")
        second = await subscription_provisioner.activate(business_id, "pi_test")

        assert first.status == SubscriptionStatus.ACTIVE
        assert first.default_payment_method_id == "pm_test"
        assert first.valid_until == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
        assert second.stripe_subscription_id == first.stripe_subscription_id
        assert stripe_mocks.payment_intent_retrieve.call_count == 1

        business = await business_store.require_business(business_id)
        assert business.registration_status == RegistrationStatus.ACTIVE
        assert business.active is True
        assert business.plan == "basic"
        assert fake_db.payment_intents.docs[0]["status"] == IntentStatus.CONSUMED.value
        assert fake_db.actions().count("SUBSCRIPTION_ACTIVATED") == 1

    @pytest.mark.asyncio
    async def test_unknown_intent_is_rejected(self, fake_db, stripe_mocks):
        business_id = await self._open_intent(fake_db)
        with pytest.raises(BillingValidationError):
            await subscription_provisioner.activate(business_id, "pi_forged")

    @pytest.mark.asyncio
    async def test_invalidated_intent_cannot_activate(self, fake_db, stripe_mocks):
        business_id = await self._open_intent(fake_db)
        await subscription_provisioner.invalidate_intent(business_id)

        with pytest.raises(SubscriptionStateError):
            await subscription_provisioner.activate(business_id, "pi_test")

    @pytest.mark.asyncio
    async def test_transport_failure_on_confirmation_keeps_state(self, fake_db, stripe_mocks):
        business_id = await self._open_intent(fake_db)
        stripe_mocks.payment_intent_retrieve.side_effect = stripe.APIConnectionError("timeout")

        with pytest.raises(ProcessorUnavailableError):
            await subscription_provisioner.activate(business_id, "pi_test")
        assert fake_db.payment_intents.docs[0]["status"] == "OPEN"


class TestActivateWithoutPayment:
    @pytest.mark.asyncio
    async def test_trial_valid_until_is_activation_plus_trial_days(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db, plan="trial")

        subscription = await subscription_provisioner.activate_without_payment(business_id, "trial", billing_profile())

        assert subscription.status == SubscriptionStatus.TRIALING
        assert subscription.valid_until - subscription.activated_at == timedelta(days=7)
        assert subscription.stripe_subscription_id is None
        stripe_mocks.customer_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_repeat_is_a_no_op(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db, plan="trial")
        first = await subscription_provisioner.activate_without_payment(business_id, "trial", billing_profile())
        second = await subscription_provisioner.activate_without_payment(business_id, "trial")
        assert first.activated_at == second.activated_at

    @pytest.mark.asyncio
    async def test_keeps_customer_from_earlier_paid_attempt(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        await subscription_provisioner.create_intent(business_id, "basic", billing_profile())

        await subscription_provisioner.activate_without_payment(business_id, "trial", billing_profile())

        business = await business_store.require_business(business_id)
        assert business.billing["stripe_customer_id"] == "cus_test"
        assert business.billing["stripe_tax_id"] == "txi_test"

    @pytest.mark.asyncio
    async def test_requires_complete_billing_profile(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db, plan="trial")
        with pytest.raises(BillingValidationError):
            await subscription_provisioner.activate_without_payment(business_id, "trial")

    @pytest.mark.asyncio
    async def test_paid_plan_rejected(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        with pytest.raises(SubscriptionStateError):
            await subscription_provisioner.activate_without_payment(business_id, "basic", billing_profile())


class TestSubscriptionStatus:
    @pytest.mark.asyncio
    async def test_status_reports_pending_intent_without_secret(self, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        await subscription_provisioner.create_intent(business_id, "basic", billing_profile())

        status = await subscription_provisioner.get_subscription_status(business_id)

        assert status["registration_status"] == "plan_selected"
        assert status["subscription"] is None
        assert status["pending_intent"]["plan_key"] == "basic"
        assert "client_secret" not in status["pending_intent"]
