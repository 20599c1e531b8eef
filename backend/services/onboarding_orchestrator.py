"""Onboarding Orchestrator - drives one registration session.

Loads the OnboardingSession, performs the I/O a step needs (Business Record
Store, Plan Catalog, Subscription Provisioner), applies the matching pure
transition from services.onboarding_state and persists the result with an
optimistic version check.

Failure semantics:
- identity / business / plan steps fail soft: inline field errors, or the
  step advances anyway (lead capture is best effort)
- payment intent creation fails hard: BillingError propagates, the session
  is left untouched and the call can be retried with the same plan
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from auth import hash_password
from database import database
from models import (
    AuditAction, BillingProfile, BusinessDescriptor, OnboardingSession,
    OnboardingStep, OwnerIdentity, PaymentOutcome, RegistrationStatus,
)
from services import onboarding_state as state
from services.billing_errors import (
    ConcurrentUpdateError, OnboardingStepError, SessionNotFoundError,
)
from services.billing_profile import validate_billing_profile
from services.business_store import (
    PRE_ACTIVATION_STATUSES, Created, DuplicateOwner, business_store,
)
from services.plan_catalog import plan_catalog, requires_payment
from services.subscription_provisioner import subscription_provisioner
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class OnboardingOrchestrator:
    """Side-effecting half of the onboarding state machine."""

    async def start_session(self) -> OnboardingSession:
        db = database.get_db()
        session = state.new_session()
        await db.onboarding_sessions.insert_one(session.model_dump())
        logger.info(f"ONBOARDING_STARTED session_id={session.session_id}")
        return session

    async def get_session(self, session_id: str) -> OnboardingSession:
        db = database.get_db()
        doc = await db.onboarding_sessions.find_one({"session_id": session_id}, {"_id": 0})
        if not doc:
            raise SessionNotFoundError(f"Onboarding session not found: {session_id}")
        return OnboardingSession(**doc)

    async def _save(self, before: OnboardingSession, after: OnboardingSession) -> OnboardingSession:
        """Persist `after` only if nobody else saved since `before` was loaded."""
        db = database.get_db()
        after = after.model_copy(update={
            "version": before.version + 1,
            "updated_at": datetime.now(timezone.utc),
        })
        doc = after.model_dump()
        doc.pop("session_id")
        doc.pop("created_at")
        result = await db.onboarding_sessions.update_one(
            {"session_id": before.session_id, "version": before.version},
            {"$set": doc}
        )
        if result.matched_count == 0:
            raise ConcurrentUpdateError("Onboarding session was updated by another request; reload and retry")
        return after

    # ------------------------------------------------------------------
    # Step 1 - identity (local validation only)
    # ------------------------------------------------------------------

    async def submit_identity(
        self,
        session_id: str,
        name: str,
        email: str,
        phone: str,
        password: str,
        password_confirmation: str,
        business_type: str = "restaurant",
    ) -> OnboardingSession:
        session = await self.get_session(session_id)
        state.require_step(session, OnboardingStep.COLLECTING_IDENTITY)

        errors = state.validate_identity(name, email, phone, password, password_confirmation)
        if errors:
            return await self._save(session, state.with_errors(session, errors))

        identity = OwnerIdentity(
            name=name.strip(),
            email=email.strip(),
            phone=phone.strip(),
            password_hash=hash_password(password),
            business_type=business_type or "restaurant",
        )
        return await self._save(session, state.identity_captured(session, identity))

    # ------------------------------------------------------------------
    # Step 2 - business selection (lead capture, best effort)
    # ------------------------------------------------------------------

    async def submit_business_selection(self, session_id: str, descriptor: BusinessDescriptor) -> OnboardingSession:
        session = await self.get_session(session_id)
        state.require_step(session, OnboardingStep.SELECTING_BUSINESS)
        if session.identity is None:
            raise OnboardingStepError("Identity must be captured before selecting a business")

        business_id = session.business_id
        lead_saved = session.lead_saved
        owner_exists = session.owner_exists

        if business_id:
            # Back-navigation re-submit: update the partial record in place
            if not await business_store.update_descriptor(business_id, descriptor):
                logger.warning(f"Partial business {business_id} no longer editable; descriptor kept in session only")
        else:
            result = await business_store.create_business(
                session.identity, descriptor, registration_status=RegistrationStatus.PARTIAL
            )
            if isinstance(result, Created):
                business_id, lead_saved, owner_exists = result.business_id, True, False
                logger.info(f"LEAD_CAPTURED session_id={session_id} business_id={business_id}")
            elif isinstance(result, DuplicateOwner):
                lead_saved, owner_exists = False, True
                logger.info(f"LEAD_NOT_SAVED reason=duplicate_owner session_id={session_id}")
            else:
                lead_saved = False
                logger.warning(f"LEAD_CAPTURE_FAILED session_id={session_id} reason={result.reason}")
                await create_audit_log(
                    action=AuditAction.LEAD_CAPTURE_FAILED,
                    metadata={
                        "session_id": session_id,
                        "email": str(session.identity.email).lower(),
                        "reason": result.reason,
                    },
                )

        return await self._save(
            session,
            state.business_selected(session, descriptor, business_id, lead_saved, owner_exists),
        )

    # ------------------------------------------------------------------
    # Step 3 - plan selection
    # ------------------------------------------------------------------

    async def submit_plan_selection(self, session_id: str, plan_key: str) -> OnboardingSession:
        session = await self.get_session(session_id)
        state.require_step(session, OnboardingStep.SELECTING_PLAN)
        if session.business is None or session.identity is None:
            raise OnboardingStepError("A business must be selected before choosing a plan")

        plan = await plan_catalog.require_plan(plan_key)
        business_id = session.business_id

        if business_id:
            updated = await business_store.transition_status(
                business_id,
                allowed_from=PRE_ACTIVATION_STATUSES,
                to=RegistrationStatus.PLAN_SELECTED,
                extra={"plan": plan.key, "registration_step": 3},
            )
            if not updated:
                return await self._save(session, state.with_errors(
                    session, {"plan": "This business is no longer awaiting a plan selection"}
                ))
        else:
            result = await business_store.create_business(
                session.identity,
                session.business,
                registration_status=RegistrationStatus.PLAN_SELECTED,
                plan=plan.key,
                skip_subscription=True,
            )
            if isinstance(result, DuplicateOwner):
                return await self._save(session, state.with_errors(
                    session, {"email": "This email is already registered. Sign in to continue."}
                ))
            if not isinstance(result, Created):
                logger.warning(f"BUSINESS_SAVE_FAILED session_id={session_id} reason={result.reason}")
                return await self._save(session, state.with_errors(
                    session, {"business": "Your business could not be saved. Please try again."}
                ))
            business_id = result.business_id

        if session.plan_key and session.plan_key != plan.key:
            await subscription_provisioner.invalidate_intent(business_id, session.plan_key)

        await create_audit_log(
            action=AuditAction.PLAN_SELECTED,
            business_id=business_id,
            metadata={"plan_key": plan.key, "session_id": session_id},
        )
        logger.info(f"PLAN_SELECTED session_id={session_id} business_id={business_id} plan={plan.key}")
        return await self._save(session, state.plan_selected(session, plan.key, business_id))

    # ------------------------------------------------------------------
    # Back navigation
    # ------------------------------------------------------------------

    async def go_back(self, session_id: str, step: OnboardingStep) -> OnboardingSession:
        session = await self.get_session(session_id)
        return await self._save(session, state.went_back(session, step))

    # ------------------------------------------------------------------
    # Step 4 - payment
    # ------------------------------------------------------------------

    async def request_payment(self, session_id: str, billing: BillingProfile) -> OnboardingSession:
        """Explicit trigger after the billing profile has been collected."""
        session = await self.get_session(session_id)
        state.require_step(session, OnboardingStep.AWAITING_PAYMENT)
        if not session.business_id or not session.plan_key:
            raise OnboardingStepError("A plan must be selected before requesting payment")

        errors = validate_billing_profile(billing)
        if errors:
            return await self._save(session, state.with_errors(session, errors))

        plan = await plan_catalog.require_plan(session.plan_key)
        if not requires_payment(plan):
            await subscription_provisioner.activate_without_payment(session.business_id, plan.key, billing)
            logger.info(f"ONBOARDING_COMPLETED session_id={session_id} plan={plan.key} payment=none")
            return await self._save(session, state.payment_completed(session, billing))

        intent = await subscription_provisioner.create_intent(session.business_id, plan.key, billing)
        return await self._save(
            session,
            state.payment_prepared(session, billing, intent["client_secret"], intent["intent_id"]),
        )

    async def confirm_payment(
        self,
        session_id: str,
        outcome: PaymentOutcome,
        intent_id: Optional[str] = None,
    ) -> OnboardingSession:
        """Result of the client-side confirmation. Success is re-verified
        server-side by the provisioner before anything is activated."""
        session = await self.get_session(session_id)
        if session.step == OnboardingStep.COMPLETED and outcome == PaymentOutcome.SUCCESS:
            return session
        state.require_step(session, OnboardingStep.AWAITING_PAYMENT)

        if outcome == PaymentOutcome.CANCEL:
            if session.business_id:
                await subscription_provisioner.invalidate_intent(session.business_id, session.plan_key)
            logger.info(f"PAYMENT_CANCELLED session_id={session_id}")
            return await self._save(session, state.payment_cancelled(session))

        confirmed = intent_id or session.intent_id
        if not confirmed:
            raise OnboardingStepError("No payment intent to confirm; request payment first")

        await subscription_provisioner.activate(session.business_id, confirmed)
        logger.info(f"ONBOARDING_COMPLETED session_id={session_id} business_id={session.business_id}")
        return await self._save(session, state.payment_completed(session))


# Singleton instance
onboarding_orchestrator = OnboardingOrchestrator()
