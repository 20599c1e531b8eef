"""Business Record Store.

Persists Owners and Businesses. Creation reports a typed CreateBusinessResult
instead of raising: a duplicate owner email is a normal onboarding outcome.
Every status write is a conditional update whose filter names the allowed
source statuses, so a lost race shows up as "no document matched" and the
stored status never moves backwards.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Union

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from database import database
from models import (
    AuditAction, BillingProfile, Business, BusinessDescriptor, Owner,
    OwnerIdentity, RegistrationStatus, Subscription, SubscriptionStatus,
)
from services.billing_errors import BusinessNotFoundError, StoreUnavailableError
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

PRE_ACTIVATION_STATUSES = (RegistrationStatus.PARTIAL, RegistrationStatus.PLAN_SELECTED)

ADMIN_EDITABLE_FIELDS = ("name", "business_type", "plan", "active")


@dataclass
class Created:
    business_id: str
    owner_id: str


@dataclass
class DuplicateOwner:
    email: str


@dataclass
class Failure:
    reason: str


CreateBusinessResult = Union[Created, DuplicateOwner, Failure]


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _values(statuses: Iterable[Any]) -> list:
    return [s.value if hasattr(s, "value") else s for s in statuses]


class BusinessStore:
    async def create_business(
        self,
        identity: OwnerIdentity,
        descriptor: BusinessDescriptor,
        registration_status: RegistrationStatus = RegistrationStatus.PARTIAL,
        plan: Optional[str] = None,
        skip_subscription: bool = False,
    ) -> CreateBusinessResult:
        """Create Owner + Business in one go.

        DuplicateOwner is decided by the unique index on owners.email_normalized.
        If the Business insert fails after the Owner went in, the Owner is
        removed again so a retry is not reported as a duplicate.
        """
        db = database.get_db()
        owner = Owner(
            name=identity.name,
            email=identity.email,
            email_normalized=normalize_email(identity.email),
            phone=identity.phone,
            password_hash=identity.password_hash,
        )

        try:
            await db.owners.insert_one(owner.model_dump())
        except DuplicateKeyError:
            logger.info(f"DUPLICATE_OWNER email={owner.email_normalized}")
            return DuplicateOwner(email=owner.email_normalized)
        except PyMongoError as e:
            logger.error(f"Owner insert failed for {owner.email_normalized}: {e}")
            return Failure(reason=str(e))

        business = Business(
            owner_id=owner.owner_id,
            owner_email=owner.email_normalized,
            name=descriptor.name,
            business_type=identity.business_type,
            place=descriptor,
            registration_status=registration_status,
            registration_step=3 if registration_status == RegistrationStatus.PLAN_SELECTED else 2,
            plan=plan or "pending",
            skip_subscription=skip_subscription,
        )

        try:
            await db.businesses.insert_one(business.model_dump())
        except PyMongoError as e:
            logger.error(f"Business insert failed for owner {owner.owner_id}: {e}")
            try:
                await db.owners.delete_one({"owner_id": owner.owner_id})
            except PyMongoError as cleanup_error:
                logger.error(f"Orphan owner {owner.owner_id} left behind: {cleanup_error}")
            return Failure(reason=str(e))

        await create_audit_log(
            action=AuditAction.LEAD_CAPTURED,
            business_id=business.business_id,
            actor_id=owner.owner_id,
            metadata={
                "registration_status": registration_status.value,
                "plan": business.plan,
                "place_id": descriptor.place_id,
            },
        )
        logger.info(
            f"BUSINESS_CREATED business_id={business.business_id} "
            f"status={registration_status.value} plan={business.plan}"
        )
        return Created(business_id=business.business_id, owner_id=owner.owner_id)

    async def get_business(self, business_id: str) -> Optional[Business]:
        db = database.get_db()
        try:
            doc = await db.businesses.find_one({"business_id": business_id}, {"_id": 0})
        except PyMongoError as e:
            raise StoreUnavailableError(f"Could not read business {business_id}: {e}")
        return Business(**doc) if doc else None

    async def require_business(self, business_id: str) -> Business:
        business = await self.get_business(business_id)
        if not business:
            raise BusinessNotFoundError(f"Business not found: {business_id}")
        return business

    async def update_business(
        self,
        business_id: str,
        changes: Dict[str, Any],
        actor_id: Optional[str] = None,
    ) -> Business:
        """Administrative edit of name/business_type/plan/active."""
        db = database.get_db()
        before = await self.require_business(business_id)

        update = {k: v for k, v in changes.items() if k in ADMIN_EDITABLE_FIELDS and v is not None}
        if not update:
            return before
        update["updated_at"] = datetime.now(timezone.utc)

        await db.businesses.update_one({"business_id": business_id}, {"$set": update})
        after = await self.require_business(business_id)

        await create_audit_log(
            action=AuditAction.BUSINESS_UPDATED,
            business_id=business_id,
            actor_id=actor_id,
            before_state={k: before.model_dump(mode="json").get(k) for k in update if k != "updated_at"},
            after_state={k: after.model_dump(mode="json").get(k) for k in update if k != "updated_at"},
        )
        return after

    async def update_descriptor(self, business_id: str, descriptor: BusinessDescriptor) -> bool:
        """Replace the place descriptor of a not-yet-activated Business."""
        db = database.get_db()
        result = await db.businesses.update_one(
            {
                "business_id": business_id,
                "registration_status": {"$in": _values(PRE_ACTIVATION_STATUSES)},
            },
            {"$set": {
                "name": descriptor.name,
                "place": descriptor.model_dump(),
                "updated_at": datetime.now(timezone.utc),
            }}
        )
        return result.matched_count == 1

    async def transition_status(
        self,
        business_id: str,
        allowed_from: Iterable[RegistrationStatus],
        to: RegistrationStatus,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[Business]:
        """Move registration_status if the stored value is in allowed_from.

        Returns the updated Business, or None when the stored status did not
        match (lost race or illegal transition).
        """
        db = database.get_db()
        update = {"registration_status": to.value, "updated_at": datetime.now(timezone.utc)}
        update.update(extra or {})

        doc = await db.businesses.find_one_and_update(
            {"business_id": business_id, "registration_status": {"$in": _values(allowed_from)}},
            {"$set": update},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            logger.info(f"Status transition to {to.value} skipped for {business_id}")
            return None
        return Business(**doc)

    async def set_subscription(
        self,
        business_id: str,
        subscription: Subscription,
        business_changes: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Write the embedded subscription (plus optional top-level fields)."""
        db = database.get_db()
        update = {"subscription": subscription.model_dump(), "updated_at": datetime.now(timezone.utc)}
        update.update(business_changes or {})
        await db.businesses.update_one({"business_id": business_id}, {"$set": update})

    async def update_subscription(
        self,
        business_id: str,
        allowed_statuses: Iterable[SubscriptionStatus],
        changes: Dict[str, Any],
        business_changes: Optional[Dict[str, Any]] = None,
        push_history: Optional[Dict[str, Any]] = None,
        registration_statuses: Optional[Iterable[RegistrationStatus]] = None,
        extra_filter: Optional[Dict[str, Any]] = None,
    ) -> Optional[Business]:
        """Conditionally patch subscription fields.

        `changes` keys are subscription field names; they are written under
        `subscription.`. Returns None when subscription.status was not in
        allowed_statuses (or registration_status not in registration_statuses,
        or extra_filter did not match).
        """
        db = database.get_db()
        update = {f"subscription.{k}": v for k, v in changes.items()}
        update["updated_at"] = datetime.now(timezone.utc)
        update.update(business_changes or {})

        operation: Dict[str, Any] = {"$set": update}
        if push_history:
            operation["$push"] = {"subscription.history": push_history}

        query: Dict[str, Any] = {
            "business_id": business_id,
            "subscription.status": {"$in": _values(allowed_statuses)},
        }
        if registration_statuses is not None:
            query["registration_status"] = {"$in": _values(registration_statuses)}
        query.update(extra_filter or {})

        doc = await db.businesses.find_one_and_update(
            query,
            operation,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return Business(**doc) if doc else None

    async def set_billing(
        self,
        business_id: str,
        profile: BillingProfile,
        stripe_customer_id: Optional[str] = None,
        stripe_tax_id: Optional[str] = None,
    ) -> None:
        """Replace the billing profile. Stripe ids not passed are carried over
        from the stored profile; the tax id registration only while the tax id
        itself is unchanged."""
        db = database.get_db()
        now = datetime.now(timezone.utc)
        existing = await db.businesses.find_one({"business_id": business_id}, {"_id": 0, "billing": 1})
        stored = (existing or {}).get("billing") or {}

        billing = profile.model_dump()
        billing["stripe_customer_id"] = stripe_customer_id or stored.get("stripe_customer_id")
        if not stripe_tax_id and stored.get("tax_id") == billing.get("tax_id"):
            stripe_tax_id = stored.get("stripe_tax_id")
        billing["stripe_tax_id"] = stripe_tax_id
        billing["updated_at"] = now
        await db.businesses.update_one(
            {"business_id": business_id},
            {"$set": {"billing": billing, "updated_at": now}}
        )

    async def mark_due_for_deletion(self, now: Optional[datetime] = None) -> int:
        """Promote canceled Businesses whose grace window has elapsed to
        pending_deletion. Purging them is someone else's job."""
        db = database.get_db()
        now = now or datetime.now(timezone.utc)
        result = await db.businesses.update_many(
            {
                "registration_status": RegistrationStatus.CANCELED.value,
                "deletion_scheduled_at": {"$lte": now},
            },
            {"$set": {
                "registration_status": RegistrationStatus.PENDING_DELETION.value,
                "active": False,
                "updated_at": now,
            }}
        )
        if result.modified_count:
            await create_audit_log(
                action=AuditAction.MARKED_PENDING_DELETION,
                metadata={"count": result.modified_count, "cutoff": now.isoformat()},
            )
        logger.info(f"MARKED_PENDING_DELETION count={result.modified_count}")
        return result.modified_count


business_store = BusinessStore()
