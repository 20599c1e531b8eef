"""Plan Catalog - read side of subscription plan definitions.

The catalog is the single place where stored plan documents are turned into
SubscriptionPlan values. Feature lists are normalized here (plain strings and
{name, included} records both become PlanFeature), so nothing downstream
branches on their shape.

Rules:
1. Prices are integer minor units (cents).
2. Price tiers compare on the monthly-equivalent recurring price.
3. Administrative price edits create a NEW Stripe price; subscriptions already
   provisioned keep the price they were created with.
4. Free plans are never synced to Stripe.
"""
import os
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from database import database
from models import (
    PlanFeature, PlanInterval, SubscriptionPlan, PlanChangeDirection, AuditAction,
)
from services.billing_errors import PlanNotFoundError, processor_error_from_stripe
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "EUR")

INTERVAL_MONTHS = {
    PlanInterval.MONTH: 1,
    PlanInterval.QUARTER: 3,
    PlanInterval.SEMESTER: 6,
    PlanInterval.YEAR: 12,
}

# Stripe only knows day/week/month/year; quarter and semester are month multiples
STRIPE_RECURRING = {
    PlanInterval.MONTH: {"interval": "month", "interval_count": 1},
    PlanInterval.QUARTER: {"interval": "month", "interval_count": 3},
    PlanInterval.SEMESTER: {"interval": "month", "interval_count": 6},
    PlanInterval.YEAR: {"interval": "year", "interval_count": 1},
}

# Fields whose change requires a fresh Stripe price
PRICE_FIELDS = ("recurring_price", "interval", "currency")


# ============================================================================
# DEFAULT PLANS - seeded idempotently at startup
# ============================================================================
DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "key": "trial",
        "name": "Free Trial",
        "description": "7-day trial, no card required",
        "recurring_price": 0,
        "setup_price": 0,
        "interval": "month",
        "trial_days": 7,
        "features": [
            "Up to 100 reviews",
            "Basic prize wheel",
            "Email support",
            {"name": "Advanced statistics", "included": False},
        ],
        "popular": False,
    },
    {
        "key": "basic",
        "name": "Basic",
        "description": "For growing businesses",
        "recurring_price": 2900,
        "setup_price": 0,
        "interval": "month",
        "trial_days": 0,
        "features": [
            "Up to 500 reviews",
            "Full prize wheel",
            "Advanced statistics",
            "Priority support",
        ],
        "popular": False,
    },
    {
        "key": "premium",
        "name": "Premium",
        "description": "Everything included",
        "recurring_price": 5900,
        "setup_price": 0,
        "interval": "month",
        "trial_days": 0,
        "features": [
            "Unlimited reviews",
            "Multiple locations",
            "Advanced statistics",
            "24/7 support",
        ],
        "popular": True,
    },
    {
        "key": "annual",
        "name": "Premium Annual",
        "description": "Premium billed yearly",
        "recurring_price": 59000,
        "setup_price": 0,
        "interval": "year",
        "trial_days": 0,
        "features": ["Everything in Premium", "Two months free"],
        "popular": False,
    },
]


def normalize_features(raw: Optional[List[Any]]) -> List[PlanFeature]:
    """Normalize a stored feature list into PlanFeature rows.

    Accepts plain strings, {name, included} dicts and PlanFeature instances.
    Blank entries are dropped.
    """
    features: List[PlanFeature] = []
    for item in raw or []:
        if isinstance(item, PlanFeature):
            features.append(item)
        elif isinstance(item, str):
            if item.strip():
                features.append(PlanFeature(name=item.strip(), included=True))
        elif isinstance(item, dict) and str(item.get("name") or "").strip():
            features.append(PlanFeature(
                name=str(item["name"]).strip(),
                included=bool(item.get("included", True)),
            ))
        else:
            logger.warning(f"Dropping unrecognized plan feature entry: {item!r}")
    return features


def plan_from_document(doc: Dict[str, Any]) -> SubscriptionPlan:
    data = {k: v for k, v in doc.items() if k != "_id"}
    data["features"] = normalize_features(data.get("features"))
    return SubscriptionPlan(**data)


def monthly_equivalent(plan: SubscriptionPlan) -> float:
    return plan.recurring_price / INTERVAL_MONTHS[plan.interval]


def compare_tiers(current: SubscriptionPlan, new: SubscriptionPlan) -> PlanChangeDirection:
    current_value = monthly_equivalent(current)
    new_value = monthly_equivalent(new)
    if new_value > current_value:
        return PlanChangeDirection.UPGRADE
    if new_value < current_value:
        return PlanChangeDirection.DOWNGRADE
    return PlanChangeDirection.LATERAL


def requires_payment(plan: SubscriptionPlan) -> bool:
    """True when the plan ever charges (recurring or setup fee)."""
    return plan.recurring_price > 0 or plan.setup_price > 0


class PlanCatalog:
    """Plan catalog backed by the subscription_plans collection."""

    async def list_plans(self, active_only: bool = False, public_only: bool = False) -> List[SubscriptionPlan]:
        """List plans cheapest first. public_only implies active_only."""
        db = database.get_db()
        query: Dict[str, Any] = {}
        if active_only or public_only:
            query["active"] = True
        if public_only:
            query["public"] = {"$ne": False}

        docs = await db.subscription_plans.find(query, {"_id": 0}).sort("recurring_price", 1).to_list(100)
        return [plan_from_document(doc) for doc in docs]

    async def get_plan(self, key: str) -> Optional[SubscriptionPlan]:
        db = database.get_db()
        doc = await db.subscription_plans.find_one({"key": key}, {"_id": 0})
        return plan_from_document(doc) if doc else None

    async def require_plan(self, key: str, active_only: bool = True) -> SubscriptionPlan:
        plan = await self.get_plan(key)
        if not plan or (active_only and not plan.active):
            raise PlanNotFoundError(f"Plan not found: {key}")
        return plan

    async def seed_default_plans(self) -> int:
        """Insert default plans that are missing. Existing plans are left untouched."""
        db = database.get_db()
        created = 0
        now = datetime.now(timezone.utc)
        for raw in DEFAULT_PLANS:
            plan = plan_from_document({**raw, "currency": DEFAULT_CURRENCY})
            doc = plan.model_dump(mode="json")
            doc["created_at"] = now
            doc["updated_at"] = now
            result = await db.subscription_plans.update_one(
                {"key": plan.key},
                {"$setOnInsert": doc},
                upsert=True,
            )
            if result.upserted_id is not None:
                created += 1
        logger.info(f"Plan catalog seeded: {created} created")
        return created

    async def create_plan(self, data: Dict[str, Any], actor_id: Optional[str] = None) -> SubscriptionPlan:
        db = database.get_db()
        if await self.get_plan(data["key"]):
            raise ValueError(f"Plan key already exists: {data['key']}")

        plan = plan_from_document(data)
        doc = plan.model_dump(mode="json")
        doc["created_at"] = plan.created_at
        doc["updated_at"] = plan.updated_at
        await db.subscription_plans.insert_one(doc)

        await create_audit_log(
            action=AuditAction.PLAN_CATALOG_UPDATED,
            actor_id=actor_id,
            metadata={"action": "plan_created", "plan_key": plan.key},
        )
        return plan

    async def update_plan(self, key: str, changes: Dict[str, Any], actor_id: Optional[str] = None) -> SubscriptionPlan:
        """Apply an administrative edit.

        A price/interval/currency edit drops the stored stripe_price_id so the
        next provisioning creates a new price, and deactivates the old price in
        Stripe. Live subscriptions stay on the old price.
        """
        db = database.get_db()
        current = await self.require_plan(key, active_only=False)

        changes = {k: v for k, v in changes.items() if v is not None}
        if "features" in changes:
            changes["features"] = [f.model_dump() for f in normalize_features(changes["features"])]
        if "interval" in changes:
            changes["interval"] = PlanInterval(changes["interval"]).value

        before = current.model_dump(mode="json")
        price_changed = any(
            f in changes and changes[f] != before.get(f) for f in PRICE_FIELDS
        )
        if price_changed and current.stripe_price_id:
            changes["stripe_price_id"] = None
            try:
                stripe.Price.modify(current.stripe_price_id, active=False)
            except stripe.StripeError as e:
                logger.warning(f"Could not deactivate old Stripe price {current.stripe_price_id}: {e}")

        changes["updated_at"] = datetime.now(timezone.utc)
        await db.subscription_plans.update_one({"key": key}, {"$set": changes})

        updated = await self.require_plan(key, active_only=False)
        await create_audit_log(
            action=AuditAction.PLAN_CATALOG_UPDATED,
            actor_id=actor_id,
            before_state=before,
            after_state=updated.model_dump(mode="json"),
            metadata={"action": "plan_updated", "plan_key": key, "price_changed": price_changed},
        )
        return updated

    async def ensure_stripe_price(self, plan: SubscriptionPlan) -> Optional[str]:
        """Return the Stripe price id for a paid plan, creating product/price on first use."""
        if plan.recurring_price <= 0:
            return None
        if plan.stripe_price_id:
            return plan.stripe_price_id

        db = database.get_db()
        try:
            product_id = plan.stripe_product_id
            if not product_id:
                product = stripe.Product.create(
                    name=plan.name,
                    description=plan.description or None,
                    metadata={"plan_key": plan.key},
                )
                product_id = product.id

            price = stripe.Price.create(
                product=product_id,
                currency=plan.currency.lower(),
                unit_amount=plan.recurring_price,
                recurring=STRIPE_RECURRING[plan.interval],
                nickname=f"{plan.name} - {datetime.now(timezone.utc).date().isoformat()}",
                metadata={"plan_key": plan.key},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe price sync failed for plan {plan.key}: {e}")
            raise processor_error_from_stripe(e)

        await db.subscription_plans.update_one(
            {"key": plan.key},
            {"$set": {
                "stripe_product_id": product_id,
                "stripe_price_id": price.id,
                "updated_at": datetime.now(timezone.utc),
            }}
        )
        plan.stripe_product_id = product_id
        plan.stripe_price_id = price.id
        logger.info(f"Plan {plan.key} synced to Stripe: product={product_id} price={price.id}")
        return price.id


# Singleton instance
plan_catalog = PlanCatalog()
