"""
Pytest configuration and shared test helpers for backend tests.

- fake_db: in-memory stand-in for the Motor database, enough of the query and
  update language for the services (equality, $in/$ne/$lte/$or, $set/$unset/
  $push/$setOnInsert, unique indexes).
- stripe_mocks: every Stripe call the services make, patched with sensible
  test-mode return values.
"""
import copy
import os
import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

# Skip heavy server startup (MongoDB) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
import stripe
from pymongo.errors import DuplicateKeyError

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


# ============================================================================
# In-memory database
# ============================================================================

_MISSING = object()

UNIQUE_FIELDS = {
    "owners": ("owner_id", "email_normalized"),
    "businesses": ("business_id",),
    "subscription_plans": ("key",),
    "payment_intents": ("intent_ref_id", "active_key"),
    "onboarding_sessions": ("session_id",),
    "audit_logs": ("audit_id",),
}


def _get(doc, path):
    current = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set(doc, path, value):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        if not isinstance(current.get(part), dict):
            current[part] = {}
        current = current[part]
    current[parts[-1]] = value


def _unset(doc, path):
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.get(part)
        if not isinstance(current, dict):
            return
    current.pop(parts[-1], None)


def _matches(doc, query):
    for key, condition in query.items():
        if key == "$or":
            if not any(_matches(doc, q) for q in condition):
                return False
            continue
        value = _get(doc, key)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, arg in condition.items():
                if op == "$in":
                    ok = value is not _MISSING and value in arg
                elif op == "$ne":
                    ok = value is _MISSING or value != arg
                elif op == "$lte":
                    ok = value not in (_MISSING, None) and value <= arg
                elif op == "$exists":
                    ok = (value is not _MISSING) == bool(arg)
                else:
                    raise NotImplementedError(op)
                if not ok:
                    return False
        elif value is _MISSING:
            if condition is not None:
                return False
        elif value != condition:
            return False
    return True


def _apply_update(doc, update, inserting=False):
    for path, value in update.get("$set", {}).items():
        _set(doc, path, copy.deepcopy(value))
    if inserting:
        for path, value in update.get("$setOnInsert", {}).items():
            _set(doc, path, copy.deepcopy(value))
    for path in update.get("$unset", {}):
        _unset(doc, path)
    for path, value in update.get("$push", {}).items():
        current = _get(doc, path)
        if current in (_MISSING, None):
            current = []
            _set(doc, path, current)
        current.append(copy.deepcopy(value))


class FakeCursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        self._docs = sorted(self._docs, key=lambda d: _get(d, key), reverse=direction < 0)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        docs = self._docs if length is None else self._docs[:length]
        return [copy.deepcopy(d) for d in docs]


class FakeCollection:
    def __init__(self, name):
        self.name = name
        self.docs = []

    def _check_unique(self, doc, ignore=None):
        for field in UNIQUE_FIELDS.get(self.name, ()):
            value = _get(doc, field)
            if value is _MISSING:
                continue
            for other in self.docs:
                if other is not ignore and _get(other, field) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error {self.name}.{field}", 11000)

    def _first(self, query, sort=None):
        matches = [d for d in self.docs if _matches(d, query)]
        for key, direction in reversed(sort or []):
            matches.sort(key=lambda d: _get(d, key), reverse=direction < 0)
        return matches[0] if matches else None

    async def insert_one(self, doc):
        stored = copy.deepcopy(doc)
        self._check_unique(stored)
        self.docs.append(stored)
        return SimpleNamespace(inserted_id=len(self.docs))

    async def find_one(self, query=None, projection=None, sort=None):
        doc = self._first(query or {}, sort)
        return copy.deepcopy(doc) if doc else None

    def find(self, query=None, projection=None):
        return FakeCursor([d for d in self.docs if _matches(d, query or {})])

    async def update_one(self, query, update, upsert=False):
        doc = self._first(query)
        if doc is None:
            if not upsert:
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
            doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            _apply_update(doc, update, inserting=True)
            self._check_unique(doc)
            self.docs.append(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=len(self.docs))
        _apply_update(doc, update)
        return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)

    async def update_many(self, query, update):
        matched = [d for d in self.docs if _matches(d, query)]
        for doc in matched:
            _apply_update(doc, update)
        return SimpleNamespace(matched_count=len(matched), modified_count=len(matched))

    async def find_one_and_update(self, query, update, projection=None, return_document=False):
        doc = self._first(query)
        if doc is None:
            return None
        before = copy.deepcopy(doc)
        _apply_update(doc, update)
        return copy.deepcopy(doc) if return_document else before

    async def delete_one(self, query):
        doc = self._first(query)
        if doc is None:
            return SimpleNamespace(deleted_count=0)
        self.docs.remove(doc)
        return SimpleNamespace(deleted_count=1)


class FakeDB:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def actions(self):
        """Audit actions written so far, oldest first."""
        return [d["action"] for d in self.audit_logs.docs]


@pytest.fixture
def fake_db(monkeypatch):
    from database import database
    db = FakeDB()
    monkeypatch.setattr(database, "db", db)
    return db


# ============================================================================
# Stripe
# ============================================================================

class StripeStub(dict):
    """Dict with attribute access, like the SDK's StripeObject."""

    def __init__(self, **values):
        super().__init__({k: self._wrap(v) for k, v in values.items()})

    @classmethod
    def _wrap(cls, value):
        if isinstance(value, dict) and not isinstance(value, StripeStub):
            return cls(**value)
        if isinstance(value, list):
            return [cls._wrap(v) for v in value]
        return value

    def __getattr__(self, name):
        try:
            return self[name]
        except KeyError:
            raise AttributeError(name)


PERIOD_END = 1893456000  # 2030-01-01T00:00:00Z


@pytest.fixture
def stripe_mocks():
    mocks = SimpleNamespace(
        customer_create=MagicMock(return_value=StripeStub(id="cus_test")),
        customer_modify=MagicMock(return_value=StripeStub(id="cus_test")),
        customer_create_tax_id=MagicMock(return_value=StripeStub(id="txi_test")),
        product_create=MagicMock(return_value=StripeStub(id="prod_test")),
        price_create=MagicMock(return_value=StripeStub(id="price_test")),
        price_modify=MagicMock(return_value=StripeStub(id="price_test", active=False)),
        subscription_create=MagicMock(return_value=StripeStub(
            id="sub_test",
            status="incomplete",
            current_period_end=PERIOD_END,
            latest_invoice={"payment_intent": {"id": "pi_test", "client_secret": "pi_test_secret"}},
            pending_setup_intent=None,
        )),
        subscription_modify=MagicMock(return_value=StripeStub(id="sub_test", current_period_end=PERIOD_END)),
        subscription_retrieve=MagicMock(return_value=StripeStub(
            id="sub_test",
            current_period_end=PERIOD_END,
            items={"data": [{"id": "si_test"}]},
        )),
        subscription_cancel=MagicMock(return_value=StripeStub(id="sub_test", status="canceled")),
        payment_intent_create=MagicMock(return_value=StripeStub(id="pi_fee", client_secret="pi_fee_secret")),
        payment_intent_retrieve=MagicMock(return_value=StripeStub(
            id="pi_test", status="succeeded", payment_method="pm_test"
        )),
        setup_intent_create=MagicMock(return_value=StripeStub(id="seti_new", client_secret="seti_new_secret")),
        setup_intent_retrieve=MagicMock(return_value=StripeStub(
            id="seti_new", status="succeeded", payment_method="pm_new"
        )),
        coupon_retrieve=MagicMock(return_value=StripeStub(id="RETENTION_25_3M")),
        coupon_create=MagicMock(return_value=StripeStub(id="RETENTION_25_3M")),
    )
    with patch.object(stripe.Customer, "create", mocks.customer_create), \
         patch.object(stripe.Customer, "modify", mocks.customer_modify), \
         patch.object(stripe.Customer, "create_tax_id", mocks.customer_create_tax_id), \
         patch.object(stripe.Product, "create", mocks.product_create), \
         patch.object(stripe.Price, "create", mocks.price_create), \
         patch.object(stripe.Price, "modify", mocks.price_modify), \
         patch.object(stripe.Subscription, "create", mocks.subscription_create), \
         patch.object(stripe.Subscription, "modify", mocks.subscription_modify), \
         patch.object(stripe.Subscription, "retrieve", mocks.subscription_retrieve), \
         patch.object(stripe.Subscription, "cancel", mocks.subscription_cancel), \
         patch.object(stripe.PaymentIntent, "create", mocks.payment_intent_create), \
         patch.object(stripe.PaymentIntent, "retrieve", mocks.payment_intent_retrieve), \
         patch.object(stripe.SetupIntent, "create", mocks.setup_intent_create), \
         patch.object(stripe.SetupIntent, "retrieve", mocks.setup_intent_retrieve), \
         patch.object(stripe.Coupon, "retrieve", mocks.coupon_retrieve), \
         patch.object(stripe.Coupon, "create", mocks.coupon_create):
        yield mocks


# ============================================================================
# Shared builders
# ============================================================================

VALID_COMPANY_BILLING = {
    "customer_type": "company",
    "legal_name": "Bar Pepe SL",
    "tax_id": "B12345678",
    "email": "billing@barpepe.es",
    "phone": "+34600000000",
    "address": {
        "line1": "Calle Mayor 1",
        "city": "Madrid",
        "postal_code": "28013",
        "country": "ES",
    },
}


def billing_profile(**overrides):
    from models import BillingProfile
    data = copy.deepcopy(VALID_COMPANY_BILLING)
    data.update(overrides)
    return BillingProfile(**data)


def owner_identity(email="pepe@barpepe.es"):
    from models import OwnerIdentity
    return OwnerIdentity(
        name="Pepe Garcia",
        email=email,
        phone="+34600000000",
        password_hash="$2b$12$notarealhashnotarealhashnotarealhashnotarealhashnot",
    )


def descriptor(name="Bar Pepe"):
    from models import BusinessDescriptor
    return BusinessDescriptor(name=name, place_id="place_123", address="Calle Mayor 1, Madrid")


async def seed_plans(db):
    """Insert the default catalog plus a setup-fee-only plan."""
    from services.plan_catalog import plan_catalog
    await plan_catalog.seed_default_plans()
    await plan_catalog.create_plan({
        "key": "setup_only",
        "name": "Installation",
        "recurring_price": 0,
        "setup_price": 4900,
    })


async def create_business(db, status="plan_selected", plan="basic", email=None):
    import uuid
    from models import RegistrationStatus
    from services.business_store import business_store
    result = await business_store.create_business(
        owner_identity(email or f"owner-{uuid.uuid4().hex[:8]}@barpepe.es"), descriptor(),
        registration_status=RegistrationStatus(status), plan=plan,
    )
    return result.business_id


async def activate_business(db, plan="basic", status="active", email=None, **subscription_fields):
    """A business already holding a live subscription, written directly."""
    from datetime import datetime, timezone
    from models import RegistrationStatus, Subscription, SubscriptionStatus
    from services.business_store import business_store
    business_id = await create_business(db, plan=plan, email=email)
    fields = {
        "plan": plan,
        "status": SubscriptionStatus(status),
        "stripe_subscription_id": "sub_live",
        "stripe_customer_id": "cus_live",
        "default_payment_method_id": "pm_live",
        "activated_at": datetime.now(timezone.utc),
    }
    fields.update(subscription_fields)
    await business_store.set_subscription(
        business_id,
        Subscription(**fields),
        business_changes={
            "registration_status": RegistrationStatus.ACTIVE.value,
            "active": True,
            "plan": plan,
            "billing": {**billing_profile().model_dump(), "stripe_customer_id": fields["stripe_customer_id"]},
        },
    )
    return business_id
