"""
HTTP surface via TestClient: status codes, structured error details, access guard.
"""
import pytest

from auth import create_owner_token
from conftest import VALID_COMPANY_BILLING, activate_business, create_business, seed_plans
from models import UserRole
from services.business_store import business_store


def _auth(email, role=UserRole.ROLE_BUSINESS_OWNER):
    return {"Authorization": f"Bearer {create_owner_token('owner-1', email, role)}"}


async def _owner_headers(business_id):
    business = await business_store.require_business(business_id)
    return _auth(business.owner_email)


NEW_BUSINESS = {
    "owner_name": "Pepe Garcia",
    "email": "pepe@barpepe.es",
    "phone": "+34600000000",
    "password": "Secret123",
    "business": {"name": "Bar Pepe", "place_id": "place_123", "address": "Calle Mayor 1"},
}


class TestPublicEndpoints:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_list_public_plans(self, client, fake_db):
        await seed_plans(fake_db)
        response = client.get("/api/subscription-plans", params={"public": "true"})
        assert response.status_code == 200
        plans = response.json()["plans"]
        assert [p["key"] for p in plans][:3] == ["trial", "setup_only", "basic"]
        trial = plans[0]
        assert trial["features"][-1] == {"name": "Advanced statistics", "included": False}

    def test_unknown_plan_has_error_code(self, client, fake_db):
        response = client.get("/api/subscription-plans/nope")
        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["error_code"] == "PLAN_NOT_FOUND"
        assert detail["request_id"]

    def test_validation_errors_carry_request_id(self, client):
        response = client.post("/api/businesses", json={"email": "not-an-email"})
        assert response.status_code == 422
        assert "request_id" in response.json()


class TestBusinessEndpoints:
    def test_create_then_duplicate(self, client, fake_db):
        created = client.post("/api/businesses", json=NEW_BUSINESS)
        assert created.status_code == 201
        assert created.json()["business_id"]

        duplicate = client.post("/api/businesses", json={**NEW_BUSINESS, "email": "PEPE@barpepe.es"})
        assert duplicate.status_code == 409
        assert duplicate.json()["detail"]["error_code"] == "DUPLICATE_OWNER"

    def test_weak_password_rejected(self, client, fake_db):
        response = client.post("/api/businesses", json={**NEW_BUSINESS, "password": "weak"})
        assert response.status_code == 422
        assert "password" in response.json()["detail"]["field_errors"]
        assert fake_db.owners.docs == []

    def test_cannot_create_active_business(self, client, fake_db):
        response = client.post("/api/businesses", json={**NEW_BUSINESS, "registration_status": "active"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_access_guard(self, client, fake_db):
        business_id = await create_business(fake_db, email="owner@barpepe.es")

        assert client.get(f"/api/businesses/{business_id}").status_code == 401
        assert client.get(f"/api/businesses/{business_id}", headers=_auth("other@x.es")).status_code == 403
        assert client.get("/api/businesses/missing", headers=_auth("owner@barpepe.es")).status_code == 404

        own = client.get(f"/api/businesses/{business_id}", headers=_auth("Owner@BarPepe.es"))
        assert own.status_code == 200
        assert own.json()["business_id"] == business_id

        admin = client.get(f"/api/businesses/{business_id}", headers=_auth("admin@x.es", UserRole.ROLE_ADMIN))
        assert admin.status_code == 200

    @pytest.mark.asyncio
    async def test_admin_update_and_audit(self, client, fake_db):
        business_id = await create_business(fake_db)
        admin = _auth("admin@x.es", UserRole.ROLE_ADMIN)

        forbidden = client.put(f"/api/businesses/{business_id}", json={"name": "X"}, headers=_auth("o@x.es"))
        assert forbidden.status_code == 403

        response = client.put(f"/api/businesses/{business_id}", json={"name": "Renamed"}, headers=admin)
        assert response.status_code == 200
        assert response.json()["business"]["name"] == "Renamed"

        audit = client.get(f"/api/businesses/{business_id}/audit", headers=admin).json()
        assert "BUSINESS_UPDATED" in [item["action"] for item in audit["items"]]

    def test_login_returns_businesses(self, client, fake_db):
        client.post("/api/businesses", json=NEW_BUSINESS)

        bad = client.post("/api/auth/login", json={"email": "pepe@barpepe.es", "password": "Wrong1234"})
        assert bad.status_code == 401

        good = client.post("/api/auth/login", json={"email": "PEPE@barpepe.es", "password": "Secret123"})
        assert good.status_code == 200
        body = good.json()
        assert body["access_token"]
        assert body["user"]["role"] == "ROLE_BUSINESS_OWNER"
        assert body["user"]["businesses"][0]["name"] == "Bar Pepe"
        assert "USER_LOGIN_FAILED" in fake_db.actions()


class TestSubscriptionEndpoints:
    @pytest.mark.asyncio
    async def test_subscribe_twice_returns_same_secret(self, client, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        headers = await _owner_headers(business_id)
        body = {"business_id": business_id, "plan_key": "basic", "billing_info": VALID_COMPANY_BILLING}

        first = client.post("/api/subscriptions", json=body, headers=headers)
        second = client.post("/api/subscriptions", json=body, headers=headers)

        assert first.status_code == 200
        assert first.json()["client_secret"] == second.json()["client_secret"] == "pi_test_secret"
        stripe_mocks.subscription_create.assert_called_once()

        confirmed = client.post(
            "/api/subscriptions/confirm",
            json={"business_id": business_id, "intent_id": "pi_test"},
            headers=headers,
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["subscription"]["status"] == "active"

    @pytest.mark.asyncio
    async def test_invalid_billing_returns_field_errors(self, client, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db)
        body = {
            "business_id": business_id,
            "plan_key": "basic",
            "billing_info": {**VALID_COMPANY_BILLING, "tax_id": "12345678Z"},
        }

        response = client.post("/api/subscriptions", json=body, headers=await _owner_headers(business_id))

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["error_code"] == "VALIDATION_FAILED"
        assert detail["field_errors"] == {"tax_id": "Invalid CIF format"}

    @pytest.mark.asyncio
    async def test_free_plan_activates_directly(self, client, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await create_business(fake_db, plan="trial")
        body = {"business_id": business_id, "plan_key": "trial", "billing_info": VALID_COMPANY_BILLING}

        response = client.post("/api/subscriptions", json=body, headers=await _owner_headers(business_id))

        assert response.status_code == 200
        assert response.json()["activated"] is True
        assert response.json()["subscription"]["status"] == "trialing"

    @pytest.mark.asyncio
    async def test_pause_resume_cancel(self, client, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await activate_business(fake_db)
        headers = await _owner_headers(business_id)

        paused = client.post(f"/api/subscriptions/{business_id}/pause", json={"reason": "holidays"}, headers=headers)
        assert paused.json()["subscription"]["status"] == "paused"

        resumed = client.post(f"/api/subscriptions/{business_id}/resume", headers=headers)
        assert resumed.json()["status"] == "active"

        canceled = client.post(f"/api/subscriptions/{business_id}/cancel", headers=headers)
        assert canceled.status_code == 200
        assert canceled.json()["subscription"]["status"] == "canceled"

        status = client.get(f"/api/subscriptions/{business_id}", headers=headers).json()
        assert status["registration_status"] == "canceled"
        assert status["active"] is True

    @pytest.mark.asyncio
    async def test_resume_past_due_is_rejected(self, client, fake_db, stripe_mocks):
        await seed_plans(fake_db)
        business_id = await activate_business(fake_db, status="past_due")
        response = client.post(f"/api/subscriptions/{business_id}/resume", headers=await _owner_headers(business_id))
        assert response.status_code == 409
        assert response.json()["detail"]["error_code"] == "INVALID_SUBSCRIPTION_STATE"


class TestOnboardingEndpoints:
    def test_session_never_exposes_password_hash(self, client, fake_db):
        session = client.post("/api/onboarding/sessions").json()
        response = client.post(
            f"/api/onboarding/sessions/{session['session_id']}/identity",
            json={
                "name": "Pepe",
                "email": "pepe@x.es",
                "phone": "600000000",
                "password": "Secret123",
                "password_confirmation": "Secret123",
            },
        )
        assert response.status_code == 200
        body = response.json()
        assert body["step"] == "selecting_business"
        assert "password_hash" not in body["identity"]

    def test_out_of_order_step_is_400(self, client, fake_db):
        session = client.post("/api/onboarding/sessions").json()
        response = client.post(f"/api/onboarding/sessions/{session['session_id']}/plan", json={"plan_key": "basic"})
        assert response.status_code == 400
        assert response.json()["detail"]["error_code"] == "STEP_NOT_ALLOWED"

    def test_unknown_session_is_404(self, client, fake_db):
        assert client.get("/api/onboarding/sessions/nope").status_code == 404
