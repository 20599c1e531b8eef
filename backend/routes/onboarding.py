"""Onboarding session endpoints.

POST /api/onboarding/sessions                      - start a session
GET  /api/onboarding/sessions/{id}                 - current state (for resume)
POST /api/onboarding/sessions/{id}/identity        - step 1
POST /api/onboarding/sessions/{id}/business        - step 2 (lead capture)
POST /api/onboarding/sessions/{id}/plan            - step 3
POST /api/onboarding/sessions/{id}/back            - navigate to an earlier step
POST /api/onboarding/sessions/{id}/payment         - billing profile + intent
POST /api/onboarding/sessions/{id}/payment/confirm - client-side confirmation result

Inline validation problems come back in the session's `errors` map with
200; hard failures (processor, step order, concurrency) are HTTP errors.
"""
from fastapi import APIRouter, status

from models import (
    BackRequest, BillingProfile, BusinessDescriptor, IdentityRequest,
    OnboardingSession, PaymentConfirmRequest, PlanSelectionRequest,
)
from services.billing_errors import BillingError
from services.onboarding_orchestrator import onboarding_orchestrator
from utils.http_errors import billing_http_error

router = APIRouter(prefix="/api/onboarding", tags=["onboarding"])


def _session_view(session: OnboardingSession) -> dict:
    """Session as returned to the browser; never includes the password hash."""
    return session.model_dump(mode="json", exclude={"identity": {"password_hash"}})


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def start_session():
    session = await onboarding_orchestrator.start_session()
    return _session_view(session)


@router.get("/sessions/{session_id}")
async def get_session(session_id: str):
    try:
        session = await onboarding_orchestrator.get_session(session_id)
    except BillingError as e:
        raise billing_http_error(e)
    return _session_view(session)


@router.post("/sessions/{session_id}/identity")
async def submit_identity(session_id: str, body: IdentityRequest):
    try:
        session = await onboarding_orchestrator.submit_identity(
            session_id,
            name=body.name,
            email=body.email,
            phone=body.phone,
            password=body.password,
            password_confirmation=body.password_confirmation,
            business_type=body.business_type,
        )
    except BillingError as e:
        raise billing_http_error(e)
    return _session_view(session)


@router.post("/sessions/{session_id}/business")
async def submit_business(session_id: str, body: BusinessDescriptor):
    try:
        session = await onboarding_orchestrator.submit_business_selection(session_id, body)
    except BillingError as e:
        raise billing_http_error(e)
    return _session_view(session)


@router.post("/sessions/{session_id}/plan")
async def submit_plan(session_id: str, body: PlanSelectionRequest):
    try:
        session = await onboarding_orchestrator.submit_plan_selection(session_id, body.plan_key)
    except BillingError as e:
        raise billing_http_error(e)
    return _session_view(session)


@router.post("/sessions/{session_id}/back")
async def go_back(session_id: str, body: BackRequest):
    try:
        session = await onboarding_orchestrator.go_back(session_id, body.step)
    except BillingError as e:
        raise billing_http_error(e)
    return _session_view(session)


@router.post("/sessions/{session_id}/payment")
async def request_payment(session_id: str, body: BillingProfile):
    """Explicit payment trigger; the billing profile must be collected first."""
    try:
        session = await onboarding_orchestrator.request_payment(session_id, body)
    except BillingError as e:
        raise billing_http_error(e)
    return _session_view(session)


@router.post("/sessions/{session_id}/payment/confirm")
async def confirm_payment(session_id: str, body: PaymentConfirmRequest):
    try:
        session = await onboarding_orchestrator.confirm_payment(session_id, body.outcome, body.intent_id)
    except BillingError as e:
        raise billing_http_error(e)
    return _session_view(session)
