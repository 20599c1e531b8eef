"""Subscription Routes - provisioning and lifecycle.

Endpoints:
- POST /api/subscriptions - Create (or reuse) the payment intent for a plan
- POST /api/subscriptions/confirm - Activate after client-side confirmation
- GET /api/subscriptions/{business_id} - Subscription status
- POST /api/subscriptions/{business_id}/pause - Pause or accept retention offer
- POST /api/subscriptions/{business_id}/resume - Resume (paused or within grace)
- POST /api/subscriptions/{business_id}/cancel - Cancel with grace window
- POST /api/subscriptions/change-plan - Swap plan or get a client secret
- POST /api/subscriptions/change-plan/confirm - Finish a paid plan change
- POST /api/subscriptions/update-payment-method - Fresh setup intent
- POST /api/subscriptions/update-payment-method/confirm - Store the new method

All endpoints require the business owner's token or an admin token.
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
from typing import Optional
import logging

from middleware import business_access_guard, ensure_business_access, require_auth
from models import (
    BusinessRequest, CancelRequest, ChangePlanRequest, ConfirmIntentRequest,
    PauseRequest, SetupIntentConfirmRequest, SubscribeRequest,
)
from services.billing_errors import BillingError
from services.lifecycle_controller import lifecycle_controller
from services.plan_catalog import plan_catalog, requires_payment
from services.subscription_provisioner import subscription_provisioner
from utils.http_errors import billing_http_error

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.post("")
async def create_subscription(request: Request, body: SubscribeRequest):
    """
    Start a subscription for a business.

    Paid plans return the client secret for the processor's payment element;
    repeating the call for the same business and plan returns the same secret.
    Free plans are activated immediately.
    """
    user = await require_auth(request)
    await ensure_business_access(user, body.business_id)

    if body.action != "subscribe":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "UNSUPPORTED_ACTION", "message": "Use /api/subscriptions/change-plan to change plans"},
        )

    try:
        plan = await plan_catalog.require_plan(body.plan_key)
        if not requires_payment(plan):
            subscription = await subscription_provisioner.activate_without_payment(
                body.business_id, plan.key, body.billing_info
            )
            return {"success": True, "activated": True, "subscription": subscription.model_dump(mode="json")}

        result = await subscription_provisioner.create_intent(body.business_id, plan.key, body.billing_info)
    except BillingError as e:
        raise billing_http_error(e)

    return {"success": True, "activated": False, **result}


@router.post("/confirm")
async def confirm_subscription(request: Request, body: ConfirmIntentRequest):
    """Activate once Stripe reports the intent as succeeded. Idempotent."""
    user = await require_auth(request)
    await ensure_business_access(user, body.business_id)
    try:
        subscription = await subscription_provisioner.activate(body.business_id, body.intent_id)
    except BillingError as e:
        raise billing_http_error(e)
    return {"success": True, "subscription": subscription.model_dump(mode="json")}


@router.post("/change-plan")
async def change_plan(request: Request, body: ChangePlanRequest):
    """Returns either {success: true} or {requires_payment: true, client_secret}."""
    user = await require_auth(request)
    await ensure_business_access(user, body.business_id)
    try:
        return await lifecycle_controller.change_plan(
            body.business_id, body.new_plan_key, body.current_plan_key
        )
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/change-plan/confirm")
async def confirm_change_plan(request: Request, body: SetupIntentConfirmRequest):
    user = await require_auth(request)
    await ensure_business_access(user, body.business_id)
    try:
        return await lifecycle_controller.confirm_plan_change(body.business_id, body.setup_intent_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/update-payment-method")
async def update_payment_method(request: Request, body: BusinessRequest):
    user = await require_auth(request)
    await ensure_business_access(user, body.business_id)
    try:
        return await lifecycle_controller.update_payment_method(body.business_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/update-payment-method/confirm")
async def confirm_update_payment_method(request: Request, body: SetupIntentConfirmRequest):
    user = await require_auth(request)
    await ensure_business_access(user, body.business_id)
    try:
        return await lifecycle_controller.confirm_payment_method_update(body.business_id, body.setup_intent_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.get("/{business_id}", dependencies=[Depends(business_access_guard)])
async def get_subscription(business_id: str):
    try:
        return await subscription_provisioner.get_subscription_status(business_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/{business_id}/pause", dependencies=[Depends(business_access_guard)])
async def pause_subscription(business_id: str, body: PauseRequest):
    try:
        return await lifecycle_controller.pause(
            business_id, reason=body.reason, feedback=body.feedback, offer_accepted=body.offer_accepted
        )
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/{business_id}/resume", dependencies=[Depends(business_access_guard)])
async def resume_subscription(business_id: str):
    try:
        return await lifecycle_controller.resume(business_id)
    except BillingError as e:
        raise billing_http_error(e)


@router.post("/{business_id}/cancel", dependencies=[Depends(business_access_guard)])
async def cancel_subscription(business_id: str, body: Optional[CancelRequest] = None):
    immediately = body.immediately if body else False
    try:
        return await lifecycle_controller.cancel(business_id, immediately=immediately)
    except BillingError as e:
        raise billing_http_error(e)
