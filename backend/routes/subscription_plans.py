"""Subscription plan catalog routes.

Endpoints:
- GET /api/subscription-plans?active=true|public=true - List plans
- GET /api/subscription-plans/{key} - Single plan
- POST /api/subscription-plans - Create plan (admin)
- PUT /api/subscription-plans/{key} - Edit plan (admin)
"""
from fastapi import APIRouter, HTTPException, Request, status
import logging

from middleware import require_admin
from models import PlanCreateRequest, PlanUpdateRequest
from services.billing_errors import BillingError
from services.plan_catalog import plan_catalog
from utils.http_errors import billing_http_error

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/subscription-plans", tags=["subscription-plans"])


@router.get("")
async def list_plans(active: bool = False, public: bool = False):
    plans = await plan_catalog.list_plans(active_only=active, public_only=public)
    return {"plans": [p.model_dump(mode="json") for p in plans]}


@router.get("/{key}")
async def get_plan(key: str):
    try:
        plan = await plan_catalog.require_plan(key, active_only=False)
    except BillingError as e:
        raise billing_http_error(e)
    return plan.model_dump(mode="json")


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_plan(request: Request, body: PlanCreateRequest):
    user = await require_admin(request)
    try:
        plan = await plan_catalog.create_plan(body.model_dump(), actor_id=user.get("sub"))
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error_code": "PLAN_EXISTS", "message": str(e)},
        )
    return plan.model_dump(mode="json")


@router.put("/{key}")
async def update_plan(request: Request, key: str, body: PlanUpdateRequest):
    """Edit a plan. Price edits apply to new subscriptions only."""
    user = await require_admin(request)
    try:
        plan = await plan_catalog.update_plan(key, body.model_dump(exclude_none=True), actor_id=user.get("sub"))
    except BillingError as e:
        raise billing_http_error(e)
    return plan.model_dump(mode="json")
