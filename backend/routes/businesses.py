"""Business Routes - business record creation and administration.

Endpoints:
- POST /api/businesses - Create owner + business (partial or plan_selected)
- GET /api/businesses/{business_id} - Business record (owner or admin)
- PUT /api/businesses/{business_id} - Administrative edit (admin)
- GET /api/businesses/{business_id}/audit - Audit timeline (admin)
"""
from fastapi import APIRouter, Depends, HTTPException, Request, status
import uuid
import logging

from auth import hash_password, validate_password_strength
from middleware import business_access_guard, require_admin
from models import CreateBusinessRequest, OwnerIdentity, UpdateBusinessRequest
from services.billing_errors import BillingError
from services.business_store import Created, DuplicateOwner, PRE_ACTIVATION_STATUSES, business_store
from utils.audit import get_audit_logs_for_business
from utils.http_errors import billing_http_error

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/businesses", tags=["businesses"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_business(body: CreateBusinessRequest):
    """
    Create the Owner and a Business record.

    A duplicate owner email returns 409 DUPLICATE_OWNER; callers in the
    onboarding flow treat it as "owner already exists" and continue.
    """
    request_id = str(uuid.uuid4())

    if body.registration_status not in PRE_ACTIVATION_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error_code": "INVALID_REGISTRATION_STATUS",
                "message": "New businesses start as partial or plan_selected",
                "request_id": request_id,
            },
        )

    valid, message = validate_password_strength(body.password)
    if not valid:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "error_code": "VALIDATION_FAILED",
                "message": message,
                "field_errors": {"password": message},
                "request_id": request_id,
            },
        )

    identity = OwnerIdentity(
        name=body.owner_name,
        email=body.email,
        phone=body.phone,
        password_hash=hash_password(body.password),
        business_type=body.business_type,
    )
    result = await business_store.create_business(
        identity,
        body.business,
        registration_status=body.registration_status,
        plan=body.plan,
        skip_subscription=body.skip_subscription,
    )

    if isinstance(result, Created):
        return {"success": True, "business_id": result.business_id, "owner_id": result.owner_id}

    if isinstance(result, DuplicateOwner):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "error_code": "DUPLICATE_OWNER",
                "message": "An account with this email already exists",
                "request_id": request_id,
            },
        )

    logger.error(f"Business creation failed request_id={request_id}: {result.reason}")
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "error_code": "STORE_FAILURE",
            "message": "Business could not be saved, please retry",
            "retryable": True,
            "request_id": request_id,
        },
    )


@router.get("/{business_id}", dependencies=[Depends(business_access_guard)])
async def get_business(business_id: str):
    try:
        business = await business_store.require_business(business_id)
    except BillingError as e:
        raise billing_http_error(e)
    return business.model_dump(mode="json")


@router.put("/{business_id}")
async def update_business(request: Request, business_id: str, body: UpdateBusinessRequest):
    """Administrative edit of name, business type, plan and serving flag."""
    user = await require_admin(request)
    try:
        business = await business_store.update_business(
            business_id,
            body.model_dump(exclude_none=True),
            actor_id=user.get("sub"),
        )
    except BillingError as e:
        raise billing_http_error(e)
    return {"success": True, "business": business.model_dump(mode="json")}


@router.get("/{business_id}/audit")
async def get_business_audit(request: Request, business_id: str, limit: int = 50):
    await require_admin(request)
    logs = await get_audit_logs_for_business(business_id, limit=min(limit, 200))
    return {"business_id": business_id, "items": logs}
