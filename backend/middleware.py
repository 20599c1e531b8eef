from fastapi import Request, HTTPException, status
from typing import Optional
import logging
from auth import decode_access_token, is_admin
from models import Business
from services.business_store import business_store

logger = logging.getLogger(__name__)

async def get_current_user(request: Request) -> Optional[dict]:
    """Extract and validate current user from JWT token."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None

    token = auth_header.split(" ")[1]
    payload = decode_access_token(token)

    if not payload:
        return None

    return payload

async def require_auth(request: Request) -> dict:
    """Require valid authentication."""
    user = await get_current_user(request)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated"
        )
    return user

async def require_admin(request: Request) -> dict:
    """Require admin role."""
    user = await require_auth(request)
    if not is_admin(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions"
        )
    return user

async def ensure_business_access(user: dict, business_id: str) -> Business:
    """Owner of the business (by token email) or admin; returns the Business."""
    business = await business_store.get_business(business_id)
    if not business:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Business not found"
        )

    if is_admin(user):
        return business

    email = (user.get("email") or "").strip().lower()
    if not email or email != business.owner_email:
        logger.warning(f"Business access denied: business_id={business_id} email={email}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this business"
        )
    return business

async def business_access_guard(request: Request, business_id: str) -> dict:
    """Route guard for /{business_id}/... paths."""
    user = await require_auth(request)
    await ensure_business_access(user, business_id)
    return user
