from fastapi import APIRouter, HTTPException, status
from database import database
from models import LoginRequest, TokenResponse, UserRole, AuditAction
from auth import verify_password, create_owner_token
from services.business_store import normalize_email
from utils.audit import create_audit_log
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


@router.post("/login", response_model=TokenResponse)
async def login(credentials: LoginRequest):
    """Owner/admin login. The token's email claim is what the business guard checks."""
    db = database.get_db()
    email = normalize_email(credentials.email)

    owner = await db.owners.find_one({"email_normalized": email}, {"_id": 0})
    if not owner or not verify_password(credentials.password, owner.get("password_hash", "")):
        await create_audit_log(
            action=AuditAction.USER_LOGIN_FAILED,
            actor_id=owner["owner_id"] if owner else None,
            metadata={"email": email, "reason": "invalid_credentials"},
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials"
        )

    role = UserRole(owner.get("role", UserRole.ROLE_BUSINESS_OWNER.value))
    access_token = create_owner_token(owner["owner_id"], email, role)

    await create_audit_log(
        action=AuditAction.USER_LOGIN,
        actor_role=role,
        actor_id=owner["owner_id"],
    )
    logger.info(f"USER_LOGIN owner_id={owner['owner_id']} role={role.value}")

    businesses = await db.businesses.find(
        {"owner_id": owner["owner_id"]},
        {"_id": 0, "business_id": 1, "name": 1, "registration_status": 1}
    ).to_list(50)

    return TokenResponse(
        access_token=access_token,
        user={
            "owner_id": owner["owner_id"],
            "email": email,
            "name": owner.get("name"),
            "role": role.value,
            "businesses": businesses,
        },
    )
