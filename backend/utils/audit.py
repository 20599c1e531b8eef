from database import database
from models import AuditLog, AuditAction, UserRole
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)

def calculate_diff(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Field-level diff between two flat snapshots of a Business.

    Returns only the non-empty categories among added/removed/changed.
    """
    before = before or {}
    after = after or {}
    added = {k: after[k] for k in after.keys() - before.keys()}
    removed = {k: before[k] for k in before.keys() - after.keys()}
    changed = {
        k: {"from": before[k], "to": after[k]}
        for k in before.keys() & after.keys()
        if before[k] != after[k]
    }
    diff = {"added": added, "removed": removed, "changed": changed}
    return {k: v for k, v in diff.items() if v}

async def create_audit_log(
    action: AuditAction,
    business_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    actor_role: Optional[UserRole] = None,
    before_state: Optional[Dict[str, Any]] = None,
    after_state: Optional[Dict[str, Any]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Append an entry to audit_logs; a diff is stored when both states are given.

    Audit failures are logged and swallowed: the billing operation that
    triggered the entry has already happened and must not be reported as failed.
    """
    try:
        db = database.get_db()

        enriched_metadata = dict(metadata or {})
        if before_state and after_state:
            diff = calculate_diff(before_state, after_state)
            if diff:
                enriched_metadata["diff"] = diff

        audit_log = AuditLog(
            action=action,
            business_id=business_id,
            actor_id=actor_id,
            actor_role=actor_role,
            before_state=before_state,
            after_state=after_state,
            metadata=enriched_metadata or None,
        )
        doc = audit_log.model_dump(mode="json")
        doc["timestamp"] = audit_log.timestamp
        await db.audit_logs.insert_one(doc)
        logger.info(f"Audit log created: {action.value} business_id={business_id}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log {action.value}: {e}")
        return ""

async def get_audit_logs_for_business(business_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent audit entries for one Business."""
    db = database.get_db()
    cursor = db.audit_logs.find(
        {"business_id": business_id},
        {"_id": 0}
    ).sort("timestamp", -1).limit(limit)
    return await cursor.to_list(length=limit)
