from database import database
from models import AuditLog, AuditAction
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)

async def create_audit_log(
    action: AuditAction,
    actor_role: Optional[str] = None,
    actor_id: Optional[str] = None,
    account_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Create an audit log entry for a billing event.

    Args:
        action: The audit action type
        actor_role: Role of the caller ("SYSTEM" for gateway and scheduler events)
        actor_id: ID of the user performing the action
        account_id: Merchant account the event belongs to
        resource_type: Type of resource touched (e.g., 'wallet', 'subscription')
        resource_id: ID of the specific resource
        metadata: Additional metadata
    """
    try:
        db = database.get_db()

        audit_log = AuditLog(
            action=action,
            actor_role=actor_role,
            actor_id=actor_id,
            account_id=account_id,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata or None,
        )

        await db.audit_logs.insert_one(audit_log.model_dump())
        logger.info(f"Audit log created: {action.value}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""
