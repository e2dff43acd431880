from models import AuditLog, AuditAction
from typing import Optional, Dict, Any
import logging

logger = logging.getLogger(__name__)


async def create_audit_log(
    db,
    action: AuditAction,
    email_hash: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> str:
    """Create an audit log entry.

    Args:
        db: Motor database handle
        action: The audit action type
        email_hash: Hash of the affected email (never the address itself)
        resource_type: Type of resource being modified (e.g., 'purchase', 'trial')
        resource_id: ID of the specific resource
        metadata: Additional metadata
    """
    try:
        audit_log = AuditLog(
            action=action,
            email_hash=email_hash,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata=metadata or None,
        )
        await db.audit_logs.insert_one(audit_log.model_dump())
        logger.info(f"Audit log created: {audit_log.action}")
        return audit_log.audit_id
    except Exception as e:
        logger.error(f"Failed to create audit log: {e}")
        # Never fail the main operation due to audit log failure
        return ""
