"""Audit trail helpers. Records are added to the caller's session and commit with it."""
import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hybrid_attachments.models.audit import AuditLog


logger = logging.getLogger(__name__)


def add_audit_event(
    db: AsyncSession,
    organization_id: str,
    entity_id: str,
    action: str,
    changes: Optional[Dict[str, Any]] = None,
    actor_id: Optional[str] = None,
    entity_type: str = "attachment",
    description: Optional[str] = None,
) -> AuditLog:
    """
    Stage an audit record in the current transaction.

    Args:
        db: Session holding the change being audited
        organization_id: Owning organization
        entity_id: ID of the audited entity
        action: Dotted action name, e.g. "attachment.uploaded"
        changes: JSON-serialisable details of the change
        actor_id: User responsible, None for background processing
        entity_type: Kind of audited entity
        description: Optional human-readable summary

    Returns:
        The pending AuditLog row
    """
    record = AuditLog(
        organization_id=organization_id,
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        description=description,
        changes=changes or {},
    )
    db.add(record)
    logger.debug(f"Audit {action} for {entity_type} {entity_id}")
    return record
