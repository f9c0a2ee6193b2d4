"""
Audit logging utilities.

Every state-changing action on a sale, buyer or incident is logged.
"""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ledgersync.models.audit import AuditAction, AuditLog


async def log_action(
    db: AsyncSession,
    actor_id: str,
    action: AuditAction,
    target_type: Optional[str] = None,
    target_id: Optional[int] = None,
    action_metadata: Optional[dict[str, Any]] = None,
) -> AuditLog:
    """
    Log an auditable action.

    Args:
        db: Database session
        actor_id: Identity provider id of the acting user (or "system")
        action: Type of action being performed
        target_type: Type of entity affected (e.g., "sale", "buyer")
        target_id: ID of the affected entity
        action_metadata: Additional context about the action

    Returns:
        Created AuditLog entry
    """
    log_entry = AuditLog(
        actor_id=actor_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        action_metadata=action_metadata,
    )
    db.add(log_entry)
    # Note: commit should happen in the calling context
    return log_entry
