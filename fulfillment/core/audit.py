"""Audit log for administrative actions."""

from typing import Any

from fulfillment.models.audit_log import AuditLog


async def log_event(
    actor: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append to audit_logs collection."""
    await AuditLog(
        actor=actor,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    ).insert()


async def list_audit_logs(
    limit: int = 50,
    offset: int = 0,
    entity_type: str | None = None,
) -> list[AuditLog]:
    """Newest first, optionally filtered by entity type."""
    query = AuditLog.find(AuditLog.entity_type == entity_type) if entity_type else AuditLog.find_all()
    return await query.sort("-created_at").skip(offset).limit(limit).to_list()
