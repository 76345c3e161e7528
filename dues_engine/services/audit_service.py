"""Audit service for stamping mutating operations."""

from sqlalchemy.orm import Session

from dues_engine.models.audit_log import AuditLog


class AuditService:
    """Service for audit log operations.

    Rows are added to the caller's session, so they commit or roll back
    together with the operation they describe.
    """

    @staticmethod
    def log(
        db: Session,
        entity_type: str,
        entity_id: int,
        action: str,
        actor_id: int | None = None,
        changes: dict | None = None,
    ) -> AuditLog:
        """Create audit log entry.

        Args:
            db: Database session
            entity_type: Type of entity ("payment", "period", "ledger_entry", etc.)
            entity_id: Primary key of the entity
            action: Action performed ("create", "reverse", "close", etc.)
            actor_id: Site-scoped actor who performed the action (optional)
            changes: Optional JSON snapshot of changed fields

        Returns:
            Created AuditLog object
        """
        audit = AuditLog(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
            changes=changes,
        )
        db.add(audit)
        return audit

    @staticmethod
    def history(db: Session, entity_type: str, entity_id: int) -> list[AuditLog]:
        """Get audit entries of one entity, oldest first."""
        return (
            db.query(AuditLog)
            .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.id)
            .all()
        )


__all__ = ["AuditService"]
