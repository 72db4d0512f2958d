from sqlalchemy.orm import Session
from typing import Optional, Dict, Any

from app.models.audit_log import AuditLog


class AuditService:
    @staticmethod
    def log_action(
        db: Session,
        action: str,
        entity_type: str,
        entity_id: Optional[str] = None,
        user_id: Optional[str] = None,
        changes: Optional[Dict[str, Any]] = None
    ) -> AuditLog:
        """Stage an audit entry in the caller's transaction.

        The caller commits, so the entry is written together with the
        change it describes or not at all.
        """
        log = AuditLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            changes=changes
        )
        db.add(log)
        return log

    @staticmethod
    def list_for_entity(db: Session, entity_type: str, entity_id: str):
        return db.query(AuditLog).filter(
            AuditLog.entity_type == entity_type,
            AuditLog.entity_id == entity_id
        ).order_by(AuditLog.created_at.asc()).all()
