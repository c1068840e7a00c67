import json
from typing import Optional, Dict, Any
from sqlalchemy.orm import Session

from ..models.audit import AuditEvent


class AuditService:
    @staticmethod
    def log_event(
        db: Session,
        resource_type: str,
        resource_id: Optional[int],
        action: str,
        practice_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            practice_id=practice_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
            metadata_json=json.dumps(metadata, default=str) if metadata else None,
        )
        db.add(event)
        return event

    @staticmethod
    def log_sync_upsert(
        db: Session,
        practice_id: int,
        resource_type: str,
        resource_id: int,
        operation: str,
        external_id: str,
    ) -> AuditEvent:
        return AuditService.log_event(
            db=db,
            resource_type=resource_type,
            resource_id=resource_id,
            action=f"pms.sync.{resource_type}",
            practice_id=practice_id,
            metadata={"operation": operation, "external_id": external_id},
        )

    @staticmethod
    def log_push(
        db: Session,
        practice_id: int,
        resource_type: str,
        resource_id: Optional[int],
        external_id: Optional[str],
        idempotency_key: str,
    ) -> AuditEvent:
        return AuditService.log_event(
            db=db,
            resource_type=resource_type,
            resource_id=resource_id,
            action=f"pms.push.{resource_type}",
            practice_id=practice_id,
            metadata={"external_id": external_id, "idempotency_key": idempotency_key},
        )

    @staticmethod
    def log_health_alert(
        db: Session,
        practice_id: int,
        config_id: int,
        severity: str,
        status: str,
        message: str,
    ) -> AuditEvent:
        return AuditService.log_event(
            db=db,
            resource_type="pms_integration_config",
            resource_id=config_id,
            action=f"pms.health.alert.{severity}",
            practice_id=practice_id,
            metadata={"severity": severity, "status": status, "message": message},
        )
