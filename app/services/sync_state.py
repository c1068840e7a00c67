import json
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.integration import (
    EntityKind,
    HealthState,
    HealthStatusRecord,
    SyncRun,
    SyncRunStatus,
    SyncWatermark,
)

logger = logging.getLogger(__name__)


def get_or_create_watermark(db: Session, config_id: int, kind: EntityKind) -> SyncWatermark:
    mark = db.query(SyncWatermark).filter(
        SyncWatermark.config_id == config_id,
        SyncWatermark.entity_kind == kind.value,
    ).first()
    if not mark:
        mark = SyncWatermark(config_id=config_id, entity_kind=kind.value)
        db.add(mark)
        db.flush()
    return mark


def get_watermark(db: Session, config_id: int, kind: EntityKind) -> Optional[datetime]:
    mark = db.query(SyncWatermark).filter(
        SyncWatermark.config_id == config_id,
        SyncWatermark.entity_kind == kind.value,
    ).first()
    return mark.watermark_at if mark else None


def advance_watermark(db: Session, config_id: int, kind: EntityKind, candidate: Optional[datetime]) -> Optional[datetime]:
    """Move the watermark forward to ``candidate``; never moves it backwards.

    Returns the stored watermark after the call.
    """
    mark = get_or_create_watermark(db, config_id, kind)
    if candidate is None:
        return mark.watermark_at
    if mark.watermark_at is not None and candidate <= mark.watermark_at:
        return mark.watermark_at
    logger.info(
        "[sync_state] config_id=%s kind=%s watermark %s -> %s",
        config_id, kind.value, mark.watermark_at, candidate,
    )
    mark.watermark_at = candidate
    db.flush()
    return candidate


def record_watermark_outcome(
    db: Session,
    config_id: int,
    kind: EntityKind,
    status: str,
    error: Optional[str] = None,
) -> None:
    mark = get_or_create_watermark(db, config_id, kind)
    mark.last_run_status = status
    mark.last_run_at = datetime.utcnow()
    mark.last_error = error
    db.flush()


def start_sync_run(db: Session, config_id: int, practice_id: int, kind: EntityKind) -> SyncRun:
    run = SyncRun(
        config_id=config_id,
        practice_id=practice_id,
        entity_kind=kind.value,
        status=SyncRunStatus.RUNNING.value,
    )
    db.add(run)
    db.flush()
    return run


def finish_sync_run(
    db: Session,
    run: SyncRun,
    status: SyncRunStatus,
    pulled: int = 0,
    applied: int = 0,
    failed: int = 0,
    errors: Optional[List[str]] = None,
) -> SyncRun:
    run.status = status.value
    run.ended_at = datetime.utcnow()
    run.pulled_count = pulled
    run.applied_count = applied
    run.failed_count = failed
    run.error_json = json.dumps({"errors": errors}) if errors else None
    db.flush()
    return run


def get_health_record(db: Session, config_id: int) -> Optional[HealthStatusRecord]:
    return db.query(HealthStatusRecord).filter(HealthStatusRecord.config_id == config_id).first()


def get_or_create_health_record(db: Session, config_id: int) -> HealthStatusRecord:
    record = get_health_record(db, config_id)
    if not record:
        record = HealthStatusRecord(
            config_id=config_id,
            status=HealthState.HEALTHY.value,
            consecutive_failures=0,
        )
        db.add(record)
        db.flush()
    return record
