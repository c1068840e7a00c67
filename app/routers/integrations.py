import logging
import secrets
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import jobs
from ..config import get_settings
from ..database import get_db
from ..models.integration import EntityKind, PmsIntegrationConfig, SyncRun, SyncWatermark
from ..schemas.integration import (
    HealthCheckResult,
    PmsConfigStatusResponse,
    PushResult,
    ReferenceSyncSummary,
    SeedCounts,
    SeedSummary,
    SyncRunResponse,
    SyncSummary,
)
from ..services.sync_state import get_health_record

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal/pms", tags=["pms-integration"])


def require_internal_key(x_internal_api_key: Optional[str] = Header(None)) -> None:
    expected = get_settings().internal_api_key
    if not expected:
        return
    if not x_internal_api_key or not secrets.compare_digest(x_internal_api_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing internal API key",
        )


def _get_config(db: Session, config_id: int) -> PmsIntegrationConfig:
    config = db.get(PmsIntegrationConfig, config_id)
    if not config:
        raise HTTPException(status_code=404, detail=f"PMS configuration {config_id} not found")
    return config


@router.get(
    "/configs/{config_id}/status",
    response_model=PmsConfigStatusResponse,
    dependencies=[Depends(require_internal_key)],
)
def get_config_status(config_id: int, db: Session = Depends(get_db)):
    config = _get_config(db, config_id)
    health = get_health_record(db, config.id)
    watermarks = db.query(SyncWatermark).filter(SyncWatermark.config_id == config.id).all()

    return PmsConfigStatusResponse(
        config_id=config.id,
        practice_id=config.practice_id,
        subdomain=config.subdomain,
        environment=config.environment,
        active=config.active,
        connection_status=config.connection_status,
        health_status=health.status if health else None,
        consecutive_failures=health.consecutive_failures if health else 0,
        last_checked_at=health.last_checked_at if health else None,
        watermarks={
            w.entity_kind: w.watermark_at.isoformat() if w.watermark_at else None for w in watermarks
        },
    )


@router.get(
    "/configs/{config_id}/runs",
    response_model=List[SyncRunResponse],
    dependencies=[Depends(require_internal_key)],
)
def list_sync_runs(
    config_id: int,
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
):
    _get_config(db, config_id)
    runs = (
        db.query(SyncRun)
        .filter(SyncRun.config_id == config_id)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .limit(limit)
        .all()
    )
    return [SyncRunResponse.model_validate(r) for r in runs]


@router.post(
    "/configs/{config_id}/sync",
    response_model=SyncSummary,
    dependencies=[Depends(require_internal_key)],
)
def trigger_sync(
    config_id: int,
    kinds: Optional[List[EntityKind]] = Query(None),
    db: Session = Depends(get_db),
):
    _get_config(db, config_id)
    summary = jobs.run_incremental_sync(config_id, kinds=kinds)
    logger.info(
        "[pms_router] sync config_id=%s applied=%d failed=%d",
        config_id, summary.total_applied, summary.total_failed,
    )
    return summary


@router.post(
    "/configs/{config_id}/reference-sync",
    response_model=ReferenceSyncSummary,
    dependencies=[Depends(require_internal_key)],
)
def trigger_reference_sync(config_id: int, db: Session = Depends(get_db)):
    _get_config(db, config_id)
    return jobs.run_reference_sync(config_id)


@router.post(
    "/configs/{config_id}/health",
    response_model=HealthCheckResult,
    dependencies=[Depends(require_internal_key)],
)
def trigger_health_check(config_id: int, db: Session = Depends(get_db)):
    _get_config(db, config_id)
    return jobs.run_health_check(config_id)


@router.post(
    "/configs/{config_id}/seed",
    response_model=SeedSummary,
    dependencies=[Depends(require_internal_key)],
)
def trigger_seed(config_id: int, counts: Optional[SeedCounts] = None, db: Session = Depends(get_db)):
    _get_config(db, config_id)
    return jobs.seed_external_data(config_id, counts or SeedCounts())


@router.post(
    "/configs/{config_id}/push/{kind}/{record_id}",
    response_model=PushResult,
    dependencies=[Depends(require_internal_key)],
)
def trigger_push(config_id: int, kind: EntityKind, record_id: int, db: Session = Depends(get_db)):
    _get_config(db, config_id)
    if kind == EntityKind.PATIENTS:
        raise HTTPException(status_code=400, detail="Patients cannot be pushed")
    result = jobs.push_record(config_id, kind, record_id)
    if not result.ok and result.error and result.error.endswith("not found"):
        raise HTTPException(status_code=404, detail=result.error)
    return result


@router.post(
    "/sync-all",
    response_model=List[SyncSummary],
    dependencies=[Depends(require_internal_key)],
)
def trigger_sync_all():
    return jobs.run_incremental_sync_all()


@router.post(
    "/health-all",
    response_model=List[HealthCheckResult],
    dependencies=[Depends(require_internal_key)],
)
def trigger_health_all():
    return jobs.run_health_check_all()
