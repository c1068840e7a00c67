"""Entry points called by the external scheduler (and by the internal router).

Each opens its own database session, returns a structured summary and does
not raise for partial failure. The ``*_all`` helpers fan out across active
configurations on a bounded thread pool; every worker gets its own session.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Callable, List, Optional, TypeVar

from sqlalchemy.orm import Session

from .config import get_settings
from .database import SessionLocal
from .integrations.pms.errors import PmsConfigurationError
from .integrations.pms.session import SessionManager
from .models.appointment import Appointment
from .models.integration import ConnectionStatus, EntityKind, PmsIntegrationConfig
from .models.transaction import PmsAdjustment, PmsPayment
from .schemas.integration import (
    HealthCheckResult,
    PushResult,
    ReferenceSyncSummary,
    SeedCounts,
    SeedSummary,
    SyncSummary,
)
from .services.health import HealthMonitor
from .services.sync import IncrementalSyncEngine
from .services.writer import IdempotentWriter
from .state_machine import SyncPhase

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]
T = TypeVar("T")

_PUSHABLE = {
    EntityKind.APPOINTMENTS: Appointment,
    EntityKind.PAYMENTS: PmsPayment,
    EntityKind.ADJUSTMENTS: PmsAdjustment,
}


def _load_config(db: Session, config_id: int) -> Optional[PmsIntegrationConfig]:
    return db.get(PmsIntegrationConfig, config_id)


def _set_connection_status(db: Session, config: PmsIntegrationConfig, summary: SyncSummary) -> None:
    states = [k.state for k in summary.kinds if not k.skipped]
    if not states:
        return
    failed = SyncPhase.FAILED.value in states
    config.connection_status = (ConnectionStatus.ERROR if failed else ConnectionStatus.CONNECTED).value
    db.commit()


def run_incremental_sync(
    config_id: int,
    kinds: Optional[List[EntityKind]] = None,
    session_factory: SessionFactory = SessionLocal,
    engine: Optional[IncrementalSyncEngine] = None,
) -> SyncSummary:
    engine = engine or IncrementalSyncEngine()
    db = session_factory()
    try:
        config = _load_config(db, config_id)
        try:
            summary = engine.run(db, config, kinds)
        except PmsConfigurationError as e:
            logger.warning("[pms_job] sync config_id=%s not runnable: %s", config_id, e)
            return SyncSummary(
                config_id=config_id,
                practice_id=config.practice_id if config else None,
                errors=[str(e)],
            )
        _set_connection_status(db, config, summary)
        return summary
    except Exception as e:
        db.rollback()
        logger.exception("[pms_job] sync FAILED config_id=%s", config_id)
        return SyncSummary(config_id=config_id, errors=[f"Sync failed: {e}"])
    finally:
        db.close()


def run_health_check(
    config_id: int,
    session_factory: SessionFactory = SessionLocal,
    monitor: Optional[HealthMonitor] = None,
) -> HealthCheckResult:
    monitor = monitor or HealthMonitor()
    db = session_factory()
    try:
        config = _load_config(db, config_id)
        try:
            SessionManager.validate_config(config)
        except PmsConfigurationError as e:
            logger.warning("[pms_job] health config_id=%s not runnable: %s", config_id, e)
            return HealthCheckResult(config_id=config_id, ok=False, message=str(e), checked_at=datetime.utcnow())
        return monitor.check(db, config)
    except Exception as e:
        db.rollback()
        logger.exception("[pms_job] health FAILED config_id=%s", config_id)
        return HealthCheckResult(
            config_id=config_id, ok=False, message=f"Health check failed: {e}", checked_at=datetime.utcnow()
        )
    finally:
        db.close()


def seed_external_data(
    config_id: int,
    counts: Optional[SeedCounts] = None,
    session_factory: SessionFactory = SessionLocal,
    writer: Optional[IdempotentWriter] = None,
) -> SeedSummary:
    writer = writer or IdempotentWriter()
    db = session_factory()
    try:
        return writer.seed(db, _load_config(db, config_id), counts)
    except Exception as e:
        db.rollback()
        logger.exception("[pms_job] seed FAILED config_id=%s", config_id)
        return SeedSummary(config_id=config_id, errors=[f"Seed failed: {e}"])
    finally:
        db.close()


def push_record(
    config_id: int,
    kind: EntityKind,
    record_id: int,
    session_factory: SessionFactory = SessionLocal,
    writer: Optional[IdempotentWriter] = None,
) -> PushResult:
    """Push one internal appointment, payment or adjustment to the PMS."""
    writer = writer or IdempotentWriter()
    label = kind.value.rstrip("s")
    if kind not in _PUSHABLE:
        return PushResult(kind=label, internal_id=record_id, ok=False, error=f"{kind.value} cannot be pushed")

    db = session_factory()
    try:
        config = _load_config(db, config_id)
        record = db.get(_PUSHABLE[kind], record_id)
        if record is None or config is None or record.practice_id != config.practice_id:
            return PushResult(kind=label, internal_id=record_id, ok=False, error=f"{label} {record_id} not found")
        if kind == EntityKind.APPOINTMENTS:
            return writer.push_appointment(db, config, record)
        if kind == EntityKind.PAYMENTS:
            return writer.push_payment(db, config, record)
        return writer.push_adjustment(db, config, record)
    except Exception as e:
        db.rollback()
        logger.exception("[pms_job] push FAILED config_id=%s kind=%s id=%s", config_id, kind.value, record_id)
        return PushResult(kind=label, internal_id=record_id, ok=False, error=f"Push failed: {e}")
    finally:
        db.close()


def active_config_ids(session_factory: SessionFactory = SessionLocal) -> List[int]:
    db = session_factory()
    try:
        rows = (
            db.query(PmsIntegrationConfig.id)
            .filter(PmsIntegrationConfig.active.is_(True))
            .order_by(PmsIntegrationConfig.id)
            .all()
        )
        return [row[0] for row in rows]
    finally:
        db.close()


def _fan_out(job: Callable[[int], T], config_ids: List[int], max_workers: Optional[int]) -> List[T]:
    if not config_ids:
        return []
    workers = max(1, min(max_workers or get_settings().jobs_max_concurrent_configs, len(config_ids)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(job, config_ids))


def run_incremental_sync_all(
    session_factory: SessionFactory = SessionLocal,
    engine: Optional[IncrementalSyncEngine] = None,
    max_workers: Optional[int] = None,
) -> List[SyncSummary]:
    engine = engine or IncrementalSyncEngine()
    config_ids = active_config_ids(session_factory)
    logger.info("[pms_job] sync tick configs=%d", len(config_ids))
    return _fan_out(
        lambda config_id: run_incremental_sync(config_id, session_factory=session_factory, engine=engine),
        config_ids,
        max_workers,
    )


def run_health_check_all(
    session_factory: SessionFactory = SessionLocal,
    monitor: Optional[HealthMonitor] = None,
    max_workers: Optional[int] = None,
) -> List[HealthCheckResult]:
    monitor = monitor or HealthMonitor()
    config_ids = active_config_ids(session_factory)
    logger.info("[pms_job] health tick configs=%d", len(config_ids))
    return _fan_out(
        lambda config_id: run_health_check(config_id, session_factory=session_factory, monitor=monitor),
        config_ids,
        max_workers,
    )


def run_reference_sync(
    config_id: int,
    session_factory: SessionFactory = SessionLocal,
    engine: Optional[IncrementalSyncEngine] = None,
) -> ReferenceSyncSummary:
    engine = engine or IncrementalSyncEngine()
    db = session_factory()
    try:
        return engine.refresh_reference_data(db, _load_config(db, config_id))
    except PmsConfigurationError as e:
        logger.warning("[pms_job] reference sync config_id=%s not runnable: %s", config_id, e)
        return ReferenceSyncSummary(config_id=config_id, errors=[str(e)])
    except Exception as e:
        db.rollback()
        logger.exception("[pms_job] reference sync FAILED config_id=%s", config_id)
        return ReferenceSyncSummary(config_id=config_id, errors=[f"Reference sync failed: {e}"])
    finally:
        db.close()
