"""Incremental pull of changed PMS entities into the internal store.

Each entity kind runs through ``Idle -> Fetching -> Applying -> Idle`` on its
own. A fetch failure ends in ``Failed`` with the watermark untouched; any
per-record failure ends in ``PartiallyApplied`` with the watermark stopped at
the last record applied before the first failure.
"""
import logging
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..integrations.pms.client import Page, PmsApiClient
from ..integrations.pms.errors import MappingError, PmsAuthError, PmsError, describe_error
from ..integrations.pms.mapper import parse_timestamp, to_internal, to_internal_reference
from ..integrations.pms.session import PmsSession, SessionManager
from ..models.integration import EntityKind, PmsIntegrationConfig, SyncRun, SyncRunStatus
from ..schemas.integration import KindSyncSummary, ReferenceSyncSummary, SyncSummary
from ..state_machine import SyncPhase, validate_phase_transition
from .inflight import InFlightGuard, sync_guard
from .ingestion import REFERENCE_UPSERTERS, UPSERTERS
from .sync_state import (
    advance_watermark,
    finish_sync_run,
    get_watermark,
    record_watermark_outcome,
    start_sync_run,
)

logger = logging.getLogger(__name__)

ALL_KINDS = (
    EntityKind.PATIENTS,
    EntityKind.APPOINTMENTS,
    EntityKind.PAYMENTS,
    EntityKind.ADJUSTMENTS,
)
REFERENCE_RESOURCES = ("providers", "operatories", "appointment_types")


def _naive(value: datetime) -> datetime:
    return value.replace(tzinfo=None) if value.tzinfo is not None else value


def _raw_updated_at(raw: Any) -> Optional[datetime]:
    """Best-effort change timestamp of a record that failed to map or apply."""
    if not isinstance(raw, dict) or not isinstance(raw.get("updated_at"), str):
        return None
    try:
        return parse_timestamp(raw["updated_at"])
    except ValueError:
        return None


class _KindRun:
    def __init__(self, config_id: int, kind: EntityKind):
        self.config_id = config_id
        self.kind = kind
        self.phase = SyncPhase.IDLE
        self.outcome = SyncPhase.IDLE

    def move(self, target: SyncPhase) -> None:
        validate_phase_transition(self.phase, target)
        logger.debug(
            "[pms_sync] config_id=%s kind=%s %s -> %s",
            self.config_id, self.kind.value, self.phase.value, target.value,
        )
        if target != SyncPhase.IDLE:
            self.outcome = target
        self.phase = target


class IncrementalSyncEngine:
    def __init__(
        self,
        session_manager: Optional[SessionManager] = None,
        settings: Optional[Settings] = None,
        guard: Optional[InFlightGuard] = None,
    ):
        self.settings = settings or get_settings()
        self.session_manager = session_manager or SessionManager(self.settings)
        self.guard = guard or sync_guard

    def run(
        self,
        db: Session,
        config: PmsIntegrationConfig,
        kinds: Optional[Iterable[EntityKind]] = None,
    ) -> SyncSummary:
        """Sync each requested kind; raises only ``PmsConfigurationError``."""
        self.session_manager.validate_config(config)
        kinds = list(kinds or ALL_KINDS)

        summary = SyncSummary(config_id=config.id, practice_id=config.practice_id)
        session: Optional[PmsSession] = None
        fatal: Optional[PmsAuthError] = None
        t0 = time.monotonic()

        try:
            for kind in kinds:
                with self.guard.hold((config.id, kind.value)) as acquired:
                    if not acquired:
                        kind_summary = self._skip_kind(db, config, kind)
                    elif fatal is not None:
                        kind_summary = self._fail_kind(
                            db, config, kind, f"aborted: {describe_error(fatal)}"
                        )
                    else:
                        try:
                            if session is None:
                                session = self.session_manager.open(config)
                        except PmsAuthError as e:
                            fatal = e
                            kind_summary = self._fail_kind(db, config, kind, describe_error(e))
                        else:
                            kind_summary, fatal = self._sync_kind(db, session, config, kind)

                summary.kinds.append(kind_summary)
                summary.total_applied += kind_summary.applied
                summary.total_failed += kind_summary.failed
                summary.errors.extend(kind_summary.errors)
        finally:
            if session is not None:
                session.close()

        logger.info(
            "[pms_sync] config_id=%s practice_id=%s duration=%.2fs applied=%d failed=%d kinds=%s",
            config.id, config.practice_id, time.monotonic() - t0,
            summary.total_applied, summary.total_failed,
            ",".join(f"{k.entity_kind}:{k.state}" for k in summary.kinds),
        )
        return summary

    # ------------------------------------------------------------------
    # Per kind
    # ------------------------------------------------------------------

    def _sync_kind(
        self,
        db: Session,
        session: PmsSession,
        config: PmsIntegrationConfig,
        kind: EntityKind,
    ) -> Tuple[KindSyncSummary, Optional[PmsAuthError]]:
        """Returns the summary and, when authentication was lost, the fatal error."""
        run = start_sync_run(db, config.id, config.practice_id, kind)
        db.commit()
        try:
            return self._fetch_and_apply(db, session, config, kind, run)
        except Exception as e:
            # the run row must not stay RUNNING
            db.rollback()
            message = f"{kind.value}: unexpected error: {e}"
            logger.exception("[pms_sync] FAILED config_id=%s kind=%s", config.id, kind.value)
            finish_sync_run(db, run, SyncRunStatus.FAILED, errors=[message])
            record_watermark_outcome(db, config.id, kind, SyncRunStatus.FAILED.value, message)
            db.commit()
            raise

    def _fetch_and_apply(
        self,
        db: Session,
        session: PmsSession,
        config: PmsIntegrationConfig,
        kind: EntityKind,
        run: SyncRun,
    ) -> Tuple[KindSyncSummary, Optional[PmsAuthError]]:
        tracker = _KindRun(config.id, kind)
        before = get_watermark(db, config.id, kind)
        since = before or datetime.utcnow() - timedelta(hours=self.settings.sync_initial_lookback_hours)
        result = KindSyncSummary(
            entity_kind=kind.value,
            state=SyncPhase.IDLE.value,
            watermark_before=before,
            watermark_after=before,
        )

        tracker.move(SyncPhase.FETCHING)
        try:
            records = self._fetch_all(session, kind, since)
        except PmsError as e:
            tracker.move(SyncPhase.FAILED)
            message = f"{kind.value}: fetch failed: {describe_error(e)}"
            logger.error("[pms_sync] FAILED config_id=%s kind=%s error=%s", config.id, kind.value, e)
            result.errors.append(message)
            finish_sync_run(db, run, SyncRunStatus.FAILED, errors=[message])
            record_watermark_outcome(db, config.id, kind, SyncRunStatus.FAILED.value, message)
            db.commit()
            tracker.move(SyncPhase.IDLE)
            result.state = tracker.outcome.value
            return result, e if isinstance(e, PmsAuthError) else None

        result.pulled = len(records)
        tracker.move(SyncPhase.APPLYING)
        candidate = self._apply_records(db, config, kind, records, result)

        result.watermark_after = advance_watermark(db, config.id, kind, candidate)
        if result.failed:
            tracker.move(SyncPhase.PARTIALLY_APPLIED)
            status = SyncRunStatus.PARTIAL
        else:
            status = SyncRunStatus.SUCCEEDED
        finish_sync_run(
            db, run, status,
            pulled=result.pulled, applied=result.applied, failed=result.failed, errors=result.errors,
        )
        record_watermark_outcome(
            db, config.id, kind, status.value, "; ".join(result.errors) if result.errors else None
        )
        db.commit()
        tracker.move(SyncPhase.IDLE)
        result.state = tracker.outcome.value

        logger.info(
            "[pms_sync] config_id=%s kind=%s pulled=%d applied=%d failed=%d watermark=%s",
            config.id, kind.value, result.pulled, result.applied, result.failed, result.watermark_after,
        )
        return result, None

    def _apply_records(
        self,
        db: Session,
        config: PmsIntegrationConfig,
        kind: EntityKind,
        records: List[Dict[str, Any]],
        result: KindSyncSummary,
    ) -> Optional[datetime]:
        """Upsert records in fetch order; return the highest watermark candidate.

        Only records before the first failure contribute to the candidate, and
        the candidate stays strictly below the earliest timestamp of any failed
        record, whatever order the API returned them in. Later records are
        still applied and will be fetched again next run.
        """
        upsert = UPSERTERS[kind]
        contiguous = True
        applied_marks: List[datetime] = []
        earliest_failure: Optional[datetime] = None

        for index, raw in enumerate(records):
            try:
                with db.begin_nested():
                    external = to_internal(kind, raw)
                    upsert(db, config.practice_id, external)
            except (MappingError, SQLAlchemyError, ValueError) as e:
                contiguous = False
                result.failed += 1
                message = f"{kind.value} record {index + 1}: {describe_error(e)}"
                result.errors.append(message)
                logger.warning("[pms_sync] config_id=%s %s", config.id, message)
                failed_at = _raw_updated_at(raw)
                if failed_at is not None and (earliest_failure is None or failed_at < earliest_failure):
                    earliest_failure = failed_at
                continue

            result.applied += 1
            if contiguous and external.updated_at is not None:
                applied_marks.append(_naive(external.updated_at))

        if earliest_failure is not None:
            applied_marks = [mark for mark in applied_marks if mark < earliest_failure]
        return max(applied_marks) if applied_marks else None

    def _fetch_page(self, client: PmsApiClient, kind: EntityKind, since: datetime, cursor: Optional[str]) -> Page:
        per_page = self.settings.sync_per_page
        if kind == EntityKind.PATIENTS:
            return client.list_changed_patients(since, per_page=per_page, cursor=cursor)
        if kind == EntityKind.APPOINTMENTS:
            return client.list_changed_appointments(
                since,
                per_page=per_page,
                cursor=cursor,
                start=self.settings.sync_appointment_window_start,
                end=self.settings.sync_appointment_window_end,
            )
        if kind == EntityKind.PAYMENTS:
            return client.list_changed_payments(since, per_page=per_page, cursor=cursor)
        return client.list_changed_adjustments(since, per_page=per_page, cursor=cursor)

    def _fetch_all(self, session: PmsSession, kind: EntityKind, since: datetime) -> List[Dict[str, Any]]:
        return self._paginate(
            session,
            lambda client, cursor: self._fetch_page(client, kind, since, cursor),
            f"list_changed_{kind.value}",
        )

    @staticmethod
    def _paginate(
        session: PmsSession,
        fetch: Callable[[PmsApiClient, Optional[str]], Page],
        description: str,
    ) -> List[Dict[str, Any]]:
        records: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            page = session.call(lambda client: fetch(client, cursor), description=description)
            records.extend(page.data)
            if not page.has_more:
                return records
            if page.next_cursor == cursor:
                logger.warning(
                    "[pms_sync] config_id=%s %s cursor did not advance; stopping pagination",
                    session.config.id, description,
                )
                return records
            cursor = page.next_cursor

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    def refresh_reference_data(self, db: Session, config: PmsIntegrationConfig) -> ReferenceSyncSummary:
        """Pull all providers, operatories and appointment types.

        These lists are small and carry no reliable change timestamp, so they
        are read in full each time. Seeding can only pick from providers and
        operatories that were pulled here.
        """
        self.session_manager.validate_config(config)
        summary = ReferenceSyncSummary(config_id=config.id)
        with self.guard.hold((config.id, "reference")) as acquired:
            if not acquired:
                summary.errors.append("reference data refresh already in flight; skipped")
                return summary
            return self._refresh_reference_data(db, config, summary)

    def _refresh_reference_data(
        self,
        db: Session,
        config: PmsIntegrationConfig,
        summary: ReferenceSyncSummary,
    ) -> ReferenceSyncSummary:
        try:
            session = self.session_manager.open(config)
        except PmsAuthError as e:
            summary.errors.append(describe_error(e))
            return summary

        per_page = self.settings.sync_per_page
        listers = {
            "providers": lambda client, cursor: client.list_providers(per_page=per_page, cursor=cursor),
            "operatories": lambda client, cursor: client.list_operatories(per_page=per_page, cursor=cursor),
            "appointment_types": lambda client, cursor: client.list_appointment_types(per_page=per_page, cursor=cursor),
        }

        with session:
            for resource in REFERENCE_RESOURCES:
                try:
                    records = self._paginate(session, listers[resource], f"list_{resource}")
                except PmsAuthError as e:
                    summary.errors.append(f"{resource}: {describe_error(e)}")
                    break
                except PmsError as e:
                    summary.errors.append(f"{resource}: fetch failed: {describe_error(e)}")
                    continue

                upsert = REFERENCE_UPSERTERS[resource]
                applied = failed = 0
                for index, raw in enumerate(records):
                    try:
                        with db.begin_nested():
                            upsert(db, config.practice_id, to_internal_reference(resource, raw))
                    except (MappingError, SQLAlchemyError, ValueError) as e:
                        failed += 1
                        summary.errors.append(f"{resource} record {index + 1}: {describe_error(e)}")
                        continue
                    applied += 1
                db.commit()

                summary.applied[resource] = applied
                summary.failed[resource] = failed
                logger.info(
                    "[pms_sync] config_id=%s reference=%s pulled=%d applied=%d failed=%d",
                    config.id, resource, len(records), applied, failed,
                )
        return summary

    # ------------------------------------------------------------------
    # Outcomes without a fetch
    # ------------------------------------------------------------------

    def _skip_kind(self, db: Session, config: PmsIntegrationConfig, kind: EntityKind) -> KindSyncSummary:
        logger.info("[pms_sync] config_id=%s kind=%s already in flight; skipped", config.id, kind.value)
        run = start_sync_run(db, config.id, config.practice_id, kind)
        finish_sync_run(db, run, SyncRunStatus.SKIPPED)
        db.commit()
        current = get_watermark(db, config.id, kind)
        return KindSyncSummary(
            entity_kind=kind.value,
            state=SyncPhase.IDLE.value,
            skipped=True,
            watermark_before=current,
            watermark_after=current,
        )

    def _fail_kind(
        self,
        db: Session,
        config: PmsIntegrationConfig,
        kind: EntityKind,
        reason: str,
    ) -> KindSyncSummary:
        message = f"{kind.value}: {reason}"
        run = start_sync_run(db, config.id, config.practice_id, kind)
        finish_sync_run(db, run, SyncRunStatus.FAILED, errors=[message])
        record_watermark_outcome(db, config.id, kind, SyncRunStatus.FAILED.value, message)
        db.commit()
        current = get_watermark(db, config.id, kind)
        return KindSyncSummary(
            entity_kind=kind.value,
            state=SyncPhase.FAILED.value,
            watermark_before=current,
            watermark_after=current,
            errors=[message],
        )
