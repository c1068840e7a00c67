"""Idempotent creation of appointments, payments and adjustments in the PMS.

Two entry points:

- ``seed``: provisioning/demo population. Spreads N writes over the practice's
  provisioned patients, providers and operatories round-robin, with
  appointment dates pushed forward from today (UTC). Each item gets an
  idempotency key built from the invocation start time and its index, so a
  retry of the same item inside one invocation reuses its key.
- ``push_*``: one internal record to one external record. The key is derived
  from the internal id, so pushing the same record twice is deduplicated
  externally, and a record that already carries an external id is not sent.

A failing item never stops the rest of its batch. Authentication loss is the
only failure that ends a seed early.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..integrations.pms.client import PmsApiClient
from ..integrations.pms.errors import PmsAuthError, PmsConfigurationError, PmsError, describe_error
from ..integrations.pms.mapper import (
    AdjustmentDraft,
    AppointmentDraft,
    ExternalRefs,
    MappingContext,
    PaymentDraft,
    to_external_adjustment,
    to_external_appointment,
    to_external_payment,
)
from ..integrations.pms.session import PmsSession, SessionManager
from ..models.appointment import Appointment
from ..models.integration import PmsIntegrationConfig
from ..models.transaction import PmsAdjustment, PmsPayment
from ..schemas.integration import BatchResult, PushResult, SeedCounts, SeedSummary
from .audit import AuditService
from .ingestion import (
    list_provisioned_operatories,
    list_provisioned_patients,
    list_provisioned_providers,
)

logger = logging.getLogger(__name__)

APPOINTMENT_SLOTS = (
    "09:00", "09:30", "10:00", "10:30", "11:00",
    "13:00", "13:30", "14:00", "14:30", "15:00",
)
PAYMENT_AMOUNTS = (50, 75, 100, 150, 200, 250, 300, 125, 85, 500)
ADJUSTMENT_AMOUNTS = (25, 50, 30, 75, 15)

NO_PATIENTS_MESSAGE = "No patients with a pms_patient_id found; run a full sync first"
NO_PROVIDERS_MESSAGE = "No providers with a pms_provider_id found; run a full sync first"

# (index, idempotency key, payload builder)
_Item = Tuple[int, str, Callable[[], Dict[str, Any]]]
_Create = Callable[[PmsApiClient, Dict[str, Any]], Dict[str, Any]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class IdempotentWriter:
    def __init__(
        self,
        session_manager: Optional[SessionManager] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.settings = settings or get_settings()
        self.session_manager = session_manager or SessionManager(self.settings)
        self.clock = clock

    def idempotency_key(self, *parts: Any) -> str:
        return "-".join([self.settings.writer_idempotency_prefix, *[str(p) for p in parts]])

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def seed(
        self,
        db: Session,
        config: Optional[PmsIntegrationConfig],
        counts: Optional[SeedCounts] = None,
    ) -> SeedSummary:
        counts = counts or SeedCounts()
        summary = SeedSummary(config_id=config.id if config is not None else None)

        try:
            self.session_manager.validate_config(config)
        except PmsConfigurationError as e:
            summary.errors.append(str(e))
            return summary

        patient_ids = [p.pms_patient_id for p in list_provisioned_patients(db, config.practice_id)]
        provider_ids = [p.pms_provider_id for p in list_provisioned_providers(db, config.practice_id)]
        operatory_ids = [o.pms_operatory_id for o in list_provisioned_operatories(db, config.practice_id)]

        if not patient_ids:
            summary.errors.append(NO_PATIENTS_MESSAGE)
            return summary
        if not provider_ids:
            summary.errors.append(NO_PROVIDERS_MESSAGE)
            return summary

        started = self.clock()
        started_ms = int(started.timestamp() * 1000)

        try:
            with self.session_manager.open(config) as session:
                context = MappingContext(session, config.id)

                summary.appointments = self._run_batch(
                    session, "appointment", "Appointment",
                    [
                        self._seed_appointment(i, started, started_ms, patient_ids, provider_ids, operatory_ids, context)
                        for i in range(counts.appointments)
                    ],
                    lambda client, payload: client.create_appointment(payload),
                )

                if counts.payments:
                    payment_type = context.resolve_payment_type()
                    summary.payments = self._run_batch(
                        session, "payment", "Payment",
                        [self._seed_payment(i, started_ms, patient_ids, context) for i in range(counts.payments)],
                        lambda client, payload: client.create_payment(payload),
                    )
                    summary.payments.type_name = payment_type.name
                    summary.payments.type_name_tier = payment_type.tier.value

                if counts.adjustments:
                    adjustment_type = context.resolve_adjustment_type()
                    summary.adjustments = self._run_batch(
                        session, "adjustment", "Adjustment",
                        [
                            self._seed_adjustment(i, started_ms, patient_ids, provider_ids, context)
                            for i in range(counts.adjustments)
                        ],
                        lambda client, payload: client.create_adjustment(payload),
                    )
                    summary.adjustments.type_name = adjustment_type.name
                    summary.adjustments.type_name_tier = adjustment_type.tier.value
        except PmsAuthError as e:
            logger.error("[pms_seed] FAILED config_id=%s error=%s", config.id, e)
            summary.errors.append(describe_error(e))

        AuditService.log_event(
            db=db,
            resource_type="pms_integration_config",
            resource_id=config.id,
            action="pms.seed",
            practice_id=config.practice_id,
            metadata={
                "started_ms": started_ms,
                "appointments": summary.appointments.pushed,
                "payments": summary.payments.pushed,
                "adjustments": summary.adjustments.pushed,
                "errors": len(summary.errors) + sum(
                    len(b.errors) for b in (summary.appointments, summary.payments, summary.adjustments)
                ),
            },
        )
        db.commit()

        logger.info(
            "[pms_seed] config_id=%s appointments=%d/%d payments=%d/%d adjustments=%d/%d",
            config.id,
            summary.appointments.pushed, summary.appointments.attempted,
            summary.payments.pushed, summary.payments.attempted,
            summary.adjustments.pushed, summary.adjustments.attempted,
        )
        return summary

    def _seed_appointment(
        self,
        i: int,
        started: datetime,
        started_ms: int,
        patient_ids: List[str],
        provider_ids: List[str],
        operatory_ids: List[str],
        context: MappingContext,
    ) -> _Item:
        day = (started + timedelta(days=i // 2 + 1)).date()
        slot = APPOINTMENT_SLOTS[i % len(APPOINTMENT_SLOTS)]
        draft = AppointmentDraft(
            refs=ExternalRefs(
                pms_patient_id=patient_ids[i % len(patient_ids)],
                pms_provider_id=provider_ids[i % len(provider_ids)],
                pms_operatory_id=operatory_ids[i % len(operatory_ids)] if operatory_ids else None,
            ),
            start_time=f"{day.isoformat()}T{slot}:00",
        )
        key = self.idempotency_key("seed", "appt", started_ms, i)
        return i, key, lambda: to_external_appointment(draft, context)

    def _seed_payment(self, i: int, started_ms: int, patient_ids: List[str], context: MappingContext) -> _Item:
        draft = PaymentDraft(
            refs=ExternalRefs(pms_patient_id=patient_ids[i % len(patient_ids)]),
            amount_cents=PAYMENT_AMOUNTS[i % len(PAYMENT_AMOUNTS)] * 100,
        )
        key = self.idempotency_key("seed", "pay", started_ms, i)
        return i, key, lambda: to_external_payment(draft, context, key)

    def _seed_adjustment(
        self,
        i: int,
        started_ms: int,
        patient_ids: List[str],
        provider_ids: List[str],
        context: MappingContext,
    ) -> _Item:
        draft = AdjustmentDraft(
            refs=ExternalRefs(
                pms_patient_id=patient_ids[i % len(patient_ids)],
                pms_provider_id=provider_ids[i % len(provider_ids)],
            ),
            amount_cents=ADJUSTMENT_AMOUNTS[i % len(ADJUSTMENT_AMOUNTS)] * 100,
        )
        key = self.idempotency_key("seed", "adj", started_ms, i)
        return i, key, lambda: to_external_adjustment(draft, context, key)

    def _run_batch(
        self,
        session: PmsSession,
        kind: str,
        label: str,
        items: List[_Item],
        create: _Create,
    ) -> BatchResult:
        """Run items on a bounded pool and collect results in item order.

        Raises ``PmsAuthError`` after the batch drains if authentication was
        lost, since every later call would fail the same way.
        """
        result = BatchResult(kind=kind, attempted=len(items))
        if not items:
            return result

        def attempt(build: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
            payload = build()
            return session.call(lambda client: create(client, payload), description=f"create_{kind}")

        fatal: Optional[PmsAuthError] = None
        with ThreadPoolExecutor(max_workers=max(1, self.settings.writer_max_concurrency)) as pool:
            futures = [(i, key, pool.submit(attempt, build)) for i, key, build in items]
            for i, key, future in futures:
                try:
                    data = future.result()
                except PmsAuthError as e:
                    fatal = fatal or e
                    result.errors.append(f"{label} {i + 1}: {describe_error(e)}")
                    continue
                except (PmsError, ValueError) as e:
                    message = f"{label} {i + 1}: {describe_error(e)}"
                    logger.warning("[pms_seed] config_id=%s key=%s %s", session.config.id, key, message)
                    result.errors.append(message)
                    continue
                result.pushed += 1
                logger.debug(
                    "[pms_seed] config_id=%s key=%s created %s id=%s",
                    session.config.id, key, kind, data.get("id"),
                )

        if fatal is not None:
            raise fatal
        return result

    # ------------------------------------------------------------------
    # One-to-one pushes
    # ------------------------------------------------------------------

    def push_appointment(self, db: Session, config: PmsIntegrationConfig, appointment: Appointment) -> PushResult:
        key = self.idempotency_key("push", "appt", appointment.id)
        draft = AppointmentDraft(
            refs=ExternalRefs(
                pms_patient_id=appointment.pms_patient_id,
                pms_provider_id=appointment.pms_provider_id,
                pms_operatory_id=appointment.pms_operatory_id,
            ),
            start_time=f"{appointment.date}T{appointment.start_time}:00",
            duration_minutes=appointment.duration_minutes,
            note=appointment.notes,
        )
        return self._push_one(
            db, config, "appointment", appointment, "pms_appointment_id", key,
            lambda context: to_external_appointment(draft, context),
            lambda client, payload: client.create_appointment(payload),
        )

    def push_payment(self, db: Session, config: PmsIntegrationConfig, payment: PmsPayment) -> PushResult:
        key = self.idempotency_key("push", "pay", payment.id)
        draft = PaymentDraft(
            refs=ExternalRefs(pms_patient_id=payment.pms_patient_id),
            amount_cents=payment.amount_cents,
            type_name=payment.type_name,
            paid_at=payment.paid_at,
            description=payment.description,
        )
        return self._push_one(
            db, config, "payment", payment, "pms_payment_id", key,
            lambda context: to_external_payment(draft, context, key),
            lambda client, payload: client.create_payment(payload),
        )

    def push_adjustment(self, db: Session, config: PmsIntegrationConfig, adjustment: PmsAdjustment) -> PushResult:
        key = self.idempotency_key("push", "adj", adjustment.id)
        draft = AdjustmentDraft(
            refs=ExternalRefs(
                pms_patient_id=adjustment.pms_patient_id,
                pms_provider_id=adjustment.pms_provider_id,
            ),
            amount_cents=adjustment.amount_cents,
            type_name=adjustment.type_name,
            description=adjustment.description,
        )
        return self._push_one(
            db, config, "adjustment", adjustment, "pms_adjustment_id", key,
            lambda context: to_external_adjustment(draft, context, key),
            lambda client, payload: client.create_adjustment(payload),
        )

    def _push_one(
        self,
        db: Session,
        config: Optional[PmsIntegrationConfig],
        kind: str,
        record,
        id_field: str,
        key: str,
        build: Callable[[MappingContext], Dict[str, Any]],
        create: _Create,
    ) -> PushResult:
        existing = getattr(record, id_field)
        if existing:
            logger.info("[pms_push] %s id=%s already provisioned as %s", kind, record.id, existing)
            return PushResult(kind=kind, internal_id=record.id, ok=True, external_id=existing, idempotency_key=key)

        try:
            with self.session_manager.open(config) as session:
                payload = build(MappingContext(session, config.id))
                data = session.call(lambda client: create(client, payload), description=f"create_{kind}")
        except (PmsError, ValueError) as e:
            message = describe_error(e)
            logger.warning("[pms_push] FAILED %s id=%s key=%s error=%s", kind, record.id, key, message)
            return PushResult(kind=kind, internal_id=record.id, ok=False, idempotency_key=key, error=message)

        external_id = str(data["id"]) if data.get("id") is not None else None
        if external_id:
            setattr(record, id_field, external_id)
            record.last_synced_at = datetime.utcnow()
        AuditService.log_push(db, config.practice_id, kind, record.id, external_id, key)
        db.commit()

        logger.info("[pms_push] %s id=%s key=%s external_id=%s", kind, record.id, key, external_id)
        return PushResult(kind=kind, internal_id=record.id, ok=True, external_id=external_id, idempotency_key=key)
