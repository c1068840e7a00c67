import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List

from sqlalchemy.orm import Session

from ..models.appointment import Appointment
from ..models.integration import EntityKind
from ..models.patient import Patient
from ..models.provider import AppointmentType, Operatory, Provider
from ..models.transaction import PmsAdjustment, PmsPayment
from ..schemas.integration import (
    ExternalAdjustment,
    ExternalAppointment,
    ExternalAppointmentType,
    ExternalOperatory,
    ExternalPatient,
    ExternalPayment,
    ExternalProvider,
)
from ..services.audit import AuditService

logger = logging.getLogger(__name__)


class UpsertOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


def _apply(
    db: Session,
    model,
    practice_id: int,
    id_field: str,
    external_id: str,
    values: Dict[str, Any],
    resource_type: str,
    existing=None,
) -> UpsertOutcome:
    if existing is None:
        existing = db.query(model).filter(
            model.practice_id == practice_id,
            getattr(model, id_field) == external_id,
        ).first()

    now = datetime.utcnow()

    if existing:
        linked = getattr(existing, id_field) != external_id
        changed = {k: v for k, v in values.items() if getattr(existing, k) != v}
        if not changed and not linked:
            return UpsertOutcome.UNCHANGED
        if linked:
            setattr(existing, id_field, external_id)
        for key, value in changed.items():
            setattr(existing, key, value)
        existing.last_synced_at = now
        db.flush()
        AuditService.log_sync_upsert(
            db, practice_id, resource_type, existing.id, "link" if linked else "update", external_id
        )
        return UpsertOutcome.UPDATED

    record = model(practice_id=practice_id, last_synced_at=now, **{id_field: external_id}, **values)
    db.add(record)
    db.flush()
    AuditService.log_sync_upsert(db, practice_id, resource_type, record.id, "create", external_id)
    return UpsertOutcome.CREATED


def upsert_patient(db: Session, practice_id: int, ext: ExternalPatient) -> UpsertOutcome:
    address = ext.address
    values = {
        "first_name": ext.first_name,
        "last_name": ext.last_name,
        "date_of_birth": ext.date_of_birth,
        "gender": ext.gender,
        "email": ext.email,
        "phone": ext.phone,
        "address_street": address.street if address else None,
        "address_city": address.city if address else None,
        "address_state": address.state if address else None,
        "address_zip": address.zip if address else None,
        "is_active": ext.is_active,
    }

    existing = db.query(Patient).filter(
        Patient.practice_id == practice_id,
        Patient.pms_patient_id == ext.pms_patient_id,
    ).first()

    if existing is None and ext.date_of_birth:
        # Patient created internally before it was provisioned externally:
        # link by name + date of birth instead of creating a duplicate.
        existing = db.query(Patient).filter(
            Patient.practice_id == practice_id,
            Patient.pms_patient_id.is_(None),
            Patient.first_name == ext.first_name,
            Patient.last_name == ext.last_name,
            Patient.date_of_birth == ext.date_of_birth,
        ).first()
        if existing is not None:
            logger.info(
                "[pms_ingest] practice_id=%s linking patient id=%s to pms_patient_id=%s",
                practice_id, existing.id, ext.pms_patient_id,
            )

    return _apply(db, Patient, practice_id, "pms_patient_id", ext.pms_patient_id, values, "patient", existing)


def upsert_appointment(db: Session, practice_id: int, ext: ExternalAppointment) -> UpsertOutcome:
    values = {
        "pms_patient_id": ext.pms_patient_id,
        "pms_provider_id": ext.pms_provider_id,
        "pms_operatory_id": ext.pms_operatory_id,
        "date": ext.date,
        "start_time": ext.start_time,
        "end_time": ext.end_time,
        "duration_minutes": ext.duration_minutes,
        "status": ext.status,
        "notes": ext.notes,
    }
    return _apply(db, Appointment, practice_id, "pms_appointment_id", ext.pms_appointment_id, values, "appointment")


def upsert_payment(db: Session, practice_id: int, ext: ExternalPayment) -> UpsertOutcome:
    values = {
        "pms_patient_id": ext.pms_patient_id,
        "amount_cents": ext.amount_cents,
        "payment_type_id": ext.payment_type_id,
        "paid_at": ext.paid_at,
        "description": ext.description,
        "pms_claim_id": ext.pms_claim_id,
    }
    return _apply(db, PmsPayment, practice_id, "pms_payment_id", ext.pms_payment_id, values, "payment")


def upsert_adjustment(db: Session, practice_id: int, ext: ExternalAdjustment) -> UpsertOutcome:
    values = {
        "pms_patient_id": ext.pms_patient_id,
        "pms_provider_id": ext.pms_provider_id,
        "amount_cents": ext.amount_cents,
        "adjustment_type_id": ext.adjustment_type_id,
        "adjusted_at": ext.adjusted_at,
        "description": ext.description,
    }
    return _apply(db, PmsAdjustment, practice_id, "pms_adjustment_id", ext.pms_adjustment_id, values, "adjustment")


UPSERTERS: Dict[EntityKind, Callable[[Session, int, Any], UpsertOutcome]] = {
    EntityKind.PATIENTS: upsert_patient,
    EntityKind.APPOINTMENTS: upsert_appointment,
    EntityKind.PAYMENTS: upsert_payment,
    EntityKind.ADJUSTMENTS: upsert_adjustment,
}


def list_provisioned_patients(db: Session, practice_id: int) -> List[Patient]:
    return (
        db.query(Patient)
        .filter(Patient.practice_id == practice_id, Patient.pms_patient_id.isnot(None))
        .order_by(Patient.id)
        .all()
    )


def list_provisioned_providers(db: Session, practice_id: int) -> List[Provider]:
    return (
        db.query(Provider)
        .filter(
            Provider.practice_id == practice_id,
            Provider.pms_provider_id.isnot(None),
            Provider.is_active.is_(True),
        )
        .order_by(Provider.id)
        .all()
    )


def list_provisioned_operatories(db: Session, practice_id: int) -> List[Operatory]:
    return (
        db.query(Operatory)
        .filter(
            Operatory.practice_id == practice_id,
            Operatory.pms_operatory_id.isnot(None),
            Operatory.is_active.is_(True),
        )
        .order_by(Operatory.id)
        .all()
    )


def upsert_provider(db: Session, practice_id: int, ext: ExternalProvider) -> UpsertOutcome:
    values = {"name": ext.name, "is_active": ext.is_active}
    return _apply(db, Provider, practice_id, "pms_provider_id", ext.pms_provider_id, values, "provider")


def upsert_operatory(db: Session, practice_id: int, ext: ExternalOperatory) -> UpsertOutcome:
    values = {"name": ext.name, "is_active": ext.is_active}
    return _apply(db, Operatory, practice_id, "pms_operatory_id", ext.pms_operatory_id, values, "operatory")


def upsert_appointment_type(db: Session, practice_id: int, ext: ExternalAppointmentType) -> UpsertOutcome:
    values = {"name": ext.name, "duration_minutes": ext.duration_minutes, "is_active": ext.is_active}
    return _apply(
        db, AppointmentType, practice_id, "pms_appointment_type_id", ext.pms_appointment_type_id,
        values, "appointment_type",
    )


REFERENCE_UPSERTERS: Dict[str, Callable[[Session, int, Any], UpsertOutcome]] = {
    "providers": upsert_provider,
    "operatories": upsert_operatory,
    "appointment_types": upsert_appointment_type,
}
