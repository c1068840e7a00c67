from datetime import datetime

from app.models import Appointment, AuditEvent, Patient, Provider
from app.schemas.integration import ExternalAppointment, ExternalPatient, ExternalProvider
from app.services.ingestion import (
    UpsertOutcome,
    list_provisioned_patients,
    list_provisioned_providers,
    upsert_appointment,
    upsert_patient,
    upsert_provider,
)


def _patient(**overrides):
    values = dict(
        pms_patient_id="101",
        first_name="Ada",
        last_name="Lovelace",
        date_of_birth="1985-12-10",
        email="ada@example.test",
        updated_at=datetime(2026, 3, 1, 10, 0),
    )
    values.update(overrides)
    return ExternalPatient(**values)


class TestUpsertPatient:
    def test_create_then_unchanged(self, db, practice):
        assert upsert_patient(db, practice.id, _patient()) == UpsertOutcome.CREATED
        assert upsert_patient(db, practice.id, _patient()) == UpsertOutcome.UNCHANGED
        db.commit()
        assert db.query(Patient).count() == 1

    def test_update_in_place(self, db, practice):
        upsert_patient(db, practice.id, _patient())
        assert upsert_patient(db, practice.id, _patient(email="new@example.test")) == UpsertOutcome.UPDATED
        db.commit()
        patients = db.query(Patient).all()
        assert len(patients) == 1
        assert patients[0].email == "new@example.test"

    def test_links_internal_patient_by_name_and_dob(self, db, practice):
        internal = Patient(
            practice_id=practice.id, first_name="Ada", last_name="Lovelace", date_of_birth="1985-12-10"
        )
        db.add(internal)
        db.commit()

        assert upsert_patient(db, practice.id, _patient()) == UpsertOutcome.UPDATED
        db.commit()
        assert db.query(Patient).count() == 1
        db.refresh(internal)
        assert internal.pms_patient_id == "101"

        event = db.query(AuditEvent).filter(AuditEvent.resource_id == internal.id).one()
        assert '"operation": "link"' in event.metadata_json

    def test_same_external_id_in_other_practice_is_separate(self, db, practice):
        from app.models import Practice

        other = Practice(name="Other Dental")
        db.add(other)
        db.commit()

        upsert_patient(db, practice.id, _patient())
        upsert_patient(db, other.id, _patient())
        db.commit()
        assert db.query(Patient).count() == 2

    def test_list_provisioned_skips_unlinked(self, db, practice):
        db.add(Patient(practice_id=practice.id, first_name="Grace", last_name="Hopper"))
        upsert_patient(db, practice.id, _patient())
        db.commit()
        assert [p.pms_patient_id for p in list_provisioned_patients(db, practice.id)] == ["101"]


class TestUpsertAppointment:
    def test_status_change_updates(self, db, practice):
        ext = ExternalAppointment(
            pms_appointment_id="7",
            pms_patient_id="101",
            pms_provider_id="3",
            date="2026-03-02",
            start_time="09:00",
            status="scheduled",
        )
        assert upsert_appointment(db, practice.id, ext) == UpsertOutcome.CREATED
        cancelled = ext.model_copy(update={"status": "cancelled"})
        assert upsert_appointment(db, practice.id, cancelled) == UpsertOutcome.UPDATED
        db.commit()
        appt = db.query(Appointment).one()
        assert appt.status == "cancelled"
        assert appt.last_synced_at is not None


class TestUpsertProvider:
    def test_inactive_provider_not_provisioned(self, db, practice):
        upsert_provider(db, practice.id, ExternalProvider(pms_provider_id="3", name="Dr. Hopper"))
        upsert_provider(db, practice.id, ExternalProvider(pms_provider_id="4", name="Dr. Gone", is_active=False))
        db.commit()
        assert db.query(Provider).count() == 2
        assert [p.pms_provider_id for p in list_provisioned_providers(db, practice.id)] == ["3"]
