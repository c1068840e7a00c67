import pytest
from datetime import datetime
from unittest.mock import MagicMock

from app.integrations.pms.errors import MappingError, PmsApiError, PmsAuthError
from app.integrations.pms.mapper import (
    AdjustmentDraft,
    AppointmentDraft,
    ExternalRefs,
    FallbackTier,
    MappingContext,
    PaymentDraft,
    parse_timestamp,
    price_to_cents,
    to_external_adjustment,
    to_external_appointment,
    to_external_payment,
    to_internal,
    to_internal_reference,
)
from app.integrations.pms.client import Page
from app.models.integration import EntityKind


def _session_listing(*names):
    session = MagicMock()
    session.call.return_value = Page(data=[{"id": i, "name": n} for i, n in enumerate(names, start=1)])
    return session


class TestValueHelpers:
    def test_price_object_to_cents(self):
        assert price_to_cents({"amount": "12.50", "currency": "USD"}) == 1250

    def test_bare_number_and_rounding(self):
        assert price_to_cents(19.999) == 2000
        assert price_to_cents("0.005") == 1

    def test_missing_price_is_zero(self):
        assert price_to_cents(None) == 0
        assert price_to_cents({"amount": None}) == 0
        assert price_to_cents("n/a") == 0

    def test_parse_timestamp_normalises_to_naive_utc(self):
        assert parse_timestamp("2026-03-01T10:00:00Z") == datetime(2026, 3, 1, 10, 0)
        assert parse_timestamp("2026-03-01T10:00:00-05:00") == datetime(2026, 3, 1, 15, 0)
        assert parse_timestamp(None) is None


class TestInbound:
    def test_patient(self):
        patient = to_internal(EntityKind.PATIENTS, {
            "id": 101,
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.test",
            "updated_at": "2026-03-01T10:00:00Z",
            "bio": {
                "date_of_birth": "1985-12-10",
                "phone_number": "555-0100",
                "address_line_1": "1 Main St",
                "address_line_2": "Suite 2",
                "city": "Austin",
                "state": "TX",
                "zip_code": "78701",
            },
        })
        assert patient.pms_patient_id == "101"
        assert patient.date_of_birth == "1985-12-10"
        assert patient.phone == "555-0100"
        assert patient.address.street == "1 Main St, Suite 2"
        assert patient.updated_at == datetime(2026, 3, 1, 10, 0)

    def test_appointment_date_and_time_share_one_parse(self):
        appt = to_internal(EntityKind.APPOINTMENTS, {
            "id": 7,
            "patient_id": 101,
            "provider_id": 3,
            "operatory_id": 2,
            "start_time": "2026-03-02T23:30:00-06:00",
            "end_time": "2026-03-03T00:15:00-06:00",
        })
        assert appt.date == "2026-03-02"
        assert appt.start_time == "23:30"
        assert appt.end_time == "00:15"
        assert appt.duration_minutes == 45
        assert appt.pms_operatory_id == "2"

    @pytest.mark.parametrize("flags,expected", [
        ({"cancelled": True, "confirmed": True}, "cancelled"),
        ({"patient_missed": True}, "no_show"),
        ({"checked_out": True}, "completed"),
        ({"checkin_at": "2026-03-02T09:01:00Z"}, "checked_in"),
        ({"confirmed": True}, "confirmed"),
        ({}, "scheduled"),
    ])
    def test_appointment_status(self, flags, expected):
        raw = {"id": 1, "patient_id": 1, "provider_id": 1, "start_time": "2026-03-02T09:00:00Z", **flags}
        assert to_internal(EntityKind.APPOINTMENTS, raw).status == expected

    def test_payment_amount(self):
        payment = to_internal(EntityKind.PAYMENTS, {
            "id": 55, "patient_id": 101, "payment_amount": {"amount": "150.00"}, "claim_id": 9,
        })
        assert payment.amount_cents == 15000
        assert payment.pms_claim_id == "9"

    def test_missing_id_is_mapping_error(self):
        with pytest.raises(MappingError, match="no id"):
            to_internal(EntityKind.PATIENTS, {"first_name": "Ada", "last_name": "L"})

    def test_non_object_is_mapping_error(self):
        with pytest.raises(MappingError, match="expected an object"):
            to_internal(EntityKind.PAYMENTS, ["not", "a", "dict"])

    def test_validation_failure_is_mapping_error(self):
        with pytest.raises(MappingError) as exc_info:
            to_internal(EntityKind.PATIENTS, {"id": 5, "first_name": "", "last_name": "L"})
        assert exc_info.value.external_id == "5"

    def test_appointment_without_start_is_mapping_error(self):
        with pytest.raises(MappingError, match="start_time"):
            to_internal(EntityKind.APPOINTMENTS, {"id": 5, "patient_id": 1, "provider_id": 1})

    @pytest.mark.parametrize("kind, raw", [
        (EntityKind.PATIENTS, {"id": 5, "first_name": "Ada", "last_name": "L", "bio": "n/a"}),
        (EntityKind.PATIENTS, {"id": 5, "first_name": "Ada", "last_name": "L", "updated_at": 1767225600}),
        (EntityKind.APPOINTMENTS, {"id": 5, "patient_id": 1, "provider_id": 1, "start_time": 900}),
        (EntityKind.APPOINTMENTS, {"id": 5, "patient_id": 1, "provider_id": 1,
                                   "start_time": "2026-03-02T09:00:00", "end_time": ["09:30"]}),
    ])
    def test_loosely_typed_fields_are_mapping_errors(self, kind, raw):
        with pytest.raises(MappingError) as exc_info:
            to_internal(kind, raw)
        assert exc_info.value.external_id == "5"


class TestReferenceInbound:
    def test_provider_name_falls_back_to_parts(self):
        provider = to_internal_reference("providers", {"id": 3, "first_name": "Grace", "last_name": "Hopper"})
        assert provider.name == "Grace Hopper"
        assert provider.is_active is True

    def test_inactive_operatory(self):
        operatory = to_internal_reference("operatories", {"id": 2, "name": "Op 2", "inactive": True})
        assert operatory.is_active is False

    def test_appointment_type_defaults(self):
        appt_type = to_internal_reference("appointment_types", {"id": 8, "name": "Cleaning"})
        assert appt_type.duration_minutes == 30
        assert appt_type.is_active is True


class TestTypeNameResolution:
    def test_explicit_wins_without_listing(self):
        session = _session_listing("PPO Cash")
        resolved = MappingContext(session, 1).resolve_payment_type("Check")
        assert resolved.name == "Check"
        assert resolved.tier == FallbackTier.EXPLICIT
        session.call.assert_not_called()

    def test_first_listed_type_beats_literal(self):
        context = MappingContext(_session_listing("PPO Cash", "Visa"), 1)
        resolved = context.resolve_payment_type()
        assert resolved.name == "PPO Cash"
        assert resolved.tier == FallbackTier.QUERIED

    def test_empty_listing_falls_back_to_literal(self):
        context = MappingContext(_session_listing(), 1)
        resolved = context.resolve_adjustment_type()
        assert resolved.name == "Adjustment"
        assert resolved.tier == FallbackTier.LITERAL

    def test_failing_listing_falls_back_to_literal(self):
        session = MagicMock()
        session.call.side_effect = PmsApiError(500, "boom")
        resolved = MappingContext(session, 1).resolve_payment_type()
        assert resolved.name == "Cash"
        assert resolved.tier == FallbackTier.LITERAL

    def test_auth_failure_propagates(self):
        session = MagicMock()
        session.call.side_effect = PmsAuthError("gone")
        with pytest.raises(PmsAuthError):
            MappingContext(session, 1).resolve_payment_type()

    def test_resolution_is_cached_per_context(self):
        session = _session_listing("PPO Cash")
        context = MappingContext(session, 1)
        context.resolve_payment_type()
        context.resolve_payment_type()
        assert session.call.call_count == 1

        MappingContext(session, 1).resolve_payment_type()
        assert session.call.call_count == 2


class TestOutbound:
    def test_appointment_payload(self):
        payload = to_external_appointment(
            AppointmentDraft(
                refs=ExternalRefs(pms_patient_id="101", pms_provider_id="3", pms_operatory_id="2"),
                start_time="2026-03-05T09:30:00",
                duration_minutes=45,
            ),
            MappingContext(),
        )
        assert payload == {
            "patient_id": 101,
            "provider_id": 3,
            "operatory_id": 2,
            "start_time": "2026-03-05T09:30:00",
            "duration": 45,
        }

    def test_non_numeric_id_rejected(self):
        with pytest.raises(ValueError, match="patient_id"):
            to_external_appointment(
                AppointmentDraft(refs=ExternalRefs(pms_patient_id="abc", pms_provider_id="3"), start_time="x"),
                MappingContext(),
            )

    def test_payment_payload(self):
        payload = to_external_payment(
            PaymentDraft(refs=ExternalRefs(pms_patient_id="101"), amount_cents=12550),
            MappingContext(_session_listing("PPO Cash"), 1),
            "API:pms-push-pay-4",
        )
        assert payload["amount"] == 125.5
        assert payload["type_name"] == "PPO Cash"
        assert payload["transaction_id"] == "API:pms-push-pay-4"

    def test_payment_must_be_positive(self):
        with pytest.raises(ValueError, match="positive"):
            to_external_payment(
                PaymentDraft(refs=ExternalRefs(pms_patient_id="101"), amount_cents=0), MappingContext(), "k"
            )

    def test_adjustment_provider_split(self):
        payload = to_external_adjustment(
            AdjustmentDraft(refs=ExternalRefs(pms_patient_id="101", pms_provider_id="3"), amount_cents=2500),
            MappingContext(),
            "API:pms-seed-adj-1-0",
        )
        assert payload["provider_splits"] == {"3": "25"}
        assert payload["type_name"] == "Adjustment"

    def test_adjustment_requires_provider(self):
        with pytest.raises(ValueError, match="provider_id"):
            to_external_adjustment(
                AdjustmentDraft(refs=ExternalRefs(pms_patient_id="101"), amount_cents=2500), MappingContext(), "k"
            )
