import pytest
from unittest.mock import MagicMock

from conftest import page

from app import jobs
from app.integrations.pms.errors import PmsApiError
from app.models import PmsIntegrationConfig, PmsPayment, Practice
from app.models.integration import EntityKind
from app.services.health import HealthMonitor
from app.services.inflight import InFlightGuard
from app.services.sync import IncrementalSyncEngine
from app.services.writer import IdempotentWriter


@pytest.fixture
def engine(session_manager, settings):
    return IncrementalSyncEngine(session_manager, settings, guard=InFlightGuard())


class TestRunIncrementalSync:
    def test_success_marks_connected(self, db, config, session_factory, engine):
        summary = jobs.run_incremental_sync(config.id, session_factory=session_factory, engine=engine)

        assert len(summary.kinds) == 4
        db.refresh(config)
        assert config.connection_status == "connected"

    def test_failed_kind_marks_error(self, db, config, session_factory, engine, fake_client):
        fake_client.list_changed_payments.side_effect = PmsApiError(400, "GET /payments: Bad Request")

        summary = jobs.run_incremental_sync(config.id, session_factory=session_factory, engine=engine)

        assert summary.total_failed == 0
        assert any("payments: fetch failed" in e for e in summary.errors)
        db.refresh(config)
        assert config.connection_status == "error"

    def test_missing_config_returns_error(self, session_factory, engine):
        summary = jobs.run_incremental_sync(999, session_factory=session_factory, engine=engine)
        assert summary.kinds == []
        assert "No PMS configuration" in summary.errors[0]

    def test_unexpected_error_is_contained(self, config, session_factory):
        broken = MagicMock()
        broken.run.side_effect = RuntimeError("disk full")
        summary = jobs.run_incremental_sync(config.id, session_factory=session_factory, engine=broken)
        assert summary.errors == ["Sync failed: disk full"]

    def test_sync_all_covers_active_configs(self, db, config, session_factory, engine):
        other_practice = Practice(name="Other Dental")
        db.add(other_practice)
        db.commit()
        db.add(PmsIntegrationConfig(
            practice_id=other_practice.id, api_key="k", subdomain="other", location_id="1", active=False,
        ))
        db.commit()

        summaries = jobs.run_incremental_sync_all(session_factory=session_factory, engine=engine, max_workers=2)

        assert [s.config_id for s in summaries] == [config.id]


class TestRunHealthCheck:
    def test_inactive_config_is_not_checked(self, db, config, session_factory, session_manager, settings, fake_client):
        config.active = False
        db.commit()
        result = jobs.run_health_check(
            config.id, session_factory=session_factory, monitor=HealthMonitor(session_manager, settings)
        )
        assert result.ok is False
        assert "not active" in result.message
        fake_client.request_token.assert_not_called()

    def test_health_all(self, config, session_factory, session_manager, settings):
        results = jobs.run_health_check_all(
            session_factory=session_factory, monitor=HealthMonitor(session_manager, settings)
        )
        assert len(results) == 1
        assert results[0].status == "healthy"


class TestPushRecord:
    def test_unknown_record(self, config, session_factory):
        result = jobs.push_record(config.id, EntityKind.PAYMENTS, 404, session_factory=session_factory)
        assert result.ok is False
        assert result.error == "payment 404 not found"

    def test_patients_cannot_be_pushed(self, config, session_factory):
        result = jobs.push_record(config.id, EntityKind.PATIENTS, 1, session_factory=session_factory)
        assert result.ok is False
        assert "cannot be pushed" in result.error

    def test_record_from_other_practice_is_not_found(self, db, config, session_factory, session_manager, settings):
        other = Practice(name="Other Dental")
        db.add(other)
        db.commit()
        payment = PmsPayment(practice_id=other.id, pms_patient_id="1", amount_cents=100)
        db.add(payment)
        db.commit()

        result = jobs.push_record(
            config.id, EntityKind.PAYMENTS, payment.id,
            session_factory=session_factory, writer=IdempotentWriter(session_manager, settings),
        )
        assert result.error == f"payment {payment.id} not found"

    def test_push_payment(self, db, config, practice, session_factory, session_manager, settings, fake_client):
        payment = PmsPayment(practice_id=practice.id, pms_patient_id="1", amount_cents=2500)
        db.add(payment)
        db.commit()
        fake_client.create_payment.return_value = {"id": 77}

        result = jobs.push_record(
            config.id, EntityKind.PAYMENTS, payment.id,
            session_factory=session_factory, writer=IdempotentWriter(session_manager, settings),
        )
        assert result.ok is True
        assert result.external_id == "77"


class TestReferenceSync:
    def test_reference_sync(self, config, session_factory, engine, fake_client):
        fake_client.list_providers.return_value = page({"id": 3, "name": "Dr. Hopper"})
        summary = jobs.run_reference_sync(config.id, session_factory=session_factory, engine=engine)
        assert summary.applied["providers"] == 1

    def test_reference_sync_missing_config(self, session_factory, engine):
        summary = jobs.run_reference_sync(999, session_factory=session_factory, engine=engine)
        assert "No PMS configuration" in summary.errors[0]
