import pytest
from unittest.mock import MagicMock

from app.integrations.pms.errors import (
    PmsApiError,
    PmsAuthError,
    PmsConfigurationError,
    PmsTransportError,
    PmsUnauthorizedError,
)
from app.integrations.pms.session import SessionManager


class TestValidateConfig:
    def test_missing_config(self):
        with pytest.raises(PmsConfigurationError, match="No PMS configuration"):
            SessionManager.validate_config(None)

    def test_inactive_config(self, config):
        config.active = False
        with pytest.raises(PmsConfigurationError, match="not active"):
            SessionManager.validate_config(config)

    def test_missing_fields(self, config):
        config.api_key = ""
        config.location_id = ""
        with pytest.raises(PmsConfigurationError, match="api_key, location_id"):
            SessionManager.validate_config(config)


class TestAuthentication:
    def test_open_sets_credential(self, session_manager, fake_client, config):
        session = session_manager.open(config)
        fake_client.request_token.assert_called_once_with("test-key")
        assert fake_client.set_credential.call_args[0][0].token == "token-1"
        assert session.reauth_count == 0

    def test_auth_failure_is_fatal(self, session_manager, fake_client, config):
        fake_client.request_token.side_effect = PmsUnauthorizedError(401, "Authentication failed: Unauthorized")
        with pytest.raises(PmsAuthError, match="bright-smiles"):
            session_manager.open(config)

    def test_every_open_authenticates(self, session_manager, fake_client, config):
        session_manager.open(config)
        session_manager.open(config)
        assert fake_client.request_token.call_count == 2

    def test_session_closes_client_on_exit(self, session_manager, fake_client, config):
        with session_manager.open(config) as session:
            session.call(lambda client: client.list_providers(per_page=1))
            fake_client.close.assert_not_called()
        fake_client.close.assert_called_once()

    def test_failed_open_closes_client(self, session_manager, fake_client, config):
        fake_client.request_token.side_effect = PmsApiError(500, "POST /authenticates: Server Error")
        with pytest.raises(PmsAuthError):
            session_manager.open(config)
        fake_client.close.assert_called_once()


class TestCallPolicy:
    def test_reauth_once_then_succeeds(self, session_manager, fake_client, config):
        session = session_manager.open(config)
        operation = MagicMock(side_effect=[PmsUnauthorizedError(401, "expired"), "ok"])

        assert session.call(operation) == "ok"
        assert session.reauth_count == 1
        assert fake_client.request_token.call_count == 2

    def test_second_401_after_reauth_is_fatal(self, session_manager, fake_client, config):
        session = session_manager.open(config)
        operation = MagicMock(side_effect=PmsUnauthorizedError(401, "expired"))

        with pytest.raises(PmsAuthError, match="Still unauthorized"):
            session.call(operation)
        assert session.reauth_count == 1
        assert operation.call_count == 2

        # poisoned: later calls fail without touching the API
        other = MagicMock(return_value="never")
        with pytest.raises(PmsAuthError):
            session.call(other)
        other.assert_not_called()

    def test_success_between_401s_allows_another_reauth(self, session_manager, fake_client, config):
        session = session_manager.open(config)
        operation = MagicMock(side_effect=[
            PmsUnauthorizedError(401, "expired"), "first",
            PmsUnauthorizedError(401, "expired"), "second",
        ])
        assert session.call(operation) == "first"
        assert session.call(operation) == "second"
        assert session.reauth_count == 2

    def test_server_error_is_retried_with_backoff(self, session_manager, config):
        session = session_manager.open(config)
        operation = MagicMock(side_effect=[PmsApiError(502, "bad gateway"), PmsApiError(503, "unavailable"), "ok"])

        assert session.call(operation) == "ok"
        assert session_manager.sleeps == [0.1, 0.2]
        assert session.reauth_count == 0

    def test_retries_are_bounded(self, session_manager, config):
        session = session_manager.open(config)
        operation = MagicMock(side_effect=PmsApiError(500, "boom"))

        with pytest.raises(PmsApiError):
            session.call(operation)
        assert operation.call_count == 3

    def test_rate_limit_uses_retry_after(self, session_manager, config):
        session = session_manager.open(config)
        operation = MagicMock(side_effect=[PmsApiError(429, "slow down", retry_after=2.5), "ok"])

        assert session.call(operation) == "ok"
        assert session_manager.sleeps == [2.5]

    def test_timeout_is_retried_without_reauth(self, session_manager, fake_client, config):
        session = session_manager.open(config)
        operation = MagicMock(side_effect=[PmsTransportError("timed out", timeout=True), "ok"])

        assert session.call(operation) == "ok"
        assert session.reauth_count == 0
        assert fake_client.request_token.call_count == 1

    def test_client_error_raised_immediately(self, session_manager, config):
        session = session_manager.open(config)
        operation = MagicMock(side_effect=PmsApiError(422, "invalid"))

        with pytest.raises(PmsApiError):
            session.call(operation)
        assert operation.call_count == 1
        assert session_manager.sleeps == []
