"""Authentication and call policy for one invocation against the PMS API.

A ``PmsSession`` lives for exactly one invocation (one sync run, one health
probe, one seed batch) and is used as a context manager so its HTTP client
is closed when the invocation ends. Credentials are never cached across
invocations: the external token can expire silently, so every invocation
starts by authenticating.

Call policy applied by ``PmsSession.call``:

- 401: re-authenticate once, then retry. A second consecutive 401 after the
  re-authentication is fatal (``PmsAuthError``) and poisons the session.
- Transport errors (timeouts included), 5xx and 429: retried with exponential
  backoff up to ``pms_max_retries`` times. These never trigger re-auth.
- Any other 4xx: raised immediately.
"""
import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional, TypeVar

from ...config import Settings, get_settings
from .client import Credential, PmsApiClient
from .errors import (
    PmsApiError,
    PmsAuthError,
    PmsConfigurationError,
    PmsError,
    PmsTransportError,
    PmsUnauthorizedError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SessionManager:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        client_factory: Optional[Callable[..., PmsApiClient]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings or get_settings()
        self.client_factory = client_factory or (lambda config: PmsApiClient.from_config(config, self.settings))
        self.sleep = sleep

    @staticmethod
    def validate_config(config) -> None:
        if config is None:
            raise PmsConfigurationError("No PMS configuration found for this practice")
        if not config.active:
            raise PmsConfigurationError(f"PMS configuration {config.id} is not active")
        missing = [name for name in ("api_key", "subdomain", "location_id") if not getattr(config, name, None)]
        if missing:
            raise PmsConfigurationError(
                f"PMS configuration {config.id} is missing {', '.join(missing)}"
            )

    def authenticate(self, config, client: Optional[PmsApiClient] = None) -> Credential:
        owned = client is None
        client = client or self.client_factory(config)
        try:
            token = client.request_token(config.api_key)
        except PmsError as e:
            logger.error("[pms_auth] FAILED config_id=%s subdomain=%s error=%s", config.id, config.subdomain, e)
            raise PmsAuthError(f"Authentication failed for subdomain '{config.subdomain}': {e}") from e
        finally:
            if owned:
                client.close()
        logger.info("[pms_auth] config_id=%s subdomain=%s authenticated", config.id, config.subdomain)
        return Credential(token=token, obtained_at=datetime.utcnow())

    def open(self, config) -> "PmsSession":
        self.validate_config(config)
        client = self.client_factory(config)
        try:
            client.set_credential(self.authenticate(config, client))
        except PmsAuthError:
            client.close()
            raise
        return PmsSession(self, config, client)


class PmsSession:
    def __init__(self, manager: SessionManager, config, client: PmsApiClient):
        self.manager = manager
        self.config = config
        self.client = client
        self.reauth_count = 0
        self._lock = threading.Lock()
        self._generation = 0
        self._reauthed_since_success = False
        self._fatal: Optional[PmsAuthError] = None

    def __enter__(self) -> "PmsSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()

    @property
    def settings(self) -> Settings:
        return self.manager.settings

    def _reauthenticate(self, seen_generation: int, cause: PmsUnauthorizedError) -> None:
        with self._lock:
            if self._fatal is not None:
                raise self._fatal
            if self._generation != seen_generation:
                # another worker already refreshed the credential
                return
            if self._reauthed_since_success:
                self._fatal = PmsAuthError(
                    f"Still unauthorized after re-authentication for subdomain '{self.config.subdomain}': {cause}"
                )
                logger.error("[pms_auth] config_id=%s second 401 after re-auth; giving up", self.config.id)
                raise self._fatal
            logger.warning("[pms_auth] config_id=%s got 401; re-authenticating once", self.config.id)
            self.reauth_count += 1
            try:
                credential = self.manager.authenticate(self.config, self.client)
            except PmsAuthError as e:
                self._fatal = e
                raise
            self.client.set_credential(credential)
            self._generation += 1
            self._reauthed_since_success = True

    def _backoff(self, attempt: int, error: PmsError) -> float:
        if isinstance(error, PmsApiError) and error.status_code == 429:
            return error.retry_after if error.retry_after is not None else self.settings.pms_retry_after_default_seconds
        return self.settings.pms_backoff_base_seconds * (self.settings.pms_backoff_multiplier ** (attempt - 1))

    def call(self, operation: Callable[[PmsApiClient], T], description: str = "request") -> T:
        retries = 0
        while True:
            if self._fatal is not None:
                raise self._fatal
            generation = self._generation
            try:
                result = operation(self.client)
            except PmsUnauthorizedError as e:
                self._reauthenticate(generation, e)
                continue
            except (PmsTransportError, PmsApiError) as e:
                if not e.retryable or retries >= self.settings.pms_max_retries:
                    raise
                retries += 1
                delay = self._backoff(retries, e)
                logger.info(
                    "[pms_retry] config_id=%s op=%s attempt=%d delay=%.2fs error=%s",
                    self.config.id, description, retries, delay, e,
                )
                self.manager.sleep(delay)
                continue
            with self._lock:
                self._reauthed_since_success = False
            return result
