from typing import Optional


class PmsError(Exception):
    pass


class PmsConfigurationError(PmsError):
    """Configuration is missing, inactive, or has nothing provisioned to work with."""


class PmsAuthError(PmsError):
    """Authentication failed. Fatal for the whole invocation."""


class PmsTransportError(PmsError):
    """Timeout, DNS failure, refused connection. Retryable; never implies re-auth."""

    retryable = True

    def __init__(self, message: str, timeout: bool = False):
        self.timeout = timeout
        super().__init__(message)


class PmsApiError(PmsError):
    def __init__(
        self,
        status_code: int,
        message: str,
        response_body: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        self.retry_after = retry_after
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.status_code == 429 or self.status_code >= 500

    def __str__(self) -> str:
        return f"{self.message} (HTTP {self.status_code})"


class PmsUnauthorizedError(PmsApiError):
    pass


class MappingError(PmsError):
    def __init__(self, entity: str, external_id: Optional[str], message: str):
        self.entity = entity
        self.external_id = external_id
        super().__init__(f"{entity} {external_id or '?'}: {message}")


def describe_error(exc: Exception) -> str:
    """Operator-facing text for a per-item failure.

    Typed API errors carry the raw response body so the operator sees what the
    PMS actually rejected.
    """
    if isinstance(exc, PmsApiError):
        text = f"{exc.message} (HTTP {exc.status_code})"
        if exc.response_body:
            text = f"{text}: {exc.response_body}"
        return text
    return str(exc) or exc.__class__.__name__
