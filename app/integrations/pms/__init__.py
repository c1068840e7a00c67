from .client import Credential, Page, PmsApiClient
from .errors import (
    MappingError,
    PmsApiError,
    PmsAuthError,
    PmsConfigurationError,
    PmsError,
    PmsTransportError,
    PmsUnauthorizedError,
    describe_error,
)
from .session import PmsSession, SessionManager

__all__ = [
    "Credential",
    "Page",
    "PmsApiClient",
    "MappingError",
    "PmsApiError",
    "PmsAuthError",
    "PmsConfigurationError",
    "PmsError",
    "PmsTransportError",
    "PmsUnauthorizedError",
    "describe_error",
    "PmsSession",
    "SessionManager",
]
