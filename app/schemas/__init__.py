from .integration import (
    ExternalAddress,
    ExternalPatient,
    ExternalAppointment,
    ExternalPayment,
    ExternalAdjustment,
    ExternalProvider,
    ExternalOperatory,
    ExternalAppointmentType,
    KindSyncSummary,
    SyncSummary,
    ReferenceSyncSummary,
    HealthCheckResult,
    SeedCounts,
    BatchResult,
    SeedSummary,
    PushResult,
)

__all__ = [
    "ExternalAddress",
    "ExternalPatient",
    "ExternalAppointment",
    "ExternalPayment",
    "ExternalAdjustment",
    "ExternalProvider",
    "ExternalOperatory",
    "ExternalAppointmentType",
    "KindSyncSummary",
    "SyncSummary",
    "ReferenceSyncSummary",
    "HealthCheckResult",
    "SeedCounts",
    "BatchResult",
    "SeedSummary",
    "PushResult",
]
