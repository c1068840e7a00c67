from .practice import Practice, PracticeStatus
from .audit import AuditEvent
from .integration import (
    PmsIntegrationConfig,
    PmsEnvironment,
    ConnectionStatus,
    EntityKind,
    SyncWatermark,
    SyncRun,
    SyncRunStatus,
    HealthStatusRecord,
    HealthCheckLog,
    HealthState,
)
from .patient import Patient
from .provider import Provider, Operatory, AppointmentType
from .appointment import Appointment, AppointmentStatus
from .transaction import PmsPayment, PmsAdjustment

__all__ = [
    "Practice",
    "PracticeStatus",
    "AuditEvent",
    "PmsIntegrationConfig",
    "PmsEnvironment",
    "ConnectionStatus",
    "EntityKind",
    "SyncWatermark",
    "SyncRun",
    "SyncRunStatus",
    "HealthStatusRecord",
    "HealthCheckLog",
    "HealthState",
    "Patient",
    "Provider",
    "Operatory",
    "AppointmentType",
    "Appointment",
    "AppointmentStatus",
    "PmsPayment",
    "PmsAdjustment",
]
