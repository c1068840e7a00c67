from datetime import datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, field_validator


class ExternalAddress(BaseModel):
    street: str
    city: str = ""
    state: str = ""
    zip: str = ""


class ExternalPatient(BaseModel):
    pms_patient_id: str
    first_name: str
    last_name: str
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[ExternalAddress] = None
    is_active: bool = True
    updated_at: Optional[datetime] = None

    @field_validator("pms_patient_id")
    @classmethod
    def id_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("pms_patient_id cannot be empty")
        return v.strip()

    @field_validator("first_name", "last_name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("patient name cannot be empty")
        return v.strip()


class ExternalAppointment(BaseModel):
    pms_appointment_id: str
    pms_patient_id: str
    pms_provider_id: str
    pms_operatory_id: Optional[str] = None
    date: str
    start_time: str
    end_time: Optional[str] = None
    duration_minutes: int = 30
    status: str
    notes: Optional[str] = None
    updated_at: Optional[datetime] = None

    @field_validator("duration_minutes")
    @classmethod
    def duration_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("duration_minutes must be positive")
        return v


class ExternalPayment(BaseModel):
    pms_payment_id: str
    pms_patient_id: str
    amount_cents: int
    payment_type_id: Optional[int] = None
    paid_at: Optional[str] = None
    description: Optional[str] = None
    pms_claim_id: Optional[str] = None
    updated_at: Optional[datetime] = None


class ExternalAdjustment(BaseModel):
    pms_adjustment_id: str
    pms_patient_id: str
    pms_provider_id: Optional[str] = None
    amount_cents: int
    adjustment_type_id: Optional[int] = None
    adjusted_at: Optional[str] = None
    description: Optional[str] = None
    updated_at: Optional[datetime] = None


class ExternalProvider(BaseModel):
    pms_provider_id: str
    name: str
    is_active: bool = True


class ExternalOperatory(BaseModel):
    pms_operatory_id: str
    name: str
    is_active: bool = True


class ExternalAppointmentType(BaseModel):
    pms_appointment_type_id: str
    name: str
    duration_minutes: int = 30
    is_active: bool = True


class KindSyncSummary(BaseModel):
    entity_kind: str
    state: str
    pulled: int = 0
    applied: int = 0
    failed: int = 0
    skipped: bool = False
    watermark_before: Optional[datetime] = None
    watermark_after: Optional[datetime] = None
    errors: List[str] = []


class SyncSummary(BaseModel):
    config_id: int
    practice_id: Optional[int] = None
    kinds: List[KindSyncSummary] = []
    total_applied: int = 0
    total_failed: int = 0
    errors: List[str] = []


class ReferenceSyncSummary(BaseModel):
    config_id: int
    applied: Dict[str, int] = {}
    failed: Dict[str, int] = {}
    errors: List[str] = []


class HealthCheckResult(BaseModel):
    config_id: int
    ok: bool
    previous_status: Optional[str] = None
    status: Optional[str] = None
    consecutive_failures: int = 0
    response_ms: int = 0
    message: str
    alert_severity: Optional[str] = None
    checked_at: datetime


class SeedCounts(BaseModel):
    appointments: int = 20
    payments: int = 10
    adjustments: int = 5

    @field_validator("appointments", "payments", "adjustments")
    @classmethod
    def not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("counts cannot be negative")
        return v


class BatchResult(BaseModel):
    kind: str
    attempted: int = 0
    pushed: int = 0
    errors: List[str] = []
    type_name: Optional[str] = None
    type_name_tier: Optional[str] = None


class SeedSummary(BaseModel):
    config_id: Optional[int] = None
    appointments: BatchResult = Field(default_factory=lambda: BatchResult(kind="appointment"))
    payments: BatchResult = Field(default_factory=lambda: BatchResult(kind="payment"))
    adjustments: BatchResult = Field(default_factory=lambda: BatchResult(kind="adjustment"))
    errors: List[str] = []

    @property
    def total_pushed(self) -> int:
        return self.appointments.pushed + self.payments.pushed + self.adjustments.pushed


class PushResult(BaseModel):
    kind: str
    internal_id: int
    ok: bool
    external_id: Optional[str] = None
    idempotency_key: Optional[str] = None
    error: Optional[str] = None


class PmsConfigStatusResponse(BaseModel):
    config_id: int
    practice_id: int
    subdomain: str
    environment: str
    active: bool
    connection_status: str
    health_status: Optional[str] = None
    consecutive_failures: int = 0
    last_checked_at: Optional[datetime] = None
    watermarks: dict = {}


class SyncRunResponse(BaseModel):
    id: int
    config_id: int
    practice_id: int
    entity_kind: str
    started_at: datetime
    ended_at: Optional[datetime]
    status: str
    pulled_count: int
    applied_count: int
    failed_count: int
    error_json: Optional[str]

    class Config:
        from_attributes = True
