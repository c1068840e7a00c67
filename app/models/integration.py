from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, Column, Integer, String, DateTime, Text, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship

from ..database import Base


class PmsEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class ConnectionStatus(str, Enum):
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    ERROR = "error"


class EntityKind(str, Enum):
    PATIENTS = "patients"
    APPOINTMENTS = "appointments"
    PAYMENTS = "payments"
    ADJUSTMENTS = "adjustments"


class SyncRunStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class HealthState(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class PmsIntegrationConfig(Base):
    __tablename__ = "pms_integration_configs"

    id = Column(Integer, primary_key=True, index=True)
    practice_id = Column(Integer, ForeignKey("practices.id"), nullable=False, unique=True, index=True)
    api_key = Column(String(255), nullable=False)
    subdomain = Column(String(255), nullable=False)
    location_id = Column(String(64), nullable=False)
    environment = Column(String(20), nullable=False, default=PmsEnvironment.SANDBOX.value)
    active = Column(Boolean, nullable=False, default=True)
    connection_status = Column(String(20), nullable=False, default=ConnectionStatus.UNKNOWN.value)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    practice = relationship("Practice", back_populates="pms_config")
    watermarks = relationship("SyncWatermark", back_populates="config")
    sync_runs = relationship("SyncRun", back_populates="config", order_by="SyncRun.started_at.desc()")
    health_status = relationship("HealthStatusRecord", back_populates="config", uselist=False)


class SyncWatermark(Base):
    __tablename__ = "sync_watermarks"

    id = Column(Integer, primary_key=True, index=True)
    config_id = Column(Integer, ForeignKey("pms_integration_configs.id"), nullable=False, index=True)
    entity_kind = Column(String(50), nullable=False)
    watermark_at = Column(DateTime, nullable=True)
    last_run_status = Column(String(50), nullable=True)
    last_run_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    config = relationship("PmsIntegrationConfig", back_populates="watermarks")

    __table_args__ = (
        UniqueConstraint("config_id", "entity_kind", name="uq_sync_watermarks_config_kind"),
    )


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    config_id = Column(Integer, ForeignKey("pms_integration_configs.id"), nullable=False, index=True)
    practice_id = Column(Integer, ForeignKey("practices.id"), nullable=False, index=True)
    entity_kind = Column(String(50), nullable=False)
    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    ended_at = Column(DateTime, nullable=True)
    status = Column(String(50), nullable=False, default=SyncRunStatus.RUNNING.value)
    pulled_count = Column(Integer, nullable=False, default=0)
    applied_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    error_json = Column(Text, nullable=True)

    config = relationship("PmsIntegrationConfig", back_populates="sync_runs")


class HealthStatusRecord(Base):
    __tablename__ = "pms_health_status"

    id = Column(Integer, primary_key=True, index=True)
    config_id = Column(Integer, ForeignKey("pms_integration_configs.id"), nullable=False, unique=True, index=True)
    status = Column(String(20), nullable=False, default=HealthState.HEALTHY.value)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_checked_at = Column(DateTime, nullable=True)
    last_response_ms = Column(Integer, nullable=True)
    last_error = Column(Text, nullable=True)

    config = relationship("PmsIntegrationConfig", back_populates="health_status")


class HealthCheckLog(Base):
    __tablename__ = "pms_health_checks"

    id = Column(Integer, primary_key=True, index=True)
    config_id = Column(Integer, ForeignKey("pms_integration_configs.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False)
    ok = Column(Boolean, nullable=False)
    response_ms = Column(Integer, nullable=False, default=0)
    message = Column(Text, nullable=True)
    checked_at = Column(DateTime, default=datetime.utcnow, nullable=False)
