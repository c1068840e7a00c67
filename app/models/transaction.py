from datetime import datetime

from sqlalchemy import Column, Integer, String, DateTime, BigInteger, ForeignKey, Text, UniqueConstraint

from ..database import Base


class PmsPayment(Base):
    __tablename__ = "pms_payments"

    id = Column(Integer, primary_key=True, index=True)
    practice_id = Column(Integer, ForeignKey("practices.id"), nullable=False, index=True)
    pms_payment_id = Column(String(64), nullable=True, index=True)

    pms_patient_id = Column(String(64), nullable=False)
    amount_cents = Column(BigInteger, nullable=False)
    payment_type_id = Column(Integer, nullable=True)
    type_name = Column(String(255), nullable=True)
    paid_at = Column(String(40), nullable=True)
    description = Column(Text, nullable=True)
    pms_claim_id = Column(String(64), nullable=True)

    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("practice_id", "pms_payment_id", name="uq_pms_payments_practice_pms_id"),
    )


class PmsAdjustment(Base):
    __tablename__ = "pms_adjustments"

    id = Column(Integer, primary_key=True, index=True)
    practice_id = Column(Integer, ForeignKey("practices.id"), nullable=False, index=True)
    pms_adjustment_id = Column(String(64), nullable=True, index=True)

    pms_patient_id = Column(String(64), nullable=False)
    pms_provider_id = Column(String(64), nullable=True)
    amount_cents = Column(BigInteger, nullable=False)
    adjustment_type_id = Column(Integer, nullable=True)
    type_name = Column(String(255), nullable=True)
    adjusted_at = Column(String(40), nullable=True)
    description = Column(Text, nullable=True)

    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("practice_id", "pms_adjustment_id", name="uq_pms_adjustments_practice_pms_id"),
    )
