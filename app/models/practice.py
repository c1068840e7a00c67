from datetime import datetime
from enum import Enum

from sqlalchemy import Column, Integer, String, DateTime
from sqlalchemy.orm import relationship

from ..database import Base


class PracticeStatus(str, Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class Practice(Base):
    __tablename__ = "practices"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False, default=PracticeStatus.ACTIVE.value)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    pms_config = relationship("PmsIntegrationConfig", back_populates="practice", uselist=False)
    patients = relationship("Patient", back_populates="practice")
    providers = relationship("Provider", back_populates="practice")
    operatories = relationship("Operatory", back_populates="practice")
