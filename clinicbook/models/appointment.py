from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Numeric, Text, Index, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship, validates
import enum
import uuid

from ..core.business import as_utc
from ..core.database import Base

class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"

class ServiceType(str, enum.Enum):
    CONSULTATION = "consultation"
    FOLLOW_UP = "follow_up"
    EMERGENCY = "emergency"
    QUITLINE_SMOKING_CESSATION = "quitline_smoking_cessation"
    PSYCHIATRIST_SESSION = "psychiatrist_session"

def _enum_values(enum_cls):
    return [member.value for member in enum_cls]

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_provider_start", "provider_id", "start_time"),
        Index("ix_appointments_patient_start", "patient_id", "start_time"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Relationships
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    provider_id = Column(Integer, ForeignKey("doctors.id"), nullable=False)

    # Appointment details
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    duration_minutes = Column(Integer, nullable=False, default=30)
    type = Column(
        SQLEnum(ServiceType, values_callable=_enum_values, name="service_type"),
        nullable=False,
        default=ServiceType.CONSULTATION,
    )
    status = Column(
        SQLEnum(AppointmentStatus, values_callable=_enum_values, name="appointment_status"),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )
    service_name = Column(String(255), nullable=True)
    price = Column(Numeric(10, 2), nullable=True)
    title = Column(String(200), nullable=True)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    meeting_link = Column(String(500), nullable=True)

    # Tracking
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    patient = relationship("Patient", back_populates="appointments")
    provider = relationship("Doctor", back_populates="appointments")
    intake_form = relationship(
        "IntakeForm",
        back_populates="appointment",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    payment_sessions = relationship(
        "PaymentSession",
        back_populates="appointment",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PaymentSession.attempt",
    )

    @validates("start_time")
    def _store_utc(self, key, value):
        # SQLite drops tzinfo on write
        return as_utc(value) if value is not None else value

    @validates("price")
    def _freeze_price(self, key, value):
        # price is fixed at creation from the tariff
        if self.price is not None and value != self.price:
            raise ValueError("Appointment price cannot be changed once set")
        return value

    def __repr__(self):
        return f"<Appointment(id={self.id}, patient_id={self.patient_id}, provider_id={self.provider_id}, start='{self.start_time}', status='{self.status}')>"
