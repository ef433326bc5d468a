from sqlalchemy import Column, Integer, String, ForeignKey, DateTime, Numeric, Text, UniqueConstraint, Enum as SQLEnum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import enum
import uuid

from ..core.database import Base

class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"

class PaymentSession(Base):
    """One attempt at collecting payment for an appointment.

    History is retained. A paid row is authoritative whenever one exists,
    otherwise the row with the highest attempt is.
    """
    __tablename__ = "payment_sessions"
    __table_args__ = (
        UniqueConstraint("appointment_id", "attempt", name="uq_payment_sessions_appointment_attempt"),
    )

    # Doubles as the gateway order id
    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    appointment_id = Column(
        String(36),
        ForeignKey("appointments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # 1-based per appointment
    attempt = Column(Integer, nullable=False, default=1)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="MYR")
    status = Column(
        SQLEnum(PaymentStatus, values_callable=lambda e: [m.value for m in e], name="payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    gateway_reference = Column(String(255), nullable=True)
    redirect_url = Column(String(1000), nullable=True)
    failure_reason = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    appointment = relationship("Appointment", back_populates="payment_sessions")

    def __repr__(self):
        return f"<PaymentSession(id={self.id}, appointment_id={self.appointment_id}, status='{self.status}')>"
