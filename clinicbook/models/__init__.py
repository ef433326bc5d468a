from .patient import Patient
from .doctor import Doctor
from .appointment import Appointment, AppointmentStatus, ServiceType
from .intake_form import IntakeForm
from .payment_session import PaymentSession, PaymentStatus

__all__ = [
    "Patient",
    "Doctor",
    "Appointment",
    "AppointmentStatus",
    "ServiceType",
    "IntakeForm",
    "PaymentSession",
    "PaymentStatus",
]
