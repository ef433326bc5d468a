from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from datetime import datetime
from typing import Optional
import logging

from ..core.business import as_utc, tariff_for, utcnow
from ..core.errors import (
    BookingValidationError, NotFoundError, NotReschedulableError, PaymentGatewayError,
    WarningsRequireConfirmation,
)
from ..core.security import Actor, AuthorizationError
from ..models.appointment import Appointment, AppointmentStatus
from ..schemas.appointment import (
    AppointmentResponse, BookingDraft, BookingOutcome, PaymentStep, ValidationResult,
)
from .intake import IntakeGate
from .payment import PaymentCoordinator
from .slot_validator import SlotValidator
from .status_machine import is_terminal

logger = logging.getLogger(__name__)


class BookingService:
    """Validate, persist, then open payment for a new appointment.

    The appointment is committed before the gateway is contacted. A gateway
    failure leaves the appointment booked with its payment deferred.
    """

    def __init__(self, db: Session, payments: PaymentCoordinator, validator: Optional[SlotValidator] = None):
        self.db = db
        self.payments = payments
        self.validator = validator or SlotValidator(db)

    def validate(
        self,
        draft: BookingDraft,
        viewer: Optional[Actor] = None,
        now: Optional[datetime] = None,
    ) -> ValidationResult:
        return self.validator.validate(draft, now=now, viewer=viewer)

    def book(
        self,
        draft: BookingDraft,
        acknowledged_warnings: bool = False,
        viewer: Optional[Actor] = None,
        now: Optional[datetime] = None,
    ) -> BookingOutcome:
        result = self.validate(draft, viewer=viewer, now=now)
        if result.errors:
            logger.info(f"Booking rejected for patient {draft.patient_id}: {[e.type for e in result.errors]}")
            raise BookingValidationError(result.error_payloads(), result.warning_payloads())
        if result.warnings and not acknowledged_warnings:
            logger.info(f"Booking for patient {draft.patient_id} needs confirmation: {[w.type for w in result.warnings]}")
            raise WarningsRequireConfirmation(result.warning_payloads())

        appointment = self._persist(draft, now)
        payment = self._open_payment(appointment)

        return BookingOutcome(
            appointment=AppointmentResponse.model_validate(appointment),
            payment=payment,
            intake_required=IntakeGate.is_required(appointment.type),
        )

    def _persist(self, draft: BookingDraft, now: Optional[datetime]) -> Appointment:
        # Blocking rules are re-checked under the provider lock at write time
        checked_at = as_utc(now) if now else utcnow()
        try:
            errors = self.validator.hard_errors(draft, checked_at, lock_provider=True)
            if errors:
                self.db.rollback()
                logger.info(f"Slot taken before commit for provider {draft.provider_id} at {draft.start_time.isoformat()}")
                raise BookingValidationError([e.to_payload() for e in errors])

            tariff = tariff_for(draft.type.value)
            appointment = Appointment(
                patient_id=draft.patient_id,
                provider_id=draft.provider_id,
                start_time=draft.start_time,
                duration_minutes=draft.duration_minutes,
                type=draft.type,
                status=AppointmentStatus.SCHEDULED,
                service_name=tariff.service_name,
                price=tariff.price,
                title=draft.title,
                reason=draft.reason,
                notes=draft.notes,
                meeting_link=draft.meeting_link,
            )
            self.db.add(appointment)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to persist appointment for patient {draft.patient_id}")
            raise

        self.db.refresh(appointment)
        logger.info(
            f"Booked appointment {appointment.id} ({appointment.type.value}) for patient "
            f"{appointment.patient_id} with provider {appointment.provider_id}"
        )
        return appointment

    def _open_payment(self, appointment: Appointment) -> PaymentStep:
        if not appointment.price or appointment.price <= 0:
            return PaymentStep(required=False, status="not_required")

        try:
            result = self.payments.create_session(appointment.id)
        except PaymentGatewayError as e:
            logger.warning(f"Payment deferred for appointment {appointment.id}: {e.message}")
            return PaymentStep(required=True, status="deferred", error=e.message, retryable=e.retryable)

        return PaymentStep(
            required=True,
            status="redirect",
            payment_url=result.redirect_url,
            session_id=result.session.id,
        )

    def reschedule(
        self,
        appointment_id: str,
        start_time: datetime,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> Appointment:
        """Move an appointment to a new start time, keeping its status, duration and price."""
        appointment = self.db.get(Appointment, appointment_id)
        if not appointment:
            raise NotFoundError("Appointment", appointment_id)
        if not actor.is_provider or not actor.owns(appointment):
            raise AuthorizationError("Only the appointment's provider can reschedule it")
        if is_terminal(appointment.status):
            raise NotReschedulableError(AppointmentStatus(appointment.status).value)

        draft = BookingDraft(
            patient_id=appointment.patient_id,
            provider_id=appointment.provider_id,
            start_time=start_time,
            duration_minutes=appointment.duration_minutes,
            type=appointment.type,
        )
        previous_start = as_utc(appointment.start_time)
        checked_at = as_utc(now) if now else utcnow()
        try:
            errors = self.validator.hard_errors(
                draft, checked_at, lock_provider=True, exclude_id=appointment.id
            )
            if errors:
                self.db.rollback()
                logger.info(f"Reschedule of appointment {appointment_id} rejected: {[e.type for e in errors]}")
                raise BookingValidationError([e.to_payload() for e in errors])

            appointment.start_time = draft.start_time
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to reschedule appointment {appointment_id}")
            raise

        self.db.refresh(appointment)
        logger.info(
            f"Rescheduled appointment {appointment.id} from {previous_start.isoformat()} "
            f"to {draft.start_time.isoformat()}"
        )
        return appointment
