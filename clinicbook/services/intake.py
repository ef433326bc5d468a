from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional
import logging

from ..core.business import INTAKE_GATED_TYPES, utcnow
from ..core.errors import IntakeNotApplicableError, NotFoundError
from ..models.appointment import Appointment, ServiceType
from ..models.intake_form import IntakeForm
from ..schemas.intake import IntakeStatus

logger = logging.getLogger(__name__)


class IntakeGate:
    """Pre-visit questionnaire for appointment types that need one."""

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def is_required(appointment_type) -> bool:
        return ServiceType(appointment_type).value in INTAKE_GATED_TYPES

    def _appointment(self, appointment_id: str) -> Appointment:
        appointment = self.db.get(Appointment, appointment_id)
        if not appointment:
            raise NotFoundError("Appointment", appointment_id)
        return appointment

    def _form(self, appointment: Appointment) -> IntakeForm:
        """Fetch the form row, creating it on first access."""
        form = self.db.query(IntakeForm).filter(IntakeForm.appointment_id == appointment.id).first()
        if form:
            return form

        form = IntakeForm(
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            current_step=1,
            completed=False,
        )
        self.db.add(form)
        try:
            self.db.commit()
        except IntegrityError:
            # Created concurrently
            self.db.rollback()
            return self.db.query(IntakeForm).filter(IntakeForm.appointment_id == appointment.id).one()
        self.db.refresh(form)
        return form

    def get_status(self, appointment_id: str) -> IntakeStatus:
        appointment = self._appointment(appointment_id)
        if not self.is_required(appointment.type):
            return IntakeStatus(appointment_id=appointment_id, required=False)

        form = self._form(appointment)
        return IntakeStatus(
            appointment_id=appointment_id,
            required=True,
            completed=form.completed,
            completed_at=form.completed_at,
            current_step=form.current_step,
            form_data=form.form_data,
        )

    def get_form(self, appointment_id: str) -> IntakeForm:
        appointment = self._appointment(appointment_id)
        if not self.is_required(appointment.type):
            raise IntakeNotApplicableError(appointment_id)
        return self._form(appointment)

    def submit(
        self,
        appointment_id: str,
        form_data: Dict[str, Any],
        complete: bool = True,
        current_step: Optional[int] = None,
    ) -> IntakeForm:
        """Save answers; completion is one-way and keeps its first timestamp."""
        form = self.get_form(appointment_id)

        form.form_data = form_data
        if current_step is not None:
            form.current_step = current_step
        if complete and not form.completed:
            form.completed = True
            form.completed_at = utcnow()
            logger.info(f"Intake form completed for appointment {appointment_id}")

        self.db.commit()
        self.db.refresh(form)
        return form
