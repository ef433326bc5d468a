from typing import FrozenSet, NamedTuple, Optional
import logging

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.sql import func

from ..core.config import settings
from ..core.errors import InvalidTransitionError, NotFoundError
from ..core.security import Actor, AuthorizationError, UserRole
from ..models.appointment import Appointment, AppointmentStatus
from ..models.payment_session import PaymentSession, PaymentStatus

logger = logging.getLogger(__name__)

S = AppointmentStatus

PROVIDER_ONLY: FrozenSet[UserRole] = frozenset({UserRole.DOCTOR, UserRole.ADMIN})
PATIENT_OR_PROVIDER: FrozenSet[UserRole] = frozenset({UserRole.PATIENT, UserRole.DOCTOR, UserRole.ADMIN})

TERMINAL_STATES = frozenset({S.COMPLETED, S.CANCELLED, S.NO_SHOW})

# (from, to) -> roles allowed to perform it
TRANSITIONS = {
    (S.SCHEDULED, S.CONFIRMED): PROVIDER_ONLY,
    (S.SCHEDULED, S.CANCELLED): PATIENT_OR_PROVIDER,
    (S.CONFIRMED, S.IN_PROGRESS): PROVIDER_ONLY,
    (S.CONFIRMED, S.CANCELLED): PATIENT_OR_PROVIDER,
    (S.IN_PROGRESS, S.COMPLETED): PROVIDER_ONLY,
}
for _state in (S.SCHEDULED, S.CONFIRMED, S.IN_PROGRESS):
    TRANSITIONS[(_state, S.NO_SHOW)] = PROVIDER_ONLY


def is_terminal(status: AppointmentStatus) -> bool:
    return AppointmentStatus(status) in TERMINAL_STATES


def allowed_targets(current: AppointmentStatus, role: Optional[UserRole] = None):
    """States reachable from ``current`` in one step, optionally for one role."""
    current = AppointmentStatus(current)
    return [
        to for (frm, to), roles in TRANSITIONS.items()
        if frm == current and (role is None or role in roles)
    ]


def check_transition(current: AppointmentStatus, target: AppointmentStatus, role: UserRole) -> None:
    """Raise InvalidTransitionError unless ``role`` may move ``current`` to ``target``."""
    current = AppointmentStatus(current)
    target = AppointmentStatus(target)
    roles = TRANSITIONS.get((current, target))
    if roles is None:
        raise InvalidTransitionError(current.value, target.value)
    if role not in roles:
        raise InvalidTransitionError(current.value, target.value, actor=role.value)


class TransitionResult(NamedTuple):
    appointment: Appointment
    previous: AppointmentStatus
    open_payment_session: bool


class StatusService:
    def __init__(self, db: Session):
        self.db = db

    def transition(
        self,
        appointment_id: str,
        target: AppointmentStatus,
        actor: Actor,
    ) -> TransitionResult:
        """Move an appointment to ``target`` using compare-and-set on its status."""
        appointment = self.db.get(Appointment, appointment_id)
        if not appointment:
            raise NotFoundError("Appointment", appointment_id)

        if not actor.owns(appointment):
            raise AuthorizationError("Insufficient permissions")

        current = AppointmentStatus(appointment.status)
        target = AppointmentStatus(target)
        check_transition(current, target, actor.role)

        result = self.db.execute(
            update(Appointment)
            .where(Appointment.id == appointment_id, Appointment.status == current)
            .values(status=target, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # Another request moved the appointment first
            self.db.rollback()
            self.db.refresh(appointment)
            logger.info(
                f"Lost status race on appointment {appointment_id}: "
                f"expected {current.value}, found {AppointmentStatus(appointment.status).value}"
            )
            raise InvalidTransitionError(AppointmentStatus(appointment.status).value, target.value)

        open_payment = False
        if target == S.CANCELLED:
            open_payment = self._handle_pending_payment(appointment_id)

        self.db.commit()
        self.db.refresh(appointment)

        logger.info(
            f"Appointment {appointment_id} moved {current.value} -> {target.value} "
            f"by {actor.role.value} {actor.id}"
        )
        return TransitionResult(appointment, current, open_payment)

    def _handle_pending_payment(self, appointment_id: str) -> bool:
        pending = self.db.query(PaymentSession).filter(
            PaymentSession.appointment_id == appointment_id,
            PaymentSession.status == PaymentStatus.PENDING,
        ).all()
        if not pending:
            return False

        if settings.CANCEL_VOIDS_PENDING_PAYMENT:
            for session in pending:
                session.status = PaymentStatus.FAILED
                session.failure_reason = "appointment_cancelled"
            logger.info(f"Voided {len(pending)} pending payment session(s) for cancelled appointment {appointment_id}")
            return False

        logger.warning(f"Cancelled appointment {appointment_id} still has a pending payment session")
        return True

