from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import List, Optional
import logging

from ..core.business import ACTIVE_STATUSES, as_utc, clinic_tz, local_day_bounds, utcnow
from ..core.config import settings
from ..core.security import Actor
from ..models.appointment import Appointment
from ..models.doctor import Doctor
from ..models.patient import Patient
from ..schemas.appointment import (
    BookingDraft, BusySchedule, ConflictingSlot, ExistingAppointmentSummary,
    HighAppointmentLoad, InvalidDuration, NearbyAppointmentSummary, PatientNotFound,
    ProviderNotFound, ProviderUnavailable, SameDayMultiple, SlotConflict, TooSoon,
    ValidationResult,
)

logger = logging.getLogger(__name__)


def local_time_label(dt: datetime) -> str:
    """HH:MM in the clinic's timezone."""
    return as_utc(dt).astimezone(clinic_tz()).strftime("%H:%M")


class SlotValidator:
    """Checks a candidate appointment against scheduling rules.

    Hard errors block booking. Warnings are advisory and only require the
    caller to acknowledge them before booking.
    """

    def __init__(self, db: Session):
        self.db = db

    def validate(
        self,
        draft: BookingDraft,
        now: Optional[datetime] = None,
        viewer: Optional[Actor] = None,
    ) -> ValidationResult:
        now = as_utc(now) if now else utcnow()

        errors = self.hard_errors(draft, now)
        warnings = []
        # Warnings are meaningless for unknown parties
        if not any(e.type in ("patient_not_found", "provider_not_found") for e in errors):
            warnings = self.soft_warnings(draft, now, viewer)

        result = ValidationResult(valid=not errors, errors=errors, warnings=warnings)
        logger.info(
            f"Validated slot provider={draft.provider_id} patient={draft.patient_id} "
            f"start={draft.start_time.isoformat()}: "
            f"{len(errors)} error(s), {len(warnings)} warning(s)"
        )
        return result

    def hard_errors(
        self,
        draft: BookingDraft,
        now: datetime,
        lock_provider: bool = False,
        exclude_id: Optional[str] = None,
    ) -> list:
        """Blocking rule violations, in a stable order.

        With ``lock_provider`` the provider row is locked for the rest of the
        transaction so concurrent bookings for the same provider serialise.
        ``exclude_id`` leaves an appointment being moved out of the overlap check.
        """
        errors = []

        provider_query = self.db.query(Doctor).filter(Doctor.id == draft.provider_id)
        if lock_provider:
            provider_query = provider_query.with_for_update()
        provider = provider_query.first()
        patient = self.db.query(Patient).filter(Patient.id == draft.patient_id).first()

        if not patient:
            errors.append(PatientNotFound(
                message="Patient not found",
                patient_id=draft.patient_id,
            ))
        if not provider:
            errors.append(ProviderNotFound(
                message="Provider not found",
                provider_id=draft.provider_id,
            ))
        elif not provider.is_available:
            errors.append(ProviderUnavailable(
                message="Provider is not accepting appointments",
                provider_id=draft.provider_id,
            ))

        minimum_time = as_utc(now) + timedelta(minutes=settings.MIN_LEAD_TIME_MINUTES)
        if draft.start_time < minimum_time:
            errors.append(TooSoon(
                message=(
                    f"Appointments must be scheduled at least "
                    f"{settings.MIN_LEAD_TIME_MINUTES} minutes in advance"
                ),
                minimum_time=minimum_time,
            ))

        duration_ok = 0 < draft.duration_minutes <= settings.MAX_DURATION_MINUTES
        if not duration_ok:
            errors.append(InvalidDuration(
                message=f"Duration must be between 1 and {settings.MAX_DURATION_MINUTES} minutes",
                duration_minutes=draft.duration_minutes,
                max_duration=settings.MAX_DURATION_MINUTES,
            ))

        if provider and duration_ok:
            overlapping = self._provider_overlaps(draft, exclude_id)
            if overlapping:
                errors.append(SlotConflict(
                    message="The provider already has an appointment in this time slot",
                    conflicting_appointments=[
                        ConflictingSlot(
                            id=a.id,
                            start_time=as_utc(a.start_time),
                            duration_minutes=a.duration_minutes,
                            status=a.status.value,
                        )
                        for a in overlapping
                    ],
                ))

        return errors

    def soft_warnings(self, draft: BookingDraft, now: datetime, viewer: Optional[Actor] = None) -> list:
        warnings = []

        same_day = self._patient_same_day(draft)
        if same_day:
            warnings.append(SameDayMultiple(
                message=f"You already have {len(same_day)} appointment(s) on this day",
                existing_appointments=[
                    ExistingAppointmentSummary(
                        id=a.id,
                        start_time=as_utc(a.start_time),
                        time=local_time_label(a.start_time),
                        type=a.type.value,
                        status=a.status.value,
                    )
                    for a in same_day
                ],
            ))

        nearby = self._provider_nearby(draft)
        if nearby:
            show_patient = viewer is not None and viewer.is_provider
            warnings.append(BusySchedule(
                message=(
                    f"The provider has {len(nearby)} other appointment(s) within "
                    f"{settings.PROXIMITY_WINDOW_MINUTES // 60} hours of this time"
                ),
                nearby_appointments=[
                    NearbyAppointmentSummary(
                        start_time=as_utc(a.start_time),
                        time=local_time_label(a.start_time),
                        type=a.type.value,
                        specialty=a.provider.specialization if a.provider else None,
                        patient_id=a.patient_id if show_patient else None,
                    )
                    for a in nearby
                ],
            ))

        load = self._patient_load(draft.patient_id, now)
        if load >= settings.HIGH_LOAD_THRESHOLD:
            warnings.append(HighAppointmentLoad(
                message=f"You have {load} appointments scheduled around this period",
                appointment_count=load,
            ))

        return warnings

    # Queries

    def _active(self):
        return self.db.query(Appointment).filter(Appointment.status.in_(ACTIVE_STATUSES))

    def _provider_overlaps(self, draft: BookingDraft, exclude_id: Optional[str] = None) -> List[Appointment]:
        # Anything overlapping must start within MAX_DURATION before the draft ends
        earliest = draft.start_time - timedelta(minutes=settings.MAX_DURATION_MINUTES)
        query = self._active().filter(
            Appointment.provider_id == draft.provider_id,
            Appointment.start_time >= earliest,
            Appointment.start_time < draft.end_time,
        )
        if exclude_id:
            query = query.filter(Appointment.id != exclude_id)
        candidates = query.order_by(Appointment.start_time).all()

        return [
            a for a in candidates
            if as_utc(a.start_time) < draft.end_time
            and as_utc(a.start_time) + timedelta(minutes=a.duration_minutes) > draft.start_time
        ]

    def _patient_same_day(self, draft: BookingDraft) -> List[Appointment]:
        day_start, day_end = local_day_bounds(draft.start_time)
        return self._active().filter(
            Appointment.patient_id == draft.patient_id,
            Appointment.start_time >= day_start,
            Appointment.start_time < day_end,
        ).order_by(Appointment.start_time).all()

    def _provider_nearby(self, draft: BookingDraft) -> List[Appointment]:
        window = timedelta(minutes=settings.PROXIMITY_WINDOW_MINUTES)
        return self._active().filter(
            Appointment.provider_id == draft.provider_id,
            Appointment.start_time >= draft.start_time - window,
            Appointment.start_time <= draft.start_time + window,
        ).order_by(Appointment.start_time).all()

    def _patient_load(self, patient_id: int, now: datetime) -> int:
        return self._active().filter(
            Appointment.patient_id == patient_id,
            Appointment.start_time >= now - timedelta(hours=24),
            Appointment.start_time <= now + timedelta(days=7),
        ).count()
