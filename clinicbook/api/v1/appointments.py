from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from typing import Optional

from ...core.database import get_db
from ...core.security import Actor, AuthorizationError, UserRole
from ...models.appointment import Appointment, AppointmentStatus
from ...schemas.appointment import (
    AppointmentCreate, AppointmentList, AppointmentResponse, BookingDraft, BookingOutcome,
    RescheduleRequest, SlotCandidate, StatusUpdate, StatusUpdateResponse, ValidationResponse,
)
from ...schemas.payment import PaymentStatusView
from ...services.booking import BookingService
from ...services.payment import PaymentCoordinator
from ...services.slot_validator import SlotValidator
from ...services.status_machine import StatusService
from ..deps import (
    ensure_can_access, get_booking_service, get_current_actor, get_payment_coordinator,
    get_provider_actor, get_slot_validator, get_status_service, load_appointment,
)

router = APIRouter(prefix="/appointments", tags=["Appointments"])


def build_draft(candidate: SlotCandidate, actor: Actor) -> BookingDraft:
    """Resolve who the appointment is for and freeze the request into a draft."""
    if actor.is_patient:
        if candidate.patient_id is not None and candidate.patient_id != actor.id:
            raise AuthorizationError("Patients can only book for themselves")
        patient_id = actor.id
    else:
        if candidate.patient_id is None:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="patientId is required"
            )
        patient_id = candidate.patient_id

    if actor.role == UserRole.DOCTOR and candidate.provider_id != actor.id:
        raise AuthorizationError("Doctors can only book into their own schedule")

    details = {}
    if isinstance(candidate, AppointmentCreate):
        details = candidate.model_dump(include={"title", "reason", "notes", "meeting_link"})

    return BookingDraft(
        patient_id=patient_id,
        provider_id=candidate.provider_id,
        start_time=candidate.start_time,
        duration_minutes=candidate.duration_minutes,
        type=candidate.type,
        **details,
    )


@router.post("/validate", response_model=ValidationResponse, response_model_exclude_none=True)
async def validate_slot(
    candidate: SlotCandidate,
    actor: Actor = Depends(get_current_actor),
    validator: SlotValidator = Depends(get_slot_validator),
):
    """Check a candidate slot without booking it."""
    draft = build_draft(candidate, actor)
    result = validator.validate(draft, viewer=actor)
    return ValidationResponse(
        valid=result.valid,
        errors=result.errors,
        warnings=result.warnings,
        must_confirm=result.must_confirm,
    )


@router.post(
    "",
    response_model=BookingOutcome,
    response_model_exclude_none=True,
    status_code=status.HTTP_201_CREATED,
)
def book_appointment(
    payload: AppointmentCreate,
    actor: Actor = Depends(get_current_actor),
    booking: BookingService = Depends(get_booking_service),
):
    """
    Book an appointment.

    Returns 409 with the warnings when they have not been acknowledged, and
    201 with a deferred payment step when the gateway is unavailable.
    """
    draft = build_draft(payload, actor)
    return booking.book(draft, acknowledged_warnings=payload.acknowledged_warnings, viewer=actor)


@router.get("", response_model=AppointmentList, response_model_exclude_none=True)
async def list_appointments(
    status_filter: Optional[str] = Query(None, alias="status", description="Comma separated statuses"),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    """List the caller's appointments, soonest first."""
    query = db.query(Appointment)
    if actor.role == UserRole.PATIENT:
        query = query.filter(Appointment.patient_id == actor.id)
    elif actor.role == UserRole.DOCTOR:
        query = query.filter(Appointment.provider_id == actor.id)

    if status_filter:
        try:
            statuses = [AppointmentStatus(s.strip()) for s in status_filter.split(",") if s.strip()]
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"Unknown status in filter: {status_filter}"
            )
        query = query.filter(Appointment.status.in_(statuses))

    total = query.count()
    appointments = query.order_by(Appointment.start_time).offset(skip).limit(limit).all()

    return AppointmentList(
        appointments=[AppointmentResponse.model_validate(a) for a in appointments],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/{appointment_id}", response_model=AppointmentResponse, response_model_exclude_none=True)
async def get_appointment(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
):
    appointment = load_appointment(db, appointment_id)
    ensure_can_access(appointment, actor)
    return AppointmentResponse.model_validate(appointment)


@router.patch("/{appointment_id}/status", response_model=StatusUpdateResponse, response_model_exclude_none=True)
async def update_status(
    appointment_id: str,
    payload: StatusUpdate,
    actor: Actor = Depends(get_current_actor),
    statuses: StatusService = Depends(get_status_service),
):
    """Apply one lifecycle transition."""
    result = statuses.transition(appointment_id, payload.status, actor)
    return StatusUpdateResponse(
        appointment=AppointmentResponse.model_validate(result.appointment),
        open_payment_session=result.open_payment_session,
    )


@router.patch("/{appointment_id}/reschedule", response_model=AppointmentResponse, response_model_exclude_none=True)
async def reschedule_appointment(
    appointment_id: str,
    payload: RescheduleRequest,
    actor: Actor = Depends(get_provider_actor),
    booking: BookingService = Depends(get_booking_service),
):
    """Move an appointment to a new time. Providers only; the status is kept."""
    appointment = booking.reschedule(appointment_id, payload.start_time, actor)
    return AppointmentResponse.model_validate(appointment)


@router.get("/{appointment_id}/payment-status", response_model=PaymentStatusView, response_model_exclude_none=True)
async def payment_status(
    appointment_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db),
    payments: PaymentCoordinator = Depends(get_payment_coordinator),
):
    appointment = load_appointment(db, appointment_id)
    ensure_can_access(appointment, actor)
    return payments.get_status(appointment_id)
