from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...core.database import get_db
from ...core.security import Actor
from ...schemas.intake import IntakeStatus, IntakeSubmit, IntakeSubmitResponse
from ...services.intake import IntakeGate
from ..deps import ensure_can_access, get_intake_gate, get_patient_actor, get_provider_actor, load_appointment

router = APIRouter(tags=["Intake"])


@router.get("/patient/intake-form", response_model=IntakeStatus, response_model_exclude_none=True)
async def get_intake_form(
    appointment_id: str = Query(..., alias="appointmentId"),
    actor: Actor = Depends(get_patient_actor),
    db: Session = Depends(get_db),
    intake: IntakeGate = Depends(get_intake_gate),
):
    appointment = load_appointment(db, appointment_id)
    ensure_can_access(appointment, actor)
    return intake.get_status(appointment_id)


@router.api_route(
    "/patient/intake-form",
    methods=["POST", "PUT"],
    response_model=IntakeSubmitResponse,
    response_model_exclude_none=True,
)
async def submit_intake_form(
    payload: IntakeSubmit,
    actor: Actor = Depends(get_patient_actor),
    db: Session = Depends(get_db),
    intake: IntakeGate = Depends(get_intake_gate),
):
    """Save intake answers; ``complete: false`` only records progress."""
    appointment = load_appointment(db, payload.appointment_id)
    ensure_can_access(appointment, actor)

    form = intake.submit(
        payload.appointment_id,
        payload.form_data,
        complete=payload.complete,
        current_step=payload.current_step,
    )
    return IntakeSubmitResponse(
        completed=form.completed,
        completed_at=form.completed_at,
        current_step=form.current_step,
        message="Intake form completed" if form.completed else "Intake form progress saved",
    )


@router.get("/provider/intake-forms/{appointment_id}", response_model=IntakeStatus, response_model_exclude_none=True)
async def get_patient_intake(
    appointment_id: str,
    actor: Actor = Depends(get_provider_actor),
    db: Session = Depends(get_db),
    intake: IntakeGate = Depends(get_intake_gate),
):
    """Provider view of a patient's intake answers for one of their appointments."""
    appointment = load_appointment(db, appointment_id)
    ensure_can_access(appointment, actor)
    return intake.get_status(appointment_id)
