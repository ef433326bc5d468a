from fastapi import APIRouter, Body, Depends
from sqlalchemy.orm import Session
from typing import Any, Dict
import logging

from ...core.database import get_db
from ...core.security import Actor
from ...schemas.payment import PaymentCreateRequest, PaymentCreateResponse
from ...services.payment import PaymentCoordinator
from ..deps import ensure_can_access, get_patient_actor, get_payment_coordinator, load_appointment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment", tags=["Payments"])


@router.post("/create", response_model=PaymentCreateResponse, response_model_exclude_none=True)
def create_payment(
    payload: PaymentCreateRequest,
    actor: Actor = Depends(get_patient_actor),
    db: Session = Depends(get_db),
    payments: PaymentCoordinator = Depends(get_payment_coordinator),
):
    """Open (or reuse) a payment session and return the hosted payment page."""
    appointment = load_appointment(db, payload.appointment_id)
    ensure_can_access(appointment, actor)

    result = payments.create_session(payload.appointment_id)
    session = result.session
    return PaymentCreateResponse(
        payment_url=session.redirect_url,
        session_id=session.id,
        gateway_reference=session.gateway_reference,
        amount=float(session.amount),
        currency=session.currency,
    )


@router.post("/callback")
async def payment_callback(
    payload: Dict[str, Any] = Body(...),
    payments: PaymentCoordinator = Depends(get_payment_coordinator),
):
    """Gateway notification endpoint; authenticated by signature, not token."""
    logger.info(f"Payment callback received for order {payload.get('order_id')}")
    session = payments.handle_callback(payload)
    return {"success": True, "status": session.status.value}
