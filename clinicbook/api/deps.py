from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import List

from ..core.database import get_db, get_redis
from ..core.errors import NotFoundError
from ..core.security import (
    security, verify_token, AuthenticationError,
    AuthorizationError, UserRole, TokenPayload, Actor
)
from ..models.appointment import Appointment
from ..services.booking import BookingService
from ..services.intake import IntakeGate
from ..services.payment import PaymentCoordinator, PaymentGateway, get_payment_gateway
from ..services.slot_validator import SlotValidator
from ..services.status_machine import StatusService

async def get_current_user_token(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """Extract and verify JWT token from Authorization header."""
    token = credentials.credentials

    # Verify token
    token_payload = verify_token(token)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")

    # Check if token is access token
    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")

    return token_payload

async def get_current_actor(
    token_payload: TokenPayload = Depends(get_current_user_token)
) -> Actor:
    """Build the caller identity from the token claims."""
    if not token_payload.sub or not token_payload.role:
        raise AuthenticationError("Invalid token payload")

    try:
        role = UserRole(token_payload.role)
        actor_id = int(token_payload.sub)
    except ValueError:
        raise AuthenticationError("Invalid token payload")

    return Actor(id=actor_id, role=role)

# Role-based access control dependencies
def require_role(allowed_roles: List[UserRole]):
    """Create a dependency that requires specific caller roles."""
    async def role_checker(
        actor: Actor = Depends(get_current_actor)
    ) -> Actor:
        if actor.role not in allowed_roles:
            raise AuthorizationError(
                f"Access denied. Required roles: {[role.value for role in allowed_roles]}"
            )
        return actor

    return role_checker

async def get_provider_actor(
    actor: Actor = Depends(require_role([UserRole.DOCTOR, UserRole.ADMIN]))
) -> Actor:
    """Require doctor or admin role."""
    return actor

async def get_patient_actor(
    actor: Actor = Depends(require_role([UserRole.PATIENT, UserRole.ADMIN]))
) -> Actor:
    """Require patient or admin role."""
    return actor

def load_appointment(db: Session, appointment_id: str) -> Appointment:
    appointment = db.get(Appointment, appointment_id)
    if not appointment:
        raise NotFoundError("Appointment", appointment_id)
    return appointment

def ensure_can_access(appointment: Appointment, actor: Actor) -> None:
    if not actor.owns(appointment):
        raise AuthorizationError("Insufficient permissions")

# Service dependencies
def get_slot_validator(db: Session = Depends(get_db)) -> SlotValidator:
    return SlotValidator(db)

def get_payment_coordinator(
    db: Session = Depends(get_db),
    redis_client = Depends(get_redis),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> PaymentCoordinator:
    return PaymentCoordinator(db, gateway, redis_client)

def get_booking_service(
    db: Session = Depends(get_db),
    payments: PaymentCoordinator = Depends(get_payment_coordinator),
) -> BookingService:
    return BookingService(db, payments)

def get_status_service(db: Session = Depends(get_db)) -> StatusService:
    return StatusService(db)

def get_intake_gate(db: Session = Depends(get_db)) -> IntakeGate:
    return IntakeGate(db)
