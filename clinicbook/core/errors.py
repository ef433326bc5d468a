from typing import Any, Dict, List, Optional
from fastapi import HTTPException, status


class BookingError(HTTPException):
    """Base class for booking engine errors.

    ``detail`` is always a dict; the application's exception handler renders it
    as the response body as-is so callers get the structured payload without a
    ``{"detail": ...}`` wrapper.
    """

    def __init__(self, status_code: int, payload: Dict[str, Any]):
        super().__init__(status_code=status_code, detail=payload)

    @property
    def payload(self) -> Dict[str, Any]:
        return self.detail


class BookingValidationError(BookingError):
    def __init__(self, errors: List[Dict[str, Any]], warnings: Optional[List[Dict[str, Any]]] = None):
        self.errors = errors
        super().__init__(
            status.HTTP_400_BAD_REQUEST,
            {"valid": False, "errors": errors, "warnings": warnings or []},
        )


class WarningsRequireConfirmation(BookingError):
    def __init__(self, warnings: List[Dict[str, Any]]):
        self.warnings = warnings
        super().__init__(
            status.HTTP_409_CONFLICT,
            {
                "error": "confirmation_required",
                "message": "Please review the warnings and resubmit with acknowledgedWarnings set",
                "warnings": warnings,
            },
        )


class InvalidTransitionError(BookingError):
    def __init__(self, current: str, requested: str, actor: Optional[str] = None):
        self.current = current
        self.requested = requested
        payload = {
            "error": "invalid_transition",
            "from": current,
            "to": requested,
            "message": f"Cannot move appointment from '{current}' to '{requested}'",
        }
        if actor:
            payload["actor"] = actor
        super().__init__(status.HTTP_409_CONFLICT, payload)


class NotFoundError(BookingError):
    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            status.HTTP_404_NOT_FOUND,
            {"error": "not_found", "message": f"{resource} not found", "id": str(identifier)},
        )


class PaymentGatewayError(BookingError):
    def __init__(self, message: str, retryable: bool = True, code: str = "payment_gateway_error"):
        self.message = message
        self.retryable = retryable
        super().__init__(
            status.HTTP_502_BAD_GATEWAY,
            {"success": False, "error": code, "message": message, "retryable": retryable},
        )


class PaymentNotRequiredError(BookingError):
    def __init__(self):
        super().__init__(
            status.HTTP_400_BAD_REQUEST,
            {"success": False, "error": "payment_not_required",
             "message": "No payment required for this appointment"},
        )


class PaymentAlreadyCompletedError(BookingError):
    def __init__(self):
        super().__init__(
            status.HTTP_409_CONFLICT,
            {"success": False, "error": "payment_already_completed",
             "message": "Payment already completed"},
        )


class IntakeNotApplicableError(BookingError):
    def __init__(self, appointment_id: str):
        super().__init__(
            status.HTTP_404_NOT_FOUND,
            {"error": "intake_not_applicable",
             "message": "Appointment not found or not eligible for intake form",
             "id": appointment_id},
        )


class InvalidSignatureError(BookingError):
    def __init__(self):
        super().__init__(
            status.HTTP_400_BAD_REQUEST,
            {"success": False, "error": "invalid_signature", "message": "Invalid signature"},
        )


class AppointmentNotPayableError(BookingError):
    def __init__(self, appointment_status: str):
        super().__init__(
            status.HTTP_409_CONFLICT,
            {"success": False, "error": "appointment_not_payable",
             "message": f"Cannot take payment for a {appointment_status} appointment",
             "status": appointment_status},
        )


class NotReschedulableError(BookingError):
    def __init__(self, appointment_status: str):
        super().__init__(
            status.HTTP_409_CONFLICT,
            {"error": "not_reschedulable",
             "message": f"Cannot reschedule a {appointment_status} appointment",
             "status": appointment_status},
        )
