from datetime import datetime, timedelta
from typing import Annotated, List, Literal, Optional, Union

from pydantic import ConfigDict, Field, field_validator

from ..core.business import as_utc
from ..models.appointment import AppointmentStatus, ServiceType
from .common import CamelModel

Severity = Literal["info", "warning", "error"]


# ---------- Booking draft ----------

class BookingDraft(CamelModel):
    """Immutable candidate appointment, built once from a request."""
    model_config = ConfigDict(frozen=True)

    patient_id: int
    provider_id: int
    start_time: datetime
    duration_minutes: int = 30
    type: ServiceType = ServiceType.CONSULTATION
    title: Optional[str] = Field(default=None, max_length=200)
    reason: Optional[str] = None
    notes: Optional[str] = None
    meeting_link: Optional[str] = Field(default=None, max_length=500)

    @field_validator("start_time")
    @classmethod
    def _normalise_start(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def end_time(self) -> datetime:
        return self.start_time + timedelta(minutes=self.duration_minutes)


class SlotCandidate(CamelModel):
    """Body of POST /appointments/validate; patientId is taken from the caller for patients."""
    patient_id: Optional[int] = None
    provider_id: int
    start_time: datetime
    duration_minutes: int = 30
    type: ServiceType = ServiceType.CONSULTATION


class AppointmentCreate(SlotCandidate):
    title: Optional[str] = Field(default=None, max_length=200)
    reason: Optional[str] = None
    notes: Optional[str] = None
    meeting_link: Optional[str] = Field(default=None, max_length=500)
    acknowledged_warnings: bool = False


# ---------- Validation issues (tagged unions) ----------

class ExistingAppointmentSummary(CamelModel):
    id: str
    start_time: datetime
    time: str
    type: str
    status: str


class NearbyAppointmentSummary(CamelModel):
    start_time: datetime
    time: str
    type: str
    specialty: Optional[str] = None
    patient_id: Optional[int] = None


class ConflictingSlot(CamelModel):
    id: str
    start_time: datetime
    duration_minutes: int
    status: str


class TooSoon(CamelModel):
    type: Literal["too_soon"] = "too_soon"
    severity: Severity = "error"
    message: str
    minimum_time: datetime


class InvalidDuration(CamelModel):
    type: Literal["invalid_duration"] = "invalid_duration"
    severity: Severity = "error"
    message: str
    duration_minutes: int
    max_duration: int


class ProviderNotFound(CamelModel):
    type: Literal["provider_not_found"] = "provider_not_found"
    severity: Severity = "error"
    message: str
    provider_id: int


class PatientNotFound(CamelModel):
    type: Literal["patient_not_found"] = "patient_not_found"
    severity: Severity = "error"
    message: str
    patient_id: int


class ProviderUnavailable(CamelModel):
    type: Literal["provider_unavailable"] = "provider_unavailable"
    severity: Severity = "error"
    message: str
    provider_id: int


class SlotConflict(CamelModel):
    type: Literal["slot_conflict"] = "slot_conflict"
    severity: Severity = "error"
    message: str
    conflicting_appointments: List[ConflictingSlot]


class SameDayMultiple(CamelModel):
    type: Literal["same_day_multiple"] = "same_day_multiple"
    severity: Severity = "warning"
    message: str
    existing_appointments: List[ExistingAppointmentSummary]


class BusySchedule(CamelModel):
    type: Literal["busy_schedule"] = "busy_schedule"
    severity: Severity = "info"
    message: str
    nearby_appointments: List[NearbyAppointmentSummary]


class HighAppointmentLoad(CamelModel):
    type: Literal["high_appointment_load"] = "high_appointment_load"
    severity: Severity = "warning"
    message: str
    appointment_count: int


SlotError = Annotated[
    Union[TooSoon, InvalidDuration, ProviderNotFound, PatientNotFound, ProviderUnavailable, SlotConflict],
    Field(discriminator="type"),
]
SlotWarning = Annotated[
    Union[SameDayMultiple, BusySchedule, HighAppointmentLoad],
    Field(discriminator="type"),
]


class ValidationResult(CamelModel):
    valid: bool
    errors: List[SlotError] = []
    warnings: List[SlotWarning] = []

    @property
    def must_confirm(self) -> bool:
        return bool(self.warnings)

    def error_payloads(self) -> List[dict]:
        return [e.to_payload() for e in self.errors]

    def warning_payloads(self) -> List[dict]:
        return [w.to_payload() for w in self.warnings]


class ValidationResponse(CamelModel):
    valid: bool
    errors: List[SlotError] = []
    warnings: List[SlotWarning] = []
    must_confirm: bool = False


# ---------- Appointment views ----------

class AppointmentResponse(CamelModel):
    id: str
    patient_id: int
    provider_id: int
    start_time: datetime
    duration_minutes: int
    type: ServiceType
    status: AppointmentStatus
    service_name: Optional[str] = None
    price: Optional[float] = None
    title: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    meeting_link: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("start_time", "created_at", "updated_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class PaymentStep(CamelModel):
    required: bool
    status: Literal["not_required", "redirect", "deferred"]
    payment_url: Optional[str] = None
    session_id: Optional[str] = None
    error: Optional[str] = None
    retryable: Optional[bool] = None


class BookingOutcome(CamelModel):
    appointment: AppointmentResponse
    payment: PaymentStep
    intake_required: bool = False


class StatusUpdate(CamelModel):
    status: AppointmentStatus


class RescheduleRequest(CamelModel):
    start_time: datetime


class StatusUpdateResponse(CamelModel):
    appointment: AppointmentResponse
    open_payment_session: bool = False


class AppointmentList(CamelModel):
    appointments: List[AppointmentResponse]
    total: int
    skip: int
    limit: int
