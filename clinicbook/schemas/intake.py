from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import Field, field_validator

from ..core.business import as_utc
from .common import CamelModel


class IntakeSubmit(CamelModel):
    appointment_id: str
    form_data: Dict[str, Any]
    current_step: Optional[int] = Field(default=None, ge=1)
    # False saves progress without completing the questionnaire
    complete: bool = True


class IntakeStatus(CamelModel):
    appointment_id: str
    required: bool
    completed: bool = False
    completed_at: Optional[datetime] = None
    current_step: int = 1
    form_data: Optional[Dict[str, Any]] = None

    @field_validator("completed_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None


class IntakeSubmitResponse(CamelModel):
    success: bool = True
    completed: bool
    completed_at: Optional[datetime] = None
    current_step: int
    message: str

    @field_validator("completed_at")
    @classmethod
    def _aware(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None
