from datetime import datetime, time, timedelta, timezone
from decimal import Decimal
from typing import NamedTuple, Optional, Tuple
from zoneinfo import ZoneInfo

from .config import settings


class Tariff(NamedTuple):
    service_name: str
    price: Optional[Decimal]


# Fixed tariffs per service type; types not listed are free
TARIFFS = {
    "consultation": Tariff("General Consultation", None),
    "follow_up": Tariff("Follow-up Visit", None),
    "emergency": Tariff("Emergency Consultation", None),
    "quitline_smoking_cessation": Tariff("Quitline Free-Smoking Session (INRT)", Decimal("150.00")),
    "psychiatrist_session": Tariff("Psychiatrist Session", None),
}

# Types that require the intake questionnaire
INTAKE_GATED_TYPES = frozenset({"quitline_smoking_cessation"})

ACTIVE_STATUSES = ("scheduled", "confirmed", "in-progress")


def tariff_for(service_type: str) -> Tariff:
    return TARIFFS.get(service_type, Tariff(service_type.replace("_", " ").title(), None))


def clinic_tz() -> ZoneInfo:
    return ZoneInfo(settings.CLINIC_TIMEZONE)


def as_utc(dt: datetime) -> datetime:
    """Normalise a datetime to aware UTC; naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_day_bounds(dt: datetime) -> Tuple[datetime, datetime]:
    """UTC [start, end) of the clinic-local calendar day containing dt."""
    local = as_utc(dt).astimezone(clinic_tz())
    start = datetime.combine(local.date(), time.min, tzinfo=local.tzinfo)
    end = start + timedelta(days=1)
    return as_utc(start), as_utc(end)
