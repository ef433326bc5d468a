"""
Payment gateway client and payment session coordination.

Each attempt to collect payment for an appointment is a PaymentSession row.
The gateway is only called from here, never while a booking transaction is
open, so a slow or failing gateway cannot roll back a committed appointment.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional
import hashlib
import hmac
import logging
import math
import time
import uuid

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.business import utcnow
from ..core.config import settings
from ..core.database import release_lock
from ..core.errors import (
    AppointmentNotPayableError, InvalidSignatureError, InvalidTransitionError, NotFoundError,
    PaymentAlreadyCompletedError, PaymentGatewayError, PaymentNotRequiredError,
)
from ..core.security import SYSTEM_ACTOR
from ..models.appointment import Appointment, AppointmentStatus
from ..models.payment_session import PaymentSession, PaymentStatus
from ..schemas.payment import PaymentStatusView
from .status_machine import StatusService

logger = logging.getLogger(__name__)

PAID_STATUSES = ("success", "paid")
FAILED_STATUSES = ("failed", "cancelled")
# Appointments that can no longer take a payment
UNPAYABLE_STATUSES = (AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW)


@dataclass
class GatewayPayment:
    """A payment created at the gateway."""
    transaction_id: str
    payment_url: str


@dataclass
class SessionResult:
    session: PaymentSession
    reused: bool = False

    @property
    def redirect_url(self) -> Optional[str]:
        return self.session.redirect_url


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGateway:
    """HTTP client for the hosted payment page provider."""

    def __init__(
        self,
        base_url: str,
        personal_access_token: Optional[str],
        api_secret: Optional[str],
        portal_key: Optional[str],
        return_url: str,
        callback_url: str,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.personal_access_token = personal_access_token
        self.api_secret = api_secret
        self.portal_key = portal_key
        self.return_url = return_url
        self.callback_url = callback_url
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, transport: Optional[httpx.BaseTransport] = None) -> "PaymentGateway":
        return cls(
            base_url=settings.PAYMENT_GATEWAY_URL,
            personal_access_token=settings.PAYMENT_GATEWAY_PAT,
            api_secret=settings.PAYMENT_GATEWAY_API_SECRET,
            portal_key=settings.PAYMENT_GATEWAY_PORTAL_KEY,
            return_url=settings.PAYMENT_RETURN_URL,
            callback_url=settings.PAYMENT_CALLBACK_URL,
            timeout=settings.PAYMENT_GATEWAY_TIMEOUT_SECONDS,
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.personal_access_token and self.api_secret and self.portal_key)

    def sign(self, data: Dict[str, Any]) -> str:
        """SHA-256 over the sorted ``key=value`` pairs followed by the API secret."""
        pairs = "&".join(
            f"{key}={data[key]}" for key in sorted(data) if key != "signature"
        )
        return hashlib.sha256(f"{pairs}&api_secret={self.api_secret}".encode()).hexdigest()

    def verify_callback(self, payload: Dict[str, Any]) -> bool:
        signature = payload.get("signature")
        if not signature or not self.api_secret:
            return False
        return hmac.compare_digest(str(signature), self.sign(payload))

    def create_payment(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        customer_name: str,
        customer_email: Optional[str] = None,
        customer_phone: Optional[str] = None,
    ) -> GatewayPayment:
        if not self.is_configured:
            raise PaymentGatewayError("Payment gateway is not configured", retryable=False)

        payload = {
            "portal_key": self.portal_key,
            "order_id": order_id,
            "amount": to_minor_units(amount),
            "currency": currency,
            "description": description,
            "customer_name": customer_name,
            "customer_email": customer_email or "",
            "customer_phone": customer_phone or "",
            "return_url": self.return_url,
            "callback_url": self.callback_url,
            "timestamp": int(time.time()),
        }
        payload["signature"] = self.sign(payload)

        headers = {
            "Authorization": f"Bearer {self.personal_access_token}",
            "Accept": "application/json",
        }

        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.post("/payment", json=payload, headers=headers)
        except httpx.TimeoutException:
            logger.warning(f"Payment gateway timed out for order {order_id}")
            raise PaymentGatewayError("Payment gateway timed out", retryable=True)
        except httpx.HTTPError as e:
            logger.warning(f"Payment gateway unreachable for order {order_id}: {e}")
            raise PaymentGatewayError(f"Payment gateway unreachable: {e}", retryable=True)

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_success and data.get("status") == "success" and data.get("payment_url"):
            logger.info(f"Gateway payment created for order {order_id}: {data.get('transaction_id')}")
            return GatewayPayment(
                transaction_id=str(data.get("transaction_id") or ""),
                payment_url=data["payment_url"],
            )

        retryable = response.status_code >= 500 or response.status_code == 429
        message = data.get("message") or f"Payment creation failed with HTTP {response.status_code}"
        logger.error(f"Gateway rejected order {order_id}: HTTP {response.status_code} {message}")
        raise PaymentGatewayError(message, retryable=retryable)


class PaymentCoordinator:
    def __init__(self, db: Session, gateway: PaymentGateway, redis_client):
        self.db = db
        self.gateway = gateway
        self.redis = redis_client

    def _appointment(self, appointment_id: str) -> Appointment:
        appointment = self.db.get(Appointment, appointment_id)
        if not appointment:
            raise NotFoundError("Appointment", appointment_id)
        return appointment

    @property
    def lock_seconds(self) -> int:
        # httpx applies the timeout to each phase of a request separately
        return max(settings.PAYMENT_LOCK_SECONDS, math.ceil(self.gateway.timeout * 4) + 30)

    def authoritative_session(self, appointment_id: str) -> Optional[PaymentSession]:
        """A paid session if any exists, otherwise the latest attempt."""
        paid = self.db.query(PaymentSession).filter(
            PaymentSession.appointment_id == appointment_id,
            PaymentSession.status == PaymentStatus.PAID,
        ).first()
        if paid:
            return paid
        return self.db.query(PaymentSession).filter(
            PaymentSession.appointment_id == appointment_id,
        ).order_by(PaymentSession.attempt.desc()).first()

    def create_session(self, appointment_id: str) -> SessionResult:
        """Open a payment session for an appointment, reusing a live one."""
        appointment = self._appointment(appointment_id)
        if not appointment.price or appointment.price <= 0:
            raise PaymentNotRequiredError()
        if appointment.status in UNPAYABLE_STATUSES:
            raise AppointmentNotPayableError(appointment.status.value)

        current = self.authoritative_session(appointment_id)
        if current and current.status == PaymentStatus.PAID:
            raise PaymentAlreadyCompletedError()
        if current and current.status == PaymentStatus.PENDING and current.redirect_url:
            logger.info(f"Reusing payment session {current.id} for appointment {appointment_id}")
            return SessionResult(current, reused=True)

        lock_key = f"payment_lock:{appointment_id}"
        lock_token = uuid.uuid4().hex
        if not self.redis.set(lock_key, lock_token, nx=True, ex=self.lock_seconds):
            # Someone else is creating a session right now
            self.db.expire_all()
            current = self.authoritative_session(appointment_id)
            if current and current.status == PaymentStatus.PENDING and current.redirect_url:
                return SessionResult(current, reused=True)
            raise PaymentGatewayError(
                "A payment session is already being created for this appointment",
                retryable=True,
                code="payment_in_progress",
            )

        try:
            return self._open_new_session(appointment, current)
        finally:
            if not release_lock(self.redis, lock_key, lock_token):
                logger.warning(f"Payment lock for appointment {appointment_id} expired before release")

    def _open_new_session(self, appointment: Appointment, previous: Optional[PaymentSession]) -> SessionResult:
        if previous and previous.status == PaymentStatus.PENDING:
            # Never got a redirect; superseded by this attempt
            previous.status = PaymentStatus.FAILED
            previous.failure_reason = "superseded"

        session = PaymentSession(
            appointment_id=appointment.id,
            attempt=(previous.attempt + 1) if previous else 1,
            amount=appointment.price,
            currency=settings.PAYMENT_CURRENCY,
            status=PaymentStatus.PENDING,
        )
        self.db.add(session)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise PaymentGatewayError(
                "A payment session is already being created for this appointment",
                retryable=True,
                code="payment_in_progress",
            )
        self.db.refresh(session)

        patient = appointment.patient
        try:
            payment = self.gateway.create_payment(
                order_id=session.id,
                amount=session.amount,
                currency=session.currency,
                description=appointment.service_name or "Appointment",
                customer_name=patient.full_name if patient else "",
                customer_email=patient.email if patient else None,
                customer_phone=patient.phone_number if patient else None,
            )
        except PaymentGatewayError as e:
            session.status = PaymentStatus.FAILED
            session.failure_reason = e.message
            self.db.commit()
            logger.warning(
                f"Payment session {session.id} (attempt {session.attempt}) failed for "
                f"appointment {appointment.id}: {e.message}"
            )
            raise

        session.gateway_reference = payment.transaction_id
        session.redirect_url = payment.payment_url
        self.db.commit()
        self.db.refresh(session)

        logger.info(
            f"Payment session {session.id} (attempt {session.attempt}) opened for appointment {appointment.id}"
        )
        return SessionResult(session)

    def get_status(self, appointment_id: str) -> PaymentStatusView:
        appointment = self._appointment(appointment_id)
        required = bool(appointment.price and appointment.price > 0)

        session = self.authoritative_session(appointment_id)
        if not session:
            return PaymentStatusView(
                status="pending",
                required=required,
                message="Payment not initiated" if required else "No payment required",
                amount=float(appointment.price) if appointment.price is not None else None,
                currency=settings.PAYMENT_CURRENCY if required else None,
            )

        messages = {
            PaymentStatus.PENDING: "Awaiting payment",
            PaymentStatus.PAID: "Payment completed",
            PaymentStatus.FAILED: session.failure_reason or "Payment failed",
        }
        return PaymentStatusView(
            status=session.status.value,
            required=required,
            message=messages[session.status],
            amount=float(session.amount),
            currency=session.currency,
            paid_at=session.paid_at,
            gateway_reference=session.gateway_reference,
            session_id=session.id,
        )

    def handle_callback(self, payload: Dict[str, Any]) -> PaymentSession:
        """Apply a signed gateway notification to its payment session."""
        if not self.gateway.verify_callback(payload):
            logger.warning(f"Rejected payment callback with bad signature for order {payload.get('order_id')}")
            raise InvalidSignatureError()

        order_id = str(payload.get("order_id") or "")
        session = self.db.get(PaymentSession, order_id)
        if not session:
            raise NotFoundError("Payment session", order_id)

        if session.status == PaymentStatus.PAID:
            logger.info(f"Ignoring callback for already paid session {session.id}")
            return session

        reported = str(payload.get("status") or "").lower()
        # A failed session may have been superseded or voided; only a late success revives it
        if session.status == PaymentStatus.FAILED and reported not in PAID_STATUSES:
            logger.info(f"Ignoring '{reported}' callback for failed session {session.id}")
            return session

        if reported in PAID_STATUSES:
            session.status = PaymentStatus.PAID
            session.paid_at = utcnow()
            session.failure_reason = None
        elif reported in FAILED_STATUSES:
            session.status = PaymentStatus.FAILED
            session.failure_reason = f"Gateway reported {reported}"
        else:
            session.status = PaymentStatus.PENDING

        if payload.get("transaction_id"):
            session.gateway_reference = str(payload["transaction_id"])
        self.db.commit()
        self.db.refresh(session)

        logger.info(f"Payment session {session.id} is now {session.status.value}")

        if session.status == PaymentStatus.PAID and settings.CONFIRM_ON_PAYMENT:
            self._confirm_appointment(session.appointment_id)

        return session

    def _confirm_appointment(self, appointment_id: str) -> None:
        appointment = self.db.get(Appointment, appointment_id)
        if not appointment or appointment.status != AppointmentStatus.SCHEDULED:
            return
        try:
            StatusService(self.db).transition(appointment_id, AppointmentStatus.CONFIRMED, SYSTEM_ACTOR)
        except InvalidTransitionError as e:
            # Moved on concurrently; payment stays recorded
            logger.info(f"Did not confirm appointment {appointment_id} after payment: {e.payload['message']}")


_gateway: Optional[PaymentGateway] = None


def get_payment_gateway() -> PaymentGateway:
    """Process-wide gateway client built from settings."""
    global _gateway
    if _gateway is None:
        _gateway = PaymentGateway.from_settings()
    return _gateway
