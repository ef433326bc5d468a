import hashlib
from decimal import Decimal

import httpx
import pytest

from clinicbook.core.config import settings
from clinicbook.core.database import redis_client, release_lock
from clinicbook.core.errors import (
    AppointmentNotPayableError, PaymentAlreadyCompletedError, PaymentGatewayError,
    PaymentNotRequiredError,
)
from clinicbook.core.security import Actor, UserRole
from clinicbook.models import Appointment, AppointmentStatus, PaymentSession, PaymentStatus, ServiceType
from clinicbook.services.payment import PaymentCoordinator, PaymentGateway, to_minor_units
from clinicbook.services.status_machine import StatusService

from .conftest import auth_headers, clinic_time, make_appointment

QUITLINE = ServiceType.QUITLINE_SMOKING_CESSATION


@pytest.fixture
def quitline(db, people):
    return make_appointment(db, people.alice, people.gp, clinic_time(), type=QUITLINE)


@pytest.fixture
def coordinator(db, gateway):
    return PaymentCoordinator(db, gateway, redis_client)


def signed_callback(gateway, **fields):
    payload = dict(fields)
    payload["signature"] = gateway.sign(payload)
    return payload


class TestGatewayClient:
    def test_signature_is_sorted_pairs_plus_secret(self, gateway):
        expected = hashlib.sha256(b"a=1&b=2&api_secret=test-secret").hexdigest()

        assert gateway.sign({"b": "2", "a": "1"}) == expected
        assert gateway.sign({"b": "2", "a": "1", "signature": "ignored"}) == expected

    def test_request_shape(self, coordinator, quitline, gateway_stub):
        coordinator.create_session(quitline.id)

        sent = gateway_stub.requests[0]
        assert sent["amount"] == 15000
        assert sent["currency"] == "MYR"
        assert sent["portal_key"] == "test-portal"
        assert sent["customer_email"] == "alice@example.com"
        assert sent["description"] == "Quitline Free-Smoking Session (INRT)"
        assert sent["signature"] == coordinator.gateway.sign(sent)
        assert gateway_stub.headers[0]["authorization"] == "Bearer test-pat"

    def test_minor_units(self):
        assert to_minor_units(Decimal("150.00")) == 15000
        assert to_minor_units(Decimal("0.125")) == 13

    def test_unconfigured_gateway(self, db, quitline):
        gateway = PaymentGateway(
            base_url="https://gateway.example.test",
            personal_access_token=None,
            api_secret=None,
            portal_key=None,
            return_url="http://localhost/return",
            callback_url="http://localhost/callback",
        )

        with pytest.raises(PaymentGatewayError) as exc_info:
            PaymentCoordinator(db, gateway, redis_client).create_session(quitline.id)

        assert exc_info.value.retryable is False

    @pytest.mark.parametrize("status_code,retryable", [(500, True), (503, True), (429, True), (400, False), (401, False)])
    def test_retryable_statuses(self, coordinator, quitline, gateway_stub, status_code, retryable):
        gateway_stub.fail_with(status_code)

        with pytest.raises(PaymentGatewayError) as exc_info:
            coordinator.create_session(quitline.id)

        assert exc_info.value.retryable is retryable
        assert exc_info.value.status_code == 502

    def test_timeout_is_retryable(self, coordinator, quitline, gateway_stub):
        gateway_stub.error = httpx.ReadTimeout("timed out")

        with pytest.raises(PaymentGatewayError) as exc_info:
            coordinator.create_session(quitline.id)

        assert exc_info.value.retryable is True
        assert exc_info.value.message == "Payment gateway timed out"


class TestSessions:
    def test_pending_session_is_reused(self, coordinator, quitline, gateway_stub, db):
        first = coordinator.create_session(quitline.id)
        second = coordinator.create_session(quitline.id)

        assert first.reused is False
        assert second.reused is True
        assert second.session.id == first.session.id
        assert second.redirect_url == first.redirect_url
        assert second.session.gateway_reference == first.session.gateway_reference
        assert len(gateway_stub.requests) == 1
        assert db.query(PaymentSession).count() == 1

    def test_failed_attempt_is_kept_in_history(self, coordinator, quitline, gateway_stub, db):
        gateway_stub.fail_with(502)
        with pytest.raises(PaymentGatewayError):
            coordinator.create_session(quitline.id)

        gateway_stub.recover()
        result = coordinator.create_session(quitline.id)

        assert result.session.attempt == 2
        statuses = [s.status for s in db.query(PaymentSession).order_by(PaymentSession.attempt)]
        assert statuses == [PaymentStatus.FAILED, PaymentStatus.PENDING]

    def test_concurrent_creation_is_locked_out(self, coordinator, quitline, gateway_stub):
        redis_client.set(f"payment_lock:{quitline.id}", "1")

        with pytest.raises(PaymentGatewayError) as exc_info:
            coordinator.create_session(quitline.id)

        assert exc_info.value.payload["error"] == "payment_in_progress"
        assert exc_info.value.retryable is True
        assert gateway_stub.requests == []

    def test_lock_is_released(self, coordinator, quitline):
        coordinator.create_session(quitline.id)

        assert redis_client.get(f"payment_lock:{quitline.id}") is None

    def test_lock_outlives_gateway_timeout(self, coordinator, quitline, gateway, gateway_stub):
        key = f"payment_lock:{quitline.id}"
        held = {}
        gateway_stub.on_request = lambda payload: held.update(ttl=redis_client.ttl.get(key))

        coordinator.create_session(quitline.id)

        assert held["ttl"] >= settings.PAYMENT_LOCK_SECONDS
        assert held["ttl"] > gateway.timeout * 4

    def test_lock_grows_with_slow_gateway(self, db, gateway):
        gateway.timeout = 120.0

        assert PaymentCoordinator(db, gateway, redis_client).lock_seconds > 480

    def test_lock_taken_over_is_left_alone(self, coordinator, quitline, gateway_stub):
        key = f"payment_lock:{quitline.id}"
        # The lock expires mid-call and another request claims it
        gateway_stub.on_request = lambda payload: redis_client.set(key, "another-request")

        coordinator.create_session(quitline.id)

        assert redis_client.get(key) == "another-request"

    def test_release_needs_matching_token(self):
        redis_client.set("payment_lock:x", "mine")

        assert release_lock(redis_client, "payment_lock:x", "theirs") is False
        assert redis_client.get("payment_lock:x") == "mine"
        assert release_lock(redis_client, "payment_lock:x", "mine") is True
        assert redis_client.get("payment_lock:x") is None

    @pytest.mark.parametrize("status", [AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW])
    def test_closed_appointment_cannot_be_paid(self, coordinator, db, people, gateway_stub, status):
        appointment = make_appointment(db, people.alice, people.gp, clinic_time(), status=status, type=QUITLINE)

        with pytest.raises(AppointmentNotPayableError) as exc_info:
            coordinator.create_session(appointment.id)

        assert exc_info.value.payload["status"] == status.value
        assert gateway_stub.requests == []

    def test_cancelled_appointment_does_not_reuse_redirect(self, coordinator, db, people, quitline):
        coordinator.create_session(quitline.id)
        StatusService(db).transition(
            quitline.id, AppointmentStatus.CANCELLED, Actor(id=people.alice.id, role=UserRole.PATIENT)
        )

        with pytest.raises(AppointmentNotPayableError):
            coordinator.create_session(quitline.id)

    def test_completed_appointment_can_still_be_paid(self, coordinator, db, people):
        appointment = make_appointment(
            db, people.alice, people.gp, clinic_time(), status=AppointmentStatus.COMPLETED, type=QUITLINE
        )

        assert coordinator.create_session(appointment.id).redirect_url is not None

    def test_free_appointment_needs_no_payment(self, coordinator, db, people):
        appointment = make_appointment(db, people.alice, people.gp, clinic_time())

        with pytest.raises(PaymentNotRequiredError):
            coordinator.create_session(appointment.id)

    def test_paid_appointment_cannot_be_charged_again(self, coordinator, quitline, gateway):
        session = coordinator.create_session(quitline.id).session
        coordinator.handle_callback(signed_callback(gateway, order_id=session.id, status="success"))

        with pytest.raises(PaymentAlreadyCompletedError):
            coordinator.create_session(quitline.id)


class TestCallback:
    def test_success_marks_paid_and_confirms(self, client, db, people, quitline, coordinator, gateway):
        session = coordinator.create_session(quitline.id).session

        response = client.post(
            "/api/v1/payment/callback",
            json=signed_callback(gateway, order_id=session.id, status="success", transaction_id="TXN-PAID"),
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "status": "paid"}
        db.expire_all()
        session = db.get(PaymentSession, session.id)
        assert session.status == PaymentStatus.PAID
        assert session.paid_at is not None
        assert session.gateway_reference == "TXN-PAID"
        assert db.get(Appointment, quitline.id).status == AppointmentStatus.CONFIRMED

    def test_paid_is_final(self, db, quitline, coordinator, gateway):
        session = coordinator.create_session(quitline.id).session
        coordinator.handle_callback(signed_callback(gateway, order_id=session.id, status="paid"))

        coordinator.handle_callback(signed_callback(gateway, order_id=session.id, status="failed"))

        db.expire_all()
        assert db.get(PaymentSession, session.id).status == PaymentStatus.PAID

    def test_failure_is_recorded(self, db, quitline, coordinator, gateway):
        session = coordinator.create_session(quitline.id).session

        coordinator.handle_callback(signed_callback(gateway, order_id=session.id, status="cancelled"))

        db.expire_all()
        assert db.get(PaymentSession, session.id).status == PaymentStatus.FAILED
        assert db.get(Appointment, quitline.id).status == AppointmentStatus.SCHEDULED

    def test_failed_session_is_not_revived(self, db, quitline, coordinator, gateway):
        first = coordinator.create_session(quitline.id).session
        coordinator.handle_callback(signed_callback(gateway, order_id=first.id, status="failed"))
        second = coordinator.create_session(quitline.id).session

        coordinator.handle_callback(signed_callback(gateway, order_id=first.id, status="processing"))

        db.expire_all()
        assert db.get(PaymentSession, first.id).status == PaymentStatus.FAILED
        pending = db.query(PaymentSession).filter(
            PaymentSession.appointment_id == quitline.id,
            PaymentSession.status == PaymentStatus.PENDING,
        ).all()
        assert [s.id for s in pending] == [second.id]

    def test_voided_session_stays_failed(self, db, people, quitline, coordinator, gateway, monkeypatch):
        monkeypatch.setattr(settings, "CANCEL_VOIDS_PENDING_PAYMENT", True)
        session = coordinator.create_session(quitline.id).session
        StatusService(db).transition(
            quitline.id, AppointmentStatus.CANCELLED, Actor(id=people.alice.id, role=UserRole.PATIENT)
        )

        coordinator.handle_callback(signed_callback(gateway, order_id=session.id, status="pending"))

        db.expire_all()
        session = db.get(PaymentSession, session.id)
        assert session.status == PaymentStatus.FAILED
        assert session.failure_reason == "appointment_cancelled"

    def test_late_success_on_older_attempt_wins(self, db, quitline, coordinator, gateway):
        first = coordinator.create_session(quitline.id).session
        coordinator.handle_callback(signed_callback(gateway, order_id=first.id, status="failed"))
        second = coordinator.create_session(quitline.id).session

        coordinator.handle_callback(signed_callback(gateway, order_id=first.id, status="success"))

        db.expire_all()
        assert db.get(PaymentSession, first.id).status == PaymentStatus.PAID
        assert db.get(PaymentSession, second.id).status == PaymentStatus.PENDING
        assert coordinator.authoritative_session(quitline.id).id == first.id
        assert coordinator.get_status(quitline.id).status == "paid"
        assert db.get(Appointment, quitline.id).status == AppointmentStatus.CONFIRMED

    def test_bad_signature(self, client, quitline, coordinator):
        session = coordinator.create_session(quitline.id).session

        response = client.post(
            "/api/v1/payment/callback",
            json={"order_id": session.id, "status": "success", "signature": "forged"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"

    def test_unknown_order(self, client, gateway, db):
        response = client.post(
            "/api/v1/payment/callback",
            json=signed_callback(gateway, order_id="nope", status="success"),
        )

        assert response.status_code == 404


class TestPaymentStatusEndpoint:
    def test_defaults_to_pending(self, client, people, quitline):
        response = client.get(
            f"/api/v1/appointments/{quitline.id}/payment-status",
            headers=auth_headers(people.alice.id),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["required"] is True
        assert body["amount"] == 150
        assert "sessionId" not in body

    def test_free_appointment(self, client, db, people):
        appointment = make_appointment(db, people.alice, people.gp, clinic_time())

        response = client.get(
            f"/api/v1/appointments/{appointment.id}/payment-status",
            headers=auth_headers(people.alice.id),
        )

        assert response.json()["status"] == "pending"
        assert response.json()["required"] is False

    def test_reports_paid(self, client, people, quitline, coordinator, gateway):
        session = coordinator.create_session(quitline.id).session
        coordinator.handle_callback(signed_callback(gateway, order_id=session.id, status="success"))

        response = client.get(
            f"/api/v1/appointments/{quitline.id}/payment-status",
            headers=auth_headers(people.alice.id),
        )

        body = response.json()
        assert body["status"] == "paid"
        assert body["sessionId"] == session.id
        assert "paidAt" in body

    def test_other_patient_is_forbidden(self, client, people, quitline):
        response = client.get(
            f"/api/v1/appointments/{quitline.id}/payment-status",
            headers=auth_headers(people.bob.id),
        )

        assert response.status_code == 403


class TestCreateEndpoint:
    def test_free_appointment(self, client, db, people):
        appointment = make_appointment(db, people.alice, people.gp, clinic_time())

        response = client.post(
            "/api/v1/payment/create",
            json={"appointmentId": appointment.id},
            headers=auth_headers(people.alice.id),
        )

        assert response.status_code == 400
        assert response.json()["error"] == "payment_not_required"

    def test_gateway_error_body(self, client, people, quitline, gateway_stub):
        gateway_stub.fail_with(503, "Maintenance")

        response = client.post(
            "/api/v1/payment/create",
            json={"appointmentId": quitline.id},
            headers=auth_headers(people.alice.id),
        )

        assert response.status_code == 502
        assert response.json() == {
            "success": False,
            "error": "payment_gateway_error",
            "message": "Maintenance",
            "retryable": True,
        }

    def test_doctors_cannot_create_payments(self, client, people, quitline):
        response = client.post(
            "/api/v1/payment/create",
            json={"appointmentId": quitline.id},
            headers=auth_headers(people.gp.id, "doctor"),
        )

        assert response.status_code == 403
