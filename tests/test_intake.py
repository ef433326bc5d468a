import pytest

from clinicbook.core.errors import IntakeNotApplicableError
from clinicbook.models import IntakeForm, ServiceType
from clinicbook.services.intake import IntakeGate

from .conftest import auth_headers, clinic_time, make_appointment

QUITLINE = ServiceType.QUITLINE_SMOKING_CESSATION


@pytest.fixture
def quitline(db, people):
    return make_appointment(db, people.alice, people.gp, clinic_time(), type=QUITLINE)


@pytest.mark.parametrize("service_type,required", [
    ("quitline_smoking_cessation", True),
    ("consultation", False),
    ("follow_up", False),
    ("emergency", False),
    ("psychiatrist_session", False),
])
def test_only_quitline_is_gated(service_type, required):
    assert IntakeGate.is_required(service_type) is required


class TestIntakeGate:
    def test_status_creates_form_lazily(self, db, quitline):
        assert db.query(IntakeForm).count() == 0

        status = IntakeGate(db).get_status(quitline.id)

        assert status.required is True
        assert status.completed is False
        assert status.current_step == 1
        assert db.query(IntakeForm).count() == 1

    def test_ungated_appointment_reports_not_required(self, db, people):
        appointment = make_appointment(db, people.alice, people.gp, clinic_time())

        status = IntakeGate(db).get_status(appointment.id)

        assert status.required is False
        assert db.query(IntakeForm).count() == 0

    def test_completion_is_monotonic(self, db, quitline):
        gate = IntakeGate(db)

        form = gate.submit(quitline.id, {"smoker_since": 2010}, complete=True, current_step=5)
        first_completed_at = form.completed_at
        assert form.completed is True

        form = gate.submit(quitline.id, {"smoker_since": 2011}, complete=False, current_step=2)

        assert form.completed is True
        assert form.completed_at == first_completed_at
        assert form.form_data == {"smoker_since": 2011}
        assert form.current_step == 2

    def test_submit_to_ungated_appointment(self, db, people):
        appointment = make_appointment(db, people.alice, people.gp, clinic_time())

        with pytest.raises(IntakeNotApplicableError):
            IntakeGate(db).submit(appointment.id, {"answer": "yes"})


class TestIntakeAPI:
    def test_progress_then_complete(self, client, people, quitline):
        headers = auth_headers(people.alice.id)

        response = client.get(f"/api/v1/patient/intake-form?appointmentId={quitline.id}", headers=headers)
        assert response.status_code == 200
        assert response.json()["required"] is True
        assert response.json()["completed"] is False
        assert response.json()["currentStep"] == 1

        response = client.put(
            "/api/v1/patient/intake-form",
            json={"appointmentId": quitline.id, "formData": {"cigarettesPerDay": 10},
                  "currentStep": 3, "complete": False},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["completed"] is False
        assert response.json()["message"] == "Intake form progress saved"

        response = client.post(
            "/api/v1/patient/intake-form",
            json={"appointmentId": quitline.id, "formData": {"cigarettesPerDay": 10, "quitDate": "2026-12-01"},
                  "currentStep": 5},
            headers=headers,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["completed"] is True
        completed_at = body["completedAt"]

        response = client.put(
            "/api/v1/patient/intake-form",
            json={"appointmentId": quitline.id, "formData": {"cigarettesPerDay": 5}, "complete": False},
            headers=headers,
        )
        assert response.json()["completed"] is True
        assert response.json()["completedAt"] == completed_at

    def test_not_applicable(self, client, db, people):
        appointment = make_appointment(db, people.alice, people.gp, clinic_time())

        response = client.post(
            "/api/v1/patient/intake-form",
            json={"appointmentId": appointment.id, "formData": {}},
            headers=auth_headers(people.alice.id),
        )

        assert response.status_code == 404
        assert response.json()["error"] == "intake_not_applicable"
        assert response.json()["message"] == "Appointment not found or not eligible for intake form"

    def test_other_patient_is_forbidden(self, client, people, quitline):
        response = client.get(
            f"/api/v1/patient/intake-form?appointmentId={quitline.id}",
            headers=auth_headers(people.bob.id),
        )

        assert response.status_code == 403

    def test_provider_reads_answers(self, client, db, people, quitline):
        IntakeGate(db).submit(quitline.id, {"cigarettesPerDay": 20})

        response = client.get(
            f"/api/v1/provider/intake-forms/{quitline.id}",
            headers=auth_headers(people.gp.id, "doctor"),
        )

        assert response.status_code == 200
        assert response.json()["completed"] is True
        assert response.json()["formData"] == {"cigarettesPerDay": 20}

        response = client.get(
            f"/api/v1/provider/intake-forms/{quitline.id}",
            headers=auth_headers(people.psych.id, "doctor"),
        )
        assert response.status_code == 403

    def test_patients_cannot_use_provider_view(self, client, people, quitline):
        response = client.get(
            f"/api/v1/provider/intake-forms/{quitline.id}",
            headers=auth_headers(people.alice.id),
        )

        assert response.status_code == 403
