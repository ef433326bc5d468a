import json
import os
from datetime import datetime, time, timedelta
from types import SimpleNamespace

import httpx
import pytest

# Set testing environment before the application is imported
os.environ["TESTING"] = "1"
os.environ["TEST_DATABASE_URL"] = "sqlite:///./test.db"

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from clinicbook.main import app
from clinicbook.core.business import clinic_tz, tariff_for
from clinicbook.core.database import Base, get_db, redis_client
from clinicbook.core.security import create_access_token
from clinicbook.models import Appointment, AppointmentStatus, Doctor, Patient, ServiceType
from clinicbook.services.payment import PaymentGateway, get_payment_gateway

# Create test database
SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


class GatewayStub:
    """Stands in for the hosted payment provider behind httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.headers = []
        self.status_code = 200
        self.body = None
        self.error = None
        # Called with each request payload before the response is built
        self.on_request = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(payload)
        self.headers.append(request.headers)
        if self.on_request is not None:
            self.on_request(payload)
        if self.error is not None:
            raise self.error
        body = self.body or {
            "status": "success",
            "payment_url": f"https://pay.example.test/checkout/{payload['order_id']}",
            "transaction_id": f"TXN-{len(self.requests)}",
        }
        return httpx.Response(self.status_code, json=body)

    def fail_with(self, status_code: int, message: str = "Gateway error"):
        self.status_code = status_code
        self.body = {"status": "error", "message": message}

    def recover(self):
        self.status_code = 200
        self.body = None
        self.error = None


@pytest.fixture(scope="function")
def db():
    # Create tables
    Base.metadata.create_all(bind=engine)
    redis_client.flushall()
    session = TestingSessionLocal()
    yield session
    session.close()
    # Drop tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub):
    gateway = PaymentGateway(
        base_url="https://gateway.example.test/api/v2",
        personal_access_token="test-pat",
        api_secret="test-secret",
        portal_key="test-portal",
        return_url="http://localhost:3000/patient/payment/return",
        callback_url="http://testserver/api/v1/payment/callback",
        timeout=5.0,
        transport=httpx.MockTransport(gateway_stub.handler),
    )
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield gateway
    app.dependency_overrides.pop(get_payment_gateway, None)


@pytest.fixture
def client(db, gateway):
    return TestClient(app)


@pytest.fixture
def people(db):
    """Two patients, two bookable doctors and one doctor on leave."""
    alice = Patient(first_name="Alice", last_name="Tan", email="alice@example.com", phone_number="0123456789")
    bob = Patient(first_name="Bob", last_name="Lim", email="bob@example.com")
    gp = Doctor(first_name="Sara", last_name="Ong", specialization="General Practice")
    psych = Doctor(first_name="Hadi", last_name="Karim", specialization="Psychiatry")
    away = Doctor(first_name="Mei", last_name="Wong", specialization="Dermatology", is_available=False)
    db.add_all([alice, bob, gp, psych, away])
    db.commit()
    for record in (alice, bob, gp, psych, away):
        db.refresh(record)
    return SimpleNamespace(alice=alice, bob=bob, gp=gp, psych=psych, away=away)


def auth_headers(user_id, role="patient"):
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


def clinic_time(days_ahead=2, hour=10, minute=0):
    """An aware datetime on a clinic-local wall clock, days from today."""
    tz = clinic_tz()
    day = datetime.now(tz).date() + timedelta(days=days_ahead)
    return datetime.combine(day, time(hour, minute), tzinfo=tz)


def make_appointment(db, patient, provider, start, duration=30,
                     status=AppointmentStatus.SCHEDULED, type=ServiceType.CONSULTATION):
    tariff = tariff_for(type.value)
    appointment = Appointment(
        patient_id=patient.id,
        provider_id=provider.id,
        start_time=start,
        duration_minutes=duration,
        type=type,
        status=status,
        service_name=tariff.service_name,
        price=tariff.price,
    )
    db.add(appointment)
    db.commit()
    db.refresh(appointment)
    return appointment
