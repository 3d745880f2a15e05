import os

# DB in memoria e mailer in modalità demo: da impostare prima di importare il pacchetto
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SMTP_USER"] = ""
os.environ["SMTP_PASS"] = ""

from datetime import datetime
from typing import Any

import pytest
from fastapi.testclient import TestClient

from consultorio.api_main import app, get_consultorio
from consultorio.db import Base, engine
from consultorio.mailer import SendResult, render
from consultorio.models import AppointmentStatus
from consultorio.seed import DEMO_PASSWORD, DEMO_USERNAME, seed_base
from consultorio.services import Consultorio, init_db
from consultorio.store import (
    AppointmentSnapshot,
    DoctorSnapshot,
    InMemoryAppointmentStore,
    InMemoryDoctorStore,
    InMemoryNotificationStore,
    InMemoryPatientStore,
    PatientSnapshot,
)

NOW = datetime(2025, 3, 10, 9, 0)  # lunedì

DOCTOR = DoctorSnapshot(id="doc-1", full_name="Dra. Ana García", email="ana@test.local", specialty="Medicina General")
PATIENT = PatientSnapshot(id="pat-1", first_name="María", last_name="López", email="maria@test.local", doctor_id="doc-1")


class FakeMailer:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, dict[str, Any]]] = []

    def send(self, template_name: str, variables: dict[str, Any]) -> SendResult:
        if self.fail:
            return SendResult(False, error="smtp down")
        render(template_name, variables)
        self.sent.append((template_name, variables))
        return SendResult(True, message_id=f"fake-{len(self.sent)}")


def make_appointment(**kw: Any) -> AppointmentSnapshot:
    base: dict[str, Any] = dict(
        id="app-1",
        doctor_id=DOCTOR.id,
        patient_id=PATIENT.id,
        appointment_date="2025-03-10",
        appointment_time="10:00:00",
        title="Consulta general",
        status=AppointmentStatus.SCHEDULED,
    )
    base.update(kw)
    return AppointmentSnapshot(**base)


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def appointments():
    return InMemoryAppointmentStore([make_appointment()])


@pytest.fixture
def patients():
    return InMemoryPatientStore([PATIENT])


@pytest.fixture
def notifications():
    return InMemoryNotificationStore()


@pytest.fixture
def svc(appointments, patients, notifications, mailer):
    return Consultorio(
        appointments=appointments,
        patients=patients,
        doctors=InMemoryDoctorStore([DOCTOR]),
        notifications=notifications,
        mailer=mailer,
        clock=lambda: NOW,
    )


@pytest.fixture
def sql_db():
    # tabelle ricreate per ogni test (engine globale su SQLite in memoria)
    Base.metadata.drop_all(bind=engine)
    init_db()
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def api_mailer():
    return FakeMailer()


@pytest.fixture
def client(sql_db, api_mailer):
    seed_base()
    app.dependency_overrides[get_consultorio] = lambda: Consultorio.from_database(mailer=api_mailer)
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(client):
    r = client.post("/api/auth/login", data={"username": DEMO_USERNAME, "password": DEMO_PASSWORD})
    assert r.status_code == 200, r.text
    return {"Authorization": f"Bearer {r.json()['access_token']}"}
