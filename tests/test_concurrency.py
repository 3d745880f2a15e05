import threading
from dataclasses import replace

import pytest

from conftest import DOCTOR, NOW, PATIENT, FakeMailer, make_appointment
from consultorio.db import SessionLocal, db_session
from consultorio.dispatcher import PersistAppointment
from consultorio.errors import ConflictError, InvalidTransition
from consultorio.models import AppointmentStatus, Doctor, Patient
from consultorio.services import Consultorio
from consultorio.store import (
    InMemoryAppointmentStore,
    InMemoryDoctorStore,
    InMemoryNotificationStore,
    InMemoryPatientStore,
)
from consultorio.sql_store import SqlAppointmentStore


class RacingStore(InMemoryAppointmentStore):
    """Entrambi i thread leggono lo stato prima che uno dei due scriva."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.barrier = threading.Barrier(2, timeout=5)
        self.first_reads = 0

    def get(self, appointment_id):
        row = super().get(appointment_id)
        with self._lock:
            self.first_reads += 1
            wait = self.first_reads <= 2
        if wait:
            self.barrier.wait()
        return row


def _race(svc, appointment_id):
    outcomes = {}

    def run(target):
        try:
            outcomes[target] = svc.apply_transition(appointment_id, {"status": target})
        except (ConflictError, InvalidTransition) as e:
            outcomes[target] = e

    threads = [threading.Thread(target=run, args=(t,)) for t in ("cancelled", "completed")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)
    return outcomes


def test_concurrent_transitions_in_memory():
    store = RacingStore([make_appointment()])
    svc = Consultorio(
        store,
        InMemoryPatientStore([PATIENT]),
        InMemoryDoctorStore([DOCTOR]),
        InMemoryNotificationStore(),
        FakeMailer(),
        clock=lambda: NOW,
    )

    outcomes = _race(svc, "app-1")

    errors = [o for o in outcomes.values() if isinstance(o, Exception)]
    winners = [t for t, o in outcomes.items() if not isinstance(o, Exception)]
    assert len(outcomes) == 2
    assert len(winners) == 1
    assert len(errors) == 1
    assert isinstance(errors[0], ConflictError)
    assert store.get("app-1").status.value == winners[0]


def test_conditional_update_in_sql(sql_db):
    with db_session() as s:
        s.add(Doctor(id=DOCTOR.id, full_name=DOCTOR.full_name, email=DOCTOR.email))
        s.add(Patient(id=PATIENT.id, first_name=PATIENT.first_name, last_name=PATIENT.last_name))

    store = SqlAppointmentStore(SessionLocal)
    saved = store.add(make_appointment(id=""))
    cancelled = replace(saved, status=AppointmentStatus.CANCELLED)
    completed = replace(saved, status=AppointmentStatus.COMPLETED)

    # entrambi hanno letto "scheduled": solo il primo UPDATE trova la riga
    assert store.replace_if_status(cancelled, AppointmentStatus.SCHEDULED).status is AppointmentStatus.CANCELLED
    assert store.replace_if_status(completed, AppointmentStatus.SCHEDULED) is None
    assert store.get(saved.id).status is AppointmentStatus.CANCELLED


def test_lost_race_in_sql_surfaces_conflict(sql_db):
    with db_session() as s:
        s.add(Doctor(id=DOCTOR.id, full_name=DOCTOR.full_name, email=DOCTOR.email))
        s.add(Patient(id=PATIENT.id, first_name=PATIENT.first_name, last_name=PATIENT.last_name))

    svc = Consultorio.from_database(mailer=FakeMailer())
    saved = svc.appointments.add(make_appointment(id=""))

    stale = svc.appointments.get(saved.id)
    svc.apply_transition(saved.id, {"status": "cancelled"})

    with pytest.raises(ConflictError):
        svc.dispatcher.execute([PersistAppointment(replace(stale, status=AppointmentStatus.COMPLETED), stale.status)])
    assert svc.get_appointment(saved.id).status is AppointmentStatus.CANCELLED
