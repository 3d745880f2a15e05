import json

import pytest

from conftest import NOW, PATIENT, FakeMailer, make_appointment
from consultorio.dispatcher import CreateNotification, PatchPatient, PersistAppointment, SendEmail
from consultorio.errors import DownstreamFailure, InvalidTransition, NotFound, ValidationError
from consultorio.models import AppointmentStatus, RecipientKind
from consultorio.store import InMemoryAppointmentStore, InMemoryPatientStore
from consultorio.transitions import AppointmentUpdate, can_transition, plan_transition

S = AppointmentStatus
TERMINAL = [S.COMPLETED, S.CANCELLED, S.NO_SHOW]


class CountingAppointmentStore(InMemoryAppointmentStore):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = 0

    def get(self, appointment_id):
        self.calls += 1
        return super().get(appointment_id)

    def replace_if_status(self, appointment, expected_status):
        self.calls += 1
        return super().replace_if_status(appointment, expected_status)


class BrokenPatchStore(InMemoryPatientStore):
    def patch(self, patient_id, fields):
        raise RuntimeError("patients table locked")


def test_allowed_transitions_table():
    assert can_transition(S.SCHEDULED, S.CONFIRMED)
    assert can_transition(S.SCHEDULED, S.NO_SHOW)
    assert can_transition(S.CONFIRMED, S.COMPLETED)
    assert not can_transition(S.CONFIRMED, S.SCHEDULED)
    for t in TERMINAL:
        assert not any(can_transition(t, other) for other in S)


def test_confirm_persists_and_notifies_patient(svc, notifications, mailer):
    res = svc.apply_transition("app-1", {"status": "confirmed"})

    assert res.appointment.status is S.CONFIRMED
    assert res.previous_status is S.SCHEDULED
    assert svc.get_appointment("app-1").status is S.CONFIRMED
    assert res.appointment.updated_at == NOW

    kinds = [o.instruction.kind for o in res.report.outcomes]
    assert kinds == ["persist_appointment", "create_notification", "send_email"]

    rows = notifications.list_for(PATIENT.id, RecipientKind.PATIENT)
    assert len(rows) == 1
    assert rows[0].title == "Appointment confirmed"
    assert mailer.sent[0][0] == "appointment_confirmation"
    assert mailer.sent[0][1]["patientEmail"] == PATIENT.email


def test_backwards_transition_rejected(svc, appointments):
    appointments.add(make_appointment(id="app-2", status=S.CONFIRMED))

    with pytest.raises(InvalidTransition):
        svc.apply_transition("app-2", {"status": "scheduled"})

    assert svc.get_appointment("app-2").status is S.CONFIRMED


@pytest.mark.parametrize("current", TERMINAL)
@pytest.mark.parametrize("target", list(S))
def test_terminal_status_has_no_exit(svc, appointments, notifications, current, target):
    appointments.add(make_appointment(id="closed", status=current))

    with pytest.raises(InvalidTransition):
        svc.apply_transition("closed", {"status": target.value})

    assert svc.get_appointment("closed").status is current
    assert notifications.rows == {}


def test_terminal_appointment_rejects_reschedule(svc, appointments):
    appointments.add(make_appointment(id="closed", status=S.CANCELLED))

    with pytest.raises(InvalidTransition):
        svc.apply_transition("closed", {"appointment_date": "2025-03-12"})


def test_clinical_history_can_be_attached_after_completion(svc, appointments, notifications):
    appointments.add(make_appointment(id="done", status=S.COMPLETED))
    history = {"motivo": "control", "diagnostico": "HTA", "plan": ["losartán 50mg"]}

    res = svc.apply_transition("done", {"clinical_history": history, "notes": "estable"})

    assert res.appointment.status is S.COMPLETED
    assert json.loads(res.appointment.clinical_history) == history
    assert res.appointment.notes == "estable"
    assert notifications.rows == {}


def test_empty_update_is_rejected_before_store_access(patients, notifications, mailer):
    from consultorio.services import Consultorio
    from consultorio.store import InMemoryDoctorStore

    store = CountingAppointmentStore([make_appointment()])
    svc = Consultorio(store, patients, InMemoryDoctorStore(), notifications, mailer, clock=lambda: NOW)

    with pytest.raises(ValidationError):
        svc.apply_transition("app-1", {})
    with pytest.raises(ValidationError):
        svc.apply_transition("app-1", {"unknown_field": 1})

    assert store.calls == 0


def test_patient_data_alone_is_not_an_update(svc):
    with pytest.raises(ValidationError):
        svc.apply_transition("app-1", {"patientData": {"phone": "555"}})


def test_unknown_status_value(svc):
    with pytest.raises(ValidationError) as exc:
        svc.apply_transition("app-1", {"status": "done"})
    assert exc.value.details["field"] == "status"


@pytest.mark.parametrize("changes", [{"appointment_date": "15/01/2024"}, {"appointment_time": "25:00"}])
def test_malformed_date_or_time(svc, changes):
    with pytest.raises(ValidationError):
        svc.apply_transition("app-1", changes)


def test_unknown_appointment(svc):
    with pytest.raises(NotFound):
        svc.apply_transition("missing", {"status": "confirmed"})


def test_complete_with_patient_correction(svc, patients):
    res = svc.apply_transition("app-1", {"status": "completed", "patientData": {"phone": "555"}})

    assert res.appointment.status is S.COMPLETED
    patch = next(i for i in res.instructions if isinstance(i, PatchPatient))
    assert patch.patient_id == PATIENT.id
    assert patch.fields == {"phone": "555"}
    assert patients.get(PATIENT.id).phone == "555"
    assert not res.report.failures


def test_failed_patient_patch_does_not_fail_transition(appointments, notifications, mailer):
    from consultorio.services import Consultorio
    from consultorio.store import InMemoryDoctorStore

    patients = BrokenPatchStore([PATIENT])
    svc = Consultorio(appointments, patients, InMemoryDoctorStore(), notifications, mailer, clock=lambda: NOW)

    res = svc.apply_transition("app-1", {"status": "completed", "patientData": {"phone": "555"}})

    assert res.appointment.status is S.COMPLETED
    assert svc.get_appointment("app-1").status is S.COMPLETED
    assert [f.instruction.kind for f in res.report.failures] == ["patch_patient"]
    assert res.to_dict()["success"] is True
    assert patients.get(PATIENT.id).phone is None


def test_empty_patient_fields_are_ignored(svc, patients):
    svc.apply_transition(
        "app-1",
        {"status": "completed", "patientData": {"phone": "", "address": "Calle 10 #5-20", "email": None}},
    )

    p = patients.get(PATIENT.id)
    assert p.address == "Calle 10 #5-20"
    assert p.email == PATIENT.email


def test_patient_data_ignored_unless_completing(svc, patients):
    res = svc.apply_transition("app-1", {"status": "confirmed", "patientData": {"phone": "555"}})

    assert not any(isinstance(i, PatchPatient) for i in res.instructions)
    assert patients.get(PATIENT.id).phone is None


def test_no_show_keeps_reason(svc):
    res = svc.apply_transition("app-1", {"status": "no_show", "no_show_reason": "sin transporte"})

    assert res.appointment.status is S.NO_SHOW
    assert res.appointment.no_show_reason == "sin transporte"


def test_email_failure_after_persist_is_downstream_failure(appointments, patients, notifications):
    from consultorio.services import Consultorio
    from consultorio.store import InMemoryDoctorStore

    svc = Consultorio(appointments, patients, InMemoryDoctorStore(), notifications, FakeMailer(fail=True), clock=lambda: NOW)

    with pytest.raises(DownstreamFailure):
        svc.apply_transition("app-1", {"status": "cancelled"})

    # la scrittura è già avvenuta: nessun rollback
    assert appointments.get("app-1").status is S.CANCELLED


def test_reschedule_confirmed_appointment(svc, appointments, notifications):
    appointments.add(make_appointment(id="app-2", status=S.CONFIRMED))

    res = svc.apply_transition(
        "app-2", {"status": "confirmed", "appointment_date": "2025-03-12", "appointment_time": "11:30"}
    )

    assert res.appointment.status is S.CONFIRMED
    assert res.appointment.appointment_date == "2025-03-12"
    assert res.appointment.appointment_time == "11:30"
    titles = [n.title for n in notifications.rows.values()]
    assert titles == ["Appointment rescheduled"]


def test_plan_is_pure_and_ordered():
    current = make_appointment()
    update = AppointmentUpdate.parse({"status": "completed", "patientData": {"phone": "555"}})

    plan = plan_transition(current, update, now=NOW, patient=PATIENT)

    assert [type(i) for i in plan.instructions] == [PersistAppointment, PatchPatient, CreateNotification]
    assert plan.instructions[0].expected_status is S.SCHEDULED
    assert plan.status_changed
    assert current.status is S.SCHEDULED


def test_cancel_plan_sends_email_only_with_address():
    current = make_appointment()
    update = AppointmentUpdate.parse({"status": "cancelled"})

    with_email = plan_transition(current, update, now=NOW, patient=PATIENT)
    without = plan_transition(current, update, now=NOW, patient=None)

    assert any(isinstance(i, SendEmail) for i in with_email.instructions)
    assert not any(isinstance(i, SendEmail) for i in without.instructions)


def test_bad_patient_date_is_a_recorded_patch_failure(svc, patients):
    res = svc.apply_transition(
        "app-1", {"status": "completed", "patientData": {"phone": "555", "date_of_birth": "01/02/1990"}}
    )

    assert res.appointment.status is S.COMPLETED
    assert svc.get_appointment("app-1").status is S.COMPLETED
    (failure,) = res.report.failures
    assert failure.instruction.kind == "patch_patient"
    assert "01/02/1990" in failure.error
    assert patients.get(PATIENT.id).phone is None


def test_bad_gender_is_a_recorded_patch_failure(svc, patients):
    res = svc.apply_transition("app-1", {"status": "completed", "patientData": {"gender": "M"}})

    assert res.appointment.status is S.COMPLETED
    assert [f.instruction.kind for f in res.report.failures] == ["patch_patient"]
    assert patients.get(PATIENT.id).gender is None


def test_patient_dates_are_normalized_when_patching(svc, patients):
    svc.apply_transition(
        "app-1", {"status": "completed", "patientData": {"date_of_birth": "1990-02-01T00:00:00", "gender": "female"}}
    )

    p = patients.get(PATIENT.id)
    assert p.date_of_birth == "1990-02-01"
    assert p.gender == "female"


@pytest.mark.parametrize("bundle", [{"gender": "M"}, {"date_of_birth": "01/02/1990"}, "not-an-object", ["phone"]])
def test_bad_patient_bundle_ignored_when_not_completing(svc, bundle):
    res = svc.apply_transition("app-1", {"status": "confirmed", "patientData": bundle})

    assert res.appointment.status is S.CONFIRMED
    assert not any(isinstance(i, PatchPatient) for i in res.instructions)


@pytest.mark.parametrize("history", [[{"motivo": "control"}, {"motivo": "dolor"}], "texto libre", 42, False])
def test_clinical_history_accepts_any_json_value(svc, appointments, history):
    appointments.add(make_appointment(id="done", status=S.COMPLETED))

    res = svc.apply_transition("done", {"clinical_history": history})

    assert json.loads(res.appointment.clinical_history) == history


class UnreachablePatientStore(InMemoryPatientStore):
    def get(self, patient_id):
        raise ConnectionError("patients db unreachable")


def test_patient_store_outage_fails_the_transition(appointments, notifications, mailer):
    from consultorio.services import Consultorio
    from consultorio.store import InMemoryDoctorStore

    svc = Consultorio(
        appointments, UnreachablePatientStore([PATIENT]), InMemoryDoctorStore(), notifications, mailer,
        clock=lambda: NOW,
    )

    with pytest.raises(DownstreamFailure):
        svc.apply_transition("app-1", {"status": "confirmed"})

    assert appointments.get("app-1").status is S.SCHEDULED
    assert mailer.sent == []


def test_dangling_patient_reference_still_transitions(svc, appointments, mailer):
    appointments.add(make_appointment(id="orphan", patient_id="ghost"))

    res = svc.apply_transition("orphan", {"status": "confirmed"})

    assert res.appointment.status is S.CONFIRMED
    assert not any(isinstance(i, SendEmail) for i in res.instructions)
    assert mailer.sent == []
