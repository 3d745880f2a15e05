from datetime import date

import pytest

from conftest import PATIENT, make_appointment
from consultorio.agenda import (
    PLACEHOLDER_PATIENT,
    Granularity,
    build_calendar,
    in_period,
    load_calendar,
    shift_reference,
    slot_grid,
    visible_window,
)
from consultorio.models import AppointmentStatus
from consultorio.store import InMemoryAppointmentStore, InMemoryPatientStore, PatientSnapshot

G = Granularity

SEPTEMBER = [
    make_appointment(id="c", appointment_date="2025-09-17", appointment_time="08:00:00"),
    make_appointment(id="b2", appointment_date="2025-09-08", appointment_time="16:30:00"),
    make_appointment(id="a", appointment_date="2025-09-05", appointment_time="12:00:00"),
    make_appointment(id="b1", appointment_date="2025-09-08", appointment_time="09:00:00"),
]


@pytest.mark.parametrize(
    "reference, granularity, expected",
    [
        (date(2025, 9, 10), G.DAY, (date(2025, 9, 10), date(2025, 9, 10))),
        (date(2025, 9, 10), G.WEEK, (date(2025, 9, 8), date(2025, 9, 14))),
        (date(2025, 9, 14), G.WEEK, (date(2025, 9, 8), date(2025, 9, 14))),
        (date(2025, 9, 10), G.MONTH, (date(2025, 9, 1), date(2025, 10, 5))),
        (date(2025, 2, 10), G.MONTH, (date(2025, 1, 27), date(2025, 3, 2))),
    ],
)
def test_visible_window(reference, granularity, expected):
    assert visible_window(reference, granularity) == expected


def test_month_padding_days_are_out_of_period():
    assert in_period(date(2025, 9, 30), date(2025, 9, 10), G.MONTH)
    assert not in_period(date(2025, 10, 1), date(2025, 9, 10), G.MONTH)


@pytest.mark.parametrize(
    "reference, granularity, steps, expected",
    [
        (date(2025, 9, 10), G.DAY, -1, date(2025, 9, 9)),
        (date(2025, 9, 10), G.WEEK, 1, date(2025, 9, 17)),
        (date(2025, 1, 31), G.MONTH, 1, date(2025, 2, 28)),
        (date(2025, 1, 15), G.MONTH, -1, date(2024, 12, 15)),
    ],
)
def test_shift_reference(reference, granularity, steps, expected):
    assert shift_reference(reference, granularity, steps) == expected


def test_month_calendar_orders_days_and_times():
    view = build_calendar("doc-1", SEPTEMBER, [PATIENT], date(2025, 9, 10), G.MONTH, today=date(2025, 9, 8))

    flat = [v.appointment.id for d in view.days for v in d.appointments]
    assert flat == ["a", "b1", "b2", "c"]
    assert view.day(date(2025, 9, 8)).is_today
    assert not view.day(date(2025, 9, 9)).is_today
    assert view.start == date(2025, 9, 1)
    assert view.end == date(2025, 10, 5)


def test_bucketing_is_a_partition():
    extra = [
        make_appointment(id="cancelled", appointment_date="2025-09-08", appointment_time="07:00:00",
                         status=AppointmentStatus.CANCELLED),
        make_appointment(id="outside", appointment_date="2025-11-01"),
    ]
    view = build_calendar("doc-1", SEPTEMBER + extra, [PATIENT], date(2025, 9, 10), G.MONTH, today=date(2025, 9, 1))

    seen = [v.appointment.id for d in view.days for v in d.appointments]
    assert sorted(seen) == ["a", "b1", "b2", "c", "cancelled"]
    assert len(seen) == len(set(seen))
    for d in view.days:
        times = [v.appointment.appointment_time for v in d.appointments]
        assert times == sorted(times)
        assert all(v.appointment.appointment_date == d.day.isoformat() for v in d.appointments)


def test_week_view_keeps_only_window():
    view = build_calendar("doc-1", SEPTEMBER, [PATIENT], date(2025, 9, 10), G.WEEK, today=date(2025, 9, 10))

    assert len(view.days) == 7
    assert [v.appointment.id for d in view.days for v in d.appointments] == ["b1", "b2"]
    assert all(d.in_period for d in view.days)


def test_missing_patient_gets_placeholder():
    orphan = make_appointment(id="orphan", patient_id="ghost", appointment_date="2025-09-10")

    view = build_calendar("doc-1", [orphan], [PATIENT], date(2025, 9, 10), G.DAY, today=date(2025, 9, 10))

    (entry,) = view.days[0].appointments
    assert entry.patient == PLACEHOLDER_PATIENT
    assert entry.to_dict()["patient"]["first_name"] == "Paciente"
    assert entry.to_dict()["patient"]["last_name"] == "No encontrado"


def test_load_calendar_joins_patients_of_other_doctors():
    other = PatientSnapshot(id="pat-9", first_name="Juan", last_name="Pérez", doctor_id="doc-2")
    store = InMemoryAppointmentStore(
        [
            make_appointment(id="mine", patient_id="pat-9", appointment_date="2025-09-10"),
            make_appointment(id="not-mine", doctor_id="doc-2", appointment_date="2025-09-10"),
        ]
    )

    view = load_calendar(store, InMemoryPatientStore([PATIENT, other]), "doc-1", date(2025, 9, 10), "day",
                         today=date(2025, 9, 10))

    (entry,) = view.days[0].appointments
    assert entry.appointment.id == "mine"
    assert entry.patient.last_name == "Pérez"
    assert view.to_dict()["granularity"] == "day"


def test_unparseable_date_is_dropped_from_calendar():
    broken = make_appointment(id="broken", appointment_date="not-a-date")
    view = build_calendar("doc-1", [broken] + SEPTEMBER, [PATIENT], date(2025, 9, 10), G.MONTH, today=date(2025, 9, 1))

    assert "broken" not in [v.appointment.id for d in view.days for v in d.appointments]


def test_slot_grid_marks_overlaps():
    day = date(2025, 9, 8)
    rows = [
        make_appointment(id="x", appointment_date="2025-09-08", appointment_time="09:00:00", duration=45),
        make_appointment(id="y", appointment_date="2025-09-08", appointment_time="09:00:00"),
        make_appointment(id="gone", appointment_date="2025-09-08", appointment_time="11:00:00",
                         status=AppointmentStatus.CANCELLED),
    ]

    slots = {s.start: s for s in slot_grid(rows, day, start="08:30", end="12:00", step_minutes=30)}

    assert list(slots) == ["08:30", "09:00", "09:30", "10:00", "10:30", "11:00", "11:30"]
    assert slots["08:30"].free
    assert slots["09:00"].taken_by == ("x", "y")
    assert slots["09:30"].taken_by == ("x",)
    assert slots["10:00"].free
    assert slots["11:00"].free
