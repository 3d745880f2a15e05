"""
Agenda del medico: vista giorno / settimana / mese e griglia slot.

Il filtro per data avviene in memoria: lo store restituisce tutti gli
appuntamenti del medico. Bucket per stringa data esatta (`YYYY-MM-DD`),
ordinamento per ora come stringa (formato fisso HH:MM[:SS]).
"""
from __future__ import annotations

import calendar
import enum
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Iterable, Sequence

import structlog

from .clock import NaiveInstant, date_key, parse_time
from .errors import ValidationError
from .store import AppointmentSnapshot, AppointmentStore, PatientSnapshot, PatientStore

logger = structlog.get_logger(__name__)


class Granularity(str, enum.Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


@dataclass(frozen=True)
class PatientDisplay:
    first_name: str
    last_name: str
    phone: str = ""
    email: str = ""

    @classmethod
    def of(cls, p: PatientSnapshot) -> "PatientDisplay":
        return cls(p.first_name, p.last_name, p.phone or "", p.email or "")


PLACEHOLDER_PATIENT = PatientDisplay(first_name="Paciente", last_name="No encontrado")


@dataclass(frozen=True)
class AppointmentView:
    appointment: AppointmentSnapshot
    patient: PatientDisplay

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.appointment.to_dict(),
            "patient": {
                "first_name": self.patient.first_name,
                "last_name": self.patient.last_name,
                "phone": self.patient.phone,
                "email": self.patient.email,
            },
        }


@dataclass(frozen=True)
class CalendarDay:
    day: date
    appointments: tuple[AppointmentView, ...]
    in_period: bool
    is_today: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "in_period": self.in_period,
            "is_today": self.is_today,
            "appointments": [v.to_dict() for v in self.appointments],
        }


@dataclass(frozen=True)
class CalendarView:
    doctor_id: str
    reference_date: date
    granularity: Granularity
    days: tuple[CalendarDay, ...]

    @property
    def start(self) -> date:
        return self.days[0].day

    @property
    def end(self) -> date:
        return self.days[-1].day

    def day(self, d: date) -> CalendarDay | None:
        return next((x for x in self.days if x.day == d), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "doctor_id": self.doctor_id,
            "reference_date": self.reference_date.isoformat(),
            "granularity": self.granularity.value,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "days": [d.to_dict() for d in self.days],
        }


# =========================
# Finestre temporali
# =========================
def _monday_of(d: date) -> date:
    return d - timedelta(days=d.weekday())


def visible_window(reference: date, granularity: Granularity) -> tuple[date, date]:
    """Estremi inclusi della finestra visibile (settimane da lunedì a domenica)."""
    if granularity is Granularity.DAY:
        return reference, reference
    if granularity is Granularity.WEEK:
        start = _monday_of(reference)
        return start, start + timedelta(days=6)

    first = reference.replace(day=1)
    last = reference.replace(day=calendar.monthrange(reference.year, reference.month)[1])
    return _monday_of(first), _monday_of(last) + timedelta(days=6)


def in_period(d: date, reference: date, granularity: Granularity) -> bool:
    if granularity is Granularity.MONTH:
        return (d.year, d.month) == (reference.year, reference.month)
    start, end = visible_window(reference, granularity)
    return start <= d <= end


def shift_reference(reference: date, granularity: Granularity, steps: int = 1) -> date:
    """Periodo precedente/successivo (navigazione avanti/indietro)."""
    if granularity is Granularity.DAY:
        return reference + timedelta(days=steps)
    if granularity is Granularity.WEEK:
        return reference + timedelta(weeks=steps)
    months = reference.year * 12 + (reference.month - 1) + steps
    year, month = divmod(months, 12)
    month += 1
    day = min(reference.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


# =========================
# Join e bucket
# =========================
def join_patients(
    appointments: Iterable[AppointmentSnapshot], patients: Iterable[PatientSnapshot]
) -> list[AppointmentView]:
    by_id = {p.id: PatientDisplay.of(p) for p in patients}
    return [AppointmentView(a, by_id.get(a.patient_id, PLACEHOLDER_PATIENT)) for a in appointments]


def bucket_by_day(views: Iterable[AppointmentView], start: date, end: date) -> dict[str, list[AppointmentView]]:
    buckets: dict[str, list[AppointmentView]] = {}
    d = start
    while d <= end:
        buckets[d.isoformat()] = []
        d += timedelta(days=1)

    for v in views:
        try:
            key = date_key(v.appointment.appointment_date)
        except ValidationError:
            logger.warning("calendar_skipped_bad_date", appointment_id=v.appointment.id)
            continue
        if key in buckets:
            buckets[key].append(v)

    for items in buckets.values():
        items.sort(key=lambda v: v.appointment.appointment_time)
    return buckets


def build_calendar(
    doctor_id: str,
    appointments: Sequence[AppointmentSnapshot],
    patients: Sequence[PatientSnapshot],
    reference: date,
    granularity: Granularity,
    today: date,
) -> CalendarView:
    start, end = visible_window(reference, granularity)
    buckets = bucket_by_day(join_patients(appointments, patients), start, end)
    days = tuple(
        CalendarDay(
            day=d,
            appointments=tuple(items),
            in_period=in_period(d, reference, granularity),
            is_today=d == today,
        )
        for d, items in ((date.fromisoformat(k), v) for k, v in buckets.items())
    )
    return CalendarView(doctor_id=doctor_id, reference_date=reference, granularity=granularity, days=days)


def load_calendar(
    appointment_store: AppointmentStore,
    patient_store: PatientStore,
    doctor_id: str,
    reference_date: date,
    granularity: Granularity | str,
    today: date | None = None,
) -> CalendarView:
    granularity = Granularity(granularity)
    appointments = appointment_store.list_for_doctor(doctor_id)
    # tutti i pazienti: il medico può vedere appuntamenti di pazienti non (ancora) suoi
    patients = patient_store.list_for_doctor(None)
    return build_calendar(
        doctor_id,
        appointments,
        patients,
        reference_date,
        granularity,
        today or date.today(),
    )


# =========================
# Slot
# =========================
@dataclass(frozen=True)
class Slot:
    start: str
    taken_by: tuple[str, ...] = ()

    @property
    def free(self) -> bool:
        return not self.taken_by

    def to_dict(self) -> dict[str, Any]:
        return {"time": self.start, "free": self.free, "taken_by": list(self.taken_by)}


def slot_grid(
    appointments: Iterable[AppointmentSnapshot],
    day: date,
    start: str = "08:00",
    end: str = "18:00",
    step_minutes: int = 30,
) -> list[Slot]:
    """
    Slot [start, end) ogni `step_minutes`. Uno slot è occupato se un
    appuntamento attivo del giorno si sovrappone (durata inclusa).
    Gli appuntamenti doppi finiscono entrambi in `taken_by`.
    """
    busy: list[tuple[datetime, datetime, str]] = []
    for a in appointments:
        if not a.is_active:
            continue
        try:
            instant = a.instant
        except ValidationError:
            continue
        if instant.day != day:
            continue
        busy.append((instant.to_datetime(), instant.plus_minutes(a.duration or 30).to_datetime(), a.id))

    cur = NaiveInstant(day, parse_time(start)).to_datetime()
    stop = NaiveInstant(day, parse_time(end)).to_datetime()
    step = timedelta(minutes=step_minutes)

    out: list[Slot] = []
    while cur < stop:
        slot_end = cur + step
        taken = tuple(aid for b_start, b_end, aid in busy if b_start < slot_end and b_end > cur)
        out.append(Slot(cur.strftime("%H:%M"), taken))
        cur = slot_end
    return out
