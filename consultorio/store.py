"""
Contratto di persistenza visto dal motore appuntamenti.

Il motore lavora solo con snapshot immutabili (`AppointmentSnapshot`,
`PatientSnapshot`) e con i protocolli qui sotto. Due implementazioni:
- in memoria (test, demo)      -> questo modulo
- SQLAlchemy (applicazione)     -> `sql_store.py`
"""
from __future__ import annotations

import threading
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Mapping, Protocol

from .clock import NaiveInstant
from .models import AppointmentStatus, NotificationType, RecipientKind

# Campi dell'appuntamento che il motore può riscrivere
APPOINTMENT_MUTABLE_FIELDS = (
    "appointment_date",
    "appointment_time",
    "status",
    "no_show_reason",
    "clinical_history",
    "notes",
    "updated_at",
)

PATIENT_PATCHABLE_FIELDS = (
    "first_name",
    "last_name",
    "phone",
    "email",
    "date_of_birth",
    "gender",
    "address",
    "document_type",
    "document_number",
    "eps",
    "marital_status",
    "occupation",
)


@dataclass(frozen=True)
class AppointmentSnapshot:
    id: str
    doctor_id: str
    patient_id: str
    appointment_date: str
    appointment_time: str
    duration: int = 30
    title: str = ""
    description: str | None = None
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    no_show_reason: str | None = None
    clinical_history: str | None = None
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def instant(self) -> NaiveInstant:
        return NaiveInstant.parse(self.appointment_date, self.appointment_time)

    @property
    def is_active(self) -> bool:
        return self.status in (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["status"] = self.status.value
        for k in ("created_at", "updated_at"):
            out[k] = out[k].isoformat() if out[k] else None
        return out


@dataclass(frozen=True)
class PatientSnapshot:
    id: str
    first_name: str
    last_name: str
    doctor_id: str | None = None
    phone: str | None = None
    email: str | None = None
    date_of_birth: str | None = None
    gender: str | None = None
    address: str | None = None
    document_type: str | None = None
    document_number: str | None = None
    eps: str | None = None
    marital_status: str | None = None
    occupation: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DoctorSnapshot:
    id: str
    full_name: str
    email: str
    specialty: str | None = None
    phone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NotificationSnapshot:
    id: str
    user_id: str
    user_type: RecipientKind
    title: str
    message: str
    type: NotificationType = NotificationType.INFO
    is_read: bool = False
    appointment_id: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["user_type"] = self.user_type.value
        out["type"] = self.type.value
        out["created_at"] = self.created_at.isoformat() if self.created_at else None
        return out


# =========================
# Protocolli
# =========================
class AppointmentStore(Protocol):
    def get(self, appointment_id: str) -> AppointmentSnapshot | None: ...

    def list_for_doctor(self, doctor_id: str | None = None) -> list[AppointmentSnapshot]: ...

    def list_for_patient(self, patient_id: str) -> list[AppointmentSnapshot]: ...

    def add(self, appointment: AppointmentSnapshot) -> AppointmentSnapshot: ...

    def replace_if_status(
        self, appointment: AppointmentSnapshot, expected_status: AppointmentStatus
    ) -> AppointmentSnapshot | None:
        """
        Aggiornamento atomico a riga singola: scrive i campi mutabili solo se
        lo stato corrente è ancora `expected_status`. None se nessuna riga toccata.
        """
        ...


class PatientStore(Protocol):
    def get(self, patient_id: str) -> PatientSnapshot | None: ...

    def list_for_doctor(self, doctor_id: str | None = None) -> list[PatientSnapshot]: ...

    def find_by_email(self, email: str) -> PatientSnapshot | None: ...

    def add(self, patient: PatientSnapshot) -> PatientSnapshot: ...

    def patch(self, patient_id: str, fields: Mapping[str, Any]) -> PatientSnapshot | None: ...


class DoctorStore(Protocol):
    def get(self, doctor_id: str) -> DoctorSnapshot | None: ...

    def list_active(self) -> list[DoctorSnapshot]: ...


class NotificationStore(Protocol):
    def create(
        self,
        recipient_id: str,
        recipient_kind: RecipientKind,
        title: str,
        message: str,
        severity: NotificationType = NotificationType.INFO,
        appointment_id: str | None = None,
    ) -> str: ...

    def list_for(self, recipient_id: str, recipient_kind: RecipientKind, limit: int = 50) -> list[NotificationSnapshot]: ...

    def mark_read(self, notification_id: str) -> bool: ...

    def delete(self, notification_id: str) -> bool: ...


def new_id() -> str:
    return str(uuid.uuid4())


# =========================
# Implementazioni in memoria
# =========================
class InMemoryAppointmentStore:
    """Un lock per store: `replace_if_status` è atomico come un UPDATE ... WHERE status = ?."""

    def __init__(self, appointments: Iterable[AppointmentSnapshot] = ()) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, AppointmentSnapshot] = {a.id: a for a in appointments}

    def get(self, appointment_id: str) -> AppointmentSnapshot | None:
        with self._lock:
            return self._rows.get(appointment_id)

    def list_for_doctor(self, doctor_id: str | None = None) -> list[AppointmentSnapshot]:
        with self._lock:
            return [a for a in self._rows.values() if doctor_id is None or a.doctor_id == doctor_id]

    def list_for_patient(self, patient_id: str) -> list[AppointmentSnapshot]:
        with self._lock:
            return [a for a in self._rows.values() if a.patient_id == patient_id]

    def add(self, appointment: AppointmentSnapshot) -> AppointmentSnapshot:
        with self._lock:
            now = datetime.now()
            row = replace(
                appointment,
                id=appointment.id or new_id(),
                created_at=appointment.created_at or now,
                updated_at=appointment.updated_at or now,
            )
            self._rows[row.id] = row
            return row

    def replace_if_status(
        self, appointment: AppointmentSnapshot, expected_status: AppointmentStatus
    ) -> AppointmentSnapshot | None:
        with self._lock:
            current = self._rows.get(appointment.id)
            if current is None or current.status != expected_status:
                return None
            row = replace(current, **{k: getattr(appointment, k) for k in APPOINTMENT_MUTABLE_FIELDS})
            self._rows[row.id] = row
            return row


class InMemoryPatientStore:
    def __init__(self, patients: Iterable[PatientSnapshot] = ()) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, PatientSnapshot] = {p.id: p for p in patients}

    def get(self, patient_id: str) -> PatientSnapshot | None:
        with self._lock:
            return self._rows.get(patient_id)

    def list_for_doctor(self, doctor_id: str | None = None) -> list[PatientSnapshot]:
        with self._lock:
            rows = [p for p in self._rows.values() if doctor_id is None or p.doctor_id == doctor_id]
        return sorted(rows, key=lambda p: (p.last_name, p.first_name))

    def find_by_email(self, email: str) -> PatientSnapshot | None:
        wanted = email.strip().lower()
        with self._lock:
            return next((p for p in self._rows.values() if (p.email or "").lower() == wanted), None)

    def add(self, patient: PatientSnapshot) -> PatientSnapshot:
        with self._lock:
            row = replace(patient, id=patient.id or new_id())
            self._rows[row.id] = row
            return row

    def patch(self, patient_id: str, fields: Mapping[str, Any]) -> PatientSnapshot | None:
        with self._lock:
            current = self._rows.get(patient_id)
            if current is None:
                return None
            clean = {k: v for k, v in fields.items() if k in PATIENT_PATCHABLE_FIELDS}
            row = replace(current, **clean)
            self._rows[row.id] = row
            return row


class InMemoryDoctorStore:
    def __init__(self, doctors: Iterable[DoctorSnapshot] = ()) -> None:
        self._rows: dict[str, DoctorSnapshot] = {d.id: d for d in doctors}

    def get(self, doctor_id: str) -> DoctorSnapshot | None:
        return self._rows.get(doctor_id)

    def list_active(self) -> list[DoctorSnapshot]:
        return sorted(self._rows.values(), key=lambda d: d.full_name)


@dataclass
class InMemoryNotificationStore:
    rows: dict[str, NotificationSnapshot] = field(default_factory=dict)

    def create(
        self,
        recipient_id: str,
        recipient_kind: RecipientKind,
        title: str,
        message: str,
        severity: NotificationType = NotificationType.INFO,
        appointment_id: str | None = None,
    ) -> str:
        n = NotificationSnapshot(
            id=new_id(),
            user_id=recipient_id,
            user_type=RecipientKind(recipient_kind),
            title=title,
            message=message,
            type=NotificationType(severity),
            appointment_id=appointment_id,
            created_at=datetime.now(),
        )
        self.rows[n.id] = n
        return n.id

    def list_for(self, recipient_id: str, recipient_kind: RecipientKind, limit: int = 50) -> list[NotificationSnapshot]:
        rows = [n for n in self.rows.values() if n.user_id == recipient_id and n.user_type == recipient_kind]
        rows.sort(key=lambda n: n.created_at or datetime.min, reverse=True)
        return rows[:limit]

    def mark_read(self, notification_id: str) -> bool:
        n = self.rows.get(notification_id)
        if n is None:
            return False
        self.rows[notification_id] = replace(n, is_read=True)
        return True

    def delete(self, notification_id: str) -> bool:
        return self.rows.pop(notification_id, None) is not None
