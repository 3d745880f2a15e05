"""
Implementazione SQLAlchemy dei protocolli di `store.py`.

Ogni metodo apre la propria sessione (`db_session`) e ritorna snapshot
staccati dall'ORM: niente lazy-load né DetachedInstanceError fuori da qui.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import sessionmaker

from .clock import parse_date, parse_time
from .db import db_session
from .models import (
    Appointment,
    AppointmentStatus,
    Doctor,
    Gender,
    Notification,
    NotificationType,
    Patient,
    RecipientKind,
)
from .store import (
    APPOINTMENT_MUTABLE_FIELDS,
    PATIENT_PATCHABLE_FIELDS,
    AppointmentSnapshot,
    DoctorSnapshot,
    NotificationSnapshot,
    PatientSnapshot,
)


# =========================
# Conversioni ORM <-> snapshot
# =========================
def _appointment_snapshot(a: Appointment) -> AppointmentSnapshot:
    return AppointmentSnapshot(
        id=a.id,
        doctor_id=a.doctor_id,
        patient_id=a.patient_id,
        appointment_date=a.appointment_date.isoformat(),
        appointment_time=a.appointment_time.strftime("%H:%M:%S"),
        duration=a.duration,
        title=a.title,
        description=a.description,
        status=a.status,
        no_show_reason=a.no_show_reason,
        clinical_history=a.clinical_history,
        notes=a.notes,
        created_at=a.created_at,
        updated_at=a.updated_at,
    )


def _patient_snapshot(p: Patient) -> PatientSnapshot:
    return PatientSnapshot(
        id=p.id,
        doctor_id=p.doctor_id,
        first_name=p.first_name,
        last_name=p.last_name,
        phone=p.phone,
        email=p.email,
        date_of_birth=p.date_of_birth.isoformat() if p.date_of_birth else None,
        gender=p.gender.value if p.gender else None,
        address=p.address,
        document_type=p.document_type,
        document_number=p.document_number,
        eps=p.eps,
        marital_status=p.marital_status,
        occupation=p.occupation,
    )


def _doctor_snapshot(d: Doctor) -> DoctorSnapshot:
    return DoctorSnapshot(id=d.id, full_name=d.full_name, email=d.email, specialty=d.specialty, phone=d.phone)


def _notification_snapshot(n: Notification) -> NotificationSnapshot:
    return NotificationSnapshot(
        id=n.id,
        user_id=n.user_id,
        user_type=n.user_type,
        title=n.title,
        message=n.message,
        type=n.type,
        is_read=n.is_read,
        appointment_id=n.appointment_id,
        created_at=n.created_at,
    )


def _patient_columns(fields: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for k, v in fields.items():
        if k not in PATIENT_PATCHABLE_FIELDS:
            continue
        if k == "date_of_birth" and v:
            v = parse_date(v)
        elif k == "gender" and v:
            v = Gender(v)
        values[k] = v
    return values


# =========================
# Store
# =========================
class SqlAppointmentStore:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._factory = session_factory

    def get(self, appointment_id: str) -> AppointmentSnapshot | None:
        with db_session(self._factory) as s:
            a = s.get(Appointment, appointment_id)
            return _appointment_snapshot(a) if a else None

    def list_for_doctor(self, doctor_id: str | None = None) -> list[AppointmentSnapshot]:
        q = select(Appointment)
        if doctor_id is not None:
            q = q.where(Appointment.doctor_id == doctor_id)
        with db_session(self._factory) as s:
            return [_appointment_snapshot(a) for a in s.scalars(q)]

    def list_for_patient(self, patient_id: str) -> list[AppointmentSnapshot]:
        with db_session(self._factory) as s:
            q = select(Appointment).where(Appointment.patient_id == patient_id)
            return [_appointment_snapshot(a) for a in s.scalars(q)]

    def add(self, appointment: AppointmentSnapshot) -> AppointmentSnapshot:
        with db_session(self._factory) as s:
            row = Appointment(
                doctor_id=appointment.doctor_id,
                patient_id=appointment.patient_id,
                appointment_date=parse_date(appointment.appointment_date),
                appointment_time=parse_time(appointment.appointment_time),
                duration=appointment.duration,
                title=appointment.title,
                description=appointment.description,
                status=appointment.status,
                notes=appointment.notes,
            )
            if appointment.id:
                row.id = appointment.id
            s.add(row)
            s.flush()
            return _appointment_snapshot(row)

    def replace_if_status(
        self, appointment: AppointmentSnapshot, expected_status: AppointmentStatus
    ) -> AppointmentSnapshot | None:
        values: dict[str, Any] = {k: getattr(appointment, k) for k in APPOINTMENT_MUTABLE_FIELDS}
        values["appointment_date"] = parse_date(values["appointment_date"])
        values["appointment_time"] = parse_time(values["appointment_time"])
        values["updated_at"] = values["updated_at"] or datetime.now()

        with db_session(self._factory) as s:
            # UPDATE condizionato: vince solo chi ha letto lo stato ancora valido
            result = s.execute(
                update(Appointment)
                .where(and_(Appointment.id == appointment.id, Appointment.status == expected_status))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = s.get(Appointment, appointment.id, populate_existing=True)
            return _appointment_snapshot(row)


class SqlPatientStore:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._factory = session_factory

    def get(self, patient_id: str) -> PatientSnapshot | None:
        with db_session(self._factory) as s:
            p = s.get(Patient, patient_id)
            return _patient_snapshot(p) if p else None

    def list_for_doctor(self, doctor_id: str | None = None) -> list[PatientSnapshot]:
        q = select(Patient).order_by(Patient.last_name, Patient.first_name)
        if doctor_id is not None:
            q = q.where(Patient.doctor_id == doctor_id)
        with db_session(self._factory) as s:
            return [_patient_snapshot(p) for p in s.scalars(q)]

    def find_by_email(self, email: str) -> PatientSnapshot | None:
        with db_session(self._factory) as s:
            p = s.scalars(
                select(Patient).where(func.lower(Patient.email) == email.strip().lower()).limit(1)
            ).first()
            return _patient_snapshot(p) if p else None

    def add(self, patient: PatientSnapshot) -> PatientSnapshot:
        with db_session(self._factory) as s:
            row = Patient(
                doctor_id=patient.doctor_id,
                first_name=patient.first_name.strip(),
                last_name=patient.last_name.strip(),
                **_patient_columns(
                    {k: v for k, v in patient.to_dict().items() if k not in ("first_name", "last_name")}
                ),
            )
            if patient.id:
                row.id = patient.id
            s.add(row)
            s.flush()
            return _patient_snapshot(row)

    def patch(self, patient_id: str, fields: Mapping[str, Any]) -> PatientSnapshot | None:
        with db_session(self._factory) as s:
            p = s.get(Patient, patient_id)
            if not p:
                return None
            for k, v in _patient_columns(fields).items():
                setattr(p, k, v)
            p.updated_at = datetime.now()
            s.flush()
            return _patient_snapshot(p)


class SqlDoctorStore:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._factory = session_factory

    def get(self, doctor_id: str) -> DoctorSnapshot | None:
        with db_session(self._factory) as s:
            d = s.get(Doctor, doctor_id)
            return _doctor_snapshot(d) if d else None

    def list_active(self) -> list[DoctorSnapshot]:
        with db_session(self._factory) as s:
            q = select(Doctor).where(Doctor.active.is_(True)).order_by(Doctor.full_name)
            return [_doctor_snapshot(d) for d in s.scalars(q)]


class SqlNotificationStore:
    def __init__(self, session_factory: sessionmaker | None = None) -> None:
        self._factory = session_factory

    def create(
        self,
        recipient_id: str,
        recipient_kind: RecipientKind,
        title: str,
        message: str,
        severity: NotificationType = NotificationType.INFO,
        appointment_id: str | None = None,
    ) -> str:
        with db_session(self._factory) as s:
            n = Notification(
                user_id=recipient_id,
                user_type=RecipientKind(recipient_kind),
                title=title,
                message=message,
                type=NotificationType(severity),
                appointment_id=appointment_id,
            )
            s.add(n)
            s.flush()
            return n.id

    def list_for(self, recipient_id: str, recipient_kind: RecipientKind, limit: int = 50) -> list[NotificationSnapshot]:
        with db_session(self._factory) as s:
            q = (
                select(Notification)
                .where(and_(Notification.user_id == recipient_id, Notification.user_type == RecipientKind(recipient_kind)))
                .order_by(Notification.created_at.desc())
                .limit(limit)
            )
            return [_notification_snapshot(n) for n in s.scalars(q)]

    def mark_read(self, notification_id: str) -> bool:
        with db_session(self._factory) as s:
            result = s.execute(
                update(Notification).where(Notification.id == notification_id).values(is_read=True)
            )
            return result.rowcount == 1

    def delete(self, notification_id: str) -> bool:
        with db_session(self._factory) as s:
            result = s.execute(delete(Notification).where(Notification.id == notification_id))
            return result.rowcount == 1
