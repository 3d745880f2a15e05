from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, time

from sqlalchemy import Boolean, Date, DateTime, Enum, ForeignKey, Index, Integer, String, Text, Time
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def new_uuid() -> str:
    return str(uuid.uuid4())


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    # salva i valori ("scheduled"), non i nomi dei membri
    return [m.value for m in enum_cls]


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class RecipientKind(str, enum.Enum):
    DOCTOR = "doctor"
    PATIENT = "patient"


class NotificationType(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Gender(str, enum.Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class Doctor(Base):
    __tablename__ = "doctors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    full_name: Mapped[str] = mapped_column(String(160), nullable=False)
    email: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    specialty: Mapped[str | None] = mapped_column(String(120), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    patients: Mapped[list["Patient"]] = relationship(back_populates="doctor")
    appointments: Mapped[list["Appointment"]] = relationship(back_populates="doctor")

    def __repr__(self) -> str:
        return f"Doctor({self.full_name}, {self.specialty})"


class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    # nullable: le registrazioni self-service non hanno ancora un medico
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("doctors.id"), nullable=True, index=True)

    first_name: Mapped[str] = mapped_column(String(80), nullable=False)
    last_name: Mapped[str] = mapped_column(String(80), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(30), nullable=True)
    email: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[Gender | None] = mapped_column(
        Enum(Gender, values_callable=_enum_values, name="gender"), nullable=True
    )
    address: Mapped[str | None] = mapped_column(String(255), nullable=True)

    document_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    document_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    eps: Mapped[str | None] = mapped_column(String(120), nullable=True)
    marital_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    occupation: Mapped[str | None] = mapped_column(String(120), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    doctor: Mapped[Doctor | None] = relationship(back_populates="patients")

    def __repr__(self) -> str:
        return f"Patient({self.first_name} {self.last_name})"


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # niente vincolo di unicità su (medico, data, ora): le sovrapposizioni vengono segnalate, non bloccate
        Index("idx_appointments_doctor_date", "doctor_id", "appointment_date"),
        Index("idx_appointments_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)

    doctor_id: Mapped[str] = mapped_column(ForeignKey("doctors.id"), nullable=False)
    # senza FK: un riferimento orfano non deve rompere il calendario
    patient_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    appointment_date: Mapped[date] = mapped_column(Date, nullable=False)
    appointment_time: Mapped[time] = mapped_column(Time, nullable=False)
    duration: Mapped[int] = mapped_column(Integer, default=30, nullable=False)

    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[AppointmentStatus] = mapped_column(
        Enum(AppointmentStatus, values_callable=_enum_values, name="appointment_status"),
        default=AppointmentStatus.SCHEDULED,
        nullable=False,
    )
    no_show_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    # JSON serializzato, mai interpretato dal backend
    clinical_history: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)

    doctor: Mapped["Doctor"] = relationship(back_populates="appointments")


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (Index("idx_notifications_user", "user_id", "user_type"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    user_type: Mapped[RecipientKind] = mapped_column(
        Enum(RecipientKind, values_callable=_enum_values, name="recipient_kind"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType, values_callable=_enum_values, name="notification_type"),
        default=NotificationType.INFO,
        nullable=False,
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # opzionale: notifica riferita a un appuntamento
    appointment_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.now, nullable=False)
