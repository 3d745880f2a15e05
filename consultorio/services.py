from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Mapping

import structlog
from sqlalchemy.orm import sessionmaker

from . import config
from .agenda import CalendarView, Granularity, Slot, load_calendar, slot_grid
from .alerts import Alert, active_alerts, upcoming
from .clock import parse_date, parse_time
from .db import Base, engine
from .dispatcher import CreateNotification, DispatchReport, Dispatcher, Instruction, PersistAppointment, SendEmail
from .errors import DownstreamFailure, NotFound, ValidationError
from .mailer import Mailer, SmtpMailer
from .models import AppointmentStatus, NotificationType, RecipientKind
from .sql_store import SqlAppointmentStore, SqlDoctorStore, SqlNotificationStore, SqlPatientStore
from .store import (
    AppointmentSnapshot,
    AppointmentStore,
    DoctorStore,
    NotificationSnapshot,
    NotificationStore,
    PatientSnapshot,
    PatientStore,
)
from .transitions import AppointmentUpdate, TransitionEngine, TransitionResult

logger = structlog.get_logger(__name__)


# =========================
# Bootstrap DB
# =========================
def init_db(bind=None) -> None:
    """Crea le tabelle se non esistono."""
    # registra anche le tabelle auth nel metadata
    from . import auth_models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


# =========================
# Helper / DTO
# =========================
@dataclass(frozen=True)
class BookingResult:
    appointment: AppointmentSnapshot
    clashes: tuple[AppointmentSnapshot, ...]
    report: DispatchReport

    @property
    def double_booked(self) -> bool:
        return bool(self.clashes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "appointment": self.appointment.to_dict(),
            "double_booked": self.double_booked,
            "clashes": [c.to_dict() for c in self.clashes],
        }


class Consultorio:
    """
    Facciata dei casi d'uso: prenotazione, transizioni, agenda, alert,
    pazienti e notifiche. Tutti i collaboratori sono iniettati.
    """

    def __init__(
        self,
        appointments: AppointmentStore,
        patients: PatientStore,
        doctors: DoctorStore,
        notifications: NotificationStore,
        mailer: Mailer,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.appointments = appointments
        self.patients = patients
        self.doctors = doctors
        self.notifications = notifications
        self.mailer = mailer
        self.clock = clock
        self.dispatcher = Dispatcher(appointments, patients, notifications, mailer)
        self.engine = TransitionEngine(appointments, patients, self.dispatcher, doctors=doctors, clock=clock)

    @classmethod
    def from_database(cls, session_factory: sessionmaker | None = None, mailer: Mailer | None = None) -> "Consultorio":
        return cls(
            appointments=SqlAppointmentStore(session_factory),
            patients=SqlPatientStore(session_factory),
            doctors=SqlDoctorStore(session_factory),
            notifications=SqlNotificationStore(session_factory),
            mailer=mailer or SmtpMailer(),
        )

    # =========================
    # Prenotazione
    # =========================
    def book_appointment(
        self,
        doctor_id: str,
        patient_id: str,
        appointment_date: str,
        appointment_time: str,
        title: str,
        description: str | None = None,
        duration: int = config.DEFAULT_DURATION_MINUTES,
        notes: str | None = None,
        self_service: bool = False,
    ) -> BookingResult:
        """
        Use case: prenotare un appuntamento (stato iniziale `scheduled`).
        - medico e paziente devono esistere
        - nessun blocco sui doppioni: gli appuntamenti attivi allo stesso
          orario vengono restituiti in `clashes`
        - notifica al medico; email di conferma al paziente se self-service
        """
        day = parse_date(appointment_date)
        at = parse_time(appointment_time)
        if duration <= 0:
            raise ValidationError("Duration must be positive.")
        if not title or not title.strip():
            raise ValidationError("Title is required.")

        doctor = self.doctors.get(doctor_id)
        if doctor is None:
            raise NotFound("Doctor not found.", doctor_id=doctor_id)
        patient = self.patients.get(patient_id)
        if patient is None:
            raise NotFound("Patient not found.", patient_id=patient_id)

        draft = AppointmentSnapshot(
            id="",
            doctor_id=doctor_id,
            patient_id=patient_id,
            appointment_date=day.isoformat(),
            appointment_time=at.strftime("%H:%M:%S"),
            duration=duration,
            title=title.strip(),
            description=description,
            status=AppointmentStatus.SCHEDULED,
            notes=notes,
        )
        # `upcoming` scarta le righe con data/ora illeggibili
        clashes = tuple(
            a
            for a in upcoming(self.appointments.list_for_doctor(doctor_id))
            if a.is_active and a.instant == draft.instant
        )

        report = self.dispatcher.execute([PersistAppointment(draft)])
        saved = report.appointment
        if saved is None:
            raise DownstreamFailure("Appointment store did not return the new appointment.", doctor_id=doctor_id)

        when = f"{saved.appointment_date} {at.strftime('%H:%M')}"
        follow_up: list[Instruction] = [
            CreateNotification(
                recipient_id=doctor_id,
                recipient_kind=RecipientKind.DOCTOR,
                title="New appointment",
                message=f"{patient.full_name} booked '{saved.title}' for {when}.",
                severity=NotificationType.WARNING if clashes else NotificationType.INFO,
                appointment_id=saved.id,
            )
        ]
        if self_service and patient.email:
            follow_up.append(
                SendEmail(
                    "appointment_confirmation",
                    {
                        "patientName": patient.full_name,
                        "patientEmail": patient.email,
                        "doctorName": doctor.full_name,
                        "doctorSpecialty": doctor.specialty,
                        "appointmentDate": saved.appointment_date,
                        "appointmentTime": at.strftime("%H:%M"),
                        "appointmentTitle": saved.title,
                        "appointmentDescription": saved.description,
                    },
                )
            )
        follow = self.dispatcher.execute(follow_up)
        report.outcomes.extend(follow.outcomes)

        if clashes:
            logger.warning(
                "double_booking",
                doctor_id=doctor_id,
                appointment_id=saved.id,
                clashes=[c.id for c in clashes],
            )
        logger.info("appointment_booked", appointment_id=saved.id, doctor_id=doctor_id, self_service=self_service)
        return BookingResult(saved, clashes, report)

    def self_book(
        self,
        doctor_id: str,
        first_name: str,
        last_name: str,
        appointment_date: str,
        appointment_time: str,
        title: str,
        email: str | None = None,
        phone: str | None = None,
        description: str | None = None,
    ) -> tuple[PatientSnapshot, BookingResult]:
        """
        Prenotazione senza login:
        - riusa il paziente se l'email è già nota, altrimenti lo crea al volo
        - prova a prenotare l'appuntamento
        """
        if self.doctors.get(doctor_id) is None:
            raise NotFound("Doctor not found.", doctor_id=doctor_id)

        patient = self.patients.find_by_email(email) if email else None
        if patient is None:
            patient = self.create_patient(
                first_name=first_name, last_name=last_name, email=email, phone=phone, doctor_id=doctor_id
            )
        booking = self.book_appointment(
            doctor_id=doctor_id,
            patient_id=patient.id,
            appointment_date=appointment_date,
            appointment_time=appointment_time,
            title=title,
            description=description,
            self_service=True,
        )
        return patient, booking

    # =========================
    # Transizioni
    # =========================
    def apply_transition(self, appointment_id: str, changes: AppointmentUpdate | Mapping[str, Any]) -> TransitionResult:
        return self.engine.apply_transition(appointment_id, changes)

    # =========================
    # Query utili
    # =========================
    def list_appointments(self, doctor_id: str | None = None) -> list[AppointmentSnapshot]:
        return upcoming(self.appointments.list_for_doctor(doctor_id))

    def get_appointment(self, appointment_id: str) -> AppointmentSnapshot:
        a = self.appointments.get(appointment_id)
        if a is None:
            raise NotFound("Appointment not found.", appointment_id=appointment_id)
        return a

    def calendar(self, doctor_id: str, reference_date: date, granularity: Granularity | str) -> CalendarView:
        return load_calendar(
            self.appointments, self.patients, doctor_id, reference_date, granularity, today=self.clock().date()
        )

    def alerts(self, doctor_id: str) -> list[Alert]:
        return active_alerts(self.clock(), self.appointments.list_for_doctor(doctor_id))

    def upcoming(self, doctor_id: str, limit: int = 10) -> list[AppointmentSnapshot]:
        """Prossimi appuntamenti attivi non ancora passati, in ordine di orario."""
        now = self.clock()
        rows = [
            a
            for a in upcoming(self.appointments.list_for_doctor(doctor_id))
            if a.is_active and a.instant.seconds_since(now) >= 0
        ]
        return rows[:limit]

    def free_slots(self, doctor_id: str, day: date) -> list[Slot]:
        if self.doctors.get(doctor_id) is None:
            raise NotFound("Doctor not found.", doctor_id=doctor_id)
        return slot_grid(
            self.appointments.list_for_doctor(doctor_id),
            day,
            start=config.SLOT_START,
            end=config.SLOT_END,
            step_minutes=config.SLOT_MINUTES,
        )

    # =========================
    # Pazienti
    # =========================
    def list_patients(self, doctor_id: str | None = None) -> list[PatientSnapshot]:
        return self.patients.list_for_doctor(doctor_id)

    def create_patient(self, first_name: str, last_name: str, **fields: Any) -> PatientSnapshot:
        if not first_name.strip() or not last_name.strip():
            raise ValidationError("First and last name are required.")
        if fields.get("date_of_birth"):
            fields["date_of_birth"] = parse_date(fields["date_of_birth"]).isoformat()
        p = self.patients.add(
            PatientSnapshot(id="", first_name=first_name.strip(), last_name=last_name.strip(), **fields)
        )
        logger.info("patient_created", patient_id=p.id, doctor_id=p.doctor_id)
        return p

    def patch_patient(self, patient_id: str, fields: Mapping[str, Any]) -> PatientSnapshot:
        if not fields:
            raise ValidationError("Nothing to update.")
        patched = self.patients.patch(patient_id, fields)
        if patched is None:
            raise NotFound("Patient not found.", patient_id=patient_id)
        return patched

    # =========================
    # Notifiche
    # =========================
    def create_notification(
        self,
        recipient_id: str,
        recipient_kind: RecipientKind | str,
        title: str,
        message: str,
        severity: NotificationType | str = NotificationType.INFO,
        appointment_id: str | None = None,
    ) -> str:
        if not recipient_id or not title or not message:
            raise ValidationError("recipient_id, title and message are required.")
        return self.notifications.create(
            recipient_id, RecipientKind(recipient_kind), title, message, NotificationType(severity), appointment_id
        )

    def list_notifications(
        self, recipient_id: str, recipient_kind: RecipientKind | str, limit: int = 50
    ) -> list[NotificationSnapshot]:
        return self.notifications.list_for(recipient_id, RecipientKind(recipient_kind), limit=limit)

    def mark_notification_read(self, notification_id: str) -> None:
        if not self.notifications.mark_read(notification_id):
            raise NotFound("Notification not found.", notification_id=notification_id)

    def delete_notification(self, notification_id: str) -> None:
        if not self.notifications.delete(notification_id):
            raise NotFound("Notification not found.", notification_id=notification_id)

    def send_reminders(self, doctor_id: str) -> int:
        """Email di promemoria per gli appuntamenti di domani (ritorna quante inviate)."""
        now = self.clock()
        sent = 0
        for a in upcoming(self.appointments.list_for_doctor(doctor_id)):
            if not a.is_active or not a.instant.is_day_after(now):
                continue
            patient = self.patients.get(a.patient_id)
            if patient is None or not patient.email:
                continue
            doctor = self.doctors.get(a.doctor_id)
            res = self.mailer.send(
                "appointment_reminder",
                {
                    "patientName": patient.full_name,
                    "patientEmail": patient.email,
                    "doctorName": doctor.full_name if doctor else None,
                    "appointmentDate": a.appointment_date,
                    "appointmentTime": a.instant.at.strftime("%H:%M"),
                    "appointmentTitle": a.title,
                },
            )
            if res.success:
                sent += 1
            else:
                logger.warning("reminder_not_sent", appointment_id=a.id, error=res.error)
        return sent
