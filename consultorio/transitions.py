"""
Motore delle transizioni di stato degli appuntamenti.

    scheduled ──► confirmed ──► completed | cancelled | no_show
        └──────────────────────► completed | cancelled | no_show

Gli stati finali non hanno uscite. `plan_transition` è puro (snapshot in,
snapshot + istruzioni out); `TransitionEngine.apply_transition` legge lo
store, pianifica e fa eseguire le istruzioni al `Dispatcher`.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Mapping

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .clock import format_hm, parse_date, parse_time
from .dispatcher import (
    CreateNotification,
    DispatchReport,
    Dispatcher,
    Instruction,
    PatchPatient,
    PersistAppointment,
    SendEmail,
)
from .errors import ConsultorioError, DownstreamFailure, InvalidTransition, NotFound, ValidationError
from .models import AppointmentStatus, NotificationType, RecipientKind
from .store import (
    PATIENT_PATCHABLE_FIELDS,
    AppointmentSnapshot,
    AppointmentStore,
    DoctorStore,
    PatientSnapshot,
    PatientStore,
)

logger = structlog.get_logger(__name__)

S = AppointmentStatus

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.SCHEDULED: frozenset({S.CONFIRMED, S.COMPLETED, S.CANCELLED, S.NO_SHOW}),
    S.CONFIRMED: frozenset({S.COMPLETED, S.CANCELLED, S.NO_SHOW}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.NO_SHOW: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)

# Sugli appuntamenti chiusi si può ancora allegare la storia clinica o annotare
FIELDS_EDITABLE_WHEN_TERMINAL = frozenset({"clinical_history", "notes"})

_STATUS_NOTICES: dict[AppointmentStatus, tuple[str, str, NotificationType]] = {
    S.CONFIRMED: ("Appointment confirmed", "Your appointment on {date} at {time} has been confirmed.", NotificationType.SUCCESS),
    S.COMPLETED: ("Appointment completed", "Your appointment on {date} at {time} has been completed.", NotificationType.INFO),
    S.CANCELLED: ("Appointment cancelled", "Your appointment on {date} at {time} has been cancelled.", NotificationType.WARNING),
    S.NO_SHOW: ("Missed appointment", "You did not attend the appointment on {date} at {time}.", NotificationType.WARNING),
}

_STATUS_EMAILS = {
    S.CONFIRMED: "appointment_confirmation",
    S.CANCELLED: "appointment_cancelled",
}


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# =========================
# Field update set
# =========================
def patient_correction(data: Any) -> dict[str, Any]:
    """
    Dati anagrafici corretti durante la visita (solo con status=completed).
    Nessuna validazione qui: date e genere vengono normalizzati da `PatchPatient`.
    """
    if not isinstance(data, Mapping):
        return {}
    # valori vuoti ignorati: il form rimanda tutti i campi, anche quelli non toccati
    return {k: v for k, v in data.items() if k in PATIENT_PATCHABLE_FIELDS and v not in (None, "")}


class AppointmentUpdate(BaseModel):
    """Insieme di campi modificabili, tutti opzionali: il motore ragiona per presenza."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    status: AppointmentStatus | None = None
    appointment_date: str | None = None
    appointment_time: str | None = None
    no_show_reason: str | None = None
    # documento opaco: qualsiasi valore JSON, salvato serializzato
    clinical_history: Any = None
    notes: str | None = None
    patient_data: Any = Field(default=None, alias="patientData")

    @field_validator("appointment_date")
    @classmethod
    def _check_date(cls, v: str | None) -> str | None:
        return parse_date(v).isoformat() if v is not None else None

    @field_validator("appointment_time")
    @classmethod
    def _check_time(cls, v: str | None) -> str | None:
        if v is None:
            return None
        t = parse_time(v)
        return t.strftime("%H:%M:%S") if t.second else t.strftime("%H:%M")

    @classmethod
    def parse(cls, payload: Mapping[str, Any]) -> "AppointmentUpdate":
        try:
            return cls.model_validate(dict(payload))
        except PydanticValidationError as e:
            first = e.errors()[0]
            where = ".".join(str(p) for p in first.get("loc", ()))
            raise ValidationError(f"Invalid value for '{where}': {first.get('msg')}", field=where) from None

    def present_fields(self) -> set[str]:
        # patient_data escluso: la sola correzione anagrafica non aggiorna l'appuntamento
        return {
            k
            for k in ("status", "appointment_date", "appointment_time", "no_show_reason", "clinical_history", "notes")
            if getattr(self, k) is not None
        }


# =========================
# Pianificazione (pura)
# =========================
@dataclass(frozen=True)
class TransitionPlan:
    previous: AppointmentSnapshot
    appointment: AppointmentSnapshot
    instructions: tuple[Instruction, ...]

    @property
    def status_changed(self) -> bool:
        return self.previous.status != self.appointment.status


def _email_variables(appt: AppointmentSnapshot, patient: PatientSnapshot, doctor: Any | None) -> dict[str, Any]:
    return {
        "patientName": patient.full_name,
        "patientEmail": patient.email,
        "doctorName": getattr(doctor, "full_name", None),
        "doctorSpecialty": getattr(doctor, "specialty", None),
        "appointmentDate": appt.appointment_date,
        "appointmentTime": format_hm(appt.appointment_time),
        "appointmentTitle": appt.title,
        "appointmentDescription": appt.description,
    }


def plan_transition(
    current: AppointmentSnapshot,
    update: AppointmentUpdate,
    now: datetime,
    patient: PatientSnapshot | None = None,
    doctor: Any | None = None,
) -> TransitionPlan:
    present = update.present_fields()
    if not present:
        raise ValidationError("Nothing to update.")

    target = update.status
    if current.status in TERMINAL_STATUSES:
        if target is not None or not present <= FIELDS_EDITABLE_WHEN_TERMINAL:
            raise InvalidTransition(
                f"Appointment is '{current.status.value}': no transition allowed.",
                current=current.status.value,
                requested=target.value if target else None,
            )
    elif target is not None and target != current.status and not can_transition(current.status, target):
        raise InvalidTransition(
            f"Cannot go from '{current.status.value}' to '{target.value}'.",
            current=current.status.value,
            requested=target.value,
        )

    changes: dict[str, Any] = {"updated_at": now}
    if target is not None:
        changes["status"] = target
    if update.appointment_date is not None:
        changes["appointment_date"] = update.appointment_date
    if update.appointment_time is not None:
        changes["appointment_time"] = update.appointment_time
    if update.no_show_reason is not None:
        changes["no_show_reason"] = update.no_show_reason
    if update.clinical_history is not None:
        changes["clinical_history"] = json.dumps(update.clinical_history, ensure_ascii=False)
    if update.notes is not None:
        changes["notes"] = update.notes

    updated = replace(current, **changes)
    instructions: list[Instruction] = [PersistAppointment(updated, expected_status=current.status)]

    if target == S.COMPLETED:
        fields = patient_correction(update.patient_data)
        if fields:
            instructions.append(PatchPatient(current.patient_id, fields))

    when = {"date": updated.appointment_date, "time": format_hm(updated.appointment_time)}
    rescheduled = (
        updated.appointment_date != current.appointment_date
        or format_hm(updated.appointment_time) != format_hm(current.appointment_time)
    )

    if target is not None and target != current.status:
        title, template, severity = _STATUS_NOTICES[target]
        instructions.append(
            CreateNotification(
                recipient_id=current.patient_id,
                recipient_kind=RecipientKind.PATIENT,
                title=title,
                message=template.format(**when),
                severity=severity,
                appointment_id=current.id,
            )
        )
        email_template = _STATUS_EMAILS.get(target)
        if email_template and patient is not None and patient.email:
            instructions.append(SendEmail(email_template, _email_variables(updated, patient, doctor)))
    elif rescheduled:
        instructions.append(
            CreateNotification(
                recipient_id=current.patient_id,
                recipient_kind=RecipientKind.PATIENT,
                title="Appointment rescheduled",
                message="Your appointment has been moved to {date} at {time}.".format(**when),
                severity=NotificationType.INFO,
                appointment_id=current.id,
            )
        )

    return TransitionPlan(previous=current, appointment=updated, instructions=tuple(instructions))


# =========================
# Esecuzione
# =========================
@dataclass(frozen=True)
class TransitionResult:
    appointment: AppointmentSnapshot
    previous_status: AppointmentStatus
    instructions: tuple[Instruction, ...]
    report: DispatchReport

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "appointment": self.appointment.to_dict(),
            "previous_status": self.previous_status.value,
            "side_effects": self.report.to_dict()["outcomes"],
        }


class TransitionEngine:
    def __init__(
        self,
        appointments: AppointmentStore,
        patients: PatientStore,
        dispatcher: Dispatcher,
        doctors: DoctorStore | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._appointments = appointments
        self._patients = patients
        self._doctors = doctors
        self._dispatcher = dispatcher
        self._clock = clock

    def apply_transition(
        self, appointment_id: str, requested_changes: AppointmentUpdate | Mapping[str, Any]
    ) -> TransitionResult:
        update = (
            requested_changes
            if isinstance(requested_changes, AppointmentUpdate)
            else AppointmentUpdate.parse(requested_changes)
        )
        # validazione prima di qualsiasi accesso allo store
        if not update.present_fields():
            raise ValidationError("Nothing to update.")

        current = self._read(appointment_id)
        patient = self._lookup(self._patients, current.patient_id)
        doctor = self._lookup(self._doctors, current.doctor_id) if self._doctors else None

        plan = plan_transition(current, update, now=self._clock(), patient=patient, doctor=doctor)
        report = self._dispatcher.execute(plan.instructions)

        logger.info(
            "appointment_updated",
            appointment_id=appointment_id,
            from_status=current.status.value,
            to_status=plan.appointment.status.value,
            fields=sorted(update.present_fields()),
            best_effort_failures=len(report.failures),
        )
        return TransitionResult(
            appointment=report.appointment or plan.appointment,
            previous_status=current.status,
            instructions=plan.instructions,
            report=report,
        )

    def _read(self, appointment_id: str) -> AppointmentSnapshot:
        try:
            current = self._appointments.get(appointment_id)
        except ConsultorioError:
            raise
        except Exception as e:
            raise DownstreamFailure(f"Appointment store unavailable: {e}") from e
        if current is None:
            raise NotFound("Appointment not found.", appointment_id=appointment_id)
        return current

    @staticmethod
    def _lookup(store: Any, key: str) -> Any | None:
        # None solo per un riferimento orfano; uno store irraggiungibile fa fallire la richiesta
        try:
            return store.get(key)
        except ConsultorioError:
            raise
        except Exception as e:
            raise DownstreamFailure(f"Store unavailable while reading {key}: {e}", key=key) from e
