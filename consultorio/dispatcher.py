"""
Istruzioni di side effect e relativo esecutore.

Il motore (`transitions.py`, `services.py`) non fa I/O: produce una lista
ordinata di istruzioni. Il `Dispatcher` le esegue contro i collaboratori
(store appuntamenti, store pazienti, notifiche, email).

Regole di esecuzione:
- istruzione normale fallita   -> l'intera operazione fallisce
  (DownstreamFailure, oppure l'errore di dominio sollevato dallo store)
- istruzione best-effort fallita -> log + esito registrato nel report, si prosegue
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Mapping, Union

import structlog

from .clock import parse_date
from .errors import ConflictError, ConsultorioError, DownstreamFailure, NotFound, ValidationError
from .mailer import Mailer
from .models import AppointmentStatus, Gender, NotificationType, RecipientKind
from .store import AppointmentSnapshot, AppointmentStore, NotificationStore, PatientStore

logger = structlog.get_logger(__name__)


def normalize_patient_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """Data di nascita in `YYYY-MM-DD`, genere tra i valori ammessi; ValidationError altrimenti."""
    out = dict(fields)
    if out.get("date_of_birth"):
        out["date_of_birth"] = parse_date(out["date_of_birth"]).isoformat()
    if out.get("gender"):
        try:
            out["gender"] = Gender(out["gender"]).value
        except ValueError:
            raise ValidationError(f"Invalid gender '{out['gender']}'.", field="gender") from None
    return out


@dataclass(frozen=True)
class PersistAppointment:
    """`expected_status=None` -> inserimento; altrimenti UPDATE condizionato sullo stato letto."""
    appointment: AppointmentSnapshot
    expected_status: AppointmentStatus | None = None
    kind: ClassVar[str] = "persist_appointment"
    best_effort: ClassVar[bool] = False


@dataclass(frozen=True)
class PatchPatient:
    patient_id: str
    fields: Mapping[str, Any]
    kind: ClassVar[str] = "patch_patient"
    best_effort: ClassVar[bool] = True


@dataclass(frozen=True)
class CreateNotification:
    recipient_id: str
    recipient_kind: RecipientKind
    title: str
    message: str
    severity: NotificationType = NotificationType.INFO
    appointment_id: str | None = None
    kind: ClassVar[str] = "create_notification"
    best_effort: ClassVar[bool] = False


@dataclass(frozen=True)
class SendEmail:
    template_name: str
    variables: Mapping[str, Any]
    kind: ClassVar[str] = "send_email"
    best_effort: ClassVar[bool] = False


Instruction = Union[PersistAppointment, PatchPatient, CreateNotification, SendEmail]


@dataclass
class InstructionOutcome:
    instruction: Instruction
    ok: bool
    result: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.instruction.kind, "ok": self.ok, "error": self.error}


@dataclass
class DispatchReport:
    outcomes: list[InstructionOutcome] = field(default_factory=list)
    appointment: AppointmentSnapshot | None = None

    @property
    def failures(self) -> list[InstructionOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def attempted(self, kind: str) -> bool:
        return any(o.instruction.kind == kind for o in self.outcomes)

    def to_dict(self) -> dict[str, Any]:
        return {"outcomes": [o.to_dict() for o in self.outcomes]}


class Dispatcher:
    def __init__(
        self,
        appointments: AppointmentStore,
        patients: PatientStore,
        notifications: NotificationStore,
        mailer: Mailer,
    ) -> None:
        self._appointments = appointments
        self._patients = patients
        self._notifications = notifications
        self._mailer = mailer

    def execute(self, instructions: list[Instruction] | tuple[Instruction, ...]) -> DispatchReport:
        report = DispatchReport()
        for ins in instructions:
            try:
                result = self._run(ins)
            except Exception as exc:
                if ins.best_effort:
                    logger.warning("best_effort_instruction_failed", kind=ins.kind, error=str(exc))
                    report.outcomes.append(InstructionOutcome(ins, ok=False, error=str(exc)))
                    continue
                if isinstance(exc, ConsultorioError):
                    raise
                logger.error("instruction_failed", kind=ins.kind, error=str(exc))
                raise DownstreamFailure(f"{ins.kind} failed: {exc}", kind=ins.kind) from exc

            report.outcomes.append(InstructionOutcome(ins, ok=True, result=result))
            if isinstance(ins, PersistAppointment):
                report.appointment = result
        return report

    # =========================
    # Handler per tipo
    # =========================
    def _run(self, ins: Instruction) -> Any:
        if isinstance(ins, PersistAppointment):
            return self._persist(ins)
        if isinstance(ins, PatchPatient):
            return self._patch_patient(ins)
        if isinstance(ins, CreateNotification):
            return self._notifications.create(
                ins.recipient_id,
                ins.recipient_kind,
                ins.title,
                ins.message,
                ins.severity,
                ins.appointment_id,
            )
        if isinstance(ins, SendEmail):
            res = self._mailer.send(ins.template_name, dict(ins.variables))
            if not res.success:
                raise RuntimeError(res.error or "email not sent")
            return res
        raise TypeError(f"Unknown instruction {ins!r}")

    def _persist(self, ins: PersistAppointment) -> AppointmentSnapshot:
        if ins.expected_status is None:
            return self._appointments.add(ins.appointment)

        saved = self._appointments.replace_if_status(ins.appointment, ins.expected_status)
        if saved is not None:
            return saved

        current = self._appointments.get(ins.appointment.id)
        if current is None:
            raise NotFound("Appointment not found.", appointment_id=ins.appointment.id)
        logger.info(
            "transition_conflict",
            appointment_id=current.id,
            expected=ins.expected_status.value,
            actual=current.status.value,
        )
        raise ConflictError(
            f"Appointment was modified concurrently (now '{current.status.value}').",
            appointment_id=current.id,
            status=current.status.value,
        )

    def _patch_patient(self, ins: PatchPatient) -> Any:
        patched = self._patients.patch(ins.patient_id, normalize_patient_fields(ins.fields))
        if patched is None:
            raise NotFound("Patient not found.", patient_id=ins.patient_id)
        return patched
