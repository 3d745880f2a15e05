"""
Classificazione di urgenza degli appuntamenti imminenti.

Tutto in orario locale naive (vedi `clock.py`): data e ora dell'appuntamento
vengono concatenate senza alcuna conversione di fuso.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Sequence

import structlog

from .clock import NaiveInstant, format_hm
from .errors import ValidationError
from .models import AppointmentStatus
from .store import AppointmentSnapshot

logger = structlog.get_logger(__name__)

URGENT_MINUTES = 10
WARNING_MINUTES = 60

ELIGIBLE_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})


class UrgencyLevel(str, enum.Enum):
    OVERDUE = "overdue"
    URGENT = "urgent"
    WARNING = "warning"
    INFO = "info"
    NONE = "none"


@dataclass(frozen=True)
class Urgency:
    level: UrgencyLevel
    message: str | None = None
    minutes_until: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.level.value, "message": self.message, "minutes_until": self.minutes_until}


NO_ALERT = Urgency(UrgencyLevel.NONE)


def classify(now: datetime, appointment: AppointmentSnapshot) -> Urgency:
    if appointment.status not in ELIGIBLE_STATUSES:
        return NO_ALERT

    try:
        instant = appointment.instant
    except ValidationError:
        logger.warning("alert_skipped_bad_datetime", appointment_id=appointment.id)
        return NO_ALERT

    seconds = instant.seconds_since(now)
    if seconds < 0:
        return Urgency(UrgencyLevel.OVERDUE, "appointment overdue", int(seconds // 60))

    minutes = int(seconds // 60)
    if seconds <= URGENT_MINUTES * 60:
        return Urgency(UrgencyLevel.URGENT, f"appointment in {minutes} minutes", minutes)
    if seconds <= WARNING_MINUTES * 60:
        return Urgency(UrgencyLevel.WARNING, f"appointment in {minutes // 60}h {minutes % 60}m", minutes)
    if instant.is_day_after(now):
        return Urgency(UrgencyLevel.INFO, f"appointment tomorrow at {format_hm(instant.at)}", minutes)
    return NO_ALERT


def _sort_key(appointment: AppointmentSnapshot) -> NaiveInstant:
    return appointment.instant


def upcoming(appointments: Iterable[AppointmentSnapshot]) -> list[AppointmentSnapshot]:
    """Ordine globale per istante crescente; sort stabile, indipendente dalla classificazione."""
    valid: list[AppointmentSnapshot] = []
    for a in appointments:
        try:
            a.instant
        except ValidationError:
            logger.warning("upcoming_skipped_bad_datetime", appointment_id=a.id)
            continue
        valid.append(a)
    return sorted(valid, key=_sort_key)


@dataclass(frozen=True)
class Alert:
    appointment: AppointmentSnapshot
    urgency: Urgency

    def to_dict(self) -> dict[str, Any]:
        return {"appointment": self.appointment.to_dict(), **self.urgency.to_dict()}


def active_alerts(now: datetime, appointments: Sequence[AppointmentSnapshot]) -> list[Alert]:
    """Solo gli appuntamenti con un livello diverso da `none`, nell'ordine di `upcoming`."""
    out: list[Alert] = []
    for a in upcoming(appointments):
        u = classify(now, a)
        if u.level is not UrgencyLevel.NONE:
            out.append(Alert(a, u))
    return out
