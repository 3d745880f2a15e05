"""
Date e orari "naive": niente fuso orario, mai.

Data (`YYYY-MM-DD`) e ora (`HH:MM` o `HH:MM:SS`) degli appuntamenti sono
valori locali del consultorio. Tutta l'aritmetica passa da `NaiveInstant`.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from .errors import ValidationError

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)(?::([0-5]\d))?$")


def parse_date(value: str | date) -> date:
    """Accetta `YYYY-MM-DD`; un eventuale suffisso `T...` (datetime serializzato) viene ignorato."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip().split("T", 1)[0]
    try:
        return datetime.strptime(raw, "%Y-%m-%d").date()
    except ValueError:
        raise ValidationError(f"Invalid date '{value}', expected YYYY-MM-DD.") from None


def parse_time(value: str | time) -> time:
    if isinstance(value, time):
        return value.replace(microsecond=0, tzinfo=None)
    m = _TIME_RE.match(str(value).strip())
    if not m:
        raise ValidationError(f"Invalid time '{value}', expected HH:MM or HH:MM:SS.")
    return time(int(m.group(1)), int(m.group(2)), int(m.group(3) or 0))


def date_key(value: str | date) -> str:
    """Chiave di bucket del calendario: sempre `YYYY-MM-DD`."""
    return parse_date(value).isoformat()


def format_hm(value: str | time) -> str:
    return parse_time(value).strftime("%H:%M")


@dataclass(frozen=True, order=True)
class NaiveInstant:
    day: date
    at: time

    @classmethod
    def parse(cls, date_value: str | date, time_value: str | time) -> "NaiveInstant":
        return cls(parse_date(date_value), parse_time(time_value))

    @classmethod
    def from_datetime(cls, value: datetime) -> "NaiveInstant":
        # eventuale tzinfo scartato: confronto sempre tra orari locali
        return cls(value.date(), value.time().replace(microsecond=0, tzinfo=None))

    def to_datetime(self) -> datetime:
        return datetime.combine(self.day, self.at)

    def seconds_since(self, other: "NaiveInstant | datetime") -> float:
        """Secondi con segno da `other` a questo istante (negativo se già passato)."""
        if isinstance(other, datetime):
            other_dt = other.replace(tzinfo=None)
        else:
            other_dt = other.to_datetime()
        return (self.to_datetime() - other_dt).total_seconds()

    def plus_minutes(self, minutes: int) -> "NaiveInstant":
        return NaiveInstant.from_datetime(self.to_datetime() + timedelta(minutes=minutes))

    def is_day_after(self, other: datetime | date) -> bool:
        base = other.date() if isinstance(other, datetime) else other
        return self.day == base + timedelta(days=1)

    def __str__(self) -> str:
        return f"{self.day.isoformat()}T{self.at.strftime('%H:%M:%S')}"
