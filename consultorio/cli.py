from __future__ import annotations

import argparse
import json
from datetime import date

from .agenda import Granularity
from .errors import ConsultorioError, ValidationError
from .logging_config import configure_logging
from .models import RecipientKind
from .seed import seed_base
from .services import Consultorio, init_db


def cmd_init(svc: Consultorio, args: argparse.Namespace) -> None:
    seed_base(with_appointments=not args.no_appointments)
    print("DB inizializzato e seed completato.")


def cmd_list(svc: Consultorio, args: argparse.Namespace) -> None:
    if args.entity == "doctors":
        for d in svc.doctors.list_active():
            print(f"{d.id} | {d.full_name} | {d.specialty or '-'}")
    elif args.entity == "patients":
        for p in svc.list_patients(args.doctor_id):
            print(f"{p.id} | {p.last_name} {p.first_name} | {p.email or '-'}")
    elif args.entity == "appointments":
        for a in svc.list_appointments(args.doctor_id):
            print(f"{a.id} | {a.appointment_date} {a.appointment_time} | {a.status.value} | {a.title}")


def cmd_add_patient(svc: Consultorio, args: argparse.Namespace) -> None:
    p = svc.create_patient(
        args.first_name, args.last_name, email=args.email, phone=args.phone, doctor_id=args.doctor_id
    )
    print(f"Paziente creato: {p.id}")


def cmd_book(svc: Consultorio, args: argparse.Namespace) -> None:
    booking = svc.book_appointment(
        doctor_id=args.doctor_id,
        patient_id=args.patient_id,
        appointment_date=args.date,
        appointment_time=args.time,
        title=args.title,
        duration=args.duration,
        notes=args.notes,
    )
    print(f"Appuntamento ID: {booking.appointment.id}")
    if booking.double_booked:
        print("Attenzione: orario già occupato da " + ", ".join(c.id for c in booking.clashes))


def cmd_transition(svc: Consultorio, args: argparse.Namespace) -> None:
    # es: --set status=confirmed --set notes="porta esami"
    changes: dict[str, object] = {}
    for item in args.set or []:
        key, sep, value = item.partition("=")
        if not sep:
            raise SystemExit(f"Formato non valido: {item!r} (atteso chiave=valore)")
        changes[key] = value
    if args.clinical_history:
        try:
            changes["clinical_history"] = json.loads(args.clinical_history)
        except json.JSONDecodeError as e:
            raise ValidationError(f"--clinical-history is not valid JSON: {e}", field="clinical_history") from None
    res = svc.apply_transition(args.appointment_id, changes)
    print(f"{res.previous_status.value} -> {res.appointment.status.value}")
    for o in res.report.outcomes:
        print(f"  {o.instruction.kind}: {'ok' if o.ok else 'FALLITO ' + (o.error or '')}")


def cmd_calendar(svc: Consultorio, args: argparse.Namespace) -> None:
    view = svc.calendar(args.doctor_id, date.fromisoformat(args.date), args.granularity)
    for d in view.days:
        if not d.appointments and not args.all_days:
            continue
        mark = "*" if d.is_today else " "
        print(f"{mark}{d.day.isoformat()}{'' if d.in_period else ' (fuori periodo)'}")
        for v in d.appointments:
            a = v.appointment
            print(f"    {a.appointment_time[:5]} {a.status.value:<10} {v.patient.last_name} {v.patient.first_name} | {a.title}")


def cmd_alerts(svc: Consultorio, args: argparse.Namespace) -> None:
    alerts = svc.alerts(args.doctor_id)
    if not alerts:
        print("Nessun avviso.")
        return
    for al in alerts:
        print(f"[{al.urgency.level.value}] {al.appointment.title} | {al.urgency.message}")


def cmd_notifications(svc: Consultorio, args: argparse.Namespace) -> None:
    rows = svc.list_notifications(args.user_id, RecipientKind(args.user_type), limit=args.limit)
    if not rows:
        print("Nessuna notifica.")
        return
    for n in rows:
        print(f"[{n.id}] {n.type.value} | {'letta' if n.is_read else 'nuova'} | {n.title}: {n.message}")
        if args.mark_read and not n.is_read:
            svc.mark_notification_read(n.id)


def cmd_reminders(svc: Consultorio, args: argparse.Namespace) -> None:
    sent = svc.send_reminders(args.doctor_id)
    print(f"Promemoria inviati: {sent}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="consultorio", description="CLI Consultorio (gestione agenda da terminale)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea DB e carica seed")
    p_init.add_argument("--no-appointments", action="store_true", help="Solo medici, utente demo e pazienti")
    p_init.set_defaults(func=cmd_init)

    p_list = sub.add_parser("list", help="Lista entità")
    p_list.add_argument("entity", choices=["doctors", "patients", "appointments"])
    p_list.add_argument("--doctor-id", default=None)
    p_list.set_defaults(func=cmd_list)

    p_addp = sub.add_parser("add-patient", help="Crea paziente")
    p_addp.add_argument("--first-name", required=True)
    p_addp.add_argument("--last-name", required=True)
    p_addp.add_argument("--email", default=None)
    p_addp.add_argument("--phone", default=None)
    p_addp.add_argument("--doctor-id", default=None)
    p_addp.set_defaults(func=cmd_add_patient)

    p_book = sub.add_parser("book", help="Prenota appuntamento")
    p_book.add_argument("--doctor-id", required=True)
    p_book.add_argument("--patient-id", required=True)
    p_book.add_argument("--date", required=True, help="YYYY-MM-DD")
    p_book.add_argument("--time", required=True, help="HH:MM")
    p_book.add_argument("--title", required=True)
    p_book.add_argument("--duration", type=int, default=30)
    p_book.add_argument("--notes", default=None)
    p_book.set_defaults(func=cmd_book)

    p_tr = sub.add_parser("transition", help="Aggiorna stato / campi di un appuntamento")
    p_tr.add_argument("--appointment-id", required=True)
    p_tr.add_argument("--set", action="append", metavar="CAMPO=VALORE")
    p_tr.add_argument("--clinical-history", default=None, help="JSON della storia clinica")
    p_tr.set_defaults(func=cmd_transition)

    p_cal = sub.add_parser("calendar", help="Agenda giorno / settimana / mese")
    p_cal.add_argument("--doctor-id", required=True)
    p_cal.add_argument("--date", default=date.today().isoformat())
    p_cal.add_argument("--granularity", choices=[g.value for g in Granularity], default=Granularity.WEEK.value)
    p_cal.add_argument("--all-days", action="store_true", help="Mostra anche i giorni vuoti")
    p_cal.set_defaults(func=cmd_calendar)

    p_al = sub.add_parser("alerts", help="Avvisi sugli appuntamenti imminenti")
    p_al.add_argument("--doctor-id", required=True)
    p_al.set_defaults(func=cmd_alerts)

    p_not = sub.add_parser("notifications", help="Legge le notifiche di un destinatario")
    p_not.add_argument("--user-id", required=True)
    p_not.add_argument("--user-type", choices=[k.value for k in RecipientKind], default=RecipientKind.DOCTOR.value)
    p_not.add_argument("--limit", type=int, default=50)
    p_not.add_argument("--mark-read", action="store_true", help="Marca come lette dopo averle stampate")
    p_not.set_defaults(func=cmd_notifications)

    p_rem = sub.add_parser("reminders", help="Invia email di promemoria per domani")
    p_rem.add_argument("--doctor-id", required=True)
    p_rem.set_defaults(func=cmd_reminders)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging()
    init_db()  # garantisce tabelle
    try:
        args.func(Consultorio.from_database(), args)
    except ConsultorioError as e:
        print(f"Errore ({e.code}): {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
