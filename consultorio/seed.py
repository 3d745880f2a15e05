from __future__ import annotations

from datetime import date, datetime, time, timedelta

from sqlalchemy import select

from .auth_models import User
from .auth_security import hash_password
from .db import db_session
from .models import Appointment, AppointmentStatus, Doctor, Gender, Patient

DEMO_USERNAME = "demo"
DEMO_PASSWORD = "demo123"


def seed_base(with_appointments: bool = True) -> None:
    """
    Popola dati minimi (idempotente):
    - medici
    - utente demo collegato al primo medico
    - pazienti e qualche appuntamento attorno a oggi
    """
    with db_session() as s:
        # Medici
        medici = [
            ("Dra. Ana García", "ana.garcia@consultorio.local", "Medicina General", "3001234567"),
            ("Dr. Carlos Ruiz", "carlos.ruiz@consultorio.local", "Cardiología", "3007654321"),
        ]
        for full_name, email, specialty, phone in medici:
            if s.execute(select(Doctor).where(Doctor.email == email)).scalar_one_or_none() is None:
                s.add(Doctor(full_name=full_name, email=email, specialty=specialty, phone=phone))
        s.flush()

        ana = s.execute(select(Doctor).where(Doctor.email == medici[0][1])).scalar_one()

        if s.execute(select(User).where(User.username == DEMO_USERNAME)).scalar_one_or_none() is None:
            s.add(User(username=DEMO_USERNAME, password_hash=hash_password(DEMO_PASSWORD), doctor_id=ana.id))

        # Pazienti
        pazienti = [
            ("María", "López", "maria.lopez@mail.com", "3101112233", date(1985, 4, 12), Gender.FEMALE),
            ("Juan", "Pérez", "juan.perez@mail.com", "3114445566", date(1979, 11, 3), Gender.MALE),
            ("Lucía", "Martínez", None, "3127778899", None, None),
        ]
        for first, last, email, phone, dob, gender in pazienti:
            exists = s.execute(
                select(Patient).where(Patient.first_name == first, Patient.last_name == last)
            ).scalar_one_or_none()
            if exists is None:
                s.add(
                    Patient(
                        doctor_id=ana.id,
                        first_name=first,
                        last_name=last,
                        email=email,
                        phone=phone,
                        date_of_birth=dob,
                        gender=gender,
                    )
                )
        s.flush()

        if not with_appointments:
            return
        if s.execute(select(Appointment.id).where(Appointment.doctor_id == ana.id).limit(1)).first():
            return

        patients = list(s.scalars(select(Patient).where(Patient.doctor_id == ana.id).order_by(Patient.last_name)))
        today = date.today()
        now = datetime.now().replace(second=0, microsecond=0)
        soon = now + timedelta(minutes=45)

        # (giorno, ora, titolo, stato)
        agenda = [
            (soon.date(), soon.time(), "Control de presión", AppointmentStatus.SCHEDULED),
            (today + timedelta(days=1), time(9, 0), "Consulta general", AppointmentStatus.CONFIRMED),
            (today + timedelta(days=1), time(9, 30), "Revisión de exámenes", AppointmentStatus.SCHEDULED),
            (today - timedelta(days=2), time(11, 0), "Primera consulta", AppointmentStatus.COMPLETED),
            (today + timedelta(days=7), time(15, 0), "Seguimiento", AppointmentStatus.SCHEDULED),
        ]
        for i, (day, at, title, status) in enumerate(agenda):
            s.add(
                Appointment(
                    doctor_id=ana.id,
                    patient_id=patients[i % len(patients)].id,
                    appointment_date=day,
                    appointment_time=at,
                    title=title,
                    status=status,
                )
            )
