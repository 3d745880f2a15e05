from __future__ import annotations

from datetime import date
from typing import Any

import structlog
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from pydantic import BaseModel, Field

from .agenda import Granularity
from .auth_models import User
from .auth_security import create_access_token, get_subject
from .auth_service import authenticate, create_user, get_user_by_id
from .errors import ConsultorioError, NotFound
from .logging_config import configure_logging
from .models import Gender, NotificationType, RecipientKind
from .seed import seed_base
from .services import Consultorio, init_db

logger = structlog.get_logger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")

app = FastAPI(title="Consultorio API", version="1.0.0")

_consultorio: Consultorio | None = None


def get_consultorio() -> Consultorio:
    global _consultorio
    if _consultorio is None:
        _consultorio = Consultorio.from_database()
    return _consultorio


# Startup

@app.on_event("startup")
def startup() -> None:
    configure_logging()
    # Crea tabelle (incluse quelle auth) e seed base (idempotente)
    init_db()
    seed_base()


@app.exception_handler(ConsultorioError)
def consultorio_error_handler(request: Request, exc: ConsultorioError) -> JSONResponse:
    logger.info("request_failed", path=request.url.path, code=exc.code, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# Schemi Auth

class RegisterIn(BaseModel):
    username: str
    password: str
    doctor_id: str | None = None


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class MeOut(BaseModel):
    id: str
    username: str
    doctor_id: str | None
    is_active: bool


# Schemi Domain

class PatientCreateIn(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    gender: Gender | None = None
    address: str | None = None
    document_type: str | None = None
    document_number: str | None = None
    eps: str | None = None
    marital_status: str | None = None
    occupation: str | None = None


class PatientPatchIn(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    gender: Gender | None = None
    address: str | None = None
    document_type: str | None = None
    document_number: str | None = None
    eps: str | None = None
    marital_status: str | None = None
    occupation: str | None = None


class AppointmentCreateIn(BaseModel):
    # prenotazione “interna” (paziente esistente, medico = utente loggato)
    patient_id: str
    appointment_date: str
    appointment_time: str
    title: str = Field(..., min_length=1)
    description: str | None = None
    duration: int = Field(30, gt=0)
    notes: str | None = None


class PublicBookingIn(BaseModel):
    # prenotazione “pubblica” (crea paziente al volo)
    doctor_id: str
    appointment_date: str
    appointment_time: str
    title: str = Field(..., min_length=1)
    description: str | None = None

    # dati paziente “pubblico”
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: str | None = None
    phone: str | None = None


class NotificationIn(BaseModel):
    user_id: str = Field(..., alias="userId")
    user_type: RecipientKind = Field(..., alias="userType")
    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    type: NotificationType = NotificationType.INFO
    appointment_id: str | None = Field(None, alias="appointmentId")

    model_config = {"populate_by_name": True}


# Dipendenze auth

def get_current_user(token: str = Depends(oauth2_scheme)) -> User:
    # protezione extra: elimina spazi / virgolette accidentali
    token = token.strip().strip('"').strip("'")

    user_id = get_subject(token)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    u = get_user_by_id(user_id)
    if not u or not u.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user")
    return u


def get_current_doctor_id(user: User = Depends(get_current_user)) -> str:
    if not user.doctor_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is not linked to a doctor")
    return user.doctor_id


# AUTH endpoints

@app.post("/api/auth/register", response_model=dict)
def register(payload: RegisterIn) -> dict[str, Any]:
    user_id = create_user(payload.username, payload.password, payload.doctor_id)
    return {"ok": True, "user_id": user_id}


@app.post("/api/auth/login", response_model=TokenOut)
def login(form: OAuth2PasswordRequestForm = Depends()) -> TokenOut:
    u = authenticate(form.username, form.password)
    if not u:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    token = create_access_token(subject=u.id, extra={"username": u.username, "doctor_id": u.doctor_id})
    return TokenOut(access_token=token)


@app.get("/api/me", response_model=MeOut)
def me(user: User = Depends(get_current_user)) -> MeOut:
    return MeOut(id=user.id, username=user.username, doctor_id=user.doctor_id, is_active=user.is_active)


# PUBLIC endpoints (no JWT)

@app.get("/api/health")
def health() -> dict[str, Any]:
    return {"ok": True}


@app.get("/api/doctors")
def api_doctors(svc: Consultorio = Depends(get_consultorio)) -> list[dict]:
    return [d.to_dict() for d in svc.doctors.list_active()]


@app.get("/api/doctors/{doctor_id}/slots")
def api_free_slots(
    doctor_id: str,
    day: date = Query(...),
    svc: Consultorio = Depends(get_consultorio),
) -> list[dict]:
    return [s.to_dict() for s in svc.free_slots(doctor_id, day)]


@app.post("/api/public/appointments")
def public_booking(payload: PublicBookingIn, svc: Consultorio = Depends(get_consultorio)) -> dict[str, Any]:
    """
    Prenotazione senza login:
    - crea (o riusa via email) il paziente
    - prenota l'appuntamento in stato `scheduled`
    """
    patient, booking = svc.self_book(
        doctor_id=payload.doctor_id,
        first_name=payload.first_name,
        last_name=payload.last_name,
        email=payload.email,
        phone=payload.phone,
        appointment_date=payload.appointment_date,
        appointment_time=payload.appointment_time,
        title=payload.title,
        description=payload.description,
    )
    return {**booking.to_dict(), "patient_id": patient.id}


# PROTECTED endpoints (JWT)

@app.get("/api/appointments")
def api_appointments(
    doctor_id: str = Depends(get_current_doctor_id), svc: Consultorio = Depends(get_consultorio)
) -> list[dict]:
    return [a.to_dict() for a in svc.list_appointments(doctor_id)]


@app.post("/api/appointments")
def api_book_appointment(
    payload: AppointmentCreateIn,
    doctor_id: str = Depends(get_current_doctor_id),
    svc: Consultorio = Depends(get_consultorio),
) -> dict[str, Any]:
    booking = svc.book_appointment(doctor_id=doctor_id, **payload.model_dump())
    return booking.to_dict()


@app.get("/api/appointments/upcoming")
def api_upcoming(
    limit: int = Query(10, ge=1, le=100),
    doctor_id: str = Depends(get_current_doctor_id),
    svc: Consultorio = Depends(get_consultorio),
) -> list[dict]:
    return [a.to_dict() for a in svc.upcoming(doctor_id, limit=limit)]


def _own_appointment(svc: Consultorio, appointment_id: str, doctor_id: str) -> None:
    if svc.get_appointment(appointment_id).doctor_id != doctor_id:
        raise NotFound("Appointment not found.", appointment_id=appointment_id)


@app.get("/api/appointments/{appointment_id}")
def api_appointment(
    appointment_id: str,
    doctor_id: str = Depends(get_current_doctor_id),
    svc: Consultorio = Depends(get_consultorio),
) -> dict[str, Any]:
    _own_appointment(svc, appointment_id, doctor_id)
    return svc.get_appointment(appointment_id).to_dict()


@app.put("/api/appointments/{appointment_id}")
def api_update_appointment(
    appointment_id: str,
    payload: dict[str, Any] = Body(...),
    doctor_id: str = Depends(get_current_doctor_id),
    svc: Consultorio = Depends(get_consultorio),
) -> dict[str, Any]:
    # accetta sia i campi diretti sia la forma {"updates": {...}}
    updates = payload.get("updates", payload)
    if not isinstance(updates, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="updates must be an object")
    _own_appointment(svc, appointment_id, doctor_id)
    return svc.apply_transition(appointment_id, updates).to_dict()


@app.get("/api/calendar")
def api_calendar(
    reference_date: date = Query(...),
    granularity: Granularity = Query(Granularity.MONTH),
    doctor_id: str = Depends(get_current_doctor_id),
    svc: Consultorio = Depends(get_consultorio),
) -> dict[str, Any]:
    return svc.calendar(doctor_id, reference_date, granularity).to_dict()


@app.get("/api/alerts")
def api_alerts(
    doctor_id: str = Depends(get_current_doctor_id), svc: Consultorio = Depends(get_consultorio)
) -> list[dict]:
    return [a.to_dict() for a in svc.alerts(doctor_id)]


@app.post("/api/reminders/send")
def api_send_reminders(
    doctor_id: str = Depends(get_current_doctor_id), svc: Consultorio = Depends(get_consultorio)
) -> dict[str, Any]:
    return {"ok": True, "sent": svc.send_reminders(doctor_id)}


@app.get("/api/patients")
def api_patients(
    doctor_id: str = Depends(get_current_doctor_id), svc: Consultorio = Depends(get_consultorio)
) -> list[dict]:
    return [p.to_dict() for p in svc.list_patients(doctor_id)]


@app.post("/api/patients")
def api_create_patient(
    payload: PatientCreateIn,
    doctor_id: str = Depends(get_current_doctor_id),
    svc: Consultorio = Depends(get_consultorio),
) -> dict[str, Any]:
    fields = payload.model_dump(mode="json", exclude_none=True)
    p = svc.create_patient(doctor_id=doctor_id, **fields)
    return {"ok": True, "patient": p.to_dict()}


@app.patch("/api/patients/{patient_id}")
def api_patch_patient(
    patient_id: str,
    payload: PatientPatchIn,
    user: User = Depends(get_current_user),
    svc: Consultorio = Depends(get_consultorio),
) -> dict[str, Any]:
    p = svc.patch_patient(patient_id, payload.model_dump(mode="json", exclude_none=True))
    return {"ok": True, "patient": p.to_dict()}


@app.get("/api/notifications")
def api_notifications(
    user_id: str = Query(..., alias="userId"),
    user_type: RecipientKind = Query(..., alias="userType"),
    user: User = Depends(get_current_user),
    svc: Consultorio = Depends(get_consultorio),
) -> list[dict]:
    return [n.to_dict() for n in svc.list_notifications(user_id, user_type)]


@app.post("/api/notifications")
def api_create_notification(
    payload: NotificationIn,
    user: User = Depends(get_current_user),
    svc: Consultorio = Depends(get_consultorio),
) -> dict[str, Any]:
    nid = svc.create_notification(
        payload.user_id, payload.user_type, payload.title, payload.message, payload.type, payload.appointment_id
    )
    return {"success": True, "notificationId": nid}


@app.patch("/api/notifications/{notification_id}/read")
def api_mark_notification_read(
    notification_id: str,
    user: User = Depends(get_current_user),
    svc: Consultorio = Depends(get_consultorio),
) -> dict[str, Any]:
    svc.mark_notification_read(notification_id)
    return {"success": True}


@app.delete("/api/notifications/{notification_id}")
def api_delete_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    svc: Consultorio = Depends(get_consultorio),
) -> dict[str, Any]:
    svc.delete_notification(notification_id)
    return {"success": True}
