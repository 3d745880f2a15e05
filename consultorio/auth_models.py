from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base
from .models import new_uuid


class User(Base):
    """
    Utente applicativo per autenticazione.
    - username univoco
    - password_hash con bcrypt (passlib)
    - doctor_id: l'agenda su cui l'utente lavora
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    doctor_id: Mapped[str | None] = mapped_column(ForeignKey("doctors.id"), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
