from __future__ import annotations

from sqlalchemy import select

from .auth_models import User
from .auth_security import hash_password, verify_password
from .db import db_session
from .errors import NotFound, ValidationError
from .models import Doctor


def create_user(username: str, password: str, doctor_id: str | None = None) -> str:
    username = username.strip().lower()
    if not username or not password:
        raise ValidationError("Username and password are required.")

    with db_session() as s:
        exists = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
        if exists:
            raise ValidationError("Username already registered.")
        if doctor_id and s.get(Doctor, doctor_id) is None:
            raise NotFound("Doctor not found.", doctor_id=doctor_id)

        u = User(username=username, password_hash=hash_password(password), doctor_id=doctor_id, is_active=True)
        s.add(u)
        s.flush()
        return u.id


def authenticate(username: str, password: str) -> User | None:
    username = username.strip().lower()
    with db_session() as s:
        u = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
        if not u or not u.is_active:
            return None
        if not verify_password(password, u.password_hash):
            return None
        return u


def get_user_by_id(user_id: str) -> User | None:
    with db_session() as s:
        return s.get(User, user_id)
