from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

PROJECT_ROOT = Path(__file__).resolve().parents[1]

# DB SQLite su file nella root del progetto, sovrascrivibile da env
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{PROJECT_ROOT / 'consultorio.sqlite'}")
DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

# In produzione: mettila in variabile d'ambiente
JWT_SECRET = os.getenv("JWT_SECRET", "CHANGE_ME_DEV_SECRET")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "false").lower() == "true"

# SMTP: se utente/password mancano il mailer lavora in modalità demo
SMTP_HOST = os.getenv("SMTP_HOST", "smtp.gmail.com")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASS = os.getenv("SMTP_PASS", "")
EMAIL_FROM = os.getenv("EMAIL_FROM", SMTP_USER or "no-reply@consultorio.local")
SMTP_TIMEOUT_SECONDS = float(os.getenv("SMTP_TIMEOUT_SECONDS", "10"))

CLINIC_NAME = os.getenv("CLINIC_NAME", "Consultorio Médico")
CLINIC_ADDRESS = os.getenv("CLINIC_ADDRESS", "")
CLINIC_PHONE = os.getenv("CLINIC_PHONE", "")

# Griglia slot per l'auto-prenotazione
SLOT_START = os.getenv("SLOT_START", "08:00")
SLOT_END = os.getenv("SLOT_END", "18:00")
SLOT_MINUTES = int(os.getenv("SLOT_MINUTES", "30"))

DEFAULT_DURATION_MINUTES = 30
