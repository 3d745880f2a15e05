"""
Invio email: template HTML + consegna SMTP.

Senza credenziali SMTP configurate il mailer lavora in modalità demo:
logga il messaggio e ritorna un message id `demo-<timestamp>`.
"""
from __future__ import annotations

import smtplib
import ssl
import time
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Callable, Protocol

import structlog

from . import config

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SendResult:
    success: bool
    message_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.success:
            return {"success": True, "messageId": self.message_id}
        return {"success": False, "error": self.error}


@dataclass(frozen=True)
class RenderedEmail:
    to: str
    subject: str
    html: str


class Mailer(Protocol):
    def send(self, template_name: str, variables: dict[str, Any]) -> SendResult: ...


# =========================
# Template
# =========================
def _layout(title: str, body: str, v: dict[str, Any]) -> str:
    clinic = escape(str(v.get("clinicName") or config.CLINIC_NAME))
    address = v.get("clinicAddress") or config.CLINIC_ADDRESS
    phone = v.get("clinicPhone") or config.CLINIC_PHONE
    footer = " · ".join(escape(str(x)) for x in (address, phone) if x)
    return (
        "<html><body style=\"font-family: Arial, sans-serif; color: #1f2937\">"
        f"<h2 style=\"color: #1d4ed8\">{escape(title)}</h2>"
        f"{body}"
        f"<hr><p style=\"font-size: 12px; color: #6b7280\">{clinic}<br>{footer}</p>"
        "</body></html>"
    )


def _details(v: dict[str, Any]) -> str:
    rows = [
        ("Doctor", v.get("doctorName")),
        ("Specialty", v.get("doctorSpecialty")),
        ("Date", v.get("appointmentDate")),
        ("Time", v.get("appointmentTime")),
        ("Reason", v.get("appointmentTitle")),
    ]
    items = "".join(f"<li><b>{k}:</b> {escape(str(val))}</li>" for k, val in rows if val)
    return f"<ul>{items}</ul>"


def appointment_confirmation_template(v: dict[str, Any]) -> tuple[str, str]:
    subject = f"Appointment confirmation - {v['appointmentDate']}"
    body = (
        f"<p>Dear {escape(str(v['patientName']))},</p>"
        "<p>your appointment has been confirmed:</p>"
        f"{_details(v)}"
        "<p>Please arrive 10 minutes early.</p>"
    )
    return subject, _layout("Appointment confirmed", body, v)


def appointment_cancelled_template(v: dict[str, Any]) -> tuple[str, str]:
    subject = f"Appointment cancelled - {v['appointmentDate']}"
    body = (
        f"<p>Dear {escape(str(v['patientName']))},</p>"
        "<p>the following appointment has been cancelled:</p>"
        f"{_details(v)}"
        "<p>Contact us to book a new date.</p>"
    )
    return subject, _layout("Appointment cancelled", body, v)


def appointment_reminder_template(v: dict[str, Any]) -> tuple[str, str]:
    subject = f"Appointment reminder - tomorrow {v['appointmentDate']}"
    body = (
        f"<p>Dear {escape(str(v['patientName']))},</p>"
        "<p>this is a reminder for your appointment tomorrow:</p>"
        f"{_details(v)}"
    )
    return subject, _layout("Appointment reminder", body, v)


TEMPLATES: dict[str, Callable[[dict[str, Any]], tuple[str, str]]] = {
    "appointment_confirmation": appointment_confirmation_template,
    "appointment_cancelled": appointment_cancelled_template,
    "appointment_reminder": appointment_reminder_template,
}


def render(template_name: str, variables: dict[str, Any]) -> RenderedEmail:
    try:
        template = TEMPLATES[template_name]
    except KeyError:
        raise ValueError(f"Unknown email template '{template_name}'") from None
    to = variables.get("patientEmail")
    if not to:
        raise ValueError("patientEmail is required")
    subject, html = template(variables)
    return RenderedEmail(to=str(to), subject=subject, html=html)


# =========================
# Consegna
# =========================
class SmtpMailer:
    def __init__(
        self,
        host: str = config.SMTP_HOST,
        port: int = config.SMTP_PORT,
        user: str = config.SMTP_USER,
        password: str = config.SMTP_PASS,
        sender: str = config.EMAIL_FROM,
        timeout: float = config.SMTP_TIMEOUT_SECONDS,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.sender = sender
        self.timeout = timeout

    @property
    def demo_mode(self) -> bool:
        return not (self.user and self.password)

    def send(self, template_name: str, variables: dict[str, Any]) -> SendResult:
        try:
            email = render(template_name, variables)
        except (KeyError, ValueError) as e:
            return SendResult(False, error=str(e))

        if self.demo_mode:
            message_id = f"demo-{int(time.time() * 1000)}"
            logger.info("email_demo_mode", to=email.to, subject=email.subject, message_id=message_id)
            return SendResult(True, message_id=message_id)

        msg = MIMEMultipart("alternative")
        msg["Subject"] = email.subject
        msg["From"] = self.sender
        msg["To"] = email.to
        msg.attach(MIMEText(email.html, "html", "utf-8"))

        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
                smtp.starttls(context=ssl.create_default_context())
                smtp.login(self.user, self.password)
                refused = smtp.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("email_send_failed", to=email.to, template=template_name, error=str(e))
            return SendResult(False, error=str(e))

        if refused:
            return SendResult(False, error=f"Recipients refused: {', '.join(refused)}")
        message_id = msg.get("Message-ID") or f"smtp-{int(time.time() * 1000)}"
        logger.info("email_sent", to=email.to, template=template_name)
        return SendResult(True, message_id=message_id)
