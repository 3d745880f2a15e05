"""
Eccezioni di dominio.

Ogni errore porta un `code` stabile (per il client) e un messaggio
mostrabile all'utente. L'API le traduce in risposte HTTP in un unico punto.
"""
from __future__ import annotations

from typing import Any


class ConsultorioError(Exception):
    code = "error"
    http_status = 500

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class NotFound(ConsultorioError):
    code = "not_found"
    http_status = 404


class InvalidTransition(ConsultorioError):
    code = "invalid_transition"
    http_status = 409


class ValidationError(ConsultorioError):
    code = "validation_error"
    http_status = 400


class ConflictError(ConsultorioError):
    code = "conflict"
    http_status = 409


class DownstreamFailure(ConsultorioError):
    """Store o collaboratore esterno (email, notifiche) non disponibile."""
    code = "downstream_failure"
    http_status = 502
