"""
Configurazione logging strutturato (structlog sopra il logging standard).
"""
from __future__ import annotations

import logging
import sys

import structlog

from .config import LOG_JSON, LOG_LEVEL


def configure_logging(log_level: str = LOG_LEVEL, json_logs: bool = LOG_JSON) -> None:
    """
    Da chiamare una sola volta all'avvio (API o CLI).
    - json_logs=True  : una riga JSON per evento (produzione)
    - json_logs=False : output colorato leggibile (sviluppo)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if json_logs:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
