"""Structured logging for the vetting service.

Console output is human-readable; ``app.log`` and ``error.log`` carry one JSON
object per line. Records emitted through ``get_logger`` carry the ingredient
being vetted, so every line of one ingredient's pipeline can be grouped by its
cache key.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from pythonjsonlogger import jsonlogger

from src.config import settings
from src.vetting.types import normalize_ingredient_name

SERVICE_NAME = "ingredient-vetting"

# Fields the pipeline attaches through get_logger / LoggerAdapter.bind
CONTEXT_FIELDS = ("ingredient", "stage", "provider")

# Third-party clients log every request at DEBUG/INFO
QUIET_LOGGERS = ("httpx", "httpcore", "openai", "google", "urllib3")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding service, level, source and ingredient key."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.utcnow().isoformat() + 'Z'
        log_record['service'] = SERVICE_NAME
        log_record['level'] = record.levelname
        log_record['logger'] = record.name
        log_record['source'] = f"{record.filename}:{record.lineno}"

        if record.funcName:
            log_record['function'] = record.funcName

        ingredient = getattr(record, 'ingredient', None)
        if ingredient:
            log_record['ingredient_key'] = normalize_ingredient_name(ingredient)

        if record.exc_info and record.exc_info[0] is not None:
            log_record['exc_type'] = record.exc_info[0].__name__


class ContextFormatter(logging.Formatter):
    """Console formatter that appends bound context as ``[key=value ...]``."""

    def format(self, record):
        line = super().format(record)
        context = " ".join(
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_FIELDS
            if getattr(record, key, None)
        )
        return f"{line} [{context}]" if context else line


def _resolve_logs_dir(base_dir: str | Path | None) -> Path:
    if base_dir:
        return Path(base_dir) / "logs"
    if settings.log_dir:
        return Path(settings.log_dir)
    return Path.cwd() / "logs"


def setup_logging(base_dir: str | Path | None = None):
    """Configure logging for the application.

    Args:
        base_dir: Directory to place the logs/ folder in. When omitted,
                  ``settings.log_dir`` is used, then ./logs.
    """
    logs_dir = _resolve_logs_dir(base_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level.upper()))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.DEBUG)
    console_handler.setFormatter(
        ContextFormatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    json_formatter = CustomJsonFormatter("%(timestamp)s %(level)s %(name)s %(message)s")
    json_handler = logging.FileHandler(logs_dir / "app.log")
    json_handler.setLevel(logging.DEBUG)
    json_handler.setFormatter(json_formatter)
    root_logger.addHandler(json_handler)

    error_handler = logging.FileHandler(logs_dir / "error.log")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(json_formatter)
    root_logger.addHandler(error_handler)

    third_party_level = getattr(logging, settings.third_party_log_level.upper())
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    return root_logger


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter carrying ingredient context into every record."""

    def process(self, msg, kwargs):
        # Per-call extra wins over bound context
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return msg, kwargs

    def bind(self, **context) -> "LoggerAdapter":
        """Child adapter with additional context (e.g. stage='classify')."""
        return LoggerAdapter(self.logger, {**self.extra, **context})


def get_logger(name: str, **context) -> LoggerAdapter:
    """
    Get a logger with optional context fields.

    Args:
        name: Logger name (usually __name__)
        **context: Context fields (e.g., ingredient='Glycerin', provider='gemini')

    Returns:
        LoggerAdapter with context
    """
    logger = logging.getLogger(name)
    return LoggerAdapter(logger, context)
